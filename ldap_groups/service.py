"""
Construction of the sync object graph.

Everything is built once at process start from the loaded configuration and
then passed to whoever runs syncs. Nothing here is a process-wide singleton.
"""

import importlib
import logging
from typing import Any, Dict, Optional

from ldap_groups.cache import CacheBackend, MemoryCache, SearchCache
from ldap_groups.config import DEFAULT_CACHE_TTL, get_group_map
from ldap_groups.ldap_client import LDAPClient
from ldap_groups.mapper import GroupMapper
from ldap_groups.permissions import PermissionConfig, apply_group_restrictions
from ldap_groups.resolver import MembershipResolver
from ldap_groups.stores.base import AccountStoreBase
from ldap_groups.sync import GroupSync, SyncError

logger = logging.getLogger(__name__)


def load_store_module(store_config: Dict[str, Any]) -> AccountStoreBase:
    """Dynamically load an account store module and create the store."""
    module_name = store_config['module']
    
    try:
        store_module = importlib.import_module(f"ldap_groups.stores.{module_name}")
    except ImportError as e:
        raise SyncError(f"Failed to import account store module {module_name}: {e}")
    
    store_class = None
    for attr_name in dir(store_module):
        attr = getattr(store_module, attr_name)
        if (isinstance(attr, type) and
                issubclass(attr, AccountStoreBase) and
                attr is not AccountStoreBase):
            store_class = attr
            break
    
    if not store_class:
        raise SyncError(f"No AccountStoreBase subclass found in module {module_name}")
    
    return store_class(store_config)


def build_permissions(config: Dict[str, Any], mapper: Optional[GroupMapper] = None) -> PermissionConfig:
    """Return the configured permission tables with directory-controlled groups restricted."""
    if mapper is None:
        mapper = GroupMapper(get_group_map(config))
    permission_config = config.get('permissions', {})
    return apply_group_restrictions(
        PermissionConfig.from_dict(permission_config),
        mapper.controlled_groups,
        baseline_group=permission_config.get('baseline_group', 'user'),
        scope=permission_config.get('restrict_scope', 'controlled')
    )


class GroupSyncService:
    """
    Holds the long-lived collaborators for group syncs.
    
    Attributes:
        ldap_client: Directory connection
        search_cache: Shared search result cache
        mapper: Group map and delta computation
        permissions: Permission tables with directory-controlled groups restricted
        resolver: Membership resolver
        store: Host account store
        group_sync: Per-account sync driver
    """
    
    def __init__(self, config: Dict[str, Any], store: Optional[AccountStoreBase] = None,
                 cache_backend: Optional[CacheBackend] = None, ldap_client=None):
        self.config = config
        cache_config = config.get('cache', {})
        ttl = cache_config.get('ttl_seconds')
        
        self.ldap_client = ldap_client or LDAPClient(config['ldap'])
        if cache_backend is None:
            cache_backend = MemoryCache(max_entries=cache_config.get('max_entries'))
        if ttl is None:
            ttl = DEFAULT_CACHE_TTL
        self.search_cache = SearchCache(cache_backend, default_ttl=ttl)
        
        self.mapper = GroupMapper(get_group_map(config))
        
        self.permissions = build_permissions(config, self.mapper)
        
        self.resolver = MembershipResolver(
            self.ldap_client,
            self.search_cache,
            search_attr=config['ldap'].get('search_attr', 'mail'),
            group_keys=self.mapper.directory_keys,
            use_chain=bool(config.get('use_matching_rule_in_chain_query', False)),
            cache_ttl=ttl
        )
        
        self.store = store or load_store_module(config.get('accounts', {}))
        self.group_sync = GroupSync(self.mapper, self.resolver, self.store)
        
        logger.debug("Group sync service initialized")
    
    def close(self):
        self.ldap_client.disconnect()
        self.store.close()


def build_service(config: Dict[str, Any], **kwargs) -> GroupSyncService:
    """Build the sync service from a loaded configuration."""
    return GroupSyncService(config, **kwargs)
