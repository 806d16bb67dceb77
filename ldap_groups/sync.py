"""
Per-account group synchronization.

GroupSync ties the pieces together for one account: resolve the account's
directory memberships, compute the local group delta and apply it through
the host account store. The delta is applied only after resolution has fully
succeeded, so a failed lookup never leaves an account half-updated.
"""

import logging

from ldap_groups.logging_setup import audit_logger
from ldap_groups.mapper import GroupMapper, SyncDelta
from ldap_groups.resolver import MembershipResolver
from ldap_groups.stores.base import AccountStoreBase

logger = logging.getLogger(__name__)


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class GroupSync:
    """Synchronizes the local groups of single accounts."""
    
    def __init__(self, mapper: GroupMapper, resolver: MembershipResolver, store: AccountStoreBase):
        self.mapper = mapper
        self.resolver = resolver
        self.store = store
    
    def compute_account_delta(self, account: str) -> SyncDelta:
        """
        Compute the group delta for an account without changing it.
        
        Raises:
            MembershipError: If the account cannot be resolved in the directory
            LDAPClientError: If the directory cannot be queried
        """
        identifier = self.store.get_identifier(account)
        session = self.resolver.new_session()
        memberships = session.resolve(identifier)
        current_groups = self.store.get_groups(account)
        logger.debug(f"In groups for {account}: {', '.join(sorted(current_groups))}")
        return self.mapper.compute_delta(current_groups, memberships)
    
    def sync_account(self, account: str, dry_run: bool = False) -> SyncDelta:
        """
        Bring an account's directory-controlled groups in line with the directory.
        
        Args:
            account: Account name in the store
            dry_run: Compute and log the delta without applying it
            
        Returns:
            The delta that was (or, on a dry run, would be) applied
        """
        delta = self.compute_account_delta(account)
        
        if delta.is_empty():
            logger.debug(f"Groups for {account} already in sync")
            return delta
        
        for group in sorted(delta.to_remove):
            if not dry_run:
                self.store.remove_group(account, group)
            audit_logger.log_group_change('removed', account, group, dry_run=dry_run)
        
        for group in sorted(delta.to_add):
            if not dry_run:
                self.store.add_group(account, group)
            audit_logger.log_group_change('added', account, group, dry_run=dry_run)
        
        logger.info(f"Synced {account}: +{len(delta.to_add)} -{len(delta.to_remove)}"
                    + (" (dry run)" if dry_run else ""))
        return delta
