"""
Configuration loading and management for LDAP Groups Sync.

This module handles loading configuration from YAML files, legacy INI connection
files and environment variables, with validation and defaults.
"""

import os
import configparser
import logging
from typing import Dict, Any, List, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = 3600 * 24


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""
    
    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
    }
    
    # Legacy INI keys and the ldap section fields they populate
    INI_KEYS = {
        'server': 'server',
        'user': 'bind_user',
        'pass': 'bind_password',
        'basedn': 'base_dn',
        'searchattr': 'search_attr',
    }
    
    REQUIRED_LDAP_FIELDS = ['server', 'bind_user', 'bind_password', 'base_dn']
    
    # Top-level sections holding key/value settings
    SECTIONS = ['ldap', 'cache', 'permissions', 'logging', 'accounts']
    
    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.
        
        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}
    
    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.
        
        Returns:
            Parsed and validated configuration dictionary
            
        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")
        
        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")
        
        self._normalize_sections()
        self._merge_ini_file()
        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()
        
        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config
    
    def _normalize_sections(self):
        """Replace empty sections with mappings and reject sections of any other type."""
        errors = []
        for section in self.SECTIONS:
            value = self.config.get(section)
            if value is None:
                self.config[section] = {}
            elif not isinstance(value, dict):
                errors.append(f"Section '{section}' must be a mapping, got {type(value).__name__}")
        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))
    
    def _merge_ini_file(self):
        """
        Fill the ldap section from a legacy INI connection file.
        
        Values already present in the YAML file take precedence.
        """
        ldap_config = self.config['ldap']
        ini_file = ldap_config.get('ini_file')
        if not ini_file:
            return
        
        if not os.access(ini_file, os.R_OK):
            raise ConfigurationError(f"Can't read '{ini_file}'")
        
        parser = configparser.ConfigParser(interpolation=None)
        try:
            with open(ini_file, 'r') as f:
                content = f.read()
            # PHP-style INI files usually have no section header
            if not content.lstrip().startswith('['):
                content = '[ldap]\n' + content
            parser.read_string(content)
        except configparser.Error as e:
            raise ConfigurationError(f"Error reading '{ini_file}': {e}")
        
        for section in parser.sections():
            for ini_key, field in self.INI_KEYS.items():
                if parser.has_option(section, ini_key) and not ldap_config.get(field):
                    ldap_config[field] = parser.get(section, ini_key).strip().strip('"')
        logger.debug(f"Merged LDAP connection parameters from {ini_file}")
    
    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")
    
    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value
    
    def _validate(self):
        """Validate required configuration fields."""
        errors = []
        
        ldap_config = self.config.get('ldap') or {}
        for field in self.REQUIRED_LDAP_FIELDS:
            if not ldap_config.get(field):
                errors.append(f"Missing required LDAP field: {field}")
        
        group_map = self.config.get('group_map')
        if not group_map:
            errors.append("At least one group mapping must be configured in group_map")
        elif not isinstance(group_map, dict):
            errors.append("group_map must map local group names to lists of directory groups")
        else:
            for name, dns in group_map.items():
                if isinstance(dns, str):
                    continue
                if not isinstance(dns, list):
                    errors.append(f"group_map.{name} must be a list of directory group DNs")
                    continue
                for i, dn in enumerate(dns):
                    if not isinstance(dn, str) or not dn.strip():
                        errors.append(f"Invalid directory group for group_map.{name}[{i}]")
        
        cache_config = self.config.get('cache') or {}
        ttl = cache_config.get('ttl_seconds')
        if ttl is not None and (not isinstance(ttl, int) or ttl < 0):
            errors.append("cache.ttl_seconds must be a non-negative integer")
        
        permissions = self.config.get('permissions') or {}
        scope = permissions.get('restrict_scope')
        if scope is not None and scope not in ('controlled', 'all'):
            errors.append("permissions.restrict_scope must be 'controlled' or 'all'")
        
        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))
    
    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        # Single DN entries are accepted as a shorthand for one-element lists
        self.config['group_map'] = {
            name: [dns] if isinstance(dns, str) else list(dns)
            for name, dns in self.config['group_map'].items()
        }
        self.config.setdefault('use_matching_rule_in_chain_query', False)
        
        ldap_defaults = {
            'search_attr': 'mail',
            'attributes': ['*'],
            'connection_timeout': 10,
            'receive_timeout': 10,
            'search_time_limit': 30,
        }
        ldap_config = self.config.setdefault('ldap', {})
        for key, value in ldap_defaults.items():
            ldap_config.setdefault(key, value)
        
        cache_defaults = {
            'ttl_seconds': DEFAULT_CACHE_TTL,
            'max_entries': 10000,
        }
        cache_config = self.config.setdefault('cache', {})
        for key, value in cache_defaults.items():
            cache_config.setdefault(key, value)
        
        permission_defaults = {
            'baseline_group': 'user',
            'restrict_scope': 'controlled',
            'group_permissions': {},
            'add_groups': {},
            'remove_groups': {},
        }
        permission_config = self.config.setdefault('permissions', {})
        for key, value in permission_defaults.items():
            permission_config.setdefault(key, value)
        
        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)
        
        account_defaults = {
            'module': 'yaml_store',
            'path': 'accounts.yaml',
        }
        account_config = self.config.setdefault('accounts', {})
        for key, value in account_defaults.items():
            account_config.setdefault(key, value)


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.
    
    Args:
        config_path: Path to config file
        
    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()


def get_group_map(config: Dict[str, Any]) -> Dict[str, List[str]]:
    """Return the local group -> directory groups mapping table."""
    return config.get('group_map', {})
