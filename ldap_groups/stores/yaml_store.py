"""
Account store backed by a YAML file.

The file holds one mapping per account:

    accounts:
      jdoe:
        email: jdoe@example.com
        groups: [staff]

Every group change is written back to the file immediately.
"""

import os
import logging
import threading
from typing import Any, Dict, List, Optional, Set

import yaml

from .base import AccountStoreBase, AccountStoreError, AccountNotFoundError

logger = logging.getLogger(__name__)


class YAMLAccountStore(AccountStoreBase):
    """Account store reading and writing a YAML file."""
    
    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.path = config['path']
        self._lock = threading.Lock()
        self._accounts = self._load()
    
    def _load(self) -> Dict[str, Dict[str, Any]]:
        try:
            with open(self.path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise AccountStoreError(f"Account file not found: {self.path}")
        except yaml.YAMLError as e:
            raise AccountStoreError(f"Invalid YAML in account file {self.path}: {e}")
        
        accounts = data.get('accounts') if isinstance(data, dict) else None
        if accounts is None:
            return {}
        if not isinstance(accounts, dict):
            raise AccountStoreError(f"'accounts' must be a mapping in {self.path}")
        
        for name, account in accounts.items():
            if account is None:
                accounts[name] = account = {}
            elif not isinstance(account, dict):
                raise AccountStoreError(f"Account '{name}' must be a mapping in {self.path}")
            groups = account.get('groups') or []
            if not isinstance(groups, list):
                raise AccountStoreError(f"Groups of account '{name}' must be a list in {self.path}")
            account['groups'] = list(groups)
        logger.debug(f"Loaded {len(accounts)} accounts from {self.path}")
        return accounts
    
    def _save(self):
        tmp_path = f"{self.path}.tmp"
        try:
            with open(tmp_path, 'w') as f:
                yaml.safe_dump({'accounts': self._accounts}, f, default_flow_style=False, sort_keys=True)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise AccountStoreError(f"Failed to write account file {self.path}: {e}")
    
    def _account(self, account: str) -> Dict[str, Any]:
        try:
            return self._accounts[account]
        except KeyError:
            raise AccountNotFoundError(f"No account named '{account}' in {self.path}")
    
    def list_accounts(self) -> List[str]:
        return sorted(self._accounts)
    
    def get_identifier(self, account: str) -> Optional[str]:
        value = self._account(account).get(self.identifier_attribute)
        return str(value) if value else None
    
    def get_groups(self, account: str) -> Set[str]:
        return set(self._account(account)['groups'])
    
    def _set_groups(self, account: str, groups: List[str]):
        """Replace the groups of an account, keeping the old list if the write fails."""
        record = self._account(account)
        previous = record['groups']
        record['groups'] = groups
        try:
            self._save()
        except AccountStoreError:
            record['groups'] = previous
            raise
    
    def add_group(self, account: str, group: str) -> None:
        with self._lock:
            groups = self._account(account)['groups']
            if group not in groups:
                self._set_groups(account, groups + [group])
    
    def remove_group(self, account: str, group: str) -> None:
        with self._lock:
            groups = self._account(account)['groups']
            if group in groups:
                self._set_groups(account, [g for g in groups if g != group])
