"""
Base account store interface.

This module defines the abstract base class that every host account store
must implement. The sync reads an account's identifying attribute and current
local groups through it, and applies group changes through it.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Set

logger = logging.getLogger(__name__)


class AccountStoreError(Exception):
    """Base exception for account store errors."""
    pass


class AccountNotFoundError(AccountStoreError):
    """Raised when the store has no account with the given name."""
    pass


class AccountStoreBase(ABC):
    """
    Abstract base class for host account stores.
    
    All store modules must inherit from this class and implement the
    required methods. Accounts are referred to by name.
    """
    
    def __init__(self, config: Dict[str, Any]):
        """
        Initialize account store.
        
        Args:
            config: Account store configuration dictionary
        """
        self.config = config
        self.name = config.get('name', self.__class__.__name__)
        self.identifier_attribute = config.get('identifier_attribute', 'email')
    
    @abstractmethod
    def list_accounts(self) -> List[str]:
        """Return the names of all accounts in the store."""
        pass
    
    @abstractmethod
    def get_identifier(self, account: str) -> Optional[str]:
        """
        Return the value used to look the account up in the directory.
        
        Returns:
            The identifying value (usually an email address) or None
        """
        pass
    
    @abstractmethod
    def get_groups(self, account: str) -> Set[str]:
        """Return the account's current local groups."""
        pass
    
    @abstractmethod
    def add_group(self, account: str, group: str) -> None:
        """Add a local group to the account."""
        pass
    
    @abstractmethod
    def remove_group(self, account: str, group: str) -> None:
        """Remove a local group from the account."""
        pass
    
    def has_account(self, account: str) -> bool:
        return account in self.list_accounts()
    
    def select_accounts(self, names: Optional[Iterable[str]] = None) -> List[str]:
        """
        Return the named accounts, or every account when names is empty.
        
        Raises:
            AccountNotFoundError: If a named account does not exist
        """
        if not names:
            return self.list_accounts()
        selected = []
        for name in names:
            if not self.has_account(name):
                raise AccountNotFoundError(f"No account named '{name}' in store {self.name}")
            selected.append(name)
        return selected
    
    def close(self) -> None:
        """Release any resources held by the store."""
        logger.debug(f"Closed account store {self.name}")
