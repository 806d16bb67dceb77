"""
Directory membership resolution for LDAP Groups Sync.

This module looks up an account's directory entry by its identifying
attribute, normalizes the entry's memberOf values and, when enabled, follows
nested group membership with Active Directory's transitive matching rule.
"""

import re
import logging
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from ldap3.utils.conv import escape_filter_chars
from ldap3.utils.dn import parse_dn
from ldap3.core.exceptions import LDAPInvalidDnError

from ldap_groups.cache import SearchCache
from ldap_groups.mapper import normalize_group_key

logger = logging.getLogger(__name__)

# LDAP_MATCHING_RULE_IN_CHAIN, see http://ldapwiki.com/wiki/1.2.840.113556.1.4.1941
MATCHING_RULE_IN_CHAIN = '1.2.840.113556.1.4.1941'

MEMBER_OF = 'memberof'

# A backslash followed by hex pairs, or by a single escaped character
DN_ESCAPE = re.compile(r'((?:\\[0-9a-fA-F]{2})+)|\\(.)')


class MembershipError(Exception):
    """Base exception for membership resolution errors."""
    pass


class MissingIdentifierError(MembershipError):
    """Raised when the account has no value for the search attribute."""
    pass


class NotFoundError(MembershipError):
    """Raised when no directory entry matches the account."""
    pass


class AmbiguousEntryError(MembershipError):
    """Raised when more than one directory entry matches the account."""
    pass


class DirectoryEntry:
    """A directory record for one account."""
    
    def __init__(self, dn: str, attributes: Dict[str, List[Any]]):
        self.dn = dn
        # Copy so chain results never leak into cached search payloads
        self.attributes = {name.lower(): list(values) for name, values in attributes.items()}
    
    @classmethod
    def from_search_entry(cls, entry: Dict[str, Any]) -> 'DirectoryEntry':
        return cls(entry.get('dn', ''), entry.get('attributes') or {})
    
    @property
    def member_of(self) -> List[Any]:
        return self.attributes.get(MEMBER_OF, [])
    
    def add_member_of(self, group_dn: str):
        self.attributes.setdefault(MEMBER_OF, []).append(group_dn)
    
    def __repr__(self):
        return f"DirectoryEntry({self.dn!r})"


def normalize_memberships(values: Iterable[Any]) -> FrozenSet[str]:
    """
    Lower-case and de-duplicate memberOf values.
    
    Non-membership values (count markers, empty or non-text values) are
    dropped.
    """
    memberships = set()
    for value in values or []:
        if isinstance(value, bytes):
            value = value.decode('utf-8', errors='replace')
        if not isinstance(value, str):
            continue
        key = normalize_group_key(value)
        if not key or key == 'count':
            continue
        memberships.add(key)
    return frozenset(memberships)


def _unescape_dn_value(value: str) -> str:
    def unescape(match):
        if match.group(1):
            # Runs of hex pairs are the UTF-8 bytes of one or more characters
            return bytes.fromhex(match.group(1).replace('\\', '')).decode('utf-8', errors='replace')
        return match.group(2)
    return DN_ESCAPE.sub(unescape, value)


def first_rdn_filter(dn: str) -> str:
    """
    Build a filter clause matching the first RDN of a DN.
    
    For 'cn=Smith\\, Jo,ou=People,dc=x' this returns '(cn=Smith, Jo)' with
    filter special characters escaped.
    """
    try:
        components = parse_dn(dn)
    except LDAPInvalidDnError as e:
        raise MembershipError(f"Invalid DN '{dn}': {e}")
    if not components:
        raise MembershipError(f"Invalid DN '{dn}'")
    
    clauses = []
    for attribute, value, separator in components:
        clauses.append(f"({attribute}={escape_filter_chars(_unescape_dn_value(value))})")
        # Multi-valued RDNs are joined with '+'
        if separator != '+':
            break
    return ''.join(clauses)


class MembershipResolver:
    """
    Resolves the directory groups an account belongs to.
    
    Every search goes through the shared SearchCache. Per-account entries are
    kept only for one sync operation; use new_session() for each sync.
    """
    
    def __init__(self, ldap_client, search_cache: SearchCache, search_attr: str,
                 group_keys: Iterable[str] = (), use_chain: bool = False,
                 cache_ttl: Optional[int] = None):
        """
        Initialize the resolver.
        
        Args:
            ldap_client: Object with search(filter) -> entries
            search_cache: Shared search result cache
            search_attr: Attribute that identifies an account (e.g. 'mail')
            group_keys: Directory group keys checked by chain resolution
            use_chain: Follow nested group membership
            cache_ttl: Seconds to cache search results
        """
        self.ldap_client = ldap_client
        self.search_cache = search_cache
        self.search_attr = search_attr
        self.group_keys = sorted(group_keys)
        self.use_chain = use_chain
        self.cache_ttl = cache_ttl
    
    def search(self, search_filter: str) -> List[Dict[str, Any]]:
        """Run a cached directory search."""
        return self.search_cache.get_or_compute(
            search_filter,
            lambda: self.ldap_client.search(search_filter),
            ttl=self.cache_ttl
        )
    
    def account_filter(self, identifier: str) -> str:
        return f"({self.search_attr}={escape_filter_chars(identifier.strip())})"
    
    def chain_filter(self, user_dn: str, group_key: str) -> str:
        return (f"(&(objectClass=user){first_rdn_filter(user_dn)}"
                f"(memberOf:{MATCHING_RULE_IN_CHAIN}:={escape_filter_chars(group_key)}))")
    
    def new_session(self) -> 'ResolutionSession':
        return ResolutionSession(self)
    
    def fetch_account_entry(self, identifier: Optional[str]) -> DirectoryEntry:
        """One-shot lookup of an account entry."""
        return self.new_session().fetch_account_entry(identifier)
    
    def resolve(self, identifier: Optional[str]) -> FrozenSet[str]:
        """One-shot resolution of an account's memberships."""
        return self.new_session().resolve(identifier)


class ResolutionSession:
    """Holds the account entries fetched during one sync operation."""
    
    def __init__(self, resolver: MembershipResolver):
        self.resolver = resolver
        self._entries: Dict[str, DirectoryEntry] = {}
    
    def fetch_account_entry(self, identifier: Optional[str]) -> DirectoryEntry:
        """
        Fetch the directory entry for an account.
        
        Args:
            identifier: Value of the search attribute for the account
            
        Returns:
            The account's DirectoryEntry, with chained memberships appended
            when chain resolution is enabled
            
        Raises:
            MissingIdentifierError: If identifier is empty
            NotFoundError: If no entry matches
            AmbiguousEntryError: If more than one entry matches
        """
        if not identifier or not str(identifier).strip():
            raise MissingIdentifierError(
                f"No {self.resolver.search_attr} found for account; cannot look it up in LDAP")
        
        identifier = str(identifier).strip()
        if identifier in self._entries:
            return self._entries[identifier]
        
        logger.debug(f"Fetching directory entry for {identifier}")
        search_filter = self.resolver.account_filter(identifier)
        entries = self.resolver.search(search_filter)
        
        if len(entries) == 0:
            raise NotFoundError(f"No user found with the ID: {identifier} (filter {search_filter})")
        if len(entries) > 1:
            raise AmbiguousEntryError(
                f"More than one user found with the ID: {identifier} "
                f"({len(entries)} entries for filter {search_filter})")
        
        entry = DirectoryEntry.from_search_entry(entries[0])
        if self.resolver.use_chain:
            self._add_chained_memberships(entry)
        
        self._entries[identifier] = entry
        return entry
    
    def _add_chained_memberships(self, entry: DirectoryEntry):
        """Append every mapped group the account is a nested member of."""
        found = 0
        for group_key in self.resolver.group_keys:
            matches = self.resolver.search(self.resolver.chain_filter(entry.dn, group_key))
            if len(matches) == 1:
                entry.add_member_of(group_key)
                found += 1
        logger.debug(f"Chain query found {found} of {len(self.resolver.group_keys)} "
                     f"mapped groups for {entry.dn}")
    
    def resolve(self, identifier: Optional[str]) -> FrozenSet[str]:
        """Return the normalized directory group keys for an account."""
        entry = self.fetch_account_entry(identifier)
        memberships = normalize_memberships(entry.member_of)
        logger.debug(f"memberof for {identifier}: {sorted(memberships)}")
        return memberships
