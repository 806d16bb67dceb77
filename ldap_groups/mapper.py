"""
Mapping between directory groups and local groups.

The mapping table is loaded once and is read-only afterwards, so a single
GroupMapper can be shared by concurrent syncs.
"""

import logging
from typing import Dict, FrozenSet, Iterable, NamedTuple, Set

logger = logging.getLogger(__name__)


def normalize_group_key(dn: str) -> str:
    """Directory group keys compare case-insensitively."""
    return dn.strip().lower()


class SyncDelta(NamedTuple):
    """Local groups to add to and remove from one account."""
    to_add: FrozenSet[str]
    to_remove: FrozenSet[str]
    
    def is_empty(self) -> bool:
        return not self.to_add and not self.to_remove
    
    def apply_to(self, current_groups: Iterable[str]) -> Set[str]:
        """Return the group set that results from applying this delta."""
        return (set(current_groups) | self.to_add) - self.to_remove


class GroupMapper:
    """
    Computes local group changes from resolved directory memberships.
    
    Holds the forward map (local group -> directory keys) and the inverse
    index (directory key -> local group). A local group may be reachable from
    several directory groups; it is kept while any of them is satisfied.
    """
    
    def __init__(self, group_map: Dict[str, Iterable[str]]):
        """
        Build the forward and inverse maps.
        
        Args:
            group_map: Local group name -> list of directory group DNs
        """
        self.mw_group_map: Dict[str, Set[str]] = {}
        self.ldap_group_map: Dict[str, str] = {}
        
        for name, dns in group_map.items():
            self.mw_group_map.setdefault(name, set())
            for dn in dns:
                key = normalize_group_key(dn)
                previous = self.ldap_group_map.get(key)
                if previous is not None and previous != name:
                    # Last write wins; keep both maps consistent
                    logger.warning(f"Directory group '{key}' mapped to both '{previous}' "
                                   f"and '{name}', using '{name}'")
                    self.mw_group_map[previous].discard(key)
                self.mw_group_map[name].add(key)
                self.ldap_group_map[key] = name
        
        logger.debug(f"Group map loaded: {len(self.mw_group_map)} local groups, "
                     f"{len(self.ldap_group_map)} directory groups")
    
    @property
    def controlled_groups(self) -> FrozenSet[str]:
        """Local groups managed from the directory."""
        return frozenset(self.mw_group_map)
    
    @property
    def directory_keys(self) -> FrozenSet[str]:
        return frozenset(self.ldap_group_map)
    
    def is_controlled(self, group: str) -> bool:
        return group in self.mw_group_map
    
    def groups_for(self, memberships: Iterable[str]) -> Set[str]:
        """Return the local groups justified by a set of directory memberships."""
        return {
            self.ldap_group_map[key]
            for key in memberships
            if key in self.ldap_group_map
        }
    
    def compute_delta(self, current_groups: Iterable[str], memberships: Iterable[str]) -> SyncDelta:
        """
        Compute which local groups to add and remove.
        
        Args:
            current_groups: Local groups the account holds now
            memberships: Normalized directory group keys of the account
            
        Returns:
            SyncDelta with disjoint add and remove sets. Local groups that are
            not in the mapping table never appear in either set.
        """
        current = set(current_groups)
        resolved = set(memberships)
        
        to_add = self.groups_for(resolved) - current
        
        to_remove = set()
        for group in current:
            keys = self.mw_group_map.get(group)
            if keys is None:
                continue
            if keys.isdisjoint(resolved):
                logger.debug(f"Removing '{group}': no matching directory group")
                to_remove.add(group)
        
        return SyncDelta(frozenset(to_add), frozenset(to_remove))
