"""
Permission restrictions for directory-controlled groups.

Applied once when the group map is loaded. Groups whose membership comes from
the directory must not be granted or revoked by hand, since the next sync
would undo the change, and they must not be usable to hand out rights outside
the sync.
"""

import copy
import logging
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

USERRIGHTS = 'userrights'


class PermissionConfig:
    """
    Local permission tables.
    
    Attributes:
        group_permissions: group -> {right: bool}
        add_groups: group -> groups its members may add users to
        remove_groups: group -> groups its members may remove users from
    """
    
    def __init__(self, group_permissions: Optional[Dict[str, Dict[str, bool]]] = None,
                 add_groups: Optional[Dict[str, List[str]]] = None,
                 remove_groups: Optional[Dict[str, List[str]]] = None):
        self.group_permissions = group_permissions or {}
        self.add_groups = add_groups or {}
        self.remove_groups = remove_groups or {}
    
    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> 'PermissionConfig':
        return cls(
            group_permissions=copy.deepcopy(config.get('group_permissions') or {}),
            add_groups=copy.deepcopy(config.get('add_groups') or {}),
            remove_groups=copy.deepcopy(config.get('remove_groups') or {}),
        )
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            'group_permissions': copy.deepcopy(self.group_permissions),
            'add_groups': copy.deepcopy(self.add_groups),
            'remove_groups': copy.deepcopy(self.remove_groups),
        }
    
    def copy(self) -> 'PermissionConfig':
        return PermissionConfig.from_dict(self.to_dict())
    
    def has_userrights(self, group: str) -> bool:
        return bool(self.group_permissions.get(group, {}).get(USERRIGHTS))
    
    def __eq__(self, other):
        if not isinstance(other, PermissionConfig):
            return NotImplemented
        return self.to_dict() == other.to_dict()


def apply_group_restrictions(permissions: PermissionConfig, controlled_groups: Iterable[str],
                             baseline_group: str = 'user', scope: str = 'controlled') -> PermissionConfig:
    """
    Restrict what can be done with directory-controlled groups.
    
    Controlled groups without a permission template get a copy of the
    baseline group's template. Then each group holding the userrights right
    (only controlled groups when scope is 'controlled', every group when it is
    'all') loses that right, and unless already configured its add/remove
    lists are set to the groups that are not directory-controlled.
    
    Args:
        permissions: Current permission tables (left unchanged)
        controlled_groups: Local groups managed from the directory
        baseline_group: Group whose template new groups inherit
        scope: 'controlled' or 'all'
        
    Returns:
        A new PermissionConfig with the restrictions applied
    """
    if scope not in ('controlled', 'all'):
        raise ValueError(f"Unknown restriction scope: {scope}")
    
    result = permissions.copy()
    controlled = set(controlled_groups)
    baseline = result.group_permissions.get(baseline_group, {})
    
    for group in sorted(controlled):
        if group not in result.group_permissions:
            result.group_permissions[group] = copy.deepcopy(baseline)
            logger.debug(f"Group '{group}' inherits permissions from '{baseline_group}'")
    
    non_directory_groups = [group for group in result.group_permissions if group not in controlled]
    
    for group in list(result.group_permissions):
        if not result.has_userrights(group):
            continue
        if scope == 'controlled' and group not in controlled:
            continue
        result.group_permissions[group][USERRIGHTS] = False
        result.add_groups.setdefault(group, list(non_directory_groups))
        result.remove_groups.setdefault(group, list(non_directory_groups))
        logger.info(f"Restricted '{USERRIGHTS}' for group '{group}'")
    
    return result
