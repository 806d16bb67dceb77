#!/usr/bin/env python3
"""
Unit tests for GroupMapper delta computation.

Besides example cases, the reconciliation properties are checked against
every combination of a small set of groups and memberships.
"""

import os
import sys
import itertools
import unittest

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_groups.mapper import GroupMapper, SyncDelta, normalize_group_key


GROUP_MAP = {
    'staff': ['CN=Staff,DC=x'],
    'admins': ['CN=Admins,DC=x', 'CN=Domain Admins,DC=x'],
    'devs': ['cn=devs,ou=eng,dc=x'],
}

LOCAL_GROUPS = ['staff', 'admins', 'devs', 'bureaucrat', 'editor']
DIRECTORY_KEYS = ['cn=staff,dc=x', 'cn=admins,dc=x', 'cn=domain admins,dc=x',
                  'cn=devs,ou=eng,dc=x', 'cn=unmapped,dc=x']


def subsets(items):
    for size in range(len(items) + 1):
        for combo in itertools.combinations(items, size):
            yield set(combo)


class TestGroupMapperConstruction(unittest.TestCase):

    def test_maps_are_lower_cased(self):
        mapper = GroupMapper(GROUP_MAP)
        self.assertEqual(mapper.mw_group_map['admins'], {'cn=admins,dc=x', 'cn=domain admins,dc=x'})
        self.assertEqual(mapper.ldap_group_map['cn=staff,dc=x'], 'staff')
        self.assertEqual(mapper.controlled_groups, {'staff', 'admins', 'devs'})
        self.assertEqual(len(mapper.directory_keys), 4)

    def test_inverse_index_consistent(self):
        mapper = GroupMapper(GROUP_MAP)
        for key, group in mapper.ldap_group_map.items():
            self.assertIn(key, mapper.mw_group_map[group])
        for group, keys in mapper.mw_group_map.items():
            for key in keys:
                self.assertEqual(mapper.ldap_group_map[key], group)

    def test_duplicate_key_last_write_wins(self):
        mapper = GroupMapper({
            'first': ['CN=Shared,DC=x', 'CN=Own,DC=x'],
            'second': ['cn=shared,dc=x'],
        })
        self.assertEqual(mapper.ldap_group_map['cn=shared,dc=x'], 'second')
        self.assertEqual(mapper.mw_group_map['first'], {'cn=own,dc=x'})

    def test_normalize_group_key(self):
        self.assertEqual(normalize_group_key('  CN=Admins,DC=X '), 'cn=admins,dc=x')

    def test_groups_for(self):
        mapper = GroupMapper(GROUP_MAP)
        self.assertEqual(mapper.groups_for({'cn=domain admins,dc=x', 'cn=unmapped,dc=x'}), {'admins'})


class TestComputeDelta(unittest.TestCase):

    def setUp(self):
        self.mapper = GroupMapper(GROUP_MAP)

    def test_add_and_remove(self):
        mapper = GroupMapper({'staff': ['cn=staff,dc=x'], 'admins': ['cn=admins,dc=x']})
        delta = mapper.compute_delta({'staff'}, {normalize_group_key('CN=Admins,DC=X')})
        self.assertEqual(delta, SyncDelta(frozenset({'admins'}), frozenset({'staff'})))

    def test_case_insensitive_keys(self):
        upper = GroupMapper({'admins': ['CN=Admins,DC=x']})
        lower = GroupMapper({'admins': ['cn=admins,dc=x']})
        self.assertEqual(upper.mw_group_map, lower.mw_group_map)
        self.assertEqual(upper.compute_delta(set(), {'cn=admins,dc=x'}).to_add, {'admins'})

    def test_or_semantics(self):
        # Only the second key of 'admins' is satisfied
        memberships = {'cn=domain admins,dc=x'}
        held = self.mapper.compute_delta({'admins'}, memberships)
        self.assertNotIn('admins', held.to_remove)
        not_held = self.mapper.compute_delta(set(), memberships)
        self.assertIn('admins', not_held.to_add)

    def test_unmapped_groups_untouched(self):
        delta = self.mapper.compute_delta({'bureaucrat', 'editor'}, set())
        self.assertTrue(delta.is_empty())

    def test_unmapped_membership_ignored(self):
        delta = self.mapper.compute_delta(set(), {'cn=unmapped,dc=x'})
        self.assertTrue(delta.is_empty())

    def test_no_memberships_removes_controlled_groups(self):
        delta = self.mapper.compute_delta({'staff', 'admins', 'editor'}, set())
        self.assertEqual(delta.to_add, frozenset())
        self.assertEqual(delta.to_remove, {'staff', 'admins'})

    def test_group_without_keys_is_removed(self):
        mapper = GroupMapper({'orphan': [], 'staff': ['cn=staff,dc=x']})
        self.assertTrue(mapper.is_controlled('orphan'))
        delta = mapper.compute_delta({'orphan'}, {'cn=staff,dc=x'})
        self.assertEqual(delta.to_remove, {'orphan'})

    def test_apply_to(self):
        delta = SyncDelta(frozenset({'admins'}), frozenset({'staff'}))
        self.assertEqual(delta.apply_to({'staff', 'editor'}), {'admins', 'editor'})

    def test_reconciliation_properties(self):
        """Disjointness, exact post-state, idempotence and convergence."""
        for current in subsets(LOCAL_GROUPS):
            for memberships in subsets(DIRECTORY_KEYS):
                delta = self.mapper.compute_delta(current, memberships)

                self.assertTrue(delta.to_add.isdisjoint(delta.to_remove))

                satisfied = {
                    group for group, keys in self.mapper.mw_group_map.items()
                    if keys & memberships
                }
                unmanaged = {group for group in current if not self.mapper.is_controlled(group)}
                result = delta.apply_to(current)
                self.assertEqual(result, satisfied | unmanaged)

                self.assertEqual(self.mapper.compute_delta(current, memberships), delta)
                self.assertTrue(self.mapper.compute_delta(result, memberships).is_empty())


if __name__ == '__main__':
    unittest.main()
