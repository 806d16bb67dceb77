#!/usr/bin/env python3
"""
End-to-end tests for per-account group sync.

The directory is faked at the LDAP client level; the mapper, resolver,
search cache and sync run for real against a mock account store.
"""

import os
import sys
import unittest
from unittest.mock import Mock

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_groups.cache import MemoryCache, SearchCache
from ldap_groups.ldap_client import LDAPSearchError
from ldap_groups.mapper import GroupMapper, SyncDelta
from ldap_groups.resolver import MembershipResolver, MissingIdentifierError, AmbiguousEntryError, NotFoundError
from ldap_groups.stores.base import AccountStoreBase
from ldap_groups.sync import GroupSync


def make_store(identifier='jo@example.com', groups=None):
    store = Mock(spec=AccountStoreBase)
    store.get_identifier.return_value = identifier
    store.get_groups.return_value = set(groups or [])
    return store


def make_entry(member_of, dn='CN=Jo,OU=People,DC=x'):
    return {'dn': dn, 'attributes': {'memberof': list(member_of)}}


class TestGroupSync(unittest.TestCase):

    def setUp(self):
        self.ldap_client = Mock()
        self.ldap_client.search.return_value = [make_entry(['CN=Admins,DC=X'])]
        self.mapper = GroupMapper({
            'staff': ['cn=staff,dc=x'],
            'admins': ['cn=admins,dc=x'],
        })
        self.resolver = MembershipResolver(
            self.ldap_client, SearchCache(MemoryCache()), 'mail',
            group_keys=self.mapper.directory_keys)

    def make_sync(self, store):
        return GroupSync(self.mapper, self.resolver, store)

    def test_staff_to_admins(self):
        store = make_store(groups=['staff'])
        delta = self.make_sync(store).sync_account('jo')

        self.assertEqual(delta, SyncDelta(frozenset({'admins'}), frozenset({'staff'})))
        self.ldap_client.search.assert_called_once_with('(mail=jo@example.com)')
        store.remove_group.assert_called_once_with('jo', 'staff')
        store.add_group.assert_called_once_with('jo', 'admins')

    def test_already_in_sync(self):
        store = make_store(groups=['admins', 'editor'])
        delta = self.make_sync(store).sync_account('jo')
        self.assertTrue(delta.is_empty())
        store.add_group.assert_not_called()
        store.remove_group.assert_not_called()

    def test_dry_run_does_not_mutate(self):
        store = make_store(groups=['staff'])
        delta = self.make_sync(store).sync_account('jo', dry_run=True)
        self.assertEqual(delta.to_add, {'admins'})
        store.add_group.assert_not_called()
        store.remove_group.assert_not_called()

    def test_missing_identifier(self):
        store = make_store(identifier=None, groups=['staff'])
        with self.assertRaises(MissingIdentifierError):
            self.make_sync(store).sync_account('jo')
        self.ldap_client.search.assert_not_called()
        store.add_group.assert_not_called()
        store.remove_group.assert_not_called()

    def test_ambiguous_entry(self):
        self.ldap_client.search.return_value = [
            make_entry(['CN=Admins,DC=X'], dn='CN=Jo,OU=A,DC=x'),
            make_entry([], dn='CN=Jo,OU=B,DC=x'),
        ]
        store = make_store(groups=['staff'])
        with self.assertRaises(AmbiguousEntryError):
            self.make_sync(store).sync_account('jo')
        store.add_group.assert_not_called()
        store.remove_group.assert_not_called()

    def test_not_found(self):
        self.ldap_client.search.return_value = []
        store = make_store(groups=['staff'])
        with self.assertRaises(NotFoundError):
            self.make_sync(store).sync_account('jo')
        store.remove_group.assert_not_called()

    def test_search_error_mid_resolution(self):
        self.resolver.use_chain = True
        self.ldap_client.search.side_effect = [
            [make_entry([])],
            LDAPSearchError("Error in LDAP search for '(&(objectClass=user)...)': busy"),
        ]
        store = make_store(groups=['staff'])
        with self.assertRaises(LDAPSearchError):
            self.make_sync(store).sync_account('jo')
        store.add_group.assert_not_called()
        store.remove_group.assert_not_called()

    def test_nested_membership_via_chain(self):
        self.resolver.use_chain = True

        def search(search_filter):
            if search_filter == '(mail=jo@example.com)':
                return [make_entry([])]
            if 'cn=staff,dc=x' in search_filter:
                return [make_entry([])]
            return []

        self.ldap_client.search.side_effect = search
        store = make_store(groups=['admins'])
        delta = self.make_sync(store).sync_account('jo')
        self.assertEqual(delta, SyncDelta(frozenset({'staff'}), frozenset({'admins'})))

    def test_resync_uses_search_cache(self):
        store = make_store(groups=['staff'])
        group_sync = self.make_sync(store)
        group_sync.sync_account('jo')
        group_sync.sync_account('jo')
        self.assertEqual(self.ldap_client.search.call_count, 1)


if __name__ == '__main__':
    unittest.main()
