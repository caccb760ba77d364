#!/usr/bin/env python3
"""
Unit tests for the YAML user store.
"""

import os
import sys
import shutil
import tempfile
import unittest
from unittest.mock import patch

import yaml

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_role_sync.local_store import YamlUserStore, LocalStoreError


class TestYamlUserStore(unittest.TestCase):
    """Test cases for YamlUserStore."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp(prefix='local_store_test_')
        self.path = os.path.join(self.temp_dir, 'users.yaml')

    def tearDown(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def write_store(self, data):
        with open(self.path, 'w') as f:
            if isinstance(data, str):
                f.write(data)
            else:
                yaml.safe_dump(data, f)

    def test_load(self):
        """Users are ordered by id and the reserved accounts are skipped."""
        self.write_store({
            'users': [
                {'id': 3, 'name': 'bob'},
                {'id': 0, 'name': 'anonymous'},
                {'id': 2, 'name': 'alice'},
                {'id': 1, 'name': 'admin'},
            ],
            'roles': [{'name': 'editors', 'members': ['alice']}, {'name': 'empty'}],
            'authmap': {'2': 'uid=alice,ou=people,dc=example,dc=com'},
        })
        store = YamlUserStore(self.path)

        self.assertEqual([u['name'] for u in store.iter_users()], ['alice', 'bob'])
        self.assertEqual(store.count_users(), 2)
        self.assertEqual(store.count_users(min_id=0), 4)
        self.assertEqual(store.get_user('bob')['id'], 3)
        self.assertIsNone(store.get_user('nobody'))
        self.assertEqual(list(store.iter_roles()), [
            {'name': 'editors', 'members': ['alice']},
            {'name': 'empty', 'members': []},
        ])
        self.assertEqual(store.get_authname(2), 'uid=alice,ou=people,dc=example,dc=com')
        self.assertIsNone(store.get_authname(3))

    def test_empty_file(self):
        self.write_store('')
        store = YamlUserStore(self.path)
        self.assertEqual(store.count_users(), 0)
        self.assertEqual(list(store.iter_roles()), [])

    def test_missing_file(self):
        with self.assertRaises(LocalStoreError):
            YamlUserStore(os.path.join(self.temp_dir, 'missing.yaml'))

    def test_invalid_yaml(self):
        self.write_store('users: [unclosed\n')
        with self.assertRaises(LocalStoreError):
            YamlUserStore(self.path)

    def test_user_without_name(self):
        self.write_store({'users': [{'id': 2}]})
        with self.assertRaises(LocalStoreError):
            YamlUserStore(self.path)

    def test_role_without_name(self):
        self.write_store({'roles': [{'members': ['alice']}]})
        with self.assertRaises(LocalStoreError):
            YamlUserStore(self.path)

    def test_set_authname_persists(self):
        """Authmap changes are written back to the file and audited."""
        self.write_store({'users': [{'id': 2, 'name': 'alice', 'mail': 'alice@example.com'}]})
        store = YamlUserStore(self.path)

        with patch('ldap_role_sync.local_store.audit_logger') as mock_audit:
            store.set_authname(2, 'uid=alice,ou=people,dc=example,dc=com')
        mock_audit.log_authmap_change.assert_called_once_with(2, 'uid=alice,ou=people,dc=example,dc=com')

        reloaded = YamlUserStore(self.path)
        self.assertEqual(reloaded.get_authname(2), 'uid=alice,ou=people,dc=example,dc=com')
        self.assertEqual(reloaded.get_user('alice')['mail'], 'alice@example.com')
        self.assertFalse(os.path.exists(self.path + '.tmp'))

    def test_save_failure(self):
        self.write_store({'users': [{'id': 2, 'name': 'alice'}]})
        store = YamlUserStore(self.path)
        store.path = os.path.join(self.temp_dir, 'no-such-dir', 'users.yaml')
        with self.assertRaises(LocalStoreError):
            store.save()

    def test_set_authnames_single_write(self):
        """Several authmap entries are persisted together."""
        self.write_store({'users': [{'id': 2, 'name': 'alice'}, {'id': 3, 'name': 'bob'}]})
        store = YamlUserStore(self.path)

        with patch.object(store, '_write', wraps=store._write) as spy:
            store.set_authnames({2: 'uid=alice', 3: 'uid=bob'})
        spy.assert_called_once()

        reloaded = YamlUserStore(self.path)
        self.assertEqual(reloaded.get_authname(2), 'uid=alice')
        self.assertEqual(reloaded.get_authname(3), 'uid=bob')

    def test_failed_authmap_write_leaves_map_unchanged(self):
        """The in-memory authmap only changes once the file is written."""
        self.write_store({'users': [{'id': 2, 'name': 'alice'}], 'authmap': {2: 'uid=alice'}})
        store = YamlUserStore(self.path)
        store.path = os.path.join(self.temp_dir, 'no-such-dir', 'users.yaml')

        with patch('ldap_role_sync.local_store.audit_logger') as mock_audit:
            with self.assertRaises(LocalStoreError):
                store.set_authnames({2: 'uid=changed', 3: 'uid=bob'})
        self.assertEqual(store.authmap, {2: 'uid=alice'})
        mock_audit.log_authmap_change.assert_not_called()


if __name__ == '__main__':
    unittest.main()
