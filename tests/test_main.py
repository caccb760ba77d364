#!/usr/bin/env python3
"""
Unit tests for the command line runner.

Configuration and the local store are real files; the LDAP client and
logging setup are patched out.
"""

import io
import os
import sys
import shutil
import tempfile
import unittest
from unittest.mock import Mock, patch

import yaml

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_role_sync.ldap_client import LDAPConnectionError, DirectoryError, MalformedDNError
from ldap_role_sync.main import (
    SyncRunner,
    build_parser,
    main,
    EXIT_OK,
    EXIT_FAILURES,
    EXIT_CONFIG_ERROR,
    EXIT_CONNECTION_ERROR,
    EXIT_UNEXPECTED_ERROR,
)

PEOPLE_DN = 'ou=people,dc=example,dc=com'
GROUPS_DN = 'ou=groups,dc=example,dc=com'


class TestSyncRunner(unittest.TestCase):
    """Test cases for SyncRunner."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp(prefix='main_test_')
        self.store_path = os.path.join(self.temp_dir, 'users.yaml')
        with open(self.store_path, 'w') as f:
            yaml.safe_dump({
                'users': [
                    {'id': 1, 'name': 'admin'},
                    {'id': 2, 'name': 'alice'},
                    {'id': 3, 'name': 'bob'},
                ],
                'roles': [{'name': 'editors', 'members': ['alice']}],
            }, f)

        self.config_path = os.path.join(self.temp_dir, 'config.yaml')
        with open(self.config_path, 'w') as f:
            yaml.safe_dump({
                'ldap': {'server_url': 'ldap://ldap.example.com'},
                'role': {'base_dn': GROUPS_DN},
                'user': {'base_dn': PEOPLE_DN},
                'local_store': {'path': self.store_path},
            }, f)

        logging_patcher = patch('ldap_role_sync.main.setup_logging')
        self.mock_setup_logging = logging_patcher.start()
        self.addCleanup(logging_patcher.stop)

        client_patcher = patch('ldap_role_sync.main.LDAPClient')
        mock_client_class = client_patcher.start()
        self.addCleanup(client_patcher.stop)
        self.client = Mock()
        self.client.search.side_effect = self.search
        mock_client_class.return_value = self.client
        self.mock_client_class = mock_client_class

        self.out = io.StringIO()

    def tearDown(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def search(self, base_dn, search_filter, scope, attributes, size_limit=0):
        if base_dn == PEOPLE_DN and '(uid=alice)' in search_filter:
            return [{'dn': f'uid=alice,{PEOPLE_DN}', 'attributes': {'uid': ['alice']}}]
        return []

    def runner(self, verbose=False, config_path=None):
        return SyncRunner(config_path=config_path or self.config_path, verbose=verbose, out=self.out)

    def test_check_all(self):
        runner = self.runner()
        exit_code = runner.run(runner.check_all)

        self.assertEqual(exit_code, EXIT_OK)
        output = self.out.getvalue()
        self.assertIn('Users scanned:     2', output)
        self.assertIn('Found in LDAP:     1', output)
        self.assertIn('Missing from LDAP: 1', output)
        self.assertIn('--verbose', output)
        self.client.add.assert_not_called()
        self.client.disconnect.assert_called_once()

    def test_check_all_verbose_lists_missing(self):
        runner = self.runner(verbose=True)
        runner.run(runner.check_all)

        self.assertIn('missing: bob', self.out.getvalue())
        logging_config = self.mock_setup_logging.call_args[0][0]
        self.assertEqual(logging_config['console_level'], 'DEBUG')

    def test_export_all(self):
        runner = self.runner()
        exit_code = runner.run(runner.export_all)

        self.assertEqual(exit_code, EXIT_OK)
        self.assertEqual(self.client.add.call_args[0][0], f'uid=bob,{PEOPLE_DN}')
        self.assertIn('Provisioned:       1', self.out.getvalue())
        self.assertIn('Authmaps repaired: 1', self.out.getvalue())

    def test_ldap_config_passed_to_client(self):
        runner = self.runner()
        runner.run(runner.check_all)

        ldap_config = self.mock_client_class.call_args[0][0]
        self.assertEqual(ldap_config['server_url'], 'ldap://ldap.example.com')
        self.assertEqual(ldap_config['error_handling']['max_retries'], 3)
        self.client.connect.assert_called_once()

    def test_sync_roles(self):
        runner = self.runner()
        self.assertEqual(runner.run(runner.sync_roles), EXIT_OK)
        dn, attributes = self.client.add.call_args[0]
        self.assertEqual(dn, f'cn=editors,{GROUPS_DN}')
        self.assertEqual(attributes['member'], [f'uid=alice,{PEOPLE_DN}'])

    def test_sync_roles_failure(self):
        self.client.add.side_effect = DirectoryError(50, 'Insufficient access')
        runner = self.runner()
        self.assertEqual(runner.run(runner.sync_roles), EXIT_FAILURES)
        self.assertIn('failed: 1', self.out.getvalue())

    def test_rename_role_failure(self):
        self.client.add.side_effect = DirectoryError(50, 'Insufficient access')
        runner = self.runner()
        exit_code = runner.run(lambda: runner.rename_role('editors', 'authors'))
        self.assertEqual(exit_code, EXIT_FAILURES)

    def test_rename_role_rejected_dn(self):
        def search(base_dn, search_filter, scope, attributes, size_limit=0):
            if base_dn == GROUPS_DN:
                return [{'dn': f'cn=editors,{GROUPS_DN}', 'attributes': {'cn': ['editors'], 'member': []}}]
            return []

        self.client.search.side_effect = search
        self.client.parse_dn.side_effect = MalformedDNError('Invalid DN')
        runner = self.runner()
        exit_code = runner.run(lambda: runner.rename_role('editors', 'authors'))

        self.assertEqual(exit_code, EXIT_FAILURES)
        self.client.modify.assert_not_called()

    def test_delete_missing_role(self):
        runner = self.runner()
        exit_code = runner.run(lambda: runner.delete_role('editors'))
        self.assertEqual(exit_code, EXIT_OK)
        self.assertIn('has no LDAP group', self.out.getvalue())
        self.client.delete.assert_not_called()

    def test_missing_config(self):
        runner = self.runner(config_path=os.path.join(self.temp_dir, 'missing.yaml'))
        self.assertEqual(runner.run(runner.check_all), EXIT_CONFIG_ERROR)
        self.mock_client_class.assert_not_called()

    def test_missing_store(self):
        os.remove(self.store_path)
        runner = self.runner()
        self.assertEqual(runner.run(runner.check_all), EXIT_CONFIG_ERROR)

    def test_connection_error(self):
        self.client.connect.side_effect = LDAPConnectionError('unreachable')
        runner = self.runner()
        self.assertEqual(runner.run(runner.check_all), EXIT_CONNECTION_ERROR)
        self.assertIn('LDAP connection error', self.out.getvalue())
        self.client.disconnect.assert_not_called()

    def test_unexpected_error(self):
        self.client.search.side_effect = RuntimeError('boom')
        runner = self.runner()
        self.assertEqual(runner.run(runner.check_all), EXIT_UNEXPECTED_ERROR)
        self.client.disconnect.assert_called_once()


class TestCommandLine(unittest.TestCase):
    """Test cases for argument parsing and main()."""

    def test_parser(self):
        args = build_parser().parse_args(['-c', 'config.yaml', '-v', 'rename-role', 'editors', 'authors'])
        self.assertEqual(args.config, 'config.yaml')
        self.assertTrue(args.verbose)
        self.assertEqual(args.command, 'rename-role')
        self.assertEqual((args.old_name, args.new_name), ('editors', 'authors'))

    def test_command_required(self):
        with self.assertRaises(SystemExit):
            build_parser().parse_args([])

    @patch('ldap_role_sync.main.SyncRunner')
    def test_main_exits_with_run_result(self, mock_runner_class):
        mock_runner = mock_runner_class.return_value
        mock_runner.run.return_value = EXIT_FAILURES

        with self.assertRaises(SystemExit) as context:
            main(['delete-role', 'editors'])

        self.assertEqual(context.exception.code, EXIT_FAILURES)
        mock_runner_class.assert_called_once_with(config_path=None, verbose=False)
        command = mock_runner.run.call_args[0][0]
        command()
        mock_runner.delete_role.assert_called_once_with('editors')


if __name__ == '__main__':
    unittest.main()
