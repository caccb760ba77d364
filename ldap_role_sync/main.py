"""
Command line entry point for LDAP Role Sync.

Wires configuration, logging, the LDAP connection and the local store
together and runs one of the reconciliation or role commands.
"""

import sys
import logging
import argparse
from datetime import datetime
from typing import Callable, Dict, Optional

from ldap_role_sync.config import load_config, ConfigurationError
from ldap_role_sync.ldap_client import LDAPClient, LDAPConnectionError, DirectoryError, MalformedDNError
from ldap_role_sync.local_store import YamlUserStore, LocalStoreError
from ldap_role_sync.logging_setup import setup_logging
from ldap_role_sync.registry import RoleRegistry, UserRegistry
from ldap_role_sync.role_sync import RoleSynchronizer
from ldap_role_sync.scanner import ReconciliationScanner

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_CONFIG_ERROR = 2
EXIT_CONNECTION_ERROR = 3
EXIT_UNEXPECTED_ERROR = 4


class SyncRunner:
    """
    Runs one command against the directory.

    Owns the LDAP client, the local store and the entry registries for the
    duration of the run.
    """

    def __init__(self, config_path: Optional[str] = None, verbose: bool = False, out=None):
        """
        Args:
            config_path: Path to configuration file
            verbose: Show per-user details on the console
            out: Stream receiving the human-readable report (stdout if None)
        """
        self.config_path = config_path
        self.verbose = verbose
        self.out = out or sys.stdout
        self.config = None
        self.ldap_client = None
        self.store = None
        self.users = None
        self.roles = None

    def echo(self, message: str = ''):
        print(message, file=self.out)

    def run(self, command: Callable[[], int]) -> int:
        """
        Set everything up, run ``command`` and map failures to exit codes.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        start_time = datetime.now()
        try:
            self._load_configuration()
            self._setup_logging()
            self._load_store()
            self._connect_ldap()

            self.users = UserRegistry(self.ldap_client, self.config['user'])
            self.roles = RoleRegistry(self.ldap_client, self.config['role'], self.users)

            exit_code = command()
            runtime = (datetime.now() - start_time).total_seconds()
            logger.info(f"Completed in {runtime:.2f} seconds")
            return exit_code

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            self.echo(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR
        except LocalStoreError as e:
            logger.error(f"Local store error: {e}")
            self.echo(f"Local store error: {e}")
            return EXIT_CONFIG_ERROR
        except LDAPConnectionError as e:
            logger.error(f"LDAP connection error: {e}")
            self.echo(f"LDAP connection error: {e}")
            return EXIT_CONNECTION_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self.echo(f"Unexpected error: {e}")
            return EXIT_UNEXPECTED_ERROR
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load and validate configuration."""
        self.config = load_config(self.config_path)
        logger.debug("Configuration loaded successfully")

    def _setup_logging(self):
        logging_config = dict(self.config.get('logging', {}))
        if self.verbose:
            logging_config['console_level'] = 'DEBUG'
        setup_logging(logging_config)

    def _load_store(self):
        self.store = YamlUserStore(self.config['local_store']['path'])

    def _connect_ldap(self):
        """Establish LDAP connection."""
        ldap_config = dict(self.config['ldap'])
        ldap_config['error_handling'] = self.config.get('error_handling', {})
        self.ldap_client = LDAPClient(ldap_config)
        try:
            self.ldap_client.connect()
        except LDAPConnectionError:
            self.ldap_client = None
            raise

    def _cleanup(self):
        """Clean up resources."""
        if self.ldap_client:
            self.ldap_client.disconnect()

    # Commands

    def _scanner(self) -> ReconciliationScanner:
        return ReconciliationScanner(
            self.store,
            self.users,
            progress_interval=self.config['scan']['progress_interval'],
            progress_callback=self.echo,
            record_missing=self.verbose,
        )

    def _print_scan_summary(self, summary, mode: str):
        self.echo(f"=== {mode} summary ===")
        self.echo(f"Users scanned:     {summary.scanned}")
        self.echo(f"Found in LDAP:     {summary.found}")
        self.echo(f"Missing from LDAP: {summary.missing}")
        if mode == 'export':
            self.echo(f"Provisioned:       {summary.provisioned}")
            self.echo(f"Authmaps repaired: {summary.repaired}")
        if summary.errors:
            self.echo(f"Errors:            {summary.errors}")
        if summary.missing and mode == 'check':
            if self.verbose:
                for name in summary.missing_names:
                    self.echo(f"  missing: {name}")
            else:
                self.echo("Run with --verbose to see the full list of missing users.")

    def check_all(self) -> int:
        """Check that every local user is represented in the directory."""
        summary = self._scanner().check()
        self._print_scan_summary(summary, 'check')
        return EXIT_OK

    def export_all(self) -> int:
        """Provision every local user missing from the directory."""
        summary = self._scanner().export()
        self._print_scan_summary(summary, 'export')
        return EXIT_OK

    def sync_roles(self) -> int:
        stats = RoleSynchronizer(self.store, self.roles).sync_all()
        self.echo(f"Roles saved: {stats['saved']}, deferred: {stats['deferred']}, failed: {stats['failed']}")
        return EXIT_FAILURES if stats['failed'] else EXIT_OK

    def rename_role(self, old_name: str, new_name: str) -> int:
        try:
            result = RoleSynchronizer(self.store, self.roles).rename_role(old_name, new_name)
        except (DirectoryError, MalformedDNError) as e:
            logger.error(f"Failed to rename role {old_name!r}: {e}")
            self.echo(f"Failed to rename role {old_name!r}: {e}")
            return EXIT_FAILURES
        self.echo(f"Role {old_name!r} renamed to {new_name!r}: {result.status}")
        return EXIT_OK

    def delete_role(self, name: str) -> int:
        try:
            deleted = RoleSynchronizer(self.store, self.roles).delete_role(name)
        except DirectoryError as e:
            logger.error(f"Failed to delete role {name!r}: {e}")
            self.echo(f"Failed to delete role {name!r}: {e}")
            return EXIT_FAILURES
        self.echo(f"Role {name!r} deleted" if deleted else f"Role {name!r} has no LDAP group")
        return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='ldap-role-sync',
                                     description='Synchronize application users and roles with LDAP')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Show per-user details and the full list of missing users')

    subparsers = parser.add_subparsers(dest='command', required=True)
    subparsers.add_parser('check-all', help='Check that all users are represented in LDAP')
    subparsers.add_parser('export-all', help='Export all users missing from LDAP')
    subparsers.add_parser('sync-roles', help='Push all local roles and their members to LDAP')

    rename = subparsers.add_parser('rename-role', help='Rename the LDAP group of a role')
    rename.add_argument('old_name')
    rename.add_argument('new_name')

    delete = subparsers.add_parser('delete-role', help='Delete the LDAP group of a role')
    delete.add_argument('name')
    return parser


def main(argv=None):
    """Main entry point for the application."""
    args = build_parser().parse_args(argv)
    runner = SyncRunner(config_path=args.config, verbose=args.verbose)

    commands: Dict[str, Callable[[], int]] = {
        'check-all': runner.check_all,
        'export-all': runner.export_all,
        'sync-roles': runner.sync_roles,
        'rename-role': lambda: runner.rename_role(args.old_name, args.new_name),
        'delete-role': lambda: runner.delete_role(args.name),
    }
    sys.exit(runner.run(commands[args.command]))


if __name__ == "__main__":
    main()
