"""
Reconciliation of the local user population against the directory.

The scanner walks every local user, looks up the matching LDAP entry and
hands each user to a "found" or "missing" callback. Two modes are built on
top of it: check (report only) and export (repair the authmap of found users
and provision missing ones).
"""

import logging
import resource
from typing import Any, Callable, Dict, List, Optional

from ldap_role_sync.ldap_client import DirectoryError
from ldap_role_sync.local_store import LocalStoreError, YamlUserStore
from ldap_role_sync.registry import UserRegistry

logger = logging.getLogger(__name__)

DEFAULT_PROGRESS_INTERVAL = 1024

FoundCallback = Callable[[Optional[str], Dict[str, Any], Any], None]
MissingCallback = Callable[[Optional[str], Dict[str, Any]], None]


def memory_usage_mb() -> float:
    """Peak resident memory of this process, in megabytes."""
    return resource.getrusage(resource.RUSAGE_SELF).ru_maxrss / 1024.0


class ScanSummary:
    """Counters accumulated during one scan."""

    def __init__(self):
        self.scanned = 0
        self.found = 0
        self.missing = 0
        self.errors = 0
        self.provisioned = 0
        self.repaired = 0
        self.missing_names: List[str] = []

    def as_dict(self) -> Dict[str, Any]:
        return {
            'scanned': self.scanned,
            'found': self.found,
            'missing': self.missing,
            'errors': self.errors,
            'provisioned': self.provisioned,
            'repaired': self.repaired,
        }

    def __repr__(self):
        return f"ScanSummary({self.as_dict()})"


class ReconciliationScanner:
    """
    Compares local users with their directory entries.

    Processing is strictly sequential; each user's directory entry is evicted
    from the registry once handled so memory stays flat on large populations.
    """

    def __init__(self, store: YamlUserStore, users: UserRegistry,
                 progress_interval: int = DEFAULT_PROGRESS_INTERVAL,
                 progress_callback: Optional[Callable[[str], None]] = None,
                 record_missing: bool = False):
        """
        Args:
            store: Local user store
            users: Registry used to look up directory users
            progress_interval: Report progress every this many users
            progress_callback: Receives progress lines (logged at INFO if None)
            record_missing: Keep the names of missing users in the summary

        Raises:
            ValueError: If progress_interval is less than 1
        """
        if progress_interval < 1:
            raise ValueError(f"progress_interval must be at least 1, got {progress_interval}")
        self.store = store
        self.users = users
        self.progress_interval = progress_interval
        self.progress_callback = progress_callback
        self.record_missing = record_missing
        self.summary = None
        self._pending_authmap: Dict[int, str] = {}

    def _report_progress(self, message: str):
        if self.progress_callback:
            self.progress_callback(message)
        else:
            logger.info(message)

    def scan(self, found_callback: Optional[FoundCallback] = None,
             missing_callback: Optional[MissingCallback] = None) -> ScanSummary:
        """
        Scan every synchronized local user.

        Args:
            found_callback: Called as (authname, user, ldap_user) for users with an entry
            missing_callback: Called as (authname, user) for users without one

        Returns:
            ScanSummary with the totals
        """
        summary = ScanSummary()
        self.summary = summary
        total = self.store.count_users()
        logger.info(f"Scanning {total} users")

        for user in self.store.iter_users():
            summary.scanned += 1
            name = user['name']
            try:
                authname = self.store.get_authname(user['id'])
                ldap_user = self.users.get(name)

                if ldap_user.exists():
                    logger.debug(f"Found {name} (uid {user['id']}) at {ldap_user.get_dn()}")
                    summary.found += 1
                    if found_callback:
                        found_callback(authname, user, ldap_user)
                else:
                    logger.info(f"Missing from LDAP: {name} (uid {user['id']})")
                    summary.missing += 1
                    if self.record_missing:
                        summary.missing_names.append(name)
                    if missing_callback:
                        missing_callback(authname, user)
            except (DirectoryError, LocalStoreError) as e:
                summary.errors += 1
                logger.error(f"Failed to process user {name} (uid {user['id']}): {e}")
            finally:
                self.users.reset(name)

            if summary.scanned % self.progress_interval == 0:
                fraction = summary.scanned / total if total else 1.0
                self._report_progress(f"Processed {summary.scanned}/{total} users ({fraction:.1%}), "
                                      f"memory {memory_usage_mb():.1f} MB")

        self._log_summary(summary)
        return summary

    def _log_summary(self, summary: ScanSummary):
        logger.info("=== Scan Summary ===")
        logger.info(f"Users scanned: {summary.scanned}")
        logger.info(f"Found in LDAP: {summary.found}")
        logger.info(f"Missing from LDAP: {summary.missing}")
        if summary.errors:
            logger.warning(f"Users that failed to process: {summary.errors}")
        if summary.missing:
            logger.warning(f"{summary.missing} users are missing from LDAP; "
                           f"run with --verbose to see the full list")

    def check(self) -> ScanSummary:
        """Report which users are missing from the directory without changing anything."""
        return self.scan()

    def export(self) -> ScanSummary:
        """
        Repair the authmap of found users and provision missing users.

        Authmap repairs are written to the local store in batches of
        progress_interval entries, plus once at the end.
        """
        self._pending_authmap = {}
        summary = self.scan(self._repair_authmap, self._provision)
        self._flush_authmap()
        return summary

    def _repair_authmap(self, authname: Optional[str], user: Dict[str, Any], ldap_user):
        if authname:
            return
        derived = ldap_user.authname()
        self._pending_authmap[user['id']] = derived
        self.summary.repaired += 1
        logger.info(f"Repaired authmap for {user['name']}: {derived}")
        if len(self._pending_authmap) >= self.progress_interval:
            self._flush_authmap()

    def _flush_authmap(self):
        if not self._pending_authmap:
            return
        pending, self._pending_authmap = self._pending_authmap, {}
        try:
            self.store.set_authnames(pending)
        except LocalStoreError as e:
            self.summary.repaired -= len(pending)
            self.summary.errors += len(pending)
            logger.error(f"Failed to save {len(pending)} authmap entries: {e}")

    def _provision(self, authname: Optional[str], user: Dict[str, Any]):
        ldap_user = self.users.get(user['name'])
        ldap_user.apply_local_user(user)
        result = ldap_user.save()
        if result:
            self.summary.provisioned += 1
            logger.info(f"Exported {user['name']} to {ldap_user.get_dn()}")
        else:
            logger.warning(f"Could not create LDAP entry for {user['name']} yet: {result.error}")
