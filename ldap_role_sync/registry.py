"""
Caches of loaded directory entries.

Each registry loads an entry at most once per name until it is reset. A
registry belongs to whoever created it (the scanner, the role synchronizer,
the command line); nothing here is process-wide, and none of it is
thread-safe.
"""

import logging
from typing import Any, Callable, Dict, Optional

from ldap_role_sync.entry import DirectoryEntry
from ldap_role_sync.ldap_client import LDAPClient
from ldap_role_sync.role import LdapRole
from ldap_role_sync.user import LdapUser

logger = logging.getLogger(__name__)


class EntryRegistry:
    """Single-flight cache of entries keyed by name."""

    def __init__(self, factory: Callable[[str], DirectoryEntry]):
        """
        Args:
            factory: Callable loading the entry for a name
        """
        self.factory = factory
        self._entries: Dict[str, DirectoryEntry] = {}

    def get(self, name: str, reset: bool = False) -> DirectoryEntry:
        """
        Return the entry for ``name``, loading it on first use.

        Args:
            name: Entry name
            reset: Reload from the directory even if cached

        Raises:
            DirectoryError: If loading fails
        """
        if reset or name not in self._entries:
            if name in self._entries:
                logger.debug(f"Reloading {name!r}")
            self._entries[name] = self.factory(name)
        return self._entries[name]

    def reset(self, name: Optional[str] = None):
        """Evict ``name``, or every entry when no name is given."""
        if name is None:
            self._entries.clear()
        else:
            self._entries.pop(name, None)

    def __contains__(self, name: str) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class UserRegistry(EntryRegistry):
    """Registry of LdapUser entries."""

    def __init__(self, client: LDAPClient, config: Dict[str, Any]):
        self.client = client
        self.config = config
        super().__init__(lambda name: LdapUser(client, config, name))


class RoleRegistry(EntryRegistry):
    """Registry of LdapRole entries, resolving members through a user registry."""

    def __init__(self, client: LDAPClient, config: Dict[str, Any], users: Optional[UserRegistry] = None):
        self.client = client
        self.config = config
        self.users = users
        super().__init__(lambda name: LdapRole(client, config, name, users=users))
