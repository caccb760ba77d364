"""
Local user store backed by a YAML file.

The file holds the application's users, roles and authentication map:

    users:
      - {id: 2, name: alice, mail: alice@example.com}
    roles:
      - {name: editors, members: [alice]}
    authmap:
      2: alice

Users with id 0 (anonymous) and 1 (superuser) are never synchronized.
"""

import os
import yaml
import logging
from typing import Any, Dict, Iterator, List, Optional

from ldap_role_sync.logging_setup import audit_logger

logger = logging.getLogger(__name__)

FIRST_SYNCED_UID = 2


class LocalStoreError(Exception):
    """Raised when the local store cannot be read or written."""
    pass


class YamlUserStore:
    """Users, roles and authmap read from (and written back to) a YAML file."""

    def __init__(self, path: str):
        self.path = path
        self.users: List[Dict[str, Any]] = []
        self.roles: List[Dict[str, Any]] = []
        self.authmap: Dict[int, str] = {}
        self.load()

    def load(self):
        """
        Read the store file.

        Raises:
            LocalStoreError: If the file is missing or malformed
        """
        try:
            with open(self.path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise LocalStoreError(f"Local store file not found: {self.path}")
        except yaml.YAMLError as e:
            raise LocalStoreError(f"Invalid YAML in local store {self.path}: {e}")

        if not isinstance(data, dict):
            raise LocalStoreError(f"Local store must contain a mapping: {self.path}")

        users = []
        for i, user in enumerate(data.get('users') or []):
            if not isinstance(user, dict) or 'id' not in user or not user.get('name'):
                raise LocalStoreError(f"users[{i}] must have an id and a name")
            user = dict(user)
            user['id'] = int(user['id'])
            users.append(user)
        self.users = sorted(users, key=lambda u: u['id'])

        self.roles = []
        for i, role in enumerate(data.get('roles') or []):
            if not isinstance(role, dict) or not role.get('name'):
                raise LocalStoreError(f"roles[{i}] must have a name")
            self.roles.append({'name': str(role['name']), 'members': list(role.get('members') or [])})

        self.authmap = {int(uid): str(authname) for uid, authname in (data.get('authmap') or {}).items()}
        logger.debug(f"Loaded {len(self.users)} users and {len(self.roles)} roles from {self.path}")

    def save(self):
        """Write the store back to its file."""
        self._write(self.authmap)

    def _write(self, authmap: Dict[int, str]):
        data = {
            'users': self.users,
            'roles': self.roles,
            'authmap': authmap,
        }
        tmp_path = f"{self.path}.tmp"
        try:
            with open(tmp_path, 'w') as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise LocalStoreError(f"Failed to write local store {self.path}: {e}")

    def iter_users(self, min_id: int = FIRST_SYNCED_UID) -> Iterator[Dict[str, Any]]:
        """Yield user records with ``id >= min_id``, ordered by id."""
        for user in self.users:
            if user['id'] >= min_id:
                yield user

    def count_users(self, min_id: int = FIRST_SYNCED_UID) -> int:
        return sum(1 for _ in self.iter_users(min_id))

    def get_user(self, name: str) -> Optional[Dict[str, Any]]:
        for user in self.users:
            if user['name'] == name:
                return user
        return None

    def iter_roles(self) -> Iterator[Dict[str, Any]]:
        return iter(self.roles)

    def get_authname(self, uid: int) -> Optional[str]:
        return self.authmap.get(uid)

    def set_authname(self, uid: int, authname: str):
        """Record the external authentication name of a user and persist it."""
        self.set_authnames({uid: authname})

    def set_authnames(self, authnames: Dict[int, str]):
        """
        Record several authmap entries with a single write of the file.

        The in-memory map only changes once the file has been written.

        Raises:
            LocalStoreError: If the file cannot be written
        """
        if not authnames:
            return
        authmap = dict(self.authmap)
        authmap.update(authnames)
        self._write(authmap)
        self.authmap = authmap
        for uid, authname in authnames.items():
            audit_logger.log_authmap_change(uid, authname)
