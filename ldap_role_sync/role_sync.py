"""
Pushes local roles and their membership to the directory.
"""

import logging
from typing import Dict, List

from ldap_role_sync.entry import SaveResult
from ldap_role_sync.ldap_client import DirectoryError, MalformedDNError
from ldap_role_sync.local_store import YamlUserStore
from ldap_role_sync.registry import RoleRegistry

logger = logging.getLogger(__name__)


class RoleSynchronizer:
    """
    Keeps LDAP groups in line with the roles of the local store.

    Roles whose group cannot be created yet (the group object class requires
    a member and the role has none) are reported as deferred; they are
    created by a later run once the role has members.
    """

    def __init__(self, store: YamlUserStore, roles: RoleRegistry):
        self.store = store
        self.roles = roles

    def sync_role(self, name: str, member_names: List[str]) -> SaveResult:
        """
        Make the LDAP group of role ``name`` hold exactly ``member_names``.

        The configured default member is kept in addition to the listed users.

        Returns:
            SaveResult; directory failures are returned as SaveResult.failed
        """
        try:
            role = self.roles.get(name)
            members = []
            for member_name in member_names:
                if self.store.get_user(member_name) is None:
                    logger.warning(f"Role {name!r} lists unknown user {member_name!r}, skipping")
                    continue
                value = role.member_value(member_name)
                if value and value not in members:
                    members.append(value)
            if role.member_default and role.member_default not in members:
                members.append(role.member_default)

            role.set_attribute(role.member_attribute, members)
            result = role.save()
        except DirectoryError as e:
            logger.error(f"Failed to sync role {name!r}: {e}")
            self.roles.reset(name)
            return SaveResult.failed(e)

        if result.status == SaveResult.NOT_YET_CREATABLE:
            logger.warning(f"Role {name!r} cannot be created in LDAP until it has a member")
        else:
            logger.info(f"Role {name!r} synchronized to {role.get_dn()}")
        return result

    def sync_all(self) -> Dict[str, int]:
        """
        Synchronize every local role.

        Returns:
            Counts of 'saved', 'deferred' and 'failed' roles
        """
        stats = {'saved': 0, 'deferred': 0, 'failed': 0}
        for local_role in self.store.iter_roles():
            result = self.sync_role(local_role['name'], local_role['members'])
            if result.status == SaveResult.SAVED:
                stats['saved'] += 1
            elif result.status == SaveResult.NOT_YET_CREATABLE:
                stats['deferred'] += 1
            else:
                stats['failed'] += 1
        logger.info(f"Role sync: {stats['saved']} saved, {stats['deferred']} deferred, "
                    f"{stats['failed']} failed")
        return stats

    def rename_role(self, old_name: str, new_name: str) -> SaveResult:
        """
        Rename the LDAP group of a role.

        If no group exists under the old name, the group is created under the
        new name instead.

        Raises:
            MalformedDNError: If the new name does not give a valid DN
            DirectoryError: If the directory refuses the rename
        """
        role = self.roles.get(old_name, reset=True)
        self.roles.reset(old_name)
        self.roles.reset(new_name)

        if not role.exists():
            logger.info(f"Role {old_name!r} has no LDAP group, creating {new_name!r} instead")
            return self.roles.get(new_name).save()

        new_dn = role.dn_for(new_name)
        if not role.set_dn(new_dn) and role.get_dn() != new_dn:
            raise MalformedDNError(f"Cannot rename role {old_name!r} to {new_dn!r}")
        role.set_attribute(role.name_attribute, [new_name])
        result = role.save()
        logger.info(f"Renamed role {old_name!r} to {new_name!r}")
        return result

    def delete_role(self, name: str) -> bool:
        """
        Delete the LDAP group of a role.

        Returns:
            True if a group was deleted, False if there was none

        Raises:
            DirectoryError: If the directory refuses the deletion
        """
        role = self.roles.get(name, reset=True)
        self.roles.reset(name)
        if not role.exists():
            logger.info(f"Role {name!r} has no LDAP group, nothing to delete")
            return False
        return role.delete()
