"""
Directory-backed roles (LDAP groups).

An LdapRole is the LDAP group entry that mirrors one application role. Its
member attribute holds either the DNs or the names of the member users,
depending on the ``member_format`` configuration.
"""

import logging
from typing import Any, Dict, List, Optional, Union

from ldap_role_sync.entry import DirectoryEntry
from ldap_role_sync.user import LdapUser

logger = logging.getLogger(__name__)


class LdapRole(DirectoryEntry):
    """
    An LDAP group entry looked up by role name.

    Only the naming and member attributes are loaded. Users passed by name
    to add_member()/delete_member() are resolved through ``users``, a user
    registry (anything with a ``get(name)`` method returning an LdapUser).
    """

    def __init__(self, client, config: Dict[str, Any], name: str, users=None):
        self.member_attribute = config['member_attribute']
        self.member_format = config.get('member_format', 'dn')
        self.member_default = config.get('member_default')
        self.users = users
        super().__init__(client, config, name)

    def _requested_attributes(self) -> List[str]:
        return [self.name_attribute, self.member_attribute]

    def _prepare_save(self):
        # Group object classes usually require at least one member.
        if self.member_default:
            self._append_value(self.member_attribute, self.member_default)

    def members(self) -> List[str]:
        return self.get_attribute(self.member_attribute)

    def _resolve_user(self, user: Union[LdapUser, str]) -> LdapUser:
        if isinstance(user, str):
            if self.users is None:
                raise ValueError(f"Cannot resolve user {user!r} without a user registry")
            return self.users.get(user)
        return user

    def member_value(self, user: Union[LdapUser, str]) -> Optional[str]:
        """
        The value representing ``user`` in the member attribute.

        Args:
            user: An LdapUser or a user name

        Returns:
            The user's DN, or its name attribute value, per ``member_format``
        """
        user = self._resolve_user(user)
        if self.member_format == 'dn':
            return user.get_dn()
        return user.get_name_value()

    def add_member(self, user: Union[LdapUser, str]) -> bool:
        """
        Add a user to the role.

        Returns:
            True if the user was added, False if already a member
        """
        member = self.member_value(user)
        if not member:
            logger.warning(f"Cannot add member to role {self.name!r}: user has no {self.member_format} value")
            return False
        return self._append_value(self.member_attribute, member)

    def delete_member(self, user: Union[LdapUser, str]) -> bool:
        """
        Remove a user from the role.

        Returns:
            True if the user was removed, False if not a member
        """
        member = self.member_value(user)
        if not member:
            return False
        return self._remove_value(self.member_attribute, member)
