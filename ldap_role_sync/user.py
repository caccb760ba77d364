"""
Directory-backed user entries.
"""

import logging
from typing import Any, Dict, List, Optional

from ldap_role_sync.entry import DirectoryEntry

logger = logging.getLogger(__name__)


class LdapUser(DirectoryEntry):
    """
    An LDAP user entry looked up by user name.

    The ``attribute_map`` configuration maps LDAP attribute names to fields of
    the local user record; those attributes are fetched on load and written
    when the user is provisioned from a local record.
    """

    def __init__(self, client, config: Dict[str, Any], name: str):
        self.unique_attribute = config.get('unique_attribute')
        self.attribute_map = {attribute.lower(): field
                              for attribute, field in (config.get('attribute_map') or {}).items()}
        super().__init__(client, config, name)

    def _requested_attributes(self) -> List[str]:
        requested = [self.name_attribute]
        for attribute in list(self.attribute_map) + [self.unique_attribute]:
            if attribute and attribute not in requested:
                requested.append(attribute)
        return requested

    def get_name_value(self) -> Optional[str]:
        """First value of the naming attribute, as used in name-format role members."""
        values = self.get_attribute(self.name_attribute)
        return values[0] if values else None

    def authname(self) -> str:
        """
        External authentication name for this entry.

        The first value of the unique attribute when one is configured and
        set, otherwise the DN.
        """
        if self.unique_attribute:
            values = self.get_attribute(self.unique_attribute)
            if values:
                return values[0]
        return self.get_dn()

    def apply_local_user(self, user: Dict[str, Any]) -> bool:
        """
        Copy mapped fields of a local user record onto the entry.

        Empty fields are skipped so that provisioning never blanks out values
        managed directly in the directory.

        Returns:
            True if any attribute changed
        """
        changed = False
        for attribute, field in self.attribute_map.items():
            value = user.get(field)
            if value in (None, '', []):
                continue
            if self.set_attribute(attribute, value):
                changed = True
        return changed
