"""
Directory-backed entities with attribute dirty-tracking.

A DirectoryEntry mirrors one LDAP entry in memory. Attribute writes are
diffed against the loaded values so that save() only talks to the directory
when something actually changed, and a changed DN is replayed as a move
before the entry is written.
"""

import logging
from typing import Any, Dict, List, Optional

from ldap_role_sync.filters import build_entry_filter
from ldap_role_sync.ldap_client import (
    LDAPClient,
    EntryAlreadyExistsError,
    ConstraintViolationError,
    MalformedDNError,
    build_dn,
)

logger = logging.getLogger(__name__)


class SaveResult:
    """
    Outcome of saving an entry.

    SAVED and NOT_YET_CREATABLE are returned by save(); FAILED wraps a
    DirectoryError for callers that collect failures instead of raising.
    Only SAVED is truthy.
    """

    SAVED = 'saved'
    NOT_YET_CREATABLE = 'not_yet_creatable'
    FAILED = 'failed'

    def __init__(self, status: str, error: Optional[Exception] = None):
        self.status = status
        self.error = error

    @classmethod
    def saved(cls) -> 'SaveResult':
        return cls(cls.SAVED)

    @classmethod
    def not_yet_creatable(cls, error: Optional[Exception] = None) -> 'SaveResult':
        return cls(cls.NOT_YET_CREATABLE, error)

    @classmethod
    def failed(cls, error: Exception) -> 'SaveResult':
        return cls(cls.FAILED, error)

    def __bool__(self):
        return self.status == self.SAVED

    def __eq__(self, other):
        if isinstance(other, SaveResult):
            return self.status == other.status
        if isinstance(other, str):
            return self.status == other
        return NotImplemented

    def __hash__(self):
        return hash(self.status)

    def __repr__(self):
        if self.error is not None:
            return f"SaveResult({self.status}, {self.error})"
        return f"SaveResult({self.status})"


class DirectoryEntry:
    """
    Base class for an LDAP entry looked up by name.

    Subclasses define which attributes are fetched and how new entries are
    completed before being added.
    """

    # Names that get()/set() treat as entity fields rather than LDAP attributes.
    PROTECTED_FIELDS = ('attributes', 'exists')

    def __init__(self, client: LDAPClient, config: Dict[str, Any], name: str):
        """
        Look up the entry named ``name`` or stage a new one.

        Args:
            client: Directory transport
            config: The ``role`` or ``user`` configuration section
            name: Value of the naming attribute

        Raises:
            DirectoryError: If the lookup fails
        """
        self.client = client
        self.config = config
        self.name = name
        self.name_attribute = config['name_attribute']

        self._attributes: Dict[str, List[str]] = {}
        self._dn = None
        self._exists = False
        self._dirty = False
        self._move = None

        self._load()

    def dn_for(self, name: str) -> str:
        """DN a new entry named ``name`` gets under the configured base DN."""
        return build_dn(self.name_attribute, name, self.config['base_dn'])

    def _requested_attributes(self) -> List[str]:
        return [self.name_attribute]

    def _load(self):
        requested = self._requested_attributes()
        search_filter = build_entry_filter(self.name_attribute, self.name,
                                           self.config.get('object_classes'), self.config.get('filter'))
        results = self.client.search(self.config['base_dn'], search_filter, self.config['scope'],
                                     requested, size_limit=1)

        if len(results) == 1:
            hit = results[0]
            self._dn = hit['dn']
            for attribute in requested:
                self._attributes[attribute] = list(hit['attributes'].get(attribute, []))
            self._exists = True
            logger.debug(f"Loaded {self.__class__.__name__} {self.name!r} from {self._dn}")
        else:
            self._dn = self.dn_for(self.name)
            self._attributes[self.name_attribute] = [self.name]
            self._dirty = True
            logger.debug(f"Staged new {self.__class__.__name__} {self.name!r} at {self._dn}")

    # Read accessors

    def get_dn(self) -> str:
        return self._dn

    def exists(self) -> bool:
        return self._exists

    def is_dirty(self) -> bool:
        return self._dirty

    def pending_rename(self) -> Optional[str]:
        """The DN the entry still has in the directory, if a rename is staged."""
        return self._move

    def get_attribute(self, attribute: str) -> List[str]:
        """Return a copy of the values of ``attribute`` (empty if unset)."""
        return list(self._attributes.get(attribute.lower(), []))

    def get_attributes(self) -> Dict[str, List[str]]:
        return {name: list(values) for name, values in self._attributes.items()}

    def get(self, name: str) -> Any:
        """Generic read: ``dn`` and ``exists`` are entity fields, anything else an attribute."""
        if name == 'dn':
            return self.get_dn()
        if name == 'exists':
            return self.exists()
        if name == 'attributes':
            return self.get_attributes()
        return self.get_attribute(name)

    # Write accessors

    def set_dn(self, dn: str) -> bool:
        """
        Stage a rename of the entry.

        Invalid DNs are ignored.

        Returns:
            True if the DN changed
        """
        if dn == self._dn:
            return False
        try:
            self.client.parse_dn(dn)
        except MalformedDNError as e:
            logger.debug(f"Ignoring DN change for {self.name!r}: {e}")
            return False

        # Keep the first DN: that is where the entry still lives in the directory.
        # An entry that was never saved has nothing to move.
        if self._exists:
            if self._move is None:
                self._move = self._dn
            elif self._move == dn:
                self._move = None
        self._dn = dn
        self._dirty = True
        return True

    def set_attribute(self, attribute: str, value: Any) -> bool:
        """
        Set the values of an attribute.

        Args:
            attribute: Attribute name
            value: A value or a list of values

        Returns:
            True if the values changed (the entry is now dirty)
        """
        if not isinstance(value, (list, tuple, set)):
            value = [value]
        value = [str(v) for v in value]
        attribute = attribute.lower()

        current = self._attributes.get(attribute, [])
        if set(current) ^ set(value):
            self._attributes[attribute] = value
            self._dirty = True
            return True
        return False

    def set(self, name: str, value: Any) -> bool:
        """Generic write: ``dn`` stages a rename, protected fields are ignored."""
        if name == 'dn':
            return self.set_dn(value)
        if name in self.PROTECTED_FIELDS:
            return False
        return self.set_attribute(name, value)

    def _append_value(self, attribute: str, value: str) -> bool:
        values = self._attributes.setdefault(attribute, [])
        if value in values:
            return False
        values.append(value)
        self._dirty = True
        return True

    def _remove_value(self, attribute: str, value: str) -> bool:
        values = self._attributes.get(attribute, [])
        if value not in values:
            return False
        self._attributes[attribute] = [v for v in values if v != value]
        self._dirty = True
        return True

    # Persistence

    def _prepare_save(self):
        """Hook run before every write."""
        pass

    def _object_classes(self) -> List[str]:
        return list(self.config.get('object_classes') or [])

    def save(self) -> SaveResult:
        """
        Write pending changes to the directory.

        Returns:
            SaveResult.SAVED on success (or if there was nothing to save),
            SaveResult.NOT_YET_CREATABLE if the server refused to create the
            entry because of a constraint violation

        Raises:
            DirectoryError: For any other directory failure
        """
        if not self._dirty:
            return SaveResult.saved()

        if self._move:
            self.client.move(self._move, self._dn)
            logger.info(f"Moved {self._move} to {self._dn}")
            self._move = None

        self._prepare_save()

        if self._exists:
            self.client.modify(self._dn, self._attributes)
        else:
            self._attributes['objectclass'] = self._object_classes()
            try:
                self.client.add(self._dn, self._attributes)
                logger.info(f"Created {self._dn}")
            except EntryAlreadyExistsError:
                logger.info(f"{self._dn} already exists, updating it instead")
                self.client.modify(self._dn, self._attributes)
            except ConstraintViolationError as e:
                logger.info(f"Cannot create {self._dn} yet: {e.message}")
                return SaveResult.not_yet_creatable(e)

        self._exists = True
        self._dirty = False
        self._move = None
        return SaveResult.saved()

    def delete(self) -> bool:
        """
        Delete the entry from the directory.

        Returns:
            True if the entry was deleted, False if it was never saved

        Raises:
            DirectoryError: If the directory refuses the deletion
        """
        if not self._exists:
            logger.debug(f"{self._dn} was never saved, nothing to delete")
            self._dirty = False
            self._move = None
            return False

        dn = self._move or self._dn
        self.client.delete(dn)
        logger.info(f"Deleted {dn}")
        self._exists = False
        self._dirty = False
        self._move = None
        return True

    def __repr__(self):
        return f"<{self.__class__.__name__} {self._dn} exists={self._exists} dirty={self._dirty}>"

