"""
LDAP client for connecting to and writing to LDAP directories.

This module provides the directory transport used by the role and user
entities: connection setup, search, and the add/modify/delete/move write
operations, each reporting failures with the LDAP result code.
"""

import logging
import ssl
import time
from typing import Dict, List, Any, Optional
from ldap3 import Server, Connection, Tls, ALL, BASE, LEVEL, SUBTREE, MODIFY_REPLACE
from ldap3.core.exceptions import LDAPException, LDAPBindError, LDAPInvalidDnError
from ldap3.core.results import (
    RESULT_SUCCESS,
    RESULT_SIZE_LIMIT_EXCEEDED,
    RESULT_NO_SUCH_OBJECT,
    RESULT_ENTRY_ALREADY_EXISTS,
    RESULT_CONSTRAINT_VIOLATION,
)
from ldap3.utils.dn import parse_dn as ldap3_parse_dn, to_dn, escape_rdn

from ldap_role_sync.logging_setup import audit_logger

logger = logging.getLogger(__name__)

SCOPES = {
    'base': BASE,
    'one': LEVEL,
    'sub': SUBTREE,
}


class LDAPConnectionError(Exception):
    """Raised when LDAP connection fails."""
    pass


class DirectoryError(Exception):
    """Raised when a directory operation is rejected by the server."""

    def __init__(self, code: int, message: str = ''):
        self.code = code
        self.message = message
        super().__init__(f"LDAP error {code}: {message}")


class EntryAlreadyExistsError(DirectoryError):
    """Raised when adding an entry whose DN is already taken."""
    pass


class ConstraintViolationError(DirectoryError):
    """Raised when the server rejects an entry for a constraint violation."""
    pass


class MalformedDNError(Exception):
    """Raised when a distinguished name is not syntactically valid."""
    pass


ERRORS_BY_CODE = {
    RESULT_ENTRY_ALREADY_EXISTS: EntryAlreadyExistsError,
    RESULT_CONSTRAINT_VIOLATION: ConstraintViolationError,
}


def directory_error(code: int, message: str = '') -> DirectoryError:
    """Build the DirectoryError subclass matching an LDAP result code."""
    return ERRORS_BY_CODE.get(code, DirectoryError)(code, message)


def parse_dn(dn: str) -> List[tuple]:
    """
    Validate and split a distinguished name.

    Args:
        dn: Distinguished name to parse

    Returns:
        List of (attribute, value, separator) tuples

    Raises:
        MalformedDNError: If the DN is empty or not valid
    """
    if not dn or not isinstance(dn, str):
        raise MalformedDNError(f"Invalid DN: {dn!r}")
    try:
        return ldap3_parse_dn(dn)
    except LDAPInvalidDnError as e:
        raise MalformedDNError(f"Invalid DN {dn!r}: {e}")


def build_dn(attribute: str, value: str, parent_dn: str) -> str:
    """Build the DN of the entry named ``attribute=value`` under ``parent_dn``, escaping the value."""
    return f"{attribute}={escape_rdn(value)},{parent_dn}"


def split_dn(dn: str) -> tuple:
    """Return the (rdn, parent_dn) pair of a DN."""
    parse_dn(dn)
    parts = to_dn(dn)
    return parts[0], ','.join(parts[1:])


class LDAPClient:
    """
    LDAP client for the directory operations the role sync engine needs.

    All write operations raise DirectoryError (or a subclass) carrying the
    LDAP result code when the server refuses them.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize LDAP client with configuration.

        Args:
            config: LDAP configuration dictionary
        """
        self.config = config
        self.server_url = config['server_url']
        self.bind_dn = config.get('bind_dn')
        self.bind_password = config.get('bind_password')

        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        # Connection settings
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)

        error_config = config.get('error_handling', {})
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)

        self.server = None
        self.connection = None
        self._connected = False

    def connect(self, max_retries: Optional[int] = None, retry_wait: Optional[int] = None) -> bool:
        """
        Establish connection to LDAP server with retry logic.

        Args:
            max_retries: Maximum number of connection attempts (uses config default if None)
            retry_wait: Seconds to wait between retries (uses config default if None)

        Returns:
            True if connection successful

        Raises:
            LDAPConnectionError: If connection fails after all retries
        """
        max_retries = max_retries or self.max_retries
        retry_wait = retry_wait or self.retry_wait

        try:
            tls_config = self._create_tls_config()
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=tls_config,
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            logger.debug(f"Created LDAP server object for {self.server_url} (SSL: {self.use_ssl}, StartTLS: {self.start_tls})")
        except LDAPException as e:
            raise LDAPConnectionError(f"Failed to create LDAP server: {e}")

        last_exception = None
        for attempt in range(max_retries):
            try:
                self.connection = Connection(
                    self.server,
                    user=self.bind_dn,
                    password=self.bind_password,
                    auto_bind=False,
                    raise_exceptions=False,
                    receive_timeout=self.receive_timeout
                )

                if not self.connection.open():
                    raise LDAPConnectionError(f"Failed to open connection: {self.connection.result}")

                if self.start_tls and not self.use_ssl:
                    if not self.connection.start_tls():
                        raise LDAPConnectionError(f"Failed to start TLS: {self.connection.result}")
                    logger.debug("StartTLS negotiation successful")

                if not self.connection.bind():
                    raise LDAPBindError(f"Bind failed: {self.connection.result}")

                self._connected = True
                logger.info(f"Successfully connected and bound to LDAP server {self.server_url}")
                return True

            except (LDAPException, LDAPConnectionError) as e:
                last_exception = e
                logger.warning(f"LDAP connection attempt {attempt + 1}/{max_retries} failed: {e}")
                self._drop_connection()
                if attempt < max_retries - 1:
                    time.sleep(retry_wait)

        error_msg = f"Failed to connect to LDAP after {max_retries} attempts"
        if last_exception:
            error_msg += f": {last_exception}"
        raise LDAPConnectionError(error_msg)

    def _drop_connection(self):
        if self.connection:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring error while discarding connection: {e}")
            self.connection = None

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for LDAP connection.

        Returns:
            Tls configuration object or None if not needed
        """
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {}
        if not self.verify_ssl:
            tls_config['validate'] = ssl.CERT_NONE
            logger.warning("SSL certificate verification disabled")
        else:
            tls_config['validate'] = ssl.CERT_REQUIRED

        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
            logger.debug(f"Using CA certificate file: {self.ca_cert_file}")

        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file
            logger.debug("Client certificate configured for mutual TLS")

        try:
            return Tls(**tls_config)
        except LDAPException as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")

    def disconnect(self):
        """Close LDAP connection."""
        if self.connection and self._connected:
            try:
                self.connection.unbind()
                logger.debug("LDAP connection closed")
            except LDAPException as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self._connected = False
                self.connection = None

    def _require_connection(self):
        if not self._connected:
            raise DirectoryError(-1, "Not connected to LDAP server")

    def _check_result(self, operation: str, dn: str, accepted=(RESULT_SUCCESS,)):
        """Raise a DirectoryError unless the last operation's result code is accepted."""
        result = self.connection.result or {}
        code = result.get('result', RESULT_SUCCESS)
        success = code in accepted
        if operation != 'search':
            audit_logger.log_directory_operation(operation, dn, success)
        if not success:
            message = result.get('message') or result.get('description', '')
            raise directory_error(code, message)

    def search(self, base_dn: str, search_filter: str, scope: str = 'sub',
               attributes: Optional[List[str]] = None, size_limit: int = 0) -> List[Dict[str, Any]]:
        """
        Search the directory.

        Args:
            base_dn: Search base
            search_filter: LDAP filter string
            scope: One of 'base', 'one' or 'sub'
            attributes: Attributes to request
            size_limit: Maximum number of entries (0 for no limit)

        Returns:
            List of {'dn': str, 'attributes': {name: [values]}} dictionaries,
            attribute names lower-cased

        Raises:
            DirectoryError: If the search fails
        """
        self._require_connection()
        logger.debug(f"Searching with filter: {search_filter} in base: {base_dn} (scope={scope})")

        try:
            self.connection.search(
                search_base=base_dn,
                search_filter=search_filter,
                search_scope=SCOPES[scope],
                attributes=attributes or [],
                size_limit=size_limit
            )
        except LDAPException as e:
            raise DirectoryError(-1, f"LDAP search failed: {e}")

        self._check_result('search', base_dn,
                           accepted=(RESULT_SUCCESS, RESULT_SIZE_LIMIT_EXCEEDED, RESULT_NO_SUCH_OBJECT))

        entries = []
        for item in self.connection.response or []:
            if item.get('type') != 'searchResEntry':
                continue
            entries.append({
                'dn': item['dn'],
                'attributes': self._decode_attributes(item.get('raw_attributes', {})),
            })
        if size_limit:
            entries = entries[:size_limit]
        return entries

    def _decode_attributes(self, raw_attributes: Dict[str, Any]) -> Dict[str, List[str]]:
        attributes = {}
        for name, values in raw_attributes.items():
            decoded = []
            for value in values:
                if isinstance(value, bytes):
                    value = value.decode('utf-8', errors='replace')
                decoded.append(str(value))
            attributes[name.lower()] = decoded
        return attributes

    def add(self, dn: str, attributes: Dict[str, List[str]]) -> bool:
        """
        Add a new entry.

        Raises:
            EntryAlreadyExistsError: If the DN is already in use
            ConstraintViolationError: If the server reports a constraint violation
            DirectoryError: For any other failure
        """
        self._require_connection()
        attributes = {name: list(values) for name, values in attributes.items() if values}
        object_class = attributes.pop('objectclass', None)
        logger.debug(f"Adding LDAP entry {dn}")
        try:
            self.connection.add(dn, object_class=object_class, attributes=attributes)
        except LDAPException as e:
            raise DirectoryError(-1, f"LDAP add failed: {e}")
        self._check_result('add', dn)
        return True

    def modify(self, dn: str, attributes: Dict[str, List[str]]) -> bool:
        """
        Replace the given attributes of an existing entry.

        An empty value list removes the attribute.

        Raises:
            DirectoryError: If the modification fails
        """
        self._require_connection()
        changes = {name: [(MODIFY_REPLACE, list(values))] for name, values in attributes.items()}
        logger.debug(f"Modifying LDAP entry {dn}: {sorted(changes)}")
        try:
            self.connection.modify(dn, changes)
        except LDAPException as e:
            raise DirectoryError(-1, f"LDAP modify failed: {e}")
        self._check_result('modify', dn)
        return True

    def delete(self, dn: str) -> bool:
        """
        Delete an entry.

        Raises:
            DirectoryError: If the deletion fails
        """
        self._require_connection()
        logger.debug(f"Deleting LDAP entry {dn}")
        try:
            self.connection.delete(dn)
        except LDAPException as e:
            raise DirectoryError(-1, f"LDAP delete failed: {e}")
        self._check_result('delete', dn)
        return True

    def move(self, old_dn: str, new_dn: str) -> bool:
        """
        Rename and/or move an entry.

        Args:
            old_dn: Current DN of the entry
            new_dn: Target DN

        Raises:
            MalformedDNError: If either DN is invalid
            DirectoryError: If the server refuses the operation
        """
        self._require_connection()
        old_rdn, old_parent = split_dn(old_dn)
        new_rdn, new_parent = split_dn(new_dn)
        new_superior = new_parent if new_parent.lower() != old_parent.lower() else None
        logger.debug(f"Moving LDAP entry {old_dn} -> {new_dn}")
        try:
            self.connection.modify_dn(old_dn, new_rdn, delete_old_dn=True, new_superior=new_superior)
        except LDAPException as e:
            raise DirectoryError(-1, f"LDAP move failed: {e}")
        self._check_result('move', old_dn)
        return True

    def parse_dn(self, dn: str) -> List[tuple]:
        """Validate a DN, raising MalformedDNError when it is invalid."""
        return parse_dn(dn)

    def __enter__(self):
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
