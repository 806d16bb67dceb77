"""
LDAP client for connecting to and searching LDAP directories.

This module owns the directory connection. It pins protocol version 3,
disables automatic referral chasing and exposes a single filter-based
search operation that returns plain, cacheable entry dictionaries.
"""

import logging
import ssl
import threading
from typing import Dict, List, Any, Optional
from ldap3 import Server, Connection, SUBTREE, ALL, Tls
from ldap3.core.exceptions import (
    LDAPException,
    LDAPBindError,
    LDAPSocketReceiveError,
    LDAPCommunicationError,
)

from ldap_groups.logging_setup import audit_logger

logger = logging.getLogger(__name__)

RESULT_SUCCESS = 0


class LDAPClientError(Exception):
    """Base exception for directory client errors."""
    pass


class LDAPConnectionError(LDAPClientError):
    """Raised when a session with the LDAP server cannot be established."""
    pass


class LDAPAuthError(LDAPClientError):
    """Raised when the LDAP server rejects the bind credentials."""
    pass


class LDAPSearchError(LDAPClientError):
    """Raised when an LDAP search fails at the transport or protocol level."""
    pass


class LDAPClient:
    """
    LDAP client for searching an LDAP directory.
    
    The connection is opened lazily on the first search and re-opened after a
    transport failure. Searches are serialized so a single client can be
    shared between threads.
    """
    
    def __init__(self, config: Dict[str, Any]):
        """
        Initialize LDAP client with configuration.
        
        Args:
            config: LDAP configuration dictionary
        """
        self.config = config
        self.server_url = config['server']
        self.bind_user = config['bind_user']
        self.bind_password = config['bind_password']
        self.base_dn = config['base_dn']
        self.attributes = config.get('attributes', ['*'])
        
        # SSL/TLS configuration
        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        
        # Deadlines for every directory round-trip
        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.search_time_limit = config.get('search_time_limit', 30)
        
        self.server = None
        self.connection = None
        self._connected = False
        self._lock = threading.RLock()
        self.search_count = 0
    
    def connect(self) -> bool:
        """
        Open and bind the connection to the LDAP server.
        
        Failures are not retried; the caller decides whether to try again.
        
        Returns:
            True if connection successful
            
        Raises:
            LDAPConnectionError: If the server cannot be reached
            LDAPAuthError: If the bind credentials are rejected
        """
        with self._lock:
            if self._connected:
                return True
            
            try:
                self.server = Server(
                    self.server_url,
                    use_ssl=self.use_ssl,
                    tls=self._create_tls_config(),
                    get_info=ALL,
                    connect_timeout=self.connection_timeout
                )
                self.connection = Connection(
                    self.server,
                    user=self.bind_user,
                    password=self.bind_password,
                    version=3,
                    auto_bind=False,
                    auto_referrals=False,
                    read_only=True,
                    receive_timeout=self.receive_timeout
                )
                self.connection.open()
            except LDAPException as e:
                self._reset()
                raise LDAPConnectionError(f"Error connecting to LDAP server {self.server_url}: {e}")
            
            try:
                if self.start_tls and not self.use_ssl:
                    if not self.connection.start_tls():
                        raise LDAPConnectionError(f"Failed to start TLS: {self._describe_result()}")
                    logger.debug("StartTLS negotiation successful")
            except LDAPException as e:
                self._reset()
                raise LDAPConnectionError(f"Failed to start TLS with {self.server_url}: {e}")
            except LDAPConnectionError:
                self._reset()
                raise
            
            try:
                bound = self.connection.bind()
            except LDAPBindError as e:
                audit_logger.log_bind_attempt(self.server_url, self.bind_user, False)
                self._reset()
                raise LDAPAuthError(f"Couldn't bind to LDAP server as {self.bind_user}: {e}")
            except LDAPException as e:
                self._reset()
                raise LDAPConnectionError(f"Error connecting to LDAP server {self.server_url}: {e}")
            
            if not bound:
                message = self._describe_result()
                audit_logger.log_bind_attempt(self.server_url, self.bind_user, False)
                self._reset()
                raise LDAPAuthError(f"Couldn't bind to LDAP server as {self.bind_user}: {message}")
            
            self._connected = True
            audit_logger.log_bind_attempt(self.server_url, self.bind_user, True)
            logger.info(f"Connected and bound to LDAP server {self.server_url}")
            return True
    
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
        
        try:
            return Tls(**tls_config)
        except LDAPException as e:
            raise LDAPConnectionError(f"Failed to create TLS configuration: {e}")
    
    def _describe_result(self) -> str:
        """Describe the last LDAP result for error messages."""
        result = getattr(self.connection, 'result', None) or {}
        if not isinstance(result, dict):
            return str(result)
        description = result.get('description', 'unknown error')
        message = result.get('message')
        return f"{description} ({message})" if message else description
    
    def _reset(self):
        """Drop the current connection without raising."""
        if self.connection is not None:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.debug(f"Ignoring error while dropping LDAP connection: {e}")
        self.connection = None
        self._connected = False
    
    def disconnect(self):
        """Close LDAP connection."""
        with self._lock:
            if self.connection and self._connected:
                try:
                    self.connection.unbind()
                    logger.debug("LDAP connection closed")
                except LDAPException as e:
                    logger.warning(f"Error closing LDAP connection: {e}")
            self._connected = False
            self.connection = None
    
    def search(self, search_filter: str, attributes: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        """
        Search the configured base DN with the given filter.
        
        Args:
            search_filter: LDAP filter, with or without enclosing parentheses
            attributes: Attributes to request (defaults to the configured list)
            
        Returns:
            List of entries, each {'dn': str, 'attributes': {name: [values]}}
            with lower-cased attribute names
            
        Raises:
            LDAPConnectionError, LDAPAuthError: If the lazy connect fails
            LDAPSearchError: If the search fails or times out
        """
        if not search_filter.startswith('('):
            search_filter = f"({search_filter})"
        
        with self._lock:
            if not self._connected:
                self.connect()
            
            self.search_count += 1
            try:
                self.connection.search(
                    search_base=self.base_dn,
                    search_filter=search_filter,
                    search_scope=SUBTREE,
                    attributes=attributes or self.attributes,
                    time_limit=self.search_time_limit
                )
            except (LDAPSocketReceiveError, LDAPCommunicationError) as e:
                # The socket is no longer usable; reconnect on next search
                self._reset()
                raise LDAPSearchError(f"Error in LDAP search for '{search_filter}': {e}")
            except LDAPException as e:
                raise LDAPSearchError(f"Error in LDAP search for '{search_filter}': {e}")
            
            result = self.connection.result
            if isinstance(result, dict) and result.get('result', RESULT_SUCCESS) != RESULT_SUCCESS:
                raise LDAPSearchError(f"Error in LDAP search for '{search_filter}': {self._describe_result()}")
            
            return [
                self._to_entry(item)
                for item in (self.connection.response or [])
                if item.get('type') == 'searchResEntry'
            ]
    
    def _to_entry(self, item: Dict[str, Any]) -> Dict[str, Any]:
        """Convert an ldap3 response item to a plain entry dictionary."""
        attributes = {}
        for name, value in (item.get('attributes') or {}).items():
            if value is None:
                values = []
            elif isinstance(value, (list, tuple)):
                values = list(value)
            else:
                values = [value]
            attributes[name.lower()] = values
        return {'dn': str(item.get('dn', '')), 'attributes': attributes}
    
    def get_connection_stats(self) -> Dict[str, Any]:
        """
        Get connection statistics and status.
        
        Returns:
            Dictionary with connection information
        """
        stats = {
            'connected': self._connected,
            'server_url': self.server_url,
            'use_ssl': self.use_ssl,
            'start_tls': self.start_tls,
            'verify_ssl': self.verify_ssl,
            'bind_user': self.bind_user,
            'base_dn': self.base_dn,
            'searches': self.search_count
        }
        
        if self.connection:
            stats.update({
                'server_host': getattr(self.connection.server, 'host', None),
                'server_port': getattr(self.connection.server, 'port', None),
                'bound': getattr(self.connection, 'bound', False),
                'tls_started': getattr(self.connection, 'tls_started', False)
            })
        
        return stats
    
    def __enter__(self):
        """Context manager entry."""
        return self
    
    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.disconnect()
