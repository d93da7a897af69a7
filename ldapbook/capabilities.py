"""
Directory server capability detection and caching.

This module provides the :py:class:`ServerCapabilities` class, which reads
the controls a directory server advertises in its Root DSE and remembers
them per server, so that VLV windowing and server side sorting are only
requested from servers that support them.
"""

import logging
import threading
import time
from typing import Any, ClassVar

from ldapbook import ldap

logger = logging.getLogger(__name__)


class ServerCapabilities:
    """
    Detect and cache the controls supported by directory servers.

    Results are cached per server key (usually the server URL) for
    :py:attr:`ttl` seconds.
    """

    #: Class-level cache: server key to ``{"controls": set, "cached_at": float}``
    _server_cache: ClassVar[dict[str, dict[str, Any]]] = {}
    #: Thread lock for cache access
    _lock = threading.Lock()
    #: How long detected capabilities stay valid, in seconds
    ttl: ClassVar[int] = 3600

    SORTING_OID = "1.2.840.113556.1.4.473"
    VLV_OID = "2.16.840.1.113730.3.4.9"

    @classmethod
    def _is_cache_valid(cls, cached_info: dict[str, Any]) -> bool:
        return (time.time() - cached_info["cached_at"]) < cls.ttl

    @classmethod
    def supported_controls(cls, connection: Any, key: str) -> set[str]:
        """
        Return the control OIDs advertised by the server behind
        ``connection``, querying the Root DSE at most once per TTL.

        Args:
            connection: a bound python-ldap connection
            key: the cache key for the server

        Raises:
            ldap.SERVER_DOWN: the server went away
            ldap.CONNECT_ERROR: the server could not be reached

        Returns:
            The set of supported control OIDs.

        """
        with cls._lock:
            cached = cls._server_cache.get(key)
            if cached is not None and cls._is_cache_valid(cached):
                return cached["controls"]
            try:
                result = connection.search_s(
                    "", ldap.SCOPE_BASE, "(objectClass=*)", ["supportedControl"]
                )
            except ldap.LDAPError as e:
                if isinstance(e, (ldap.SERVER_DOWN, ldap.CONNECT_ERROR)):
                    raise
                logger.warning(
                    "ldapbook.capabilities.rootdse.failed server=%s error=%s", key, e
                )
                result = []
            controls: set[str] = set()
            if result:
                attrs = {k.lower(): v for k, v in result[0][1].items()}
                controls = {
                    c.decode("utf-8") if isinstance(c, bytes) else c
                    for c in attrs.get("supportedcontrol", [])
                }
            cls._server_cache[key] = {"controls": controls, "cached_at": time.time()}
            return controls

    @classmethod
    def supports(cls, connection: Any, oid: str, key: str) -> bool:
        """
        Return ``True`` if the server behind ``connection`` advertises the
        control ``oid``.
        """
        return oid in cls.supported_controls(connection, key)

    @classmethod
    def clear_cache(cls, key: str | None = None) -> None:
        """
        Clear cache for specific key or all keys.

        Args:
            key: Server key to clear, or None to clear all

        """
        with cls._lock:
            if key is None:
                cls._server_cache.clear()
            else:
                cls._server_cache.pop(key, None)
