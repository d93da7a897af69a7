"""
Caching of group listings.

The address book caches its group listing as one unit under
:py:attr:`GroupCache.KEY`.  The storage is a :py:class:`Cache`: either the
process local :py:class:`MemoryCache`, or :py:class:`DjangoCache`, which
stores into one of the caches configured in ``settings.CACHES``.
"""

import logging
import re
import threading
import time
from typing import Any, Protocol

from django.core.cache import caches
from django.utils.text import slugify

logger = logging.getLogger(__name__)

TTL_PATTERN = re.compile(r"^\s*(\d+)\s*([smhdw]?)\s*$", re.IGNORECASE)

#: Seconds per TTL unit suffix
TTL_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}


def parse_ttl(value: str | int | None, default: int = 600) -> int:
    """
    Parse a TTL like ``600``, ``"10m"``, ``"2h"`` or ``"1d"`` into seconds.

    Args:
        value: the TTL to parse

    Keyword Args:
        default: the TTL to use when ``value`` is empty or malformed

    Returns:
        The TTL in seconds.

    """
    if value is None or value == "":
        return default
    if isinstance(value, int):
        return value
    match = TTL_PATTERN.match(str(value))
    if not match:
        logger.warning("ldapbook.cache.bad-ttl ttl=%r default=%d", value, default)
        return default
    return int(match.group(1)) * TTL_UNITS[match.group(2).lower()]


class Cache(Protocol):
    """
    The storage used by :py:class:`GroupCache`.
    """

    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def remove(self, key: str) -> None: ...

    def expunge(self) -> None: ...


class MemoryCache:
    """
    A process local, thread safe cache whose entries expire after ``ttl``
    seconds.

    Args:
        ttl: entry lifetime in seconds

    """

    def __init__(self, ttl: int = 600) -> None:
        self.ttl = ttl
        #: key to ``(stored_at, value)``
        self._data: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def _is_valid(self, stored_at: float) -> bool:
        return (time.time() - stored_at) < self.ttl

    def get(self, key: str) -> Any:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            if not self._is_valid(item[0]):
                del self._data[key]
                return None
            return item[1]

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = (time.time(), value)

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def expunge(self) -> None:
        with self._lock:
            for key in [k for k, (t, _) in self._data.items() if not self._is_valid(t)]:
                del self._data[key]


class DjangoCache:
    """
    A :py:class:`Cache` backed by a Django cache.  Django expires entries on
    its own, so :py:meth:`expunge` does nothing.

    Args:
        alias: the key into ``settings.CACHES``
        prefix: prepended to every key
        ttl: entry lifetime in seconds

    """

    def __init__(self, alias: str = "default", prefix: str = "", ttl: int = 600) -> None:
        self.alias = alias
        self.prefix = prefix
        self.ttl = ttl

    @property
    def backend(self) -> Any:
        return caches[self.alias]

    def get(self, key: str) -> Any:
        return self.backend.get(self.prefix + key)

    def set(self, key: str, value: Any) -> None:
        self.backend.set(self.prefix + key, value, self.ttl)

    def remove(self, key: str) -> None:
        self.backend.delete(self.prefix + key)

    def expunge(self) -> None:
        pass


def cache_for_source(name: str, backend: str, ttl: str | int | None) -> Cache:
    """
    Build the cache configured for the source ``name``.

    Args:
        name: the source name, used in the key prefix
        backend: ``memory``, or a Django cache alias
        ttl: the configured TTL, see :py:func:`parse_ttl`

    Returns:
        The cache.

    """
    seconds = parse_ttl(ttl)
    if backend == "memory":
        return MemoryCache(ttl=seconds)
    return DjangoCache(alias=backend, prefix=f"LDAP.{slugify(name)}.", ttl=seconds)


class GroupCache:
    """
    The cached group listing of one address book source.

    Args:
        cache: the storage to use

    """

    #: The key the group listing is stored under
    KEY = "groups"

    def __init__(self, cache: Cache) -> None:
        self.cache = cache

    def get(self) -> dict[str, Any] | None:
        """
        Return the cached group listing, or ``None`` if nothing is cached.
        """
        return self.cache.get(self.KEY)

    def set(self, groups: dict[str, Any]) -> None:
        self.cache.set(self.KEY, groups)
        logger.debug("ldapbook.cache.groups.set count=%d", len(groups))

    def invalidate(self) -> None:
        self.cache.remove(self.KEY)
        logger.debug("ldapbook.cache.groups.invalidate")

    def expunge(self) -> None:
        self.cache.expunge()
