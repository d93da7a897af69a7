"""
An in-memory :py:class:`~ldapbook.client.DirectoryClient` for tests.

:py:class:`InMemoryDirectoryClient` keeps entries in a dict and records every
call it receives.  It does not evaluate LDAP filters: a search returns every
entry in scope, unless a result was scripted for its filter with
:py:meth:`InMemoryDirectoryClient.script_search`.
"""

from typing import Any

from ldap.dn import explode_dn

from .client import DirectoryEntry, SearchResult
from .typing import AttributeMap


def _parent(dn: str) -> str:
    return ",".join(explode_dn(dn)[1:]).lower()


class InMemoryDirectoryClient:
    """
    Keyword Args:
        entries: ``dn`` to attribute map of the initial entries
        credentials: ``dn`` (or SASL identity) to password; binds with anything
            else fail
        hosts: the hosts :py:meth:`connect` accepts; ``None`` for any

    """

    def __init__(
        self,
        entries: dict[str, AttributeMap] | None = None,
        credentials: dict[str, str] | None = None,
        hosts: list[str] | None = None,
    ) -> None:
        self.entries: dict[str, DirectoryEntry] = {}
        for dn, attributes in (entries or {}).items():
            self.register(dn, attributes)
        self.credentials = dict(credentials or {})
        self.hosts = hosts
        #: ``(method, args)`` for every call, in order
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        #: Names of methods that should fail
        self.fail: set[str] = set()
        self.scripted: dict[str, list[str]] = {}
        self.vlv_active: bool = False
        self.page: int = 1
        self.page_size: int = 0
        self.connected: str | None = None
        self.bound_as: str | None = None

    # -----------------------
    # Test helpers
    # -----------------------

    def register(self, dn: str, attributes: AttributeMap) -> DirectoryEntry:
        entry = DirectoryEntry(dn, {k: list(v) for k, v in attributes.items()})
        self.entries[dn.lower()] = entry
        return entry

    def script_search(self, filterstr: str, dns: list[str]) -> None:
        """
        Make searches with ``filterstr`` return the entries ``dns``.
        """
        self.scripted[filterstr] = list(dns)

    def calls_to(self, method: str) -> list[tuple[Any, ...]]:
        return [args for name, args in self.calls if name == method]

    def _record(self, method: str, *args: Any) -> bool:
        self.calls.append((method, args))
        return method not in self.fail

    def _in_scope(self, base: str, scope: str) -> list[DirectoryEntry]:
        base = base.lower()
        if scope == "base":
            return [self.entries[base]] if base in self.entries else []
        if scope in ("one", "list"):
            return [e for dn, e in self.entries.items() if _parent(dn) == base]
        return [
            e for dn, e in self.entries.items() if dn == base or dn.endswith("," + base)
        ]

    @staticmethod
    def _project(entry: DirectoryEntry, attributes: Any) -> DirectoryEntry:
        if not attributes:
            return DirectoryEntry(entry.dn, dict(entry.attributes))
        wanted = {a.lower() for a in attributes}
        return DirectoryEntry(
            entry.dn, {k: list(v) for k, v in entry.attributes.items() if k in wanted}
        )

    # -----------------------
    # DirectoryClient
    # -----------------------

    def connect(self, host: str) -> bool:
        if not self._record("connect", host):
            return False
        if self.hosts is not None and host not in self.hosts:
            return False
        self.connected = host
        return True

    def bind(self, dn: str, password: str) -> bool:
        if not self._record("bind", dn):
            return False
        if self.credentials.get(dn) != password:
            return False
        self.bound_as = dn
        return True

    def sasl_bind(self, identity: str, password: str, authz_id: str | None = None) -> bool:
        if not self._record("sasl_bind", identity, authz_id):
            return False
        if self.credentials.get(identity) != password:
            return False
        self.bound_as = identity
        return True

    def search(
        self,
        base: str,
        filterstr: str,
        scope: str = "sub",
        attributes: Any = None,
        options: dict[str, Any] | None = None,
        count_only: bool = False,
    ) -> SearchResult | int | None:
        if not self._record("search", base, filterstr, scope, attributes, options, count_only):
            return None
        self.vlv_active = False
        if filterstr in self.scripted:
            found = [
                self.entries[dn.lower()]
                for dn in self.scripted[filterstr]
                if dn.lower() in self.entries
            ]
        else:
            found = self._in_scope(base, scope)
        if count_only:
            return len(found)
        return SearchResult([self._project(e, attributes) for e in found])

    def read_entries(
        self, dn: str, filterstr: str = "(objectClass=*)", attributes: Any = None
    ) -> list[DirectoryEntry] | None:
        if not self._record("read_entries", dn, filterstr, attributes):
            return None
        return [self._project(e, attributes) for e in self._in_scope(dn, "base")]

    def list_entries(
        self, base: str, filterstr: str = "(objectClass=*)", attributes: Any = None
    ) -> list[DirectoryEntry] | None:
        if not self._record("list_entries", base, filterstr, attributes):
            return None
        return [self._project(e, attributes) for e in self._in_scope(base, "one")]

    def add(self, dn: str, attributes: AttributeMap) -> bool:
        if not self._record("add", dn, attributes) or dn.lower() in self.entries:
            return False
        self.register(dn, {k: [v for v in vs if v != ""] for k, vs in attributes.items()})
        return True

    def mod_add(self, dn: str, attributes: AttributeMap) -> bool:
        entry = self.entries.get(dn.lower())
        if not self._record("mod_add", dn, attributes) or entry is None:
            return False
        for name, values in attributes.items():
            entry.attributes.setdefault(name.lower(), []).extend(values)
        return True

    def mod_replace(self, dn: str, attributes: AttributeMap) -> bool:
        entry = self.entries.get(dn.lower())
        if not self._record("mod_replace", dn, attributes) or entry is None:
            return False
        for name, values in attributes.items():
            entry.attributes[name.lower()] = list(values)
        return True

    def mod_delete(self, dn: str, attributes: AttributeMap) -> bool:
        entry = self.entries.get(dn.lower())
        if not self._record("mod_delete", dn, attributes) or entry is None:
            return False
        for name, values in attributes.items():
            name = name.lower()  # noqa: PLW2901
            if not values:
                entry.attributes.pop(name, None)
                continue
            remove = {str(v).lower() for v in values}
            entry.attributes[name] = [
                v for v in entry.attributes.get(name, []) if str(v).lower() not in remove
            ]
        return True

    def rename(
        self,
        dn: str,
        new_rdn: str,
        new_parent: str | None = None,
        delete_old: bool = True,
    ) -> bool:
        key = dn.lower()
        if not self._record("rename", dn, new_rdn, new_parent, delete_old):
            return False
        if key not in self.entries or any(_parent(other) == key for other in self.entries):
            return False
        entry = self.entries.pop(key)
        parent = new_parent if new_parent is not None else ",".join(explode_dn(dn)[1:])
        new_dn = f"{new_rdn},{parent}"
        attr, _, value = new_rdn.partition("=")
        attributes = dict(entry.attributes)
        if delete_old:
            attributes[attr.lower()] = [value]
        self.register(new_dn, attributes)
        return True

    def delete(self, dn: str) -> bool:
        if not self._record("delete", dn):
            return False
        return self.entries.pop(dn.lower(), None) is not None

    def set_vlv_page(self, page: int, page_size: int) -> None:
        self.page = page
        self.page_size = page_size

    def close(self) -> None:
        self._record("close")
        self.connected = None
        self.bound_as = None
