# mypy: disable-error-code="attr-defined"
"""
Directory access.

This module provides the :py:class:`DirectoryClient` protocol that the rest
of :py:mod:`ldapbook` talks to, its python-ldap implementation
:py:class:`LdapDirectoryClient`, the entry and result types it returns, and
the LDAP controls used for server side sorting and VLV windowing.
"""

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar, Protocol

from ldap import modlist, sasl
from ldap.controls import LDAPControl
from ldap.controls.vlv import VLVRequestControl, VLVResponseControl
from ldapurl import isLDAPUrl
from pyasn1.codec.ber import encoder  # type: ignore[import]
from pyasn1.type import namedtype, tag, univ  # type: ignore[import]

from ldapbook import ldap

from .capabilities import ServerCapabilities
from .typing import AttributeMap, AttributeValue, LDAPData, ModifyModList

if TYPE_CHECKING:
    from .options import SourceOptions

logger = logging.getLogger(__name__)

#: Search scope names to python-ldap scopes
SCOPES = {
    "sub": ldap.SCOPE_SUBTREE,
    "one": ldap.SCOPE_ONELEVEL,
    "list": ldap.SCOPE_ONELEVEL,
    "base": ldap.SCOPE_BASE,
}

#: The attribute list that requests no attributes at all
NO_ATTRIBUTES = ["1.1"]


# -----------------------
# Entries and results
# -----------------------


def decode_value(value: bytes) -> AttributeValue:
    """
    Decode a raw attribute value as UTF-8, keeping the bytes of binary
    values (e.g. ``jpegPhoto``) that are not valid UTF-8.
    """
    try:
        return value.decode("utf-8")
    except UnicodeDecodeError:
        return value


def encode_value(value: AttributeValue) -> bytes:
    return value if isinstance(value, bytes) else str(value).encode("utf-8")


@dataclass
class DirectoryEntry:
    """
    One directory entry: its DN and its attributes, keyed by lower-cased
    attribute name.
    """

    #: The distinguished name of the entry
    dn: str
    #: Lower-cased attribute name to its values
    attributes: AttributeMap = field(default_factory=dict)

    def __post_init__(self) -> None:
        attributes: AttributeMap = {}
        for name, values in self.attributes.items():
            attributes.setdefault(name.lower(), []).extend(values)
        self.attributes = attributes

    @classmethod
    def from_ldap(cls, data: LDAPData) -> "DirectoryEntry":
        """
        Build an entry from a python-ldap ``(dn, attrs)`` result tuple.
        """
        dn, attrs = data
        return cls(
            dn=dn,
            attributes={
                name: [decode_value(v) if isinstance(v, bytes) else v for v in values]
                for name, values in attrs.items()
            },
        )

    def get(self, attribute: str) -> list[AttributeValue]:
        return self.attributes.get(attribute.lower(), [])

    def first(self, attribute: str, default: Any = None) -> Any:
        values = self.get(attribute)
        return values[0] if values else default

    @property
    def objectclasses(self) -> list[str]:
        return [str(v) for v in self.get("objectclass")]


class SearchResult:
    """
    The entries found by :py:meth:`DirectoryClient.search`.

    Args:
        entries: the entries returned by the server

    Keyword Args:
        total: the size of the whole result set when the server windowed the
            result with VLV; ``None`` means ``entries`` is the whole set.

    """

    def __init__(self, entries: list[DirectoryEntry], total: int | None = None) -> None:
        self._entries = list(entries)
        self.total = total

    def count(self) -> int:
        """
        The size of the whole result set, which for windowed results is larger
        than the number of entries held.
        """
        return self.total if self.total is not None else len(self._entries)

    def entries(self) -> list[DirectoryEntry]:
        return list(self._entries)

    def sort(self, attribute: str) -> None:
        """
        Sort the entries case-insensitively by the first value of
        ``attribute``.
        """
        self._entries.sort(key=lambda e: str(e.first(attribute) or "").lower())

    def get_dn(self, index: int = 0) -> str | None:
        if index < len(self._entries):
            return self._entries[index].dn
        return None

    def __iter__(self) -> Iterator[DirectoryEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


class DirectoryClient(Protocol):
    """
    The directory operations :py:mod:`ldapbook` needs.  Failures are reported
    through the return value (``False`` or ``None``), never by raising.
    """

    #: ``True`` if the last search was windowed by the server
    vlv_active: bool

    def connect(self, host: str) -> bool: ...

    def bind(self, dn: str, password: str) -> bool: ...

    def sasl_bind(
        self, identity: str, password: str, authz_id: str | None = None
    ) -> bool: ...

    def search(
        self,
        base: str,
        filterstr: str,
        scope: str = "sub",
        attributes: list[str] | tuple[str, ...] | None = None,
        options: dict[str, Any] | None = None,
        count_only: bool = False,
    ) -> SearchResult | int | None: ...

    def read_entries(
        self,
        dn: str,
        filterstr: str = "(objectClass=*)",
        attributes: list[str] | tuple[str, ...] | None = None,
    ) -> list[DirectoryEntry] | None: ...

    def list_entries(
        self,
        base: str,
        filterstr: str = "(objectClass=*)",
        attributes: list[str] | tuple[str, ...] | None = None,
    ) -> list[DirectoryEntry] | None: ...

    def add(self, dn: str, attributes: AttributeMap) -> bool: ...

    def mod_add(self, dn: str, attributes: AttributeMap) -> bool: ...

    def mod_replace(self, dn: str, attributes: AttributeMap) -> bool: ...

    def mod_delete(self, dn: str, attributes: AttributeMap) -> bool: ...

    def rename(
        self,
        dn: str,
        new_rdn: str,
        new_parent: str | None = None,
        delete_old: bool = True,
    ) -> bool: ...

    def delete(self, dn: str) -> bool: ...

    def set_vlv_page(self, page: int, page_size: int) -> None: ...

    def close(self) -> None: ...


# -----------------------
# LDAP Controls
# -----------------------


# SortKey definition
class SortKey(univ.Sequence):
    """
    SortKey is a sequence of attributeType, orderingRule, and reverseOrder.

    See RFC 2891 for more details.
    """

    componentType: ClassVar[namedtype.NamedTypes] = namedtype.NamedTypes(  # noqa: N815
        namedtype.NamedType("attributeType", univ.OctetString()),
        namedtype.OptionalNamedType(
            "orderingRule",
            univ.OctetString().subtype(
                explicitTag=tag.Tag(tag.tagClassContext, tag.tagFormatSimple, 0)
            ),
        ),
        namedtype.DefaultedNamedType(
            "reverseOrder",
            univ.Boolean(False).subtype(  # noqa: FBT003
                explicitTag=tag.Tag(tag.tagClassContext, tag.tagFormatSimple, 1)
            ),
        ),
    )


class SortKeyList(univ.SequenceOf):
    """
    A sequence of SortKeys, the value of the Server-Side Sort control.
    """

    componentType: ClassVar[SortKey] = SortKey()  # noqa: N815


def build_sort_control_value(sort_fields: list[str]) -> bytes:
    """
    Build the BER-encoded control value for server-side sorting.

    Args:
        sort_fields: attribute names to sort by; a leading ``-`` sorts
            descending.

    Returns:
        BER-encoded control value.

    """
    if not sort_fields:
        return b""
    sort_key_list = SortKeyList()
    for sort_field in sort_fields:
        descending = sort_field.startswith("-")
        attr_name = sort_field[1:] if descending else sort_field
        sort_key = SortKey()
        sort_key.setComponentByName(
            "attributeType", univ.OctetString(attr_name.encode("utf-8"))
        )
        if descending:
            sort_key.setComponentByName(
                "reverseOrder",
                univ.Boolean(True).subtype(  # noqa: FBT003
                    explicitTag=tag.Tag(tag.tagClassContext, tag.tagFormatSimple, 1)
                ),
            )
        sort_key_list.append(sort_key)
    return encoder.encode(sort_key_list)


class ServerSideSortControl(LDAPControl):
    """
    LDAP Control Extension for Server-Side Sorting (RFC 2891).  VLV requests
    must carry one.
    """

    control_type = ServerCapabilities.SORTING_OID

    def __init__(
        self,
        criticality: bool = False,
        sort_key_list: list[str] | None = None,
    ) -> None:
        control_value = build_sort_control_value(sort_key_list or [])
        super().__init__(self.control_type, criticality, control_value)


# -----------------------
# python-ldap client
# -----------------------


class LdapDirectoryClient:
    """
    A :py:class:`DirectoryClient` talking to a real directory server through
    python-ldap.

    Every ``ldap.LDAPError`` is logged and turned into a ``False``/``None``
    return value.

    Args:
        options: the source configuration

    """

    def __init__(self, options: "SourceOptions") -> None:
        self.options = options
        #: The python-ldap connection, once :py:meth:`connect` succeeded
        self.connection: Any = None
        #: The URL of the connected server
        self.url: str | None = None
        self.vlv_active: bool = False
        self.vlv_page: int = 1
        self.vlv_page_size: int = 0

    def _connect(self, url: str) -> Any:
        """
        Create a new python-ldap connection object for ``url`` with our
        connection options set, and issue StartTLS if configured.

        Raises:
            ValueError: the ``tls_verify`` option is invalid
            ldap.LDAPError: StartTLS failed

        """
        ldap_object = ldap.initialize(url)
        if self.options.referrals:
            ldap_object.set_option(ldap.OPT_REFERRALS, 1)
        else:
            ldap_object.set_option(ldap.OPT_REFERRALS, 0)
        ldap_object.set_option(
            ldap.OPT_NETWORK_TIMEOUT, float(self.options.network_timeout)
        )
        ldap_object.set_option(ldap.OPT_PROTOCOL_VERSION, int(self.options.ldap_version))
        if self.options.sizelimit:
            ldap_object.set_option(ldap.OPT_SIZELIMIT, int(self.options.sizelimit))
        if self.options.timelimit:
            ldap_object.set_option(ldap.OPT_TIMELIMIT, int(self.options.timelimit))
        tls_verify = self.options.tls_verify
        if tls_verify == "never":
            ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_NEVER)
        elif tls_verify == "always":
            ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_DEMAND)
        else:
            msg = f"Invalid tls_verify value: {tls_verify}"
            raise ValueError(msg)
        ldap_object.set_option(ldap.OPT_X_TLS_NEWCTX, 0)
        if self.options.use_tls:
            ldap_object.start_tls_s()
        return ldap_object

    def connect(self, host: str) -> bool:
        """
        Connect to ``host``: an LDAP URL, or a host name to combine with the
        configured port.

        Returns:
            ``True`` on success.

        """
        url = host if isLDAPUrl(host) else f"ldap://{host}:{self.options.port}"
        self.close()
        try:
            self.connection = self._connect(url)
        except ldap.LDAPError as e:
            logger.warning("ldapbook.client.connect.failed url=%s error=%s", url, e)
            self.connection = None
            return False
        self.url = url
        logger.info("ldapbook.client.connect url=%s", url)
        return True

    def bind(self, dn: str, password: str) -> bool:
        if self.connection is None:
            return False
        try:
            self.connection.simple_bind_s(dn, password)
        except ldap.LDAPError as e:
            logger.warning("ldapbook.client.bind.failed dn=%s error=%s", dn, e)
            return False
        logger.info("ldapbook.client.bind dn=%s", dn)
        return True

    def sasl_bind(
        self, identity: str, password: str, authz_id: str | None = None
    ) -> bool:
        if self.connection is None:
            return False
        auth = sasl.sasl(
            {
                sasl.CB_AUTHNAME: identity,
                sasl.CB_PASS: password,
                sasl.CB_USER: authz_id or "",
            },
            self.options.auth_method,
        )
        try:
            self.connection.sasl_interactive_bind_s("", auth)
        except ldap.LDAPError as e:
            logger.warning(
                "ldapbook.client.sasl-bind.failed identity=%s mechanism=%s error=%s",
                identity,
                self.options.auth_method,
                e,
            )
            return False
        logger.info("ldapbook.client.sasl-bind identity=%s", identity)
        return True

    def _supports_vlv(self) -> bool:
        supported = ServerCapabilities.supports(
            self.connection, ServerCapabilities.VLV_OID, self.url or ""
        )
        if not supported:
            logger.debug("ldapbook.client.vlv.unsupported url=%s", self.url)
        return supported

    def search(
        self,
        base: str,
        filterstr: str,
        scope: str = "sub",
        attributes: list[str] | tuple[str, ...] | None = None,
        options: dict[str, Any] | None = None,
        count_only: bool = False,
    ) -> SearchResult | int | None:
        """
        Search the directory.

        Args:
            base: the DN to search from
            filterstr: the LDAP filter
            scope: ``sub``, ``one`` (or ``list``) or ``base``

        Keyword Args:
            attributes: the attributes to fetch; ``None`` for all
            options: ``sort`` (attributes), ``vlv`` (window the result with
                VLV) and ``vlv_page`` (a ``(page, page_size)`` tuple overriding
                :py:meth:`set_vlv_page`)
            count_only: return only the number of matching entries

        Returns:
            A :py:class:`SearchResult`, the count when ``count_only`` is set,
            or ``None`` if the search failed.

        """
        if self.connection is None:
            return None
        options = options or {}
        scope_value = SCOPES.get(scope, ldap.SCOPE_SUBTREE)
        attrlist = NO_ATTRIBUTES if count_only else (list(attributes) if attributes else None)
        page, page_size = options.get("vlv_page") or (self.vlv_page, self.vlv_page_size)
        sort = list(options.get("sort") or [])
        self.vlv_active = False
        total: int | None = None
        try:
            if (
                options.get("vlv")
                and sort
                and (page_size or count_only)
                and scope_value != ldap.SCOPE_BASE
                and self._supports_vlv()
            ):
                if count_only:
                    page, page_size = 1, 1
                data, total = self._vlv_search(
                    base, scope_value, filterstr, attrlist, sort, page, page_size
                )
                self.vlv_active = True
            else:
                data = self.connection.search_s(
                    base, scope_value, filterstr=filterstr, attrlist=attrlist
                )
        except ldap.NO_SUCH_OBJECT:
            data = []
        except ldap.LDAPError as e:
            logger.warning(
                "ldapbook.client.search.failed base=%s filter=%s error=%s",
                base,
                filterstr,
                e,
            )
            return None
        # Filter out the references AD puts in
        entries = [DirectoryEntry.from_ldap(d) for d in data if isinstance(d[1], dict)]
        logger.debug(
            "ldapbook.client.search base=%s filter=%s scope=%s count=%d vlv=%s",
            base,
            filterstr,
            scope,
            len(entries),
            self.vlv_active,
        )
        if count_only:
            return total if total is not None else len(entries)
        return SearchResult(entries, total=total)

    def _vlv_search(
        self,
        base: str,
        scope: int,
        filterstr: str,
        attrlist: list[str] | None,
        sort: list[str],
        page: int,
        page_size: int,
    ) -> tuple[list[LDAPData], int | None]:
        controls = [
            ServerSideSortControl(criticality=True, sort_key_list=sort),
            VLVRequestControl(
                criticality=True,
                before_count=0,
                after_count=page_size - 1,
                offset=(page - 1) * page_size + 1,
                content_count=0,
            ),
        ]
        msgid = self.connection.search_ext(
            base, scope, filterstr, attrlist, serverctrls=controls
        )
        _, rdata, _, serverctrls = self.connection.result3(msgid)
        total = None
        for control in serverctrls or []:
            if control.controlType == VLVResponseControl.controlType:
                total = control.content_count
        return list(rdata), total

    def read_entries(
        self,
        dn: str,
        filterstr: str = "(objectClass=*)",
        attributes: list[str] | tuple[str, ...] | None = None,
    ) -> list[DirectoryEntry] | None:
        result = self.search(dn, filterstr, "base", attributes)
        return result.entries() if isinstance(result, SearchResult) else None

    def list_entries(
        self,
        base: str,
        filterstr: str = "(objectClass=*)",
        attributes: list[str] | tuple[str, ...] | None = None,
    ) -> list[DirectoryEntry] | None:
        result = self.search(base, filterstr, "one", attributes)
        return result.entries() if isinstance(result, SearchResult) else None

    def _write(self, operation: str, dn: str, method: str, *args: Any) -> bool:
        if self.connection is None:
            return False
        try:
            getattr(self.connection, method)(dn, *args)
        except ldap.LDAPError as e:
            logger.warning(
                "ldapbook.client.%s.failed dn=%s error=%s", operation, dn, e
            )
            return False
        logger.info("ldapbook.client.%s dn=%s", operation, dn)
        return True

    @staticmethod
    def _modlist(op: int, attributes: AttributeMap) -> ModifyModList:
        return [
            (op, name, [encode_value(v) for v in values] if values else None)
            for name, values in attributes.items()
        ]

    def add(self, dn: str, attributes: AttributeMap) -> bool:
        _modlist = modlist.addModlist(
            {
                name: [encode_value(v) for v in values]
                for name, values in attributes.items()
                if values
            }
        )
        return self._write("add", dn, "add_s", _modlist)

    def mod_add(self, dn: str, attributes: AttributeMap) -> bool:
        return self._write(
            "mod-add",
            dn,
            "modify_s",
            self._modlist(ldap.MOD_ADD, attributes),
        )

    def mod_replace(self, dn: str, attributes: AttributeMap) -> bool:
        return self._write(
            "mod-replace",
            dn,
            "modify_s",
            self._modlist(ldap.MOD_REPLACE, attributes),
        )

    def mod_delete(self, dn: str, attributes: AttributeMap) -> bool:
        return self._write(
            "mod-delete",
            dn,
            "modify_s",
            self._modlist(ldap.MOD_DELETE, attributes),
        )

    def rename(
        self,
        dn: str,
        new_rdn: str,
        new_parent: str | None = None,
        delete_old: bool = True,
    ) -> bool:
        return self._write(
            "rename",
            dn,
            "rename_s",
            new_rdn,
            new_parent,
            int(delete_old),
        )

    def delete(self, dn: str) -> bool:
        return self._write("delete", dn, "delete_s")

    def set_vlv_page(self, page: int, page_size: int) -> None:
        self.vlv_page = page
        self.vlv_page_size = page_size

    def close(self) -> None:
        if self.connection is not None:
            try:
                self.connection.unbind_s()
            except ldap.LDAPError as e:
                logger.debug("ldapbook.client.close.failed url=%s error=%s", self.url, e)
            self.connection = None
            logger.debug("ldapbook.client.close url=%s", self.url)
