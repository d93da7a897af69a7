"""
Address book source options.

This module provides the :py:class:`SourceOptions` class, which holds the
configuration for one directory-backed address book, as read from the
``LDAP_ADDRESSBOOKS`` Django setting.
"""

import logging
import re
from typing import Any

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

logger = logging.getLogger(__name__)

#: The keys allowed in a source configuration.
DEFAULT_NAMES = (
    "name",
    "hosts",
    "port",
    "use_tls",
    "ldap_version",
    "network_timeout",
    "timelimit",
    "sizelimit",
    "referrals",
    "tls_verify",
    "base_dn",
    "bind_dn",
    "bind_pass",
    "bind_user",
    "auth_cid",
    "auth_method",
    "user_specific",
    "search_base_dn",
    "search_filter",
    "search_bind_dn",
    "search_bind_pw",
    "search_dn_default",
    "writable",
    "searchonly",
    "object_classes",
    "rdn",
    "required_fields",
    "autovalues",
    "sub_fields",
    "fieldmap",
    "search_fields",
    "list_fields",
    "filter",
    "scope",
    "sort",
    "fuzzy_search",
    "vlv",
    "groups",
    "group_filters",
    "member_attr",
    "mail_domain",
    "cache",
    "cache_ttl",
)

#: Legacy spellings of some keys.
ALIASES = {
    "LDAP_rdn": "rdn",
    "LDAP_Object_Classes": "object_classes",
}

#: Deprecated ``<field>_field`` keys, used when no ``fieldmap`` is configured.
DEPRECATED_FIELD_KEY = re.compile(r"^(.+)_field$")


def as_list(value: Any) -> list[Any]:
    """
    Coerce a configuration value into a list: ``None`` becomes ``[]``, a
    scalar becomes a one element list.
    """
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


class GroupOptions:
    """
    Contact group configuration for an address book source, built from the
    ``groups`` key of the source configuration.

    Args:
        config: the ``groups`` dictionary

    """

    DEFAULT_NAMES = (
        "base_dn",
        "filter",
        "scope",
        "name_attr",
        "email_attr",
        "sort",
        "member_attr",
        "member_filter",
        "object_classes",
        "vlv",
    )

    def __init__(self, config: dict[str, Any]) -> None:
        #: Where to look for groups.  Defaults to the source ``base_dn``.
        self.base_dn: str | None = None
        #: The filter that selects group entries
        self.filter: str | None = None
        #: The search scope for group listings: ``sub``, ``one`` or ``base``
        self.scope: str = "sub"
        #: The attribute holding the group display name
        self.name_attr: str = "cn"
        #: The attribute holding group email addresses
        self.email_attr: str = "mail"
        #: The attributes to sort the group listing by.  Defaults to
        #: :py:attr:`name_attr`.
        self.sort: list[str] = []
        #: The member attribute used when the object classes of a group do not
        #: tell us which one to use
        self.member_attr: str | None = None
        #: The filter applied when reading member entries
        self.member_filter: str = "(objectClass=*)"
        #: The object classes for newly created groups
        self.object_classes: list[str] = ["top", "groupOfNames"]
        #: List groups with server side VLV windowing
        self.vlv: bool = False

        for key, value in config.items():
            if key not in self.DEFAULT_NAMES:
                logger.warning("ldapbook.options.groups.unknown-key key=%s", key)
                continue
            setattr(self, key, value)
        self.sort = as_list(self.sort)
        self.object_classes = as_list(self.object_classes)
        if self.member_attr:
            self.member_attr = self.member_attr.lower()
        if not self.name_attr:
            self.name_attr = "cn"
        if not self.scope:
            self.scope = "sub"

    @property
    def sort_attrs(self) -> list[str]:
        """
        The attributes to sort the group listing by.
        """
        return self.sort or [self.name_attr]


class SourceOptions:
    """
    Configuration for one directory-backed address book.

    Unknown keys are logged and ignored.  When no ``fieldmap`` is given,
    deprecated ``<field>_field`` keys (e.g. ``email_field: "mail"``) are
    turned into fieldmap entries.

    Args:
        config: the source configuration dictionary

    Keyword Args:
        name: the name of the source, used when ``config`` has no ``name``

    """

    def __init__(self, config: dict[str, Any], name: str | None = None) -> None:
        #: A human readable name for this source
        self.name: str = name or ""
        #: The hosts to try, in order.  Each is a host name or an LDAP URL.
        self.hosts: list[str] = []
        #: The port to use for hosts that are not LDAP URLs
        self.port: int = 389
        #: Issue a StartTLS after connecting
        self.use_tls: bool = False
        #: The LDAP protocol version
        self.ldap_version: int = 3
        #: The network timeout in seconds
        self.network_timeout: float = 15.0
        #: The server side time limit for searches, in seconds.  ``0`` means none.
        self.timelimit: int = 0
        #: The maximum number of entries to return, and the member count at
        #: which group resolution stops.  ``0`` means no limit.
        self.sizelimit: int = 0
        #: Follow referrals
        self.referrals: bool = False
        #: Certificate checking: ``never`` or ``always``
        self.tls_verify: str = "never"
        #: The base DN for contacts
        self.base_dn: str = ""
        #: The DN to bind as.  May contain ``%u``-style placeholders when
        #: :py:attr:`user_specific` is set.
        self.bind_dn: str = ""
        #: The password to bind with
        self.bind_pass: str = ""
        #: The SASL authorization identity
        self.bind_user: str = ""
        #: The SASL authentication identity
        self.auth_cid: str = ""
        #: The SASL mechanism
        self.auth_method: str = "DIGEST-MD5"
        #: Bind as the current user, substituting ``%u``, ``%d``, ``%fu``,
        #: ``%dc`` and ``%dn`` into the bind and base DNs
        self.user_specific: bool = False
        #: Where to search for the DN of the current user
        self.search_base_dn: str = ""
        #: The filter that finds the DN of the current user
        self.search_filter: str = ""
        #: The DN to bind as for the user DN search
        self.search_bind_dn: str = ""
        #: The password for :py:attr:`search_bind_dn`
        self.search_bind_pw: str = ""
        #: The ``%dn`` value to use when the user DN search finds nothing
        self.search_dn_default: str = ""
        #: Allow changes to this source
        self.writable: bool = False
        #: Do not list the whole directory; only list search results and groups
        self.searchonly: bool = False
        #: The object classes for new contact entries
        self.object_classes: list[str] = ["top", "inetOrgPerson"]
        #: The attribute used as the RDN of new contact entries
        self.rdn: str | None = None
        #: Attributes that must be present on contact entries
        self.required_fields: list[str] = []
        #: Attribute name to template for values generated on insert
        self.autovalues: dict[str, str] = {}
        #: Attributes stored in child entries, mapped to the object class(es)
        #: of the child entry
        self.sub_fields: dict[str, str | list[str]] = {}
        #: Logical field name to ``attribute[:limit[:delimiter]]``
        self.fieldmap: dict[str, str] = {}
        #: Attributes searched by full-text (``*``) searches
        self.search_fields: list[str] = []
        #: Logical fields shown in contact listings
        self.list_fields: list[str] = ["name", "firstname", "surname", "email"]
        #: The filter selecting contact entries
        self.filter: str = "(objectClass=*)"
        #: The search scope for contact listings: ``sub``, ``one`` or ``base``
        self.scope: str = "sub"
        #: The attributes to sort contact listings by
        self.sort: list[str] = []
        #: Use wildcards for partial and prefix searches
        self.fuzzy_search: bool = True
        #: Use server side VLV windowing for contact listings
        self.vlv: bool = False
        #: The contact group configuration, or ``None`` for no groups
        self.groups: GroupOptions | None = None
        #: Group id to ``{"name", "base_dn", "filter", "scope"}`` for groups
        #: synthesized from configuration
        self.group_filters: dict[str, dict[str, Any]] = {}
        #: The member attribute for groups
        self.member_attr: str = "member"
        #: The domain appended to email values that have none
        self.mail_domain: str | None = None
        #: ``memory`` for a process local cache, otherwise a Django cache alias
        self.cache: str = "default"
        #: How long to cache the group listing, e.g. ``10m`` or ``3600``
        self.cache_ttl: str | int = "10m"

        fieldmap_given = "fieldmap" in config
        for key, value in config.items():
            key = ALIASES.get(key, key)  # noqa: PLW2901
            if key in DEFAULT_NAMES:
                setattr(self, key, value)
                continue
            if not fieldmap_given and (match := DEPRECATED_FIELD_KEY.match(key)):
                self.fieldmap[match.group(1)] = value
                continue
            logger.warning(
                "ldapbook.options.unknown-key source=%s key=%s", self.name, key
            )
        self._normalize()

    def _normalize(self) -> None:
        self.hosts = as_list(self.hosts)
        self.object_classes = as_list(self.object_classes)
        self.required_fields = as_list(self.required_fields)
        self.search_fields = as_list(self.search_fields)
        self.list_fields = as_list(self.list_fields)
        self.sort = as_list(self.sort)
        self.autovalues = dict(self.autovalues or {})
        self.sub_fields = dict(self.sub_fields or {})
        self.fieldmap = dict(self.fieldmap or {})
        self.group_filters = dict(self.group_filters or {})
        if isinstance(self.groups, dict):
            self.groups = GroupOptions(self.groups) if self.groups else None
        if self.groups is not None and self.groups.member_attr:
            self.member_attr = self.groups.member_attr
        self.member_attr = (self.member_attr or "member").lower()
        self.sizelimit = int(self.sizelimit or 0)
        self.timelimit = int(self.timelimit or 0)

    @classmethod
    def from_settings(cls, name: str) -> "SourceOptions":
        """
        Build the options for the source ``name`` from
        ``settings.LDAP_ADDRESSBOOKS``.

        Args:
            name: the key into ``settings.LDAP_ADDRESSBOOKS``

        Raises:
            ImproperlyConfigured: the setting or the key does not exist

        Returns:
            The options for the source.

        """
        try:
            config = settings.LDAP_ADDRESSBOOKS[name]
        except AttributeError as e:
            msg = "settings.LDAP_ADDRESSBOOKS does not exist!"
            raise ImproperlyConfigured(msg) from e
        except KeyError as e:
            msg = f"settings.LDAP_ADDRESSBOOKS has no key '{name}'"
            raise ImproperlyConfigured(msg) from e
        config = dict(config)
        config.setdefault("name", name)
        return cls(config, name=name)

    @property
    def groups_enabled(self) -> bool:
        """
        ``True`` if either group configuration or group filters are set.
        """
        return self.groups is not None or bool(self.group_filters)

    @property
    def sort_col(self) -> str | None:
        """
        The attribute contact listings are sorted by.
        """
        return self.sort[0] if self.sort else None

    def __repr__(self) -> str:
        return f"<SourceOptions: {self.name}>"
