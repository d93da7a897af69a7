"""
The per-source directory context.

A :py:class:`DirectoryContext` bundles everything built once per address
book source: its options, field catalog, codec, directory client and group
cache.  It is passed to the constructors of the resolver, paginator and
planner instead of living in module level singletons, and is discarded when
the source is reconfigured.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING

from .autovalues import Autovalues
from .cache import Cache, GroupCache, cache_for_source
from .client import LdapDirectoryClient
from .codec import RecordCodec
from .schema import FieldCatalog, SchemaMapper

if TYPE_CHECKING:
    from .client import DirectoryClient
    from .options import SourceOptions


@dataclass
class DirectoryContext:
    #: The source configuration
    options: "SourceOptions"
    #: The field catalog built from :py:attr:`options`
    catalog: FieldCatalog
    #: Entry to record conversion
    codec: RecordCodec
    #: The directory connection
    client: "DirectoryClient"
    #: The cached group listing
    group_cache: GroupCache
    #: Generated values for new contacts
    autovalues: Autovalues
    #: The base DN for contacts, after user specific substitution
    base_dn: str
    #: The base DN for groups, after user specific substitution
    groups_base_dn: str

    @classmethod
    def build(
        cls,
        options: "SourceOptions",
        client: "DirectoryClient | None" = None,
        cache: Cache | None = None,
        mail_domain: str | None = None,
    ) -> "DirectoryContext":
        """
        Build the context for ``options``.

        Args:
            options: the source configuration

        Keyword Args:
            client: the directory client; defaults to a new
                :py:class:`~ldapbook.client.LdapDirectoryClient`
            cache: the group cache storage; defaults to the cache configured by
                the ``cache`` and ``cache_ttl`` options
            mail_domain: the domain for bare email values; defaults to the
                ``mail_domain`` option

        Returns:
            The new context.

        """
        catalog = SchemaMapper(options).build()
        groups_base_dn = ""
        group_name_attr = "cn"
        if options.groups is not None:
            groups_base_dn = options.groups.base_dn or options.base_dn
            group_name_attr = options.groups.name_attr
        if cache is None:
            cache = cache_for_source(options.name, options.cache, options.cache_ttl)
        return cls(
            options=options,
            catalog=catalog,
            codec=RecordCodec(
                catalog,
                mail_domain=mail_domain or options.mail_domain,
                group_name_attr=group_name_attr,
            ),
            client=client if client is not None else LdapDirectoryClient(options),
            group_cache=GroupCache(cache),
            autovalues=Autovalues(options.autovalues),
            base_dn=options.base_dn,
            groups_base_dn=groups_base_dn or options.base_dn,
        )
