"""
Contact groups.

:py:class:`GroupResolver` lists the groups of a source, resolves their
(possibly nested) members, and creates, renames and deletes groups and
memberships.  How the members of a group entry are found depends on its
object classes; each way is a :py:class:`GroupVariant`.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar

from ldap.dn import escape_dn_chars, explode_dn
from ldap_filter import Filter
from ldapurl import LDAPUrl

from ldapbook import ldap

from .client import DirectoryEntry, SearchResult
from .codec import is_group_entry
from .encoding import dn_decode, dn_encode, split_ids
from .exceptions import SaveError
from .filters import MatchMode, matches

if TYPE_CHECKING:
    from .context import DirectoryContext
    from .options import GroupOptions

logger = logging.getLogger(__name__)

#: Rows per page when listing groups with VLV
GROUP_PAGE_SIZE = 200

#: The id of the virtual group listing everything the ``groups.filter``
#: matches, when ``group_filters`` are configured
VIRTUAL_GROUPS_ID = "__groups__"

#: Attributes read from group entries to find their members
MEMBER_ATTRIBUTES = ("objectclass", "member", "uniquemember", "memberurl")

#: LDAP URL scopes to search scope names
URL_SCOPES = {
    ldap.SCOPE_BASE: "base",
    ldap.SCOPE_ONELEVEL: "one",
    ldap.SCOPE_SUBTREE: "sub",
}


def parenthesize(filterstr: str) -> str:
    return filterstr if filterstr.startswith("(") else f"({filterstr})"


def parent_dn(dn: str) -> str:
    """
    Return the DN of the parent of ``dn``.
    """
    return ",".join(explode_dn(dn)[1:])


@dataclass
class GroupRecord:
    """
    The summary of one contact group, as kept in the group cache.
    """

    #: The group identifier: the encoded DN, or the configured id of a virtual
    #: group
    id: str
    #: The display name
    name: str | None = None
    #: The DN of the group entry; ``None`` for virtual groups
    dn: str | None = None
    #: The attribute holding the members
    member_attr: str | None = None
    #: The :py:attr:`GroupVariant.name` of the group
    variant: str | None = None
    #: The email addresses of the group
    emails: list[str] = field(default_factory=list)
    #: ``True`` for groups synthesized from ``group_filters``
    virtual: bool = False
    #: Where virtual group members are searched
    base_dn: str | None = None
    #: The filter selecting virtual group members
    filter: str | None = None
    #: The scope of the virtual group member search
    scope: str = "sub"

    def summary(self) -> dict[str, Any]:
        """
        The group as shown to the application, without directory internals.
        """
        return {
            "id": self.id,
            "name": self.name,
            "email": list(self.emails),
            "virtual": self.virtual,
        }


@dataclass
class ResolutionState:
    """
    The members accumulated while resolving one group, and the DNs already
    visited.
    """

    #: Stop once more than this many members were found; ``0`` for no limit
    size_limit: int = 0
    #: Lower-cased DNs already visited
    seen: set[str] = field(default_factory=set)
    #: The members found so far
    members: list[DirectoryEntry] = field(default_factory=list)

    def visit(self, dn: str) -> bool:
        """
        Mark ``dn`` as visited.  Returns ``False`` if it was visited before.
        """
        key = dn.lower()
        if key in self.seen:
            return False
        self.seen.add(key)
        return True

    @property
    def exhausted(self) -> bool:
        return bool(self.size_limit) and len(self.members) > self.size_limit


class GroupVariant:
    """
    How the members of one kind of group entry are found.
    """

    #: The variant name stored in :py:attr:`GroupRecord.variant`
    name: ClassVar[str] = ""
    #: The attribute holding the members
    member_attr: ClassVar[str] = ""
    #: The lower-cased object classes of this variant
    object_classes: ClassVar[frozenset[str]] = frozenset()

    def collect(
        self,
        resolver: "GroupResolver",
        entry: DirectoryEntry,
        state: ResolutionState,
        count_only: bool,
        search_filter: str | None,
    ) -> None:
        raise NotImplementedError


class StaticGroup(GroupVariant):
    """
    Members are listed by DN in the ``member`` attribute.  Every member entry
    is read, and members that are groups themselves are resolved too.
    """

    name = "static"
    member_attr = "member"
    object_classes = frozenset({"group", "groupofnames", "kolabgroupofnames"})

    def collect(
        self,
        resolver: "GroupResolver",
        entry: DirectoryEntry,
        state: ResolutionState,
        count_only: bool,
        search_filter: str | None,
    ) -> None:
        for member_dn in entry.get(self.member_attr):
            if not member_dn or not state.visit(str(member_dn)):
                continue
            members = resolver.read_member(str(member_dn), count_only)
            state.members.extend(members)
            if state.exhausted:
                return
            resolver.resolve(members, state, count_only, search_filter)
            if state.exhausted:
                return


class UniqueMemberGroup(StaticGroup):
    """
    Like :py:class:`StaticGroup`, with members in ``uniqueMember``.
    """

    name = "unique"
    member_attr = "uniquemember"
    object_classes = frozenset({"groupofuniquenames", "kolabgroupofuniquenames"})


class DynamicGroup(GroupVariant):
    """
    Members are the results of the LDAP URLs in ``memberURL``, restricted by
    the active search filter.
    """

    name = "dynamic"
    member_attr = "memberurl"
    object_classes = frozenset({"groupofurls"})

    def collect(
        self,
        resolver: "GroupResolver",
        entry: DirectoryEntry,
        state: ResolutionState,
        count_only: bool,
        search_filter: str | None,
    ) -> None:
        attributes = resolver.member_attributes(count_only)
        for url in entry.get(self.member_attr):
            try:
                parsed = LDAPUrl(str(url))
            except ValueError as e:
                logger.warning(
                    "ldapbook.groups.bad-member-url dn=%s url=%s error=%s",
                    entry.dn,
                    url,
                    e,
                )
                continue
            filterstr = parenthesize(parsed.filterstr or "(objectClass=*)")
            if search_filter:
                filterstr = f"(&{filterstr}{parenthesize(search_filter)})"
            result = resolver.client.search(
                parsed.dn or "",
                filterstr,
                URL_SCOPES.get(parsed.scope, "base"),
                attributes,
            )
            if not isinstance(result, SearchResult):
                continue
            for found in result:
                if not state.visit(found.dn):
                    continue
                before = len(state.members)
                if is_group_entry(found.objectclasses):
                    resolver.resolve([found], state, count_only, search_filter)
                if len(state.members) == before:
                    state.members.append(found)
                if state.exhausted:
                    return


#: The group variants, in dispatch order
VARIANTS: tuple[GroupVariant, ...] = (StaticGroup(), UniqueMemberGroup(), DynamicGroup())


def variants_for(object_classes: list[str]) -> list[GroupVariant]:
    """
    Return the variants matching ``object_classes``, in the order the object
    classes are listed.
    """
    found: list[GroupVariant] = []
    for oc in object_classes:
        for variant in VARIANTS:
            if oc.lower() in variant.object_classes and variant not in found:
                found.append(variant)
    return found


class GroupResolver:
    """
    List, resolve and change the contact groups of a source.

    Args:
        context: the directory context of the source

    """

    def __init__(self, context: "DirectoryContext") -> None:
        self.context = context
        self.options = context.options
        self.client = context.client
        self.cache = context.group_cache

    @property
    def group_options(self) -> "GroupOptions | None":
        return self.options.groups

    # -----------------------
    # Members
    # -----------------------

    def member_attributes(self, count_only: bool = False) -> list[str]:
        """
        The attributes to read from member entries.
        """
        attributes = (
            ["objectclass"] if count_only else list(self.context.catalog.list_attributes)
        )
        return list(dict.fromkeys([*attributes, *MEMBER_ATTRIBUTES]))

    def read_member(self, dn: str, count_only: bool = False) -> list[DirectoryEntry]:
        filterstr = (
            self.group_options.member_filter if self.group_options else "(objectClass=*)"
        )
        return (
            self.client.read_entries(dn, filterstr, self.member_attributes(count_only))
            or []
        )

    def resolve(
        self,
        entries: list[DirectoryEntry],
        state: ResolutionState,
        count_only: bool = False,
        search_filter: str | None = None,
    ) -> None:
        """
        Add the members of every group in ``entries`` to ``state``.
        """
        for entry in entries:
            for variant in variants_for(entry.objectclasses):
                variant.collect(self, entry, state, count_only, search_filter)
                if state.exhausted:
                    return

    def list_members(
        self,
        dn: str,
        count_only: bool = False,
        search_filter: str | None = None,
    ) -> list[DirectoryEntry]:
        """
        Return all members of the group ``dn``, including the members of
        nested groups.

        Every entry is returned at most once, and cycles between groups are
        followed only once.  Resolution stops early once more than
        ``sizelimit`` members were found.

        Args:
            dn: the DN of the group entry

        Keyword Args:
            count_only: read only the object classes of members
            search_filter: restricts the members of dynamic groups

        Returns:
            The member entries.

        """
        state = ResolutionState(size_limit=self.options.sizelimit)
        state.visit(dn)
        entries = self.client.read_entries(dn, "(objectClass=*)", list(MEMBER_ATTRIBUTES))
        if entries is None:
            logger.warning("ldapbook.groups.read.failed dn=%s", dn)
            return []
        self.resolve(entries, state, count_only, search_filter)
        logger.debug(
            "ldapbook.groups.members dn=%s count=%d truncated=%s",
            dn,
            len(state.members),
            state.exhausted,
        )
        return state.members

    # -----------------------
    # Listing
    # -----------------------

    def _cached_groups(self) -> dict[str, GroupRecord | None]:
        groups = self.cache.get()
        if groups is None:
            groups = self.fetch_groups()
        return groups

    def list_groups(
        self, search: str | None = None, mode: MatchMode = MatchMode.PARTIAL
    ) -> list[GroupRecord]:
        """
        List the groups of this source, optionally only those whose name
        matches ``search``.

        Args:
            search: the name to search for

        Keyword Args:
            mode: how to match ``search``

        Returns:
            The groups, sorted by name.

        """
        if not self.options.groups_enabled:
            return []
        self.cache.expunge()
        groups = [g for g in self._cached_groups().values() if g is not None]
        if search:
            groups = [g for g in groups if matches(g.name or "", search, mode)]
        return groups

    def fetch_groups(self) -> dict[str, GroupRecord | None]:
        """
        Read the group listing from the directory (or from ``group_filters``)
        and cache it.

        Returns:
            Group id to group record.

        """
        if self.options.group_filters:
            groups = self._virtual_groups()
            self.cache.set(groups)
            return groups
        gopts = self.group_options
        if gopts is None:
            return {}
        name_attr = gopts.name_attr.lower()
        email_attr = (gopts.email_attr or "mail").lower()
        sort_attr = gopts.sort_attrs[0].lower()
        attributes = list(dict.fromkeys(["objectclass", name_attr, email_attr, sort_attr]))
        groups: dict[str, GroupRecord | None] = {}
        sortnames: dict[str, str] = {}
        page = 0
        windowed = False
        while True:
            options: dict[str, Any] = {"sort": gopts.sort_attrs}
            if gopts.vlv:
                options.update(vlv=True, vlv_page=(page + 1, GROUP_PAGE_SIZE))
            result = self.client.search(
                self.context.groups_base_dn,
                gopts.filter or "(objectClass=*)",
                gopts.scope,
                attributes,
                options,
            )
            if not isinstance(result, SearchResult):
                if page == 0:
                    logger.warning(
                        "ldapbook.groups.fetch.failed base=%s",
                        self.context.groups_base_dn,
                    )
                    return {}
                break
            for entry in result:
                record = self._group_record(entry)
                groups[record.id] = record
                sortnames[record.id] = str(entry.first(sort_attr) or "").lower()
            windowed = gopts.vlv and self.client.vlv_active
            if not windowed or len(result) < GROUP_PAGE_SIZE:
                break
            page += 1
        if not windowed:
            groups = dict(sorted(groups.items(), key=lambda item: sortnames[item[0]]))
        self.cache.set(groups)
        logger.info(
            "ldapbook.groups.fetch base=%s count=%d vlv=%s",
            self.context.groups_base_dn,
            len(groups),
            windowed,
        )
        return groups

    def _virtual_groups(self) -> dict[str, GroupRecord | None]:
        groups: dict[str, GroupRecord | None] = {}
        gopts = self.group_options
        if gopts is not None and gopts.filter:
            groups[VIRTUAL_GROUPS_ID] = GroupRecord(
                id=VIRTUAL_GROUPS_ID,
                name="Groups",
                virtual=True,
                base_dn=self.context.groups_base_dn,
                filter=gopts.filter,
                scope=gopts.scope,
            )
        for group_id, prop in self.options.group_filters.items():
            groups[group_id] = GroupRecord(
                id=group_id,
                name=prop.get("name") or group_id[:1].upper() + group_id[1:],
                virtual=True,
                base_dn=prop.get("base_dn") or self.context.base_dn,
                filter=prop.get("filter"),
                scope=prop.get("scope") or "sub",
            )
        return groups

    def _group_record(self, entry: DirectoryEntry) -> GroupRecord:
        gopts = self.group_options
        name_attr = gopts.name_attr if gopts else "cn"
        email_attr = (gopts.email_attr if gopts else None) or "mail"
        variants = variants_for(entry.objectclasses)
        return GroupRecord(
            id=dn_encode(entry.dn),
            name=entry.first(name_attr),
            dn=entry.dn,
            member_attr=self.member_attr_for(entry.objectclasses),
            variant=variants[0].name if variants else None,
            emails=[str(e) for e in entry.get(email_attr) if str(e).find("@") > 0],
        )

    def get_group_entry(self, group_id: str) -> GroupRecord | None:
        """
        Return the cached record of group ``group_id``, reading it from the
        directory if the listing does not have it.  Groups that cannot be read
        are cached as ``None``.
        """
        groups = self._cached_groups()
        if group_id not in groups:
            record = None
            try:
                dn = dn_decode(group_id)
            except ValueError:
                dn = None
            if dn:
                gopts = self.group_options
                attributes = [
                    *MEMBER_ATTRIBUTES,
                    (gopts.name_attr if gopts else "cn").lower(),
                    *self.context.catalog.attributes_for("email"),
                ]
                entries = self.client.read_entries(dn, "(objectClass=*)", attributes)
                if entries:
                    record = self._group_record(entries[0])
                    record.id = group_id
            groups[group_id] = record
            self.cache.set(groups)
        return groups[group_id]

    def get_group(self, group_id: str) -> dict[str, Any] | None:
        record = self.get_group_entry(group_id)
        return record.summary() if record is not None else None

    # -----------------------
    # Changes
    # -----------------------

    def _require_group(self, group_id: str) -> GroupRecord:
        record = self.get_group_entry(group_id)
        if record is None or record.virtual or not record.dn:
            msg = f"No such group: {group_id}"
            raise SaveError("nogroup", msg)
        return record

    def create_group(self, name: str) -> dict[str, str]:
        """
        Create an empty group.

        Args:
            name: the group name

        Raises:
            SaveError: groups are not configured, or the directory refused

        Returns:
            The ``id`` and ``name`` of the new group.

        """
        gopts = self.group_options
        if gopts is None:
            msg = "Groups are not configured for this address book"
            raise SaveError("nogroup", msg)
        name_attr = gopts.name_attr or "cn"
        new_dn = f"{name_attr}={escape_dn_chars(name)},{self.context.groups_base_dn}"
        member_attr = self.member_attr_for()
        entry = {
            "objectclass": list(gopts.object_classes),
            name_attr.lower(): [name],
            member_attr: [""],
        }
        if not self.client.add(new_dn, entry):
            msg = f"Could not create group {new_dn}"
            raise SaveError("errorsaving", msg)
        self.cache.invalidate()
        logger.info("ldapbook.groups.create dn=%s", new_dn)
        return {"id": dn_encode(new_dn), "name": name}

    def delete_group(self, group_id: str) -> bool:
        record = self._require_group(group_id)
        if not self.client.delete(record.dn):  # type: ignore[arg-type]
            msg = f"Could not delete group {record.dn}"
            raise SaveError("errorsaving", msg)
        groups = self._cached_groups()
        groups.pop(group_id, None)
        self.cache.set(groups)
        logger.info("ldapbook.groups.delete dn=%s", record.dn)
        return True

    def rename_group(self, group_id: str, new_name: str) -> str:
        """
        Rename a group, keeping it under the same parent.

        Args:
            group_id: the group to rename
            new_name: the new name

        Raises:
            SaveError: the group does not exist, or the directory refused

        Returns:
            The new identifier of the group.

        """
        record = self._require_group(group_id)
        name_attr = self.group_options.name_attr if self.group_options else "cn"
        new_rdn = f"{name_attr}={escape_dn_chars(new_name)}"
        new_dn = f"{new_rdn},{parent_dn(record.dn)}"  # type: ignore[arg-type]
        if not self.client.rename(record.dn, new_rdn, None, True):  # type: ignore[arg-type]
            msg = f"Could not rename group {record.dn}"
            raise SaveError("errorsaving", msg)
        self.cache.invalidate()
        logger.info("ldapbook.groups.rename dn=%s new_dn=%s", record.dn, new_dn)
        return dn_encode(new_dn)

    def _member_dns(self, contact_ids: str | list[str]) -> list[str]:
        dns = []
        for contact_id in split_ids(contact_ids):
            try:
                dns.append(dn_decode(contact_id))
            except ValueError:
                logger.warning("ldapbook.groups.bad-id id=%s", contact_id)
        return dns

    def add_to_group(self, group_id: str, contact_ids: str | list[str]) -> int:
        """
        Add contacts to a group.

        Returns:
            The number of contacts added.

        """
        record = self._require_group(group_id)
        dns = self._member_dns(contact_ids)
        if not dns:
            return 0
        member_attr = record.member_attr or self.member_attr_for()
        if not self.client.mod_add(record.dn, {member_attr: dns}):  # type: ignore[arg-type]
            msg = f"Could not add members to group {record.dn}"
            raise SaveError("errorsaving", msg)
        self.cache.invalidate()
        return len(dns)

    def remove_from_group(self, group_id: str, contact_ids: str | list[str]) -> int:
        """
        Remove contacts from a group.

        Returns:
            The number of contacts removed.

        """
        record = self._require_group(group_id)
        dns = self._member_dns(contact_ids)
        if not dns:
            return 0
        member_attr = record.member_attr or self.member_attr_for()
        if not self.client.mod_delete(record.dn, {member_attr: dns}):  # type: ignore[arg-type]
            msg = f"Could not remove members from group {record.dn}"
            raise SaveError("errorsaving", msg)
        self.cache.invalidate()
        return len(dns)

    def get_record_groups(self, contact_id: str) -> dict[str, GroupRecord]:
        """
        Return the groups contact ``contact_id`` is a direct member of.

        Returns:
            Group id to group record.

        """
        gopts = self.group_options
        if gopts is None:
            return {}
        contact_dn = dn_decode(contact_id)
        name_attr = gopts.name_attr.lower()
        member_attr = self.member_attr_for()
        terms = [
            Filter.attribute("member").equal_to(contact_dn),
            Filter.attribute("uniqueMember").equal_to(contact_dn),
        ]
        if member_attr not in ("member", "uniquemember"):
            terms.append(Filter.attribute(member_attr).equal_to(contact_dn))
        result = self.client.search(
            self.context.groups_base_dn,
            Filter.OR(terms).to_string(),
            "sub",
            ["objectclass", name_attr],
        )
        if not isinstance(result, SearchResult):
            return {}
        return {
            dn_encode(entry.dn): GroupRecord(
                id=dn_encode(entry.dn), name=entry.first(name_attr), dn=entry.dn
            )
            for entry in result
        }

    def member_attr_for(self, object_classes: list[str] | None = None) -> str:
        """
        Return the member attribute for a group with ``object_classes``
        (default: the object classes new groups are created with).  The last
        object class that tells wins; otherwise the configured member
        attribute is used.
        """
        if not object_classes and self.group_options is not None:
            object_classes = self.group_options.object_classes
        member_attr = None
        for oc in object_classes or []:
            oc = oc.lower()  # noqa: PLW2901
            if oc in StaticGroup.object_classes:
                member_attr = StaticGroup.member_attr
            elif oc in UniqueMemberGroup.object_classes:
                member_attr = UniqueMemberGroup.member_attr
        return member_attr or self.options.member_attr
