"""
The address book facade.

:py:class:`LdapAddressbook` is what an application talks to: it connects a
source, pages through and searches its contacts, validates and saves
contacts, and manages contact groups.  Every
:py:class:`~ldapbook.exceptions.AddressbookError` it raises is also recorded
in :py:attr:`LdapAddressbook.last_error`.
"""

import logging
import re
from collections.abc import Callable, Mapping
from functools import wraps
from typing import TYPE_CHECKING, Any

from .client import DirectoryEntry
from .codec import LogicalRecord, flat_column_values
from .connection import Connector
from .context import DirectoryContext
from .encoding import dn_decode, dn_encode, split_ids
from .exceptions import AddressbookError, ErrorState, SaveError, ValidationError
from .filters import FilterBuilder, MatchMode, SearchSpec
from .groups import GroupResolver
from .mutations import MutationPlanner
from .options import SourceOptions
from .paginator import Paginator, ResultWindow
from .validators import ContactEmailValidator

if TYPE_CHECKING:
    from .cache import Cache
    from .client import DirectoryClient
    from .groups import GroupRecord

logger = logging.getLogger(__name__)

#: The pseudo field name that searches by record identifier
ID_FIELD = "ID"

#: Separators between the parts of a display name
NAME_SEPARATORS = re.compile(r"[\s,.]+")


def tracks_errors(func: Callable) -> Callable:
    """
    Decorator for :py:class:`LdapAddressbook` methods: record any
    :py:class:`~ldapbook.exceptions.AddressbookError` raised by ``func`` in
    ``last_error`` and re-raise it.  A call that returns normally clears
    ``last_error``.
    """

    @wraps(func)
    def wrapper(self, *args, **kwargs) -> Any:
        try:
            retval = func(self, *args, **kwargs)
        except AddressbookError as e:
            self.last_error = e.state
            logger.debug(
                "ldapbook.addressbook.error method=%s kind=%s detail=%s",
                func.__name__,
                e.kind.value,
                e.detail,
            )
            raise
        self.last_error = None
        return retval

    return wrapper


class LdapAddressbook:
    """
    A directory-backed address book.

    Args:
        options: the source configuration, as :py:class:`SourceOptions` or as
            a configuration dictionary

    Keyword Args:
        client: the directory client; defaults to a python-ldap client
        cache: the storage for the group listing cache
        mail_domain: the domain appended to bare email values
        user_email: the current user's email address, for user specific
            sources
        user_password: the current user's password, for user specific sources
        debug: log every directory call

    """

    def __init__(
        self,
        options: SourceOptions | dict[str, Any],
        client: "DirectoryClient | None" = None,
        cache: "Cache | None" = None,
        mail_domain: str | None = None,
        user_email: str | None = None,
        user_password: str | None = None,
        debug: bool = False,
    ) -> None:
        if not isinstance(options, SourceOptions):
            options = SourceOptions(options)
        self.options = options
        self.context = DirectoryContext.build(
            options, client=client, cache=cache, mail_domain=mail_domain
        )
        self.connector = Connector(
            self.context, user_email=user_email, user_password=user_password
        )
        self.resolver = GroupResolver(self.context)
        self.paginator = Paginator(self.context, self.resolver)
        self.planner = MutationPlanner(self.context)
        self.filters = FilterBuilder(
            self.context.catalog,
            search_fields=options.search_fields,
            base_filter=options.filter,
            fuzzy_search=options.fuzzy_search,
        )
        self.email_validator = ContactEmailValidator(self.context.codec.mail_domain)
        #: The last error raised, or ``None`` if the last call succeeded
        self.last_error: ErrorState | None = None
        self.set_debug(debug)

    @classmethod
    def from_settings(cls, name: str, **kwargs) -> "LdapAddressbook":
        """
        Build the address book for source ``name`` of
        ``settings.LDAP_ADDRESSBOOKS``.  Keyword arguments are passed to the
        constructor.
        """
        return cls(SourceOptions.from_settings(name), **kwargs)

    @property
    def name(self) -> str:
        return self.options.name

    @property
    def readonly(self) -> bool:
        return not self.options.writable

    @property
    def client(self) -> "DirectoryClient":
        return self.context.client

    def set_debug(self, debug: bool = True) -> None:
        logging.getLogger("ldapbook").setLevel(logging.DEBUG if debug else logging.NOTSET)

    @tracks_errors
    def connect(self) -> None:
        """
        Connect and bind to the first host that allows it.

        Raises:
            DirectoryConnectionError: no host could be used

        """
        self.connector.connect()

    def close(self) -> None:
        self.client.close()
        self.connector.ready = False

    def _require_writable(self) -> None:
        if self.readonly:
            msg = f"Address book {self.name} is read only"
            raise SaveError("errorsaving", msg)

    # -----------------------
    # Paging
    # -----------------------

    def set_page(self, page: int) -> None:
        self.paginator.set_page(page)

    def set_page_size(self, size: int) -> None:
        self.paginator.set_page_size(size)

    def set_sort_order(self, col: str) -> None:
        self.paginator.set_sort_order(col)

    def set_search_set(self, filterstr: str | None) -> None:
        self.paginator.set_search_set(filterstr)

    def get_search_set(self) -> str | None:
        return self.paginator.get_search_set()

    def reset(self) -> None:
        self.paginator.reset()

    def get_result(self) -> ResultWindow | None:
        return self.paginator.result

    @tracks_errors
    def list_records(self, subset: int = 0) -> ResultWindow:
        """
        List the current page of contacts.  See
        :py:meth:`~ldapbook.paginator.Paginator.list_records`.
        """
        return self.paginator.list_records(subset)

    @tracks_errors
    def count(self) -> ResultWindow:
        """
        Count the contacts of the current search or group.

        Returns:
            A page with no records whose ``total`` is the count.

        """
        return self.paginator.count_window()

    # -----------------------
    # Search
    # -----------------------

    @tracks_errors
    def search(
        self,
        fields: str | list[str],
        value: str | list[str],
        mode: MatchMode | int = MatchMode.PARTIAL,
        select: bool = True,
        required: list[str] | None = None,
    ) -> ResultWindow:
        """
        Search contacts and make the search the current search set.

        Args:
            fields: the logical field(s) to search; ``"*"`` for the full-text
                fields, or ``"ID"`` to fetch records by identifier
            value: the value to search for, or one value per field

        Keyword Args:
            mode: how to match values
            select: list the first page of results; otherwise only count them
            required: logical fields matching records must have a value for

        Raises:
            SearchError: a full-text search was requested but no
                ``search_fields`` are configured

        Returns:
            The page of results, or a page with only the count if ``select``
            is ``False``.

        """
        if fields == ID_FIELD:
            return self._search_ids(value)
        spec = SearchSpec(fields, value, MatchMode(int(mode)), list(required or []))
        filterstr = self.filters.build(spec)
        logger.debug("ldapbook.addressbook.search filter=%s", filterstr)
        self.set_search_set(filterstr)
        if select:
            return self.list_records()
        return self.count()

    def _search_ids(self, ids: str | list[str]) -> ResultWindow:
        records = [r for r in (self._read_record(i) for i in split_ids(ids)) if r is not None]
        self.paginator.result = ResultWindow(0, len(records), len(records), records)
        return self.paginator.result

    # -----------------------
    # Records
    # -----------------------

    def _read_record(self, record_id: str) -> LogicalRecord | None:
        try:
            dn = dn_decode(record_id)
        except ValueError:
            logger.warning("ldapbook.addressbook.bad-id id=%s", record_id)
            return None
        catalog = self.context.catalog
        entries = self.client.read_entries(
            dn, "(objectClass=*)", list(catalog.fetch_attributes)
        )
        if not entries:
            return None
        attributes = dict(entries[0].attributes)
        if catalog.sub_filter:
            for sub in self.client.list_entries(dn, catalog.sub_filter, list(catalog.sub_fields)) or []:
                attributes = {**sub.attributes, **attributes}
        return self.context.codec.decode(DirectoryEntry(dn, attributes))

    @tracks_errors
    def get_record(self, record_id: str) -> LogicalRecord | None:
        """
        Read one contact, including the attributes stored in its child
        entries.

        Args:
            record_id: the record identifier

        Returns:
            The record, or ``None`` if it does not exist.

        """
        record = self._read_record(record_id)
        self.paginator.result = (
            ResultWindow(0, 1, 1, [record]) if record is not None else None
        )
        return record

    @tracks_errors
    def validate(self, save_data: dict[str, Any], autofix: bool = False) -> bool:
        """
        Check ``save_data`` before saving.

        With ``autofix``, missing surname and first name are taken from the
        last and first word of the display name, and a missing email from
        the first typed email value.  ``save_data`` is updated in place.

        Args:
            save_data: the logical values to save

        Keyword Args:
            autofix: try to complete the record

        Raises:
            ValidationError: an email address is malformed (``emailformaterror``),
                the name is missing (``nonamewarning``) or required attributes
                are missing (``formincomplete``)

        Returns:
            ``True``.

        """
        for email in flat_column_values("email", save_data):
            self.email_validator(email)
        if not save_data.get("name"):
            msg = "A contact needs a name"
            raise ValidationError("nonamewarning", msg)

        fieldmap = self.context.catalog.fieldmap
        encoded = self.context.codec.encode(save_data)
        missing = {f for f in self.context.catalog.required_fields if not encoded.get(f)}
        if missing and autofix:
            name_parts = [p for p in NAME_SEPARATORS.split(str(save_data["name"])) if p]
            sn_attr = fieldmap.get("surname")
            if sn_attr in missing and name_parts:
                save_data["surname"] = name_parts.pop()
                missing.discard(sn_attr)
            fn_attr = fieldmap.get("firstname")
            if fn_attr in missing and name_parts:
                save_data["firstname"] = name_parts.pop(0)
                missing.discard(fn_attr)
            mail_attr = fieldmap.get("email")
            if mail_attr in missing:
                emails = flat_column_values("email", save_data)
                if emails:
                    save_data["email"] = emails[0]
                    missing.discard(mail_attr)
        if missing:
            missing_list = sorted(missing)
            msg = f"Missing required attributes: {', '.join(missing_list)}"
            raise ValidationError("formincomplete", msg, missing=missing_list)
        return True

    @tracks_errors
    def insert(self, save_data: Mapping[str, Any]) -> str:
        """
        Create a contact.  When a group is selected, the contact is added to
        it.

        Raises:
            ValidationError: required attributes are missing
            SaveError: the directory refused

        Returns:
            The identifier of the new record.

        """
        self._require_writable()
        plan = self.planner.plan_insert(save_data)
        dn = self.planner.apply_insert(plan)
        record_id = dn_encode(dn)
        group = self.paginator.group
        if group is not None and not group.virtual and group.id:
            self.resolver.add_to_group(group.id, record_id)
        return record_id

    @tracks_errors
    def update(self, record_id: str, save_data: Mapping[str, Any]) -> str:
        """
        Save changes to a contact.  When the change renames the entry, its
        group memberships are moved to the new DN.

        Args:
            record_id: the identifier of the record
            save_data: the new logical values

        Raises:
            SaveError: the record does not exist, or a directory change failed

        Returns:
            The identifier of the record, which changes when it is renamed.

        """
        self._require_writable()
        record = self._read_record(record_id)
        if record is None or not record.dn:
            msg = f"No such record: {record_id}"
            raise SaveError("errorsaving", msg)
        plan = self.planner.plan(record, save_data)
        if not plan:
            return record_id
        groups: dict[str, GroupRecord] = {}
        if plan.rename is not None and self.options.groups is not None:
            groups = self.resolver.get_record_groups(record_id)
        new_dn = self.planner.apply(plan, record.dn)
        new_id = dn_encode(new_dn)
        for group_id in groups:
            self.resolver.remove_from_group(group_id, record_id)
            self.resolver.add_to_group(group_id, new_id)
        return new_id

    @tracks_errors
    def delete(self, ids: str | list[str]) -> int:
        """
        Delete contacts and their child entries, and remove them from their
        groups.

        Args:
            ids: a comma separated string or a list of identifiers

        Raises:
            SaveError: a directory change failed

        Returns:
            The number of deleted contacts.

        """
        self._require_writable()
        deleted = 0
        for record_id in split_ids(ids):
            try:
                dn = dn_decode(record_id)
            except ValueError:
                logger.warning("ldapbook.addressbook.bad-id id=%s", record_id)
                continue
            groups = (
                self.resolver.get_record_groups(record_id)
                if self.options.groups is not None
                else {}
            )
            self.planner.delete_entry(dn)
            for group_id in groups:
                # the directory may already have dropped the membership itself
                try:
                    self.resolver.remove_from_group(group_id, record_id)
                except SaveError as e:
                    logger.warning(
                        "ldapbook.addressbook.delete.membership-failed group=%s id=%s error=%s",
                        group_id,
                        record_id,
                        e,
                    )
            deleted += 1
        return deleted

    @tracks_errors
    def delete_all(self) -> int:
        """
        Delete every contact directly below the base DN.

        Returns:
            The number of deleted contacts.

        """
        self._require_writable()
        entries = self.client.list_entries(
            self.context.base_dn, self.options.filter or "(objectClass=*)", ["objectclass"]
        )
        deleted = 0
        for entry in entries or []:
            self.planner.delete_entry(entry.dn)
            deleted += 1
        self.reset()
        return deleted

    # -----------------------
    # Groups
    # -----------------------

    @tracks_errors
    def set_group(self, group_id: str | None) -> None:
        """
        Restrict listings to the group ``group_id``, or to all contacts when
        ``group_id`` is empty.
        """
        group = self.resolver.get_group_entry(group_id) if group_id else None
        self.paginator.set_group(group)

    @tracks_errors
    def list_groups(
        self, search: str | None = None, mode: MatchMode | int = MatchMode.PARTIAL
    ) -> list[dict[str, Any]]:
        return [
            group.summary()
            for group in self.resolver.list_groups(search, MatchMode(int(mode)))
        ]

    @tracks_errors
    def get_group(self, group_id: str) -> dict[str, Any] | None:
        return self.resolver.get_group(group_id)

    @tracks_errors
    def create_group(self, name: str) -> dict[str, str]:
        self._require_writable()
        return self.resolver.create_group(name)

    @tracks_errors
    def delete_group(self, group_id: str) -> bool:
        self._require_writable()
        return self.resolver.delete_group(group_id)

    @tracks_errors
    def rename_group(self, group_id: str, new_name: str) -> str:
        self._require_writable()
        return self.resolver.rename_group(group_id, new_name)

    @tracks_errors
    def add_to_group(self, group_id: str, ids: str | list[str]) -> int:
        self._require_writable()
        return self.resolver.add_to_group(group_id, ids)

    @tracks_errors
    def remove_from_group(self, group_id: str, ids: str | list[str]) -> int:
        self._require_writable()
        return self.resolver.remove_from_group(group_id, ids)

    @tracks_errors
    def get_record_groups(self, record_id: str) -> dict[str, str]:
        """
        Return the groups contact ``record_id`` is a direct member of.

        Returns:
            Group id to group name.

        """
        return {
            group_id: group.name or ""
            for group_id, group in self.resolver.get_record_groups(record_id).items()
        }

    def __repr__(self) -> str:
        return f"<LdapAddressbook: {self.name}>"
