"""
Paged listing of contacts.
"""

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .client import DirectoryEntry, SearchResult
from .groups import parenthesize

if TYPE_CHECKING:
    from .codec import LogicalRecord
    from .context import DirectoryContext
    from .groups import GroupRecord, GroupResolver

logger = logging.getLogger(__name__)

#: The page size used until :py:meth:`Paginator.set_page_size` is called
DEFAULT_PAGE_SIZE = 10


@dataclass
class ResultWindow:
    """
    One page of contact records.
    """

    #: The offset of the first record of this page in the whole result
    first: int
    #: The page size
    page_size: int
    #: The size of the whole result
    total: int
    #: The records of this page
    records: list["LogicalRecord"] = field(default_factory=list)
    #: ``True`` if nothing was listed because the source is search only
    searchonly: bool = False

    def __post_init__(self) -> None:
        self.first = max(0, min(self.first, self.total))

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator["LogicalRecord"]:
        return iter(self.records)


class Paginator:
    """
    List the contacts of a source, or of one of its groups, page by page.

    The search is executed once and its result kept until the search filter
    or the group changes; moving between pages only slices the kept result,
    unless the server windows the result with VLV.

    Args:
        context: the directory context of the source
        resolver: resolves group members

    """

    def __init__(self, context: "DirectoryContext", resolver: "GroupResolver") -> None:
        self.context = context
        self.client = context.client
        self.codec = context.codec
        self.resolver = resolver
        self.page: int = 1
        self.page_size: int = DEFAULT_PAGE_SIZE
        sort_col = context.options.sort_col
        #: The attribute records are sorted by
        self.sort_col: str | None = sort_col.lower() if sort_col else None
        #: The active search filter
        self.filter: str | None = None
        #: The active group
        self.group: GroupRecord | None = None
        #: The kept search result
        self.handle: SearchResult | None = None
        #: The last page listed
        self.result: ResultWindow | None = None
        self.client.set_vlv_page(self.page, self.page_size)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    def _move_window(self) -> None:
        self.client.set_vlv_page(self.page, self.page_size)
        # a server windowed result only holds the page it was read for
        if self.handle is not None and self.handle.total is not None:
            self.handle = None

    def set_page(self, page: int) -> None:
        self.page = max(1, int(page))
        self._move_window()

    def set_page_size(self, size: int) -> None:
        self.page_size = max(1, int(size))
        self._move_window()

    def set_sort_order(self, col: str) -> None:
        """
        Sort by the first attribute of logical column ``col``.  Unknown
        columns are ignored.
        """
        attributes = self.context.catalog.attributes_for(col)
        if attributes:
            self.sort_col = attributes[0]
            self.handle = None

    def set_search_set(self, filterstr: str | None) -> None:
        self.filter = filterstr or None
        self.handle = None

    def get_search_set(self) -> str | None:
        return self.filter

    def set_group(self, group: "GroupRecord | None") -> None:
        self.group = group
        self.handle = None

    def reset(self) -> None:
        self.result = None
        self.handle = None
        self.filter = None

    @property
    def in_static_group(self) -> bool:
        return self.group is not None and not self.group.virtual and bool(self.group.dn)

    def _query(self) -> tuple[str, str, str, dict[str, Any]]:
        options = self.context.options
        if self.group is not None and self.group.virtual:
            base = self.group.base_dn or self.context.base_dn
            filterstr = parenthesize(self.group.filter or "(objectClass=*)")
            if self.filter:
                filterstr = f"(&{filterstr}{parenthesize(self.filter)})"
            scope = self.group.scope
        else:
            base = self.context.base_dn
            filterstr = self.filter or options.filter or "(objectClass=*)"
            scope = options.scope
        search_options = {
            "sort": [self.sort_col] if self.sort_col else list(options.sort),
            "vlv": options.vlv,
        }
        return base, filterstr, scope, search_options

    def _search(self) -> SearchResult | None:
        if self.handle is None:
            base, filterstr, scope, options = self._query()
            result = self.client.search(
                base, filterstr, scope, list(self.context.catalog.fetch_attributes), options
            )
            self.handle = result if isinstance(result, SearchResult) else None
        return self.handle

    def _group_members(self) -> list[DirectoryEntry]:
        entries = self.resolver.list_members(
            self.group.dn, search_filter=self.filter  # type: ignore[union-attr,arg-type]
        )
        unique: dict[str, DirectoryEntry] = {}
        for entry in entries:
            unique.setdefault(entry.dn.lower(), entry)
        members = list(unique.values())
        if self.sort_col:
            sort_col = self.sort_col
            members.sort(key=lambda e: str(e.first(sort_col) or "").lower())
        return members

    def list_records(self, subset: int = 0) -> ResultWindow:
        """
        List the current page.

        Args:
            subset: ``0`` for the whole page; a positive number to return only
                that many records from the start of the page; a negative number
                to return only that many records from the end of the page.

        Returns:
            The page.

        """
        options = self.context.options
        if options.searchonly and not self.filter and self.group is None:
            self.result = ResultWindow(0, self.page_size, 0, searchonly=True)
            return self.result

        windowed = False
        entries: list[DirectoryEntry] = []
        if self.in_static_group:
            entries = self._group_members()
            total = len(entries)
        else:
            handle = self._search()
            total = handle.count() if handle is not None else 0
            if handle is not None and total > 0:
                windowed = handle.total is not None
                scope = self._query()[2]
                if self.sort_col and scope != "base" and not windowed:
                    handle.sort(self.sort_col)
                entries = handle.entries()

        first = self.offset
        start = 0 if windowed else first
        if subset < 0:
            start += self.page_size + subset
        last = first + self.page_size
        if subset:
            last = start + abs(subset)
        start = max(0, start)
        records = [self.codec.decode(e) for e in entries[start : min(len(entries), last)]]
        self.result = ResultWindow(first, self.page_size, total, records)
        logger.debug(
            "ldapbook.paginator.list page=%d page_size=%d total=%d count=%d vlv=%s",
            self.page,
            self.page_size,
            total,
            len(records),
            windowed,
        )
        return self.result

    def count(self) -> int:
        """
        Count the records of the current search or group, without reading
        them.
        """
        if self.handle is not None:
            return self.handle.count()
        if self.in_static_group:
            return len(
                self.resolver.list_members(
                    self.group.dn,  # type: ignore[union-attr,arg-type]
                    count_only=True,
                    search_filter=self.filter,
                )
            )
        base, filterstr, scope, options = self._query()
        result = self.client.search(base, filterstr, scope, None, options, count_only=True)
        return result if isinstance(result, int) else 0

    def count_window(self) -> ResultWindow:
        """
        A page holding no records, for the current page position and count.
        """
        self.result = ResultWindow(self.offset, self.page_size, self.count())
        return self.result
