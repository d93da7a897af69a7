"""
Search filter construction.

:py:class:`FilterBuilder` compiles a :py:class:`SearchSpec` (which logical
fields to search, for what, and how strictly) into an LDAP filter string.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import IntEnum
from typing import TYPE_CHECKING

from ldap_filter import Filter

from .exceptions import SearchError
from .options import as_list

if TYPE_CHECKING:
    from ldap_filter.filter import Filter as FilterNode

    from .schema import FieldCatalog

logger = logging.getLogger(__name__)

#: Search all configured full-text fields
ALL_FIELDS = "*"

#: A filter that matches no entry
MATCH_NOTHING = "(!(objectClass=*))"

WILDCARD_RUN = re.compile(r"\*{2,}")


class MatchMode(IntEnum):
    """How a search value is matched against attribute values."""

    #: The value may appear anywhere in the attribute value
    PARTIAL = 0
    #: The value must equal the attribute value
    STRICT = 1
    #: The attribute value must start with the value
    PREFIX = 2


@dataclass
class SearchSpec:
    """
    A logical search request.

    ``fields`` and ``value`` may be parallel lists, in which case every field
    is matched against its own value and the terms are ANDed.  With a single
    value, the value is matched against every field and the terms are ORed.
    """

    #: Logical field name(s) to search, or ``"*"`` for the full-text fields
    fields: str | list[str]
    #: The value to search for, or one value per field
    value: str | list[str]
    #: How to match values
    mode: MatchMode = MatchMode.PARTIAL
    #: Logical fields that must have a value on matching entries
    required: list[str] = field(default_factory=list)

    @property
    def is_parallel(self) -> bool:
        return isinstance(self.value, (list, tuple))


def wrap_filter(base_filter: str | None, search_filter: str) -> str:
    """
    AND ``search_filter`` with ``base_filter``.

    Args:
        base_filter: the source filter, e.g. ``(objectClass=inetOrgPerson)``
        search_filter: the filter to restrict it with

    Returns:
        The combined filter.

    """
    if not base_filter:
        return search_filter
    inner = base_filter
    if inner.startswith("("):
        inner = inner[1:]
    if inner.endswith(")"):
        inner = inner[:-1]
    return f"(&({inner}){search_filter})"


def matches(value: str, search: str, mode: MatchMode = MatchMode.PARTIAL) -> bool:
    """
    Compare ``value`` with ``search`` case-insensitively, the way the
    directory would for a filter built with ``mode``.
    """
    value = value.lower()
    search = search.lower()
    if mode == MatchMode.STRICT:
        return value == search
    if mode == MatchMode.PREFIX:
        return value.startswith(search)
    return search in value


class FilterBuilder:
    """
    Build LDAP filter strings from :py:class:`SearchSpec` objects.

    Args:
        catalog: the field catalog of the source

    Keyword Args:
        search_fields: the logical fields searched by full-text searches
        base_filter: the source filter every search is restricted by
        fuzzy_search: whether to add wildcards in partial and prefix mode

    """

    def __init__(
        self,
        catalog: "FieldCatalog",
        search_fields: list[str] | None = None,
        base_filter: str | None = None,
        fuzzy_search: bool = True,
    ) -> None:
        self.catalog = catalog
        self.search_fields = list(search_fields or [])
        self.base_filter = base_filter
        self.fuzzy_search = fuzzy_search

    def build(self, spec: SearchSpec) -> str:
        """
        Build the filter for ``spec``.

        Args:
            spec: the search request

        Raises:
            SearchError: ``spec`` is a full-text search but no full-text fields
                are configured.

        Returns:
            The filter string, ANDed with the base filter.

        """
        fields = self._fields(spec)
        full_text = spec.fields in (ALL_FIELDS, [ALL_FIELDS])
        if spec.is_parallel:
            values = as_list(spec.value)
            terms = []
            for i, col in enumerate(fields):
                value = values[i] if i < len(values) else ""
                if not value:
                    continue
                term = self._field_term(col, value, spec.mode, full_text)
                terms.append(term if term is not None else Filter.NOT(self._any()))
            value_filter = Filter.AND(terms).simplify() if terms else None
        elif not spec.value and (not self.fuzzy_search or spec.mode == MatchMode.STRICT):
            # an exact match on an empty value matches no entry
            value_filter = None
        else:
            terms = [
                term
                for col in fields
                if (term := self._field_term(col, spec.value, spec.mode, full_text))
                is not None
            ]
            value_filter = Filter.OR(terms).simplify() if terms else None

        if value_filter is None:
            logger.debug(
                "ldapbook.filters.no-terms fields=%s", ",".join(fields) or "-"
            )
            search_filter = MATCH_NOTHING
        else:
            search_filter = value_filter.to_string()

        presence = []
        for col in spec.required:
            if col in fields:
                continue
            attrs = self.catalog.attributes_for(col)
            if attrs:
                presence.append(
                    Filter.OR(
                        [Filter.attribute(attr).present() for attr in attrs]
                    ).simplify()
                )
        if presence:
            required_filter = Filter.AND(presence).simplify().to_string()
            search_filter = f"(&{required_filter}{search_filter})"

        search_filter = WILDCARD_RUN.sub("*", search_filter)
        return wrap_filter(self.base_filter, search_filter)

    def _fields(self, spec: SearchSpec) -> list[str]:
        if spec.fields == ALL_FIELDS or spec.fields == [ALL_FIELDS]:
            if not self.search_fields:
                msg = "Full-text search is not configured for this address book"
                raise SearchError("nofulltextsearch", msg)
            return list(self.search_fields)
        return as_list(spec.fields)

    def _field_term(
        self, col: str, value: str, mode: MatchMode, full_text: bool = False
    ) -> "FilterNode | None":
        """
        Match ``value`` against every attribute of ``col``.  Full-text search
        fields may also name a directory attribute directly.
        """
        attrs = self.catalog.attributes_for(col)
        if not attrs and full_text:
            attrs = [col.lower()]
        if not attrs:
            return None
        return Filter.OR([self._assertion(attr, value, mode) for attr in attrs]).simplify()

    def _assertion(self, attr: str, value: str, mode: MatchMode) -> "FilterNode":
        node = Filter.attribute(attr)
        if not self.fuzzy_search or mode == MatchMode.STRICT:
            return node.equal_to(value)
        if not value:
            return node.present()
        if mode == MatchMode.PREFIX:
            return node.starts_with(value)
        return node.contains(value)

    @staticmethod
    def _any() -> "FilterNode":
        return Filter.attribute("objectClass").present()
