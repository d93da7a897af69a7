"""
Field catalog construction.

:py:class:`SchemaMapper` turns the declarative ``fieldmap`` of a source into
a :py:class:`FieldCatalog`: the mapping from logical contact fields (like
``email:work`` or the composite ``address``) onto directory attributes.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from .options import as_list

if TYPE_CHECKING:
    from .options import SourceOptions

logger = logging.getLogger(__name__)

#: Attribute name aliases, resolved to their canonical name
ATTRIBUTE_ALIASES = {
    "gn": "givenname",
    "rfc822mailbox": "email",
    "userid": "uid",
    "emailaddress": "email",
    "pkcs9email": "email",
}

#: The columns folded into the composite ``address`` column
ADDRESS_PARTS = ("street", "locality", "zipcode", "region", "country")

#: The parts of a serialized (delimiter joined) address, in storage order
SERIALIZED_ADDRESS_PARTS = ("street", "locality", "zipcode", "country")


def attribute_name(name: str) -> str:
    """
    Return the canonical name for an attribute, keeping any ``:limit``
    suffix.

    Args:
        name: an attribute name, possibly followed by ``:limit[:delimiter]``

    Returns:
        The lower-cased name with aliases resolved.

    """
    base, sep, suffix = name.lower().partition(":")
    return ATTRIBUTE_ALIASES.get(base, base) + (sep + suffix if suffix else "")


def parse_limit(value: str) -> int | None:
    """
    Parse the ``limit`` part of a fieldmap value.  ``*`` means unbounded
    (``None``); anything else is an integer of at least 1.
    """
    if value == "*":
        return None
    try:
        return max(1, int(value))
    except ValueError:
        return 1


def add_limits(a: int | None, b: int | None) -> int | None:
    """
    Sum two column limits.  An unbounded limit stays unbounded.
    """
    if a is None or b is None:
        return None
    return a + b


@dataclass(frozen=True)
class ColumnType:
    """
    The catalog entry for one logical column.
    """

    #: The column name, without subtype
    name: str
    #: The directory attributes backing this column
    attributes: tuple[str, ...]
    #: How many values the column may hold; ``None`` is unbounded
    limit: int | None = 1
    #: The subtypes (e.g. ``work``, ``home``) configured for the column
    subtypes: tuple[str, ...] | None = None
    #: Child column name to UI type for composite columns
    children: Mapping[str, str] | None = None
    #: Subtype (``""`` for none) to delimiter, for composites stored as one
    #: delimiter joined string
    serialized: Mapping[str, str] = field(default_factory=dict)
    #: The UI type hint: ``None``, ``textarea`` or ``composite``
    type: str | None = None
    #: The UI size hint
    size: int | None = None

    @property
    def is_composite(self) -> bool:
        return self.children is not None


@dataclass(frozen=True)
class FieldCatalog:
    """
    The runtime field catalog of an address book source.  Built once by
    :py:class:`SchemaMapper` and never changed afterwards.
    """

    #: Logical key (``col`` or ``col:subtype``) to directory attribute
    fieldmap: Mapping[str, str]
    #: Column name to :py:class:`ColumnType`
    coltypes: Mapping[str, ColumnType]
    #: Attributes that must be present on a contact entry
    required_fields: tuple[str, ...] = ()
    #: Attributes fetched when reading full records
    fetch_attributes: tuple[str, ...] = ()
    #: Attributes fetched when listing records
    list_attributes: tuple[str, ...] = ()
    #: Attribute stored in child entries to their object class(es)
    sub_fields: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    #: Filter matching the child entries of a contact
    sub_filter: str | None = None
    #: The attribute used as RDN of contact entries
    rdn: str | None = None

    def attributes_for(self, col: str) -> list[str]:
        """
        Return the directory attributes for logical column ``col``, or ``[]``
        if the column is not configured.
        """
        coltype = self.coltypes.get(col)
        return list(coltype.attributes) if coltype else []

    def is_required(self, attribute: str) -> bool:
        return attribute in self.required_fields

    def is_sub_field(self, attribute: str) -> bool:
        return attribute in self.sub_fields


class SchemaMapper:
    """
    Build a :py:class:`FieldCatalog` from source configuration.

    Malformed fieldmap entries are skipped (and logged at debug level) rather
    than rejected.

    Args:
        options: the source configuration

    """

    def __init__(self, options: "SourceOptions") -> None:
        self.options = options

    def build(self) -> FieldCatalog:
        """
        Build the catalog.

        Returns:
            The immutable field catalog.

        """
        fieldmap: dict[str, str] = {}
        columns: dict[str, dict[str, Any]] = {}
        for colv, lfv in self.options.fieldmap.items():
            if not colv or not lfv or not isinstance(lfv, str):
                logger.debug("ldapbook.schema.skip-field field=%s value=%r", colv, lfv)
                continue
            col, _, subtype = colv.partition(":")
            attr, _, rest = attribute_name(lfv).partition(":")
            limit_spec, _, delimiter = rest.partition(":")
            if not attr:
                logger.debug("ldapbook.schema.skip-field field=%s value=%r", colv, lfv)
                continue
            limit = parse_limit(limit_spec)
            column = columns.get(col)
            if column is None:
                columns[col] = column = {
                    "attributes": [attr],
                    "limit": limit,
                    "subtypes": [subtype] if subtype else None,
                    "serialized": {},
                }
            elif subtype:
                column["subtypes"] = [*(column["subtypes"] or []), subtype]
                if attr not in column["attributes"]:
                    column["attributes"].append(attr)
                column["limit"] = add_limits(column["limit"], limit)
            if delimiter:
                column["serialized"][subtype] = delimiter
            fieldmap[colv] = attr

        self._fold_address(columns)
        coltypes = {
            name: ColumnType(
                name=name,
                attributes=tuple(column["attributes"]),
                limit=column["limit"],
                subtypes=tuple(column["subtypes"])
                if column["subtypes"] is not None
                else None,
                children=MappingProxyType(column["children"])
                if column.get("children") is not None
                else None,
                serialized=MappingProxyType(column["serialized"]),
                type=column.get("type"),
                size=column.get("size"),
            )
            for name, column in columns.items()
        }
        catalog_kwargs = self._attributes(fieldmap, coltypes)
        return FieldCatalog(
            fieldmap=MappingProxyType(fieldmap),
            coltypes=MappingProxyType(coltypes),
            required_fields=self._required_fields(),
            sub_fields=MappingProxyType(
                {
                    attribute_name(attr): tuple(as_list(classes))
                    for attr, classes in self.options.sub_fields.items()
                }
            ),
            sub_filter=self._sub_filter(),
            rdn=attribute_name(self.options.rdn) if self.options.rdn else None,
            **catalog_kwargs,
        )

    def _fold_address(self, columns: dict[str, dict[str, Any]]) -> None:
        """
        Fold independently configured street and locality columns into one
        composite ``address`` column, or mark a single serialized ``address``
        attribute as composite.
        """
        if "street" in columns and "locality" in columns:
            address = columns.get("address") or {
                "attributes": [],
                "limit": 0,
                "subtypes": None,
                "serialized": {},
            }
            locality = columns["locality"]
            limit = add_limits(locality["limit"], address["limit"])
            subtypes = [*(address["subtypes"] or []), *(locality["subtypes"] or [])]
            children: dict[str, str] = {}
            attributes = list(address["attributes"])
            for part in ADDRESS_PARTS:
                if part in columns:
                    children[part] = "text"
                    attributes.extend(
                        a for a in columns[part]["attributes"] if a not in attributes
                    )
                    del columns[part]
            columns["address"] = {
                **address,
                "attributes": attributes,
                "limit": max(1, limit) if limit is not None else None,
                "subtypes": subtypes or ["home"],
                "children": children,
                "type": "composite",
            }
        elif "address" in columns:
            address = columns["address"]
            address.setdefault("type", "textarea")
            address.setdefault("children", None)
            address.setdefault("size", 40)
            if address["serialized"]:
                address["type"] = "composite"
                address["children"] = dict.fromkeys(SERIALIZED_ADDRESS_PARTS, "text")

    def _required_fields(self) -> tuple[str, ...]:
        required = list(self.options.required_fields)
        rdn = self.options.rdn
        if rdn and rdn not in required and rdn not in self.options.autovalues:
            required.append(rdn)
        return tuple(dict.fromkeys(attribute_name(name) for name in required))

    def _sub_filter(self) -> str | None:
        classes = []
        for value in self.options.sub_fields.values():
            value = as_list(value)  # noqa: PLW2901
            if value:
                classes.append(f"(objectClass={value[-1]})")
        if not classes:
            return None
        if len(self.options.sub_fields) > 1:
            return "(|" + "".join(classes) + ")"
        return "".join(classes)

    def _attributes(
        self, fieldmap: dict[str, str], coltypes: dict[str, ColumnType]
    ) -> dict[str, tuple[str, ...]]:
        extra = ["objectclass"]
        if self.options.groups is not None:
            extra.append(self.options.groups.name_attr.lower())
        fetch = list(dict.fromkeys([*fieldmap.values(), *extra]))
        listed = list(extra)
        for col in self.options.list_fields:
            coltype = coltypes.get(col)
            if coltype:
                listed.extend(coltype.attributes)
        return {
            "fetch_attributes": tuple(fetch),
            "list_attributes": tuple(dict.fromkeys(listed)),
        }
