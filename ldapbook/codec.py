"""
Conversion between directory entries and logical contact records.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .encoding import dn_encode
from .options import as_list
from .schema import ADDRESS_PARTS, SERIALIZED_ADDRESS_PARTS, FieldCatalog
from .typing import AttributeMap, AttributeValue, RecordValues

if TYPE_CHECKING:
    from .client import DirectoryEntry

#: Record kind of contacts
PERSON = "person"
#: Record kind of groups
GROUP = "group"

#: Fields that always decode to a single value
NAME_FIELDS = ("name", "surname", "firstname", "middlename", "nickname")

#: Object classes that mark an entry as a group
GROUP_CLASSES = frozenset(
    {
        "group",
        "groupofnames",
        "kolabgroupofnames",
        "groupofuniquenames",
        "kolabgroupofuniquenames",
        "groupofurls",
    }
)

#: The default delimiter of serialized addresses
DEFAULT_ADDRESS_DELIMITER = "$"


def is_group_entry(object_classes: list[str]) -> bool:
    """
    Return ``True`` if any of ``object_classes`` is a group object class.
    """
    return any(oc.lower() in GROUP_CLASSES for oc in object_classes)


def is_empty(value: Any) -> bool:
    """
    Return ``True`` for ``None``, empty strings and containers, and lists
    holding only empty values.
    """
    if value is None:
        return True
    if isinstance(value, (list, tuple)):
        return all(is_empty(v) for v in value)
    if isinstance(value, (str, bytes, Mapping)):
        return len(value) == 0
    return False


def column_values(col: str, data: Mapping[str, Any]) -> dict[str, list[Any]]:
    """
    Gather the values of ``col`` and all of its ``col:subtype`` keys in
    ``data``, grouped by subtype (``""`` for the bare column).
    """
    out: dict[str, list[Any]] = {}
    for key, value in data.items():
        if key == col or key.startswith(col + ":"):
            out.setdefault(key.partition(":")[2], []).extend(as_list(value))
    return out


def flat_column_values(col: str, data: Mapping[str, Any]) -> list[Any]:
    """
    Like :py:func:`column_values`, but as one list with duplicates removed.
    """
    out: list[Any] = []
    for values in column_values(col, data).values():
        for value in values:
            if value not in out:
                out.append(value)
    return out


@dataclass
class LogicalRecord:
    """
    A contact or group record as seen by the application.
    """

    #: The identifier: the encoded DN of the entry
    id: str | None = None
    #: The DN of the entry
    dn: str | None = None
    #: :py:data:`PERSON` or :py:data:`GROUP`
    kind: str = PERSON
    #: Logical field name to a scalar, a list, or a list of composite dicts
    values: RecordValues = field(default_factory=dict)
    #: Attribute name to the values read from the directory, for diffing
    raw: AttributeMap = field(default_factory=dict)
    #: Whether the application may edit this record
    readonly: bool = False

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)

    def __getitem__(self, key: str) -> Any:
        return self.values[key]

    def __contains__(self, key: str) -> bool:
        return key in self.values

    @property
    def name(self) -> str | None:
        return self.values.get("name")


class RecordCodec:
    """
    Convert :py:class:`~ldapbook.client.DirectoryEntry` objects to
    :py:class:`LogicalRecord` objects and save data back to attribute maps.

    Args:
        catalog: the field catalog of the source

    Keyword Args:
        mail_domain: the domain appended to email values that have none
        group_name_attr: the attribute holding the name of group entries

    """

    def __init__(
        self,
        catalog: FieldCatalog,
        mail_domain: str | None = None,
        group_name_attr: str = "cn",
    ) -> None:
        self.catalog = catalog
        self.mail_domain = mail_domain
        self.group_name_attr = group_name_attr.lower()
        address = catalog.coltypes.get("address")
        self._address_parts: frozenset[str] = frozenset()
        if address is not None and address.children and not address.serialized:
            self._address_parts = frozenset(
                part for part in ADDRESS_PARTS if part in address.children
            )

    def decode(self, entry: "DirectoryEntry") -> LogicalRecord:
        """
        Decode a directory entry into a logical record.

        Single values become scalars and multiple values lists, except for
        the name fields which are always scalar.  Address parts are grouped
        into composite dicts under ``address`` (or ``address:<subtype>``).

        Args:
            entry: the directory entry

        Returns:
            The decoded record.

        """
        record = LogicalRecord(
            id=dn_encode(entry.dn) if entry.dn else None, dn=entry.dn
        )
        fieldmap = dict(self.catalog.fieldmap)
        if is_group_entry(entry.objectclasses):
            record.kind = GROUP
            record.readonly = True
            fieldmap["name"] = self.group_name_attr

        collected: dict[str, list[Any]] = {}
        composites: dict[str, dict[int, dict[str, Any]]] = {}
        raw_slots: dict[str, dict[int, AttributeValue]] = {}
        for key, attr in fieldmap.items():
            col, _, subtype = key.partition(":")
            for i, value in enumerate(entry.get(attr)):
                if not value:
                    continue
                raw_slots.setdefault(attr, {})[i] = value
                if (
                    col == "email"
                    and self.mail_domain
                    and isinstance(value, str)
                    and "@" not in value
                ):
                    collected.setdefault(key, []).append(f"{value}@{self.mail_domain}")
                elif col in self._address_parts:
                    composite_key = "address" + (f":{subtype}" if subtype else "")
                    composites.setdefault(composite_key, {}).setdefault(i, {})[col] = (
                        value
                    )
                elif col == "address" and self._is_serialized(subtype, value):
                    composites.setdefault(key, {})[i] = self._split_address(
                        subtype, value
                    )
                else:
                    collected.setdefault(key, []).append(value)

        for key, values in collected.items():
            if len(values) == 1 or key in NAME_FIELDS:
                record.values[key] = values[0]
            else:
                record.values[key] = values
        for key, slots in composites.items():
            record.values[key] = [slots[i] for i in sorted(slots)]
        for attr, slots in raw_slots.items():
            record.raw[attr] = [slots[i] for i in sorted(slots)]
        for key in NAME_FIELDS:
            attr = fieldmap.get(key)
            if attr and len(record.raw.get(attr, [])) > 1:
                record.raw[attr] = record.raw[attr][:1]
        return record

    def encode(self, values: Mapping[str, Any]) -> AttributeMap:
        """
        Encode record save data into a directory attribute map.

        Composite values are flattened into their child attributes, or joined
        with the configured delimiter for serialized composites.  A value
        given for a bare column (``email``) is used for the first of its
        subtype keys (``email:home``) that has no value of its own.  Empty
        values are dropped.

        Args:
            values: logical field name to value

        Returns:
            Attribute name to the list of values to store.

        """
        save: dict[str, Any] = dict(values)
        for col, coltype in self.catalog.coltypes.items():
            if coltype.children is not None:
                flattened: dict[str, dict[int, Any]] = {}
                for subtype, items in column_values(col, save).items():
                    suffix = f":{subtype}" if subtype else ""
                    for i, item in enumerate(items):
                        if not isinstance(item, Mapping):
                            continue
                        for child, value in item.items():
                            flattened.setdefault(child + suffix, {})[i] = value
                for key, slots in flattened.items():
                    save[key] = [slots[i] for i in sorted(slots)]
            for subtype, delimiter in coltype.serialized.items():
                key = f"{col}:{subtype}" if subtype else col
                if key in save:
                    save[key] = [
                        self._join_address(item, delimiter)
                        for item in as_list(save[key])
                    ]

        data: AttributeMap = {}
        used_base: set[str] = set()
        for key, attr in self.catalog.fieldmap.items():
            value = save.get(key)
            col, _, subtype = key.partition(":")
            if is_empty(value) and subtype:
                if col not in used_base and not is_empty(save.get(col)):
                    value = save[col]
                    used_base.add(col)
            elif is_empty(value):
                value = flat_column_values(col, save)
            items = [
                v if isinstance(v, bytes) else str(v)
                for v in as_list(value)
                if not is_empty(v) and not isinstance(v, Mapping)
            ]
            if items:
                data[attr] = items
        return data

    def _is_serialized(self, subtype: str, value: AttributeValue) -> bool:
        return isinstance(value, str) and self._delimiter(subtype) in value

    def _delimiter(self, subtype: str) -> str:
        coltype = self.catalog.coltypes.get("address")
        if coltype is not None:
            return coltype.serialized.get(subtype, DEFAULT_ADDRESS_DELIMITER)
        return DEFAULT_ADDRESS_DELIMITER

    def _split_address(self, subtype: str, value: str) -> dict[str, str]:
        parts = value.split(self._delimiter(subtype))
        parts += [""] * (len(SERIALIZED_ADDRESS_PARTS) - len(parts))
        return dict(zip(SERIALIZED_ADDRESS_PARTS, parts, strict=False))

    @staticmethod
    def _join_address(item: Any, delimiter: str) -> str | None:
        if not isinstance(item, Mapping):
            return item
        parts = [str(item.get(part) or "") for part in SERIALIZED_ADDRESS_PARTS]
        return delimiter.join(parts) if any(parts) else None
