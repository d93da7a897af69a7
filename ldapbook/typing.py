"""
Address book type definitions.

This module provides type aliases for the directory data structures passed
between the python-ldap adapter, the record codec and the mutation planner,
using Python 3.10+ type hinting conventions.
"""

from typing import Any

DeleteModListEntry = tuple[int, str, None]
ModifyModListEntry = tuple[int, str, list[bytes]]
ModifyModList = list[DeleteModListEntry | ModifyModListEntry]
LDAPData = tuple[str, dict[str, list[bytes]]]
#: A directory attribute value: text, or raw bytes for binary attributes
AttributeValue = str | bytes
#: Lower-cased attribute name to its ordered values
AttributeMap = dict[str, list[AttributeValue]]
#: Logical field name (optionally ``col:subtype``) to a scalar, list or composite
RecordValues = dict[str, Any]
