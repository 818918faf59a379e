"""
LDAP client type definitions.

This module provides type aliases for the python-ldap data structures we
consume and for the decoded data model we hand back to callers, using Python
3.10+ type hinting conventions.
"""

from typing import TypedDict

#: A single decoded attribute value.  Values that are not valid UTF-8 stay bytes.
AttributeScalar = str | bytes
#: What an attribute decodes to: a scalar, an ordered list, or (objectClass
#: only) a set.
AttributeValue = AttributeScalar | list[AttributeScalar] | set[AttributeScalar]
Entry = dict[str, AttributeValue]

LDAPData = tuple[str, dict[str, list[bytes]]]
AddModlistEntry = tuple[str, list[bytes]]
AddModlist = list[AddModlistEntry]
ModifyModlistEntry = tuple[int, str, list[bytes] | None]
ModifyModlist = list[ModifyModlistEntry]


class _WriteResultBase(TypedDict):
    code: int
    name: str


class WriteResult(_WriteResultBase, total=False):
    pre_read: Entry
    post_read: Entry
