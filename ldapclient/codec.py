"""
Conversion between python-ldap's attribute data and our entry dicts.

python-ldap hands us ``(dn, {name: [bytes, ...]})`` tuples and wants
``[(name, [bytes, ...]), ...]`` modlists back.  Callers deal in plain dicts
instead:

* an attribute with one value decodes to that value
* an attribute with more than one value decodes to a list, in server order
* ``objectClass`` always decodes to a set, whatever its cardinality

Going the other way, any list, tuple or set becomes a multi-valued attribute
and any scalar becomes a single value.
"""

from collections.abc import Iterable, Mapping
from typing import Any

from .typing import AddModlist, AddModlistEntry, AttributeScalar, AttributeValue, Entry

#: The attribute that always decodes to a set.  Compared case-insensitively.
OBJECT_CLASS = "objectclass"
#: The key under which we store the DN of an entry.
DN_KEY = "dn"

#: Types whose values expand into multiple attribute values.
MULTI_VALUE_TYPES = (list, tuple, set, frozenset)


class _AllValues:
    """
    The "every value" marker for ``delete`` modifications.
    """

    _instance: "_AllValues | None" = None

    def __new__(cls) -> "_AllValues":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ALL"

    def __reduce__(self) -> str:
        return "ALL"


#: Use as the value in a ``delete`` modification to remove every value of the
#: attribute.
ALL = _AllValues()


def is_object_class(name: str) -> bool:
    return name.lower() == OBJECT_CLASS


def decode_value(value: bytes) -> AttributeScalar:
    """
    Decode a single attribute value as UTF-8.  Binary values (``jpegPhoto``,
    ``userCertificate;binary``, ...) aren't valid UTF-8 and are returned
    untouched.
    """
    try:
        return value.decode("utf-8")
    except UnicodeDecodeError:
        return value


def decode_attribute(name: str, values: list[bytes]) -> tuple[str, AttributeValue]:
    """
    Decode one attribute from a python-ldap result.

    Args:
        name: the attribute name, as the server sent it
        values: the raw attribute values

    Returns:
        A ``(name, value)`` tuple where ``value`` is a set for ``objectClass``,
        a single value if there was exactly one, and a list otherwise.

    """
    decoded = [decode_value(v) for v in values]
    if is_object_class(name):
        return name, set(decoded)
    if len(decoded) == 1:
        return name, decoded[0]
    return name, decoded


def decode_entry(data: Any, include_dn: bool = True) -> Entry | None:
    """
    Convert a python-ldap ``(dn, attrs)`` result tuple into an entry dict.

    Args:
        data: a ``(dn, attrs)`` tuple, or ``None``

    Keyword Args:
        include_dn: if ``True``, put the DN in the result under ``"dn"``

    Returns:
        The entry dict, or ``None`` if there was no entry.  Search references
        (whose ``attrs`` is a list of URLs, not a dict) are also ``None``.

    """
    if not data:
        return None
    dn, attrs = data
    if not isinstance(attrs, dict):
        return None
    entry: Entry = {}
    if include_dn:
        entry[DN_KEY] = dn
    for name, values in attrs.items():
        key, value = decode_attribute(name, values)
        entry[key] = value
    return entry


def encode_value(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, bool):
        # LDAP Boolean syntax
        return b"TRUE" if value else b"FALSE"
    return str(value).encode("utf-8")


def encode_values(value: Any) -> list[bytes]:
    """
    Turn an attribute value into the list of bytes python-ldap wants.

    Lists, tuples and sets expand to one value per member (iteration order for
    sets is whatever Python gives us); anything else is a single value.
    """
    if isinstance(value, MULTI_VALUE_TYPES):
        return [encode_value(v) for v in value]
    return [encode_value(value)]


def encode_attribute(name: str, value: Any) -> AddModlistEntry:
    return name, encode_values(value)


def encode_entry(entry: Mapping[str, Any]) -> AddModlist:
    """
    Convert an entry dict into an add modlist.

    A ``"dn"`` key is skipped, so that an entry returned by
    :py:func:`ldapclient.get` can be handed straight back to
    :py:func:`ldapclient.add`.

    Args:
        entry: the entry dict

    Returns:
        A modlist suitable for ``LDAPObject.add_s``.

    """
    return [
        encode_attribute(name, value)
        for name, value in entry.items()
        if name != DN_KEY
    ]


def attribute_names(names: Iterable[str] | None) -> list[str]:
    """
    Normalize a collection of attribute names into a list without duplicates,
    keeping the caller's order.
    """
    if not names:
        return []
    if isinstance(names, str):
        return [names]
    return list(dict.fromkeys(str(name) for name in names))
