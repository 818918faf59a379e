"""
Request builders for add, modify and delete operations.

Each builder returns a small request object that knows how to send itself on
a python-ldap connection.  Requests carrying read controls go through the
``*_ext_s`` methods so that the response controls come back to us; the rest
use the plain ``*_s`` methods.
"""

from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any, NamedTuple

from ldap.controls import LDAPControl
from ldap.controls.readentry import PostReadControl, PreReadControl

from ldapclient import ldap

from .codec import ALL, attribute_names, encode_entry, encode_values
from .typing import AddModlist, ModifyModlist

if TYPE_CHECKING:
    from ldap.ldapobject import LDAPObject

#: Modification sections, in the order they are applied within one request.
MODIFICATION_SECTIONS: tuple[tuple[str, int], ...] = (
    ("add", ldap.MOD_ADD),  # type: ignore[attr-defined]
    ("delete", ldap.MOD_DELETE),  # type: ignore[attr-defined]
    ("replace", ldap.MOD_REPLACE),  # type: ignore[attr-defined]
    ("increment", ldap.MOD_INCREMENT),  # type: ignore[attr-defined]
)
READ_DIRECTIVES: tuple[str, ...] = ("pre_read", "post_read")


class AddRequest(NamedTuple):
    dn: str
    modlist: AddModlist
    controls: list[LDAPControl]

    operation = "add"

    def send(self, conn: "LDAPObject") -> Any:
        if self.controls:
            return conn.add_ext_s(self.dn, self.modlist, serverctrls=self.controls)
        return conn.add_s(self.dn, self.modlist)


class ModifyRequest(NamedTuple):
    dn: str
    modlist: ModifyModlist
    controls: list[LDAPControl]

    operation = "modify"

    def send(self, conn: "LDAPObject") -> Any:
        if self.controls:
            return conn.modify_ext_s(self.dn, self.modlist, serverctrls=self.controls)
        return conn.modify_s(self.dn, self.modlist)


class DeleteRequest(NamedTuple):
    dn: str
    controls: list[LDAPControl]

    operation = "delete"

    def send(self, conn: "LDAPObject") -> Any:
        if self.controls:
            return conn.delete_ext_s(self.dn, serverctrls=self.controls)
        return conn.delete_s(self.dn)


def read_controls(
    pre_read: Iterable[str] | None = None,
    post_read: Iterable[str] | None = None,
) -> list[LDAPControl]:
    """
    Build the pre-read and post-read request controls (RFC 4527).

    A directive that is ``None`` gets no control at all, and so no
    ``pre_read``/``post_read`` key will show up in the write result.  The
    controls are marked critical: a server that can't honor them must refuse
    the operation rather than silently skip the read.

    Keyword Args:
        pre_read: attribute names to read before the operation
        post_read: attribute names to read after the operation

    Returns:
        A list of zero, one or two controls.

    """
    controls: list[LDAPControl] = []
    if pre_read is not None:
        controls.append(
            PreReadControl(criticality=True, attrList=attribute_names(pre_read))
        )
    if post_read is not None:
        controls.append(
            PostReadControl(criticality=True, attrList=attribute_names(post_read))
        )
    return controls


def build_modification(op: int, attributes: Mapping[str, Any] | None) -> ModifyModlist:
    """
    Build one modlist entry per attribute for a single modification type.

    Args:
        op: one of ``ldap.MOD_ADD``, ``ldap.MOD_DELETE``, ``ldap.MOD_REPLACE``
            or ``ldap.MOD_INCREMENT``
        attributes: attribute name to value.  A value of :py:data:`ALL` (or
            ``None``) means "no values", which for ``MOD_DELETE`` removes the
            whole attribute.

    Returns:
        A python-ldap modify modlist.

    """
    _modlist: ModifyModlist = []
    for name, value in (attributes or {}).items():
        if value is ALL or value is None:
            _modlist.append((op, name, None))
        else:
            _modlist.append((op, name, encode_values(value)))
    return _modlist


def build_add_request(
    dn: str,
    entry: Mapping[str, Any],
    pre_read: Iterable[str] | None = None,
    post_read: Iterable[str] | None = None,
) -> AddRequest:
    return AddRequest(dn, encode_entry(entry), read_controls(pre_read, post_read))


def build_modify_request(dn: str, modifications: Mapping[str, Any]) -> ModifyRequest:
    """
    Build a modify request from a modification spec like::

        {
            "add": {"mail": "a@example.com", "telephoneNumber": ["1", "2"]},
            "delete": {"description": ldapclient.ALL, "seeAlso": "cn=x"},
            "replace": {"sn": "Smith"},
            "increment": {"uidNumber": 1},
            "pre_read": {"uidNumber"},
            "post_read": {"uidNumber"},
        }

    The sections are concatenated in add, delete, replace, increment order
    and the server applies them atomically, in that order.

    Args:
        dn: the DN of the entry to modify
        modifications: the modification spec

    Raises:
        ValueError: ``modifications`` has a key we don't understand

    Returns:
        The modify request.

    """
    known = {name for name, _ in MODIFICATION_SECTIONS} | set(READ_DIRECTIVES)
    unknown = set(modifications) - known
    if unknown:
        msg = f"Unknown modification sections: {', '.join(sorted(unknown))}"
        raise ValueError(msg)
    _modlist: ModifyModlist = []
    for section, op in MODIFICATION_SECTIONS:
        _modlist += build_modification(op, modifications.get(section))
    controls = read_controls(
        modifications.get("pre_read"), modifications.get("post_read")
    )
    return ModifyRequest(dn, _modlist, controls)


def build_delete_request(dn: str, pre_read: Iterable[str] | None = None) -> DeleteRequest:
    return DeleteRequest(dn, read_controls(pre_read=pre_read))
