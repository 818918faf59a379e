"""
The public operations: :py:func:`get`, :py:func:`add`, :py:func:`modify`,
:py:func:`delete` and :py:func:`bind`.

Every operation checks one connection out of the pool for its duration and
hands it back afterwards.  Searches live in :py:mod:`ldapclient.search`.
"""

import logging
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any

from ldap.controls.readentry import PostReadControl, PreReadControl

from ldapclient import ldap

from .builders import (
    AddRequest,
    DeleteRequest,
    ModifyRequest,
    build_add_request,
    build_delete_request,
    build_modify_request,
)
from .codec import attribute_names, decode_entry
from .exceptions import SearchError, WriteError
from .typing import Entry, WriteResult

if TYPE_CHECKING:
    from .pool import ConnectionPool

logger = logging.getLogger("django-ldapclient")

#: The result code and name of a successful write.
SUCCESS: WriteResult = {"code": 0, "name": "Success"}

#: Errors that make :py:func:`get` report "no entry" rather than fail.
NOT_READABLE: tuple[type[Exception], ...] = (
    ldap.NO_SUCH_OBJECT,  # type: ignore[attr-defined]
    ldap.INSUFFICIENT_ACCESS,  # type: ignore[attr-defined]
)

#: Keys allowed in the ``options`` of :py:func:`delete`.
DELETE_OPTIONS: frozenset[str] = frozenset({"pre_read"})


def get(
    pool: "ConnectionPool", dn: str, attributes: Iterable[str] | None = None
) -> Entry | None:
    """
    Read the entry with DN ``dn``.

    Example:
        >>> get(pool, "uid=alice,ou=people,dc=example,dc=com", ["cn", "mail"])
        {'dn': 'uid=alice,ou=people,dc=example,dc=com', 'cn': 'Alice', ...}

    Args:
        pool: the connection pool
        dn: the DN of the entry

    Keyword Args:
        attributes: the attributes to return; defaults to all user attributes

    Raises:
        SearchError: the read failed for some reason other than the entry not
            existing or us not being allowed to see it

    Returns:
        The entry, or ``None`` if it does not exist or we may not read it.
        The two cases are deliberately not told apart.

    """
    attrlist = attribute_names(attributes) or None
    try:
        with pool.connection() as conn:
            data = conn.search_s(
                dn, ldap.SCOPE_BASE, "(objectClass=*)", attrlist  # type: ignore[attr-defined]
            )
    except NOT_READABLE:
        return None
    except ldap.LDAPError as exc:  # type: ignore[attr-defined]
        raise SearchError.from_ldap_error(exc) from exc
    if not data:
        return None
    return decode_entry(data[0]) or None


def read_results(response: Any) -> WriteResult:
    """
    Build the result of a write from the response python-ldap gave us, adding
    ``pre_read`` and ``post_read`` entries if the server sent back read
    controls.

    Args:
        response: whatever the ``*_s`` or ``*_ext_s`` method returned

    Returns:
        A :py:class:`ldapclient.typing.WriteResult` dict.

    """
    result: WriteResult = {"code": SUCCESS["code"], "name": SUCCESS["name"]}
    controls = []
    if isinstance(response, tuple) and len(response) > 3:  # noqa: PLR2004
        controls = response[3] or []
    for ctrl in controls:
        if ctrl.controlType == PreReadControl.controlType:
            result["pre_read"] = decode_entry((ctrl.dn, ctrl.entry), include_dn=False) or {}
        elif ctrl.controlType == PostReadControl.controlType:
            result["post_read"] = decode_entry((ctrl.dn, ctrl.entry), include_dn=False) or {}
    return result


def _write(
    pool: "ConnectionPool", request: AddRequest | ModifyRequest | DeleteRequest
) -> WriteResult:
    try:
        with pool.connection() as conn:
            response = request.send(conn)
    except ldap.LDAPError as exc:  # type: ignore[attr-defined]
        error = WriteError.from_ldap_error(exc)
        logger.warning(
            "ldapclient.%s.failed dn=%s code=%s error=%s",
            request.operation,
            request.dn,
            error.code,
            error,
        )
        raise error from exc
    return read_results(response)


def add(
    pool: "ConnectionPool",
    dn: str,
    entry: Mapping[str, Any],
    pre_read: Iterable[str] | None = None,
    post_read: Iterable[str] | None = None,
) -> WriteResult:
    """
    Add a new entry.

    Example:
        >>> add(pool, "uid=bob,ou=people,dc=example,dc=com", {
        ...     "objectClass": {"top", "person", "inetOrgPerson"},
        ...     "uid": "bob",
        ...     "cn": "Bob Smith",
        ...     "sn": "Smith",
        ...     "telephoneNumber": ["555-1234", "555-5678"],
        ... })
        {'code': 0, 'name': 'Success'}

    Args:
        pool: the connection pool
        dn: the DN of the new entry
        entry: the attributes of the new entry.  Lists, tuples and sets become
            multi-valued attributes.  A ``"dn"`` key is ignored.

    Keyword Args:
        pre_read: attributes to read back from before the add, via a
            pre-read control
        post_read: attributes to read back from after the add, via a
            post-read control

    Raises:
        WriteError: the server refused the add

    Returns:
        A :py:class:`ldapclient.typing.WriteResult`.

    """
    return _write(pool, build_add_request(dn, entry, pre_read, post_read))


def modify(
    pool: "ConnectionPool", dn: str, modifications: Mapping[str, Any]
) -> WriteResult:
    """
    Modify an entry.  All modifications are sent in one request, so the server
    applies all of them or none.

    ``modifications`` may have any of these keys:

    * ``add``: attribute name to value(s) to add
    * ``delete``: attribute name to value(s) to remove;
      :py:data:`ldapclient.ALL` removes the whole attribute
    * ``replace``: attribute name to the new value(s)
    * ``increment``: attribute name to the amount to increment it by
    * ``pre_read``: attributes to read back from before the modification
    * ``post_read``: attributes to read back from after the modification

    Example:
        >>> modify(pool, "uid=bob,ou=people,dc=example,dc=com", {
        ...     "delete": {"telephoneNumber": "555-1234", "description": ALL},
        ...     "replace": {"mail": "bob@example.com"},
        ...     "post_read": ["telephoneNumber"],
        ... })
        {'code': 0, 'name': 'Success', 'post_read': {'telephoneNumber': '555-5678'}}

    Args:
        pool: the connection pool
        dn: the DN of the entry to modify
        modifications: what to change

    Raises:
        ValueError: ``modifications`` has a key we don't understand
        WriteError: the server refused the modification

    Returns:
        A :py:class:`ldapclient.typing.WriteResult`.

    """
    request = build_modify_request(dn, modifications)
    if not request.modlist and not request.controls:
        logger.debug("ldapclient.modify.no-changes dn=%s", dn)
        return read_results(None)
    return _write(pool, request)


def delete(
    pool: "ConnectionPool", dn: str, options: Mapping[str, Any] | None = None
) -> WriteResult:
    """
    Delete an entry.

    Args:
        pool: the connection pool
        dn: the DN of the entry to delete

    Keyword Args:
        options: ``{"pre_read": [...]}`` to read attributes of the entry as it
            was just before it was deleted

    Raises:
        ValueError: ``options`` has a key we don't understand
        WriteError: the server refused the delete

    Returns:
        A :py:class:`ldapclient.typing.WriteResult`.

    """
    options = options or {}
    unknown = set(options) - DELETE_OPTIONS
    if unknown:
        msg = f"Unknown delete options: {', '.join(sorted(unknown))}"
        raise ValueError(msg)
    return _write(pool, build_delete_request(dn, pre_read=options.get("pre_read")))


def bind(pool: "ConnectionPool", dn: str, password: str) -> bool:
    """
    Check whether ``password`` is the password for ``dn``.

    The bind is done on a pooled connection, which is then bound again with
    the pool's own identity before going back into the pool.  If that fails
    the connection is thrown away instead.

    Example:
        >>> bind(pool, "uid=alice,ou=people,dc=example,dc=com", "secret")
        True

    Args:
        pool: the connection pool
        dn: the DN to bind as
        password: the password to try

    Returns:
        ``True`` if the bind succeeded, ``False`` if it failed for any reason
        at all.

    """
    if not password:
        # A simple bind with an empty password is an unauthenticated bind,
        # which servers accept for any DN
        logger.info("ldapclient.bind.failed dn=%s error=empty password", dn)
        return False
    try:
        conn = pool.checkout()
    except Exception as exc:  # noqa: BLE001
        logger.info("ldapclient.bind.failed dn=%s error=%s", dn, exc)
        return False
    try:
        conn.simple_bind_s(dn, password)
    except Exception as exc:  # noqa: BLE001
        logger.info("ldapclient.bind.failed dn=%s error=%s", dn, exc)
        verified = False
    else:
        verified = True
    try:
        pool.connector.bind(conn)  # type: ignore[attr-defined]
    except Exception as exc:  # noqa: BLE001
        logger.warning("ldapclient.bind.restore.failed error=%s", exc)
        pool.release_defunct(conn)
    else:
        pool.release(conn)
    return verified
