"""
Exception hierarchy for ldapclient.

Everything we raise derives from :py:class:`LdapClientError`.  Errors that
originate on the directory server keep the server's result code and name so
that callers can decide for themselves whether to retry.
"""

from typing import Any

from django.core.exceptions import ImproperlyConfigured

from ldapclient import ldap


class LdapClientError(Exception):
    """Base class for all ldapclient errors."""


class ConfigurationError(LdapClientError, ImproperlyConfigured):
    """
    Raised when a host specification or connection options are malformed.

    This is raised synchronously by :py:func:`ldapclient.connect` and friends,
    and is never retried.
    """


class ConnectionPoolError(LdapClientError):
    """
    Raised when a connection can't be checked out of a pool, either because
    the pool is closed or because none became free within the timeout.
    """


class LDAPResultError(LdapClientError):
    """
    An error reported by the directory server (or by libldap on its behalf).

    Args:
        msg: human readable message

    Keyword Args:
        code: the LDAP result code
        name: the name of the result code, e.g. ``"No such object"``
        info: any diagnostic message the server sent along

    """

    def __init__(
        self, msg: str, code: int = -1, name: str = "", info: str = ""
    ) -> None:
        super().__init__(msg)
        self.code = code
        self.name = name
        self.info = info

    @classmethod
    def from_ldap_error(cls, exc: ldap.LDAPError, **kwargs: Any) -> "LDAPResultError":  # type: ignore[name-defined]
        """
        Build one of our errors from a python-ldap exception.

        python-ldap puts a dict with ``result``, ``desc`` and optionally
        ``info`` keys into ``exc.args[0]``; anything missing falls back to the
        exception class.

        Args:
            exc: the python-ldap exception

        Keyword Args:
            **kwargs: passed on to the constructor of ``cls``

        Returns:
            An instance of ``cls``.

        """
        details: dict[str, Any] = {}
        if exc.args and isinstance(exc.args[0], dict):
            details = exc.args[0]
        code = details.get("result", getattr(exc, "errnum", -1))
        name = details.get("desc", exc.__class__.__name__)
        info = details.get("info", "")
        msg = f"{name} (code={code})"
        if info:
            msg = f"{msg}: {info}"
        return cls(msg, code=code, name=name, info=info, **kwargs)

    def as_result(self) -> dict[str, Any]:
        """
        Return the ``{"code": ..., "name": ...}`` form of this error.
        """
        return {"code": self.code, "name": self.name}


class BindError(LDAPResultError):
    """
    Raised when a bind is rejected, or when no connection could be made to
    bind on.
    """


class WriteError(LDAPResultError):
    """Raised when the server rejects an add, modify or delete."""


class SearchError(LDAPResultError):
    """Raised when a search request as a whole fails."""


class EntrySourceError(LDAPResultError):
    """
    Raised while streaming search results.

    If :py:attr:`may_continue` is ``True``, only the current entry was lost and
    the stream can be read further; otherwise the stream is dead.
    """

    def __init__(
        self,
        msg: str,
        code: int = -1,
        name: str = "",
        info: str = "",
        may_continue: bool = False,
    ) -> None:
        super().__init__(msg, code=code, name=name, info=info)
        self.may_continue = may_continue
