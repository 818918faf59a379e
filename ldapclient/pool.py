"""
A thread-safe pool of python-ldap connections.

``LDAPObject`` connections must not be shared between threads while an
operation is in flight, so every operation checks a connection out of the
pool for its duration and hands it back afterwards: as healthy, so that it
gets reused, or as defunct, so that it gets unbound and a replacement is
opened on the next checkout.
"""

import logging
import threading
import time
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager, suppress
from typing import TYPE_CHECKING

from ldapclient import ldap

from .exceptions import ConnectionPoolError

if TYPE_CHECKING:
    from ldap.ldapobject import LDAPObject

logger = logging.getLogger("django-ldapclient")

#: python-ldap errors after which a connection can't be trusted any more.
CONNECTION_ERRORS: tuple[type[Exception], ...] = (
    ldap.SERVER_DOWN,  # type: ignore[attr-defined]
    ldap.CONNECT_ERROR,  # type: ignore[attr-defined]
    ldap.TIMEOUT,  # type: ignore[attr-defined]
)


class ConnectionPool:
    """
    A pool of at most ``size`` bound LDAP connections.

    Connections are opened by ``connector``, a callable that returns a new
    connection bound with the pool's identity.  The pool opens connections
    lazily as they're needed, unless some are handed to it already opened via
    ``connections``.

    A thread that finds every connection in use waits until one is released,
    or until a slot is freed by a defunct release or a failed open, in which
    case it opens the replacement itself.

    Args:
        connector: callable that opens and binds a new connection

    Keyword Args:
        size: the maximum number of open connections
        connections: already opened connections to seed the pool with
        checkout_timeout: seconds to wait for a connection to come free when all
            ``size`` connections are in use; ``None`` waits forever

    """

    def __init__(
        self,
        connector: Callable[[], "LDAPObject"],
        size: int = 1,
        connections: Iterable["LDAPObject"] | None = None,
        checkout_timeout: float | None = None,
    ) -> None:
        self.connector = connector
        self.size: int = size
        self.checkout_timeout = checkout_timeout
        #: Idle connections; the most recently released one is reused first.
        self._idle: list["LDAPObject"] = list(connections or [])
        self._available = threading.Condition(threading.Lock())
        self._open: int = len(self._idle)
        self._closed: bool = False

    def __repr__(self) -> str:
        return (
            f"<ConnectionPool size={self.size} open={self._open} "
            f"idle={len(self._idle)} closed={self._closed}>"
        )

    def __enter__(self) -> "ConnectionPool":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def open_connections(self) -> int:
        """The number of physical connections currently open, idle or in use."""
        return self._open

    def checkout(self) -> "LDAPObject":
        """
        Take a connection out of the pool, opening a new one if the pool has
        room for it.

        Raises:
            ConnectionPoolError: the pool is closed, or no connection came free
                within :py:attr:`checkout_timeout`
            BindError: we had to open a new connection and it could not be bound

        Returns:
            A bound connection.  Hand it back with :py:meth:`release` or
            :py:meth:`release_defunct`.

        """
        deadline = None
        if self.checkout_timeout is not None:
            deadline = time.monotonic() + self.checkout_timeout
        with self._available:
            while True:
                if self._closed:
                    msg = "The connection pool is closed"
                    raise ConnectionPoolError(msg)
                if self._idle:
                    return self._idle.pop()
                if self._open < self.size:
                    # Claim the slot now; the connection is opened outside the lock
                    self._open += 1
                    break
                remaining = None
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        msg = (
                            f"No connection became free within {self.checkout_timeout} "
                            f"seconds (pool size {self.size})"
                        )
                        raise ConnectionPoolError(msg)
                self._available.wait(remaining)
        try:
            return self.connector()
        except BaseException:
            self._free_slot()
            raise

    def release(self, conn: "LDAPObject") -> None:
        """
        Hand a healthy connection back to the pool.
        """
        with self._available:
            if not self._closed:
                self._idle.append(conn)
                self._available.notify()
                return
        self._discard(conn)

    def release_defunct(self, conn: "LDAPObject") -> None:
        """
        Hand back a connection that must not be used again.  It gets unbound,
        and its slot is freed for a replacement.
        """
        logger.warning(
            "ldapclient.pool.defunct uri=%s", getattr(conn, "_uri", None) or conn
        )
        self._discard(conn)

    def _free_slot(self) -> None:
        with self._available:
            self._open -= 1
            self._available.notify()

    def _discard(self, conn: "LDAPObject") -> None:
        self._free_slot()
        with suppress(ldap.LDAPError):  # type: ignore[attr-defined]
            conn.unbind_s()

    @contextmanager
    def connection(self) -> Iterator["LDAPObject"]:
        """
        Context manager that checks out a connection and hands it back when
        the block exits.  The connection goes back as defunct if the block
        raised one of :py:data:`CONNECTION_ERRORS`, and as healthy otherwise.

        Example:
            >>> with pool.connection() as conn:
            ...     conn.whoami_s()

        """
        conn = self.checkout()
        try:
            yield conn
        except CONNECTION_ERRORS:
            self.release_defunct(conn)
            raise
        except BaseException:
            self.release(conn)
            raise
        self.release(conn)

    def close(self) -> None:
        """
        Close the pool and unbind every idle connection.  Connections that are
        checked out are unbound when they are released, and threads waiting in
        :py:meth:`checkout` raise :py:exc:`ConnectionPoolError` at once.
        """
        with self._available:
            self._closed = True
            idle, self._idle = self._idle, []
            self._available.notify_all()
        for conn in idle:
            self._discard(conn)
        logger.debug("ldapclient.pool.closed")
