"""
Materializing and streaming searches.

:py:func:`search` reads the whole result set into memory.
:py:func:`search_each` pulls results through an :py:class:`EntrySource`
instead: a background thread fetches entries from the server into a bounded
queue while the calling thread hands them one at a time to a callback, so at
most ``queue_size`` entries are ever held in memory.
"""

import logging
import queue
import threading
import time
from collections.abc import Callable, Iterable, Iterator
from contextlib import suppress
from typing import TYPE_CHECKING, Any, NamedTuple

from ldap.controls import SimplePagedResultsControl
from ldap_filter import Filter

from ldapclient import ldap

from .codec import attribute_names, decode_entry
from .exceptions import ConfigurationError, EntrySourceError, SearchError
from .typing import Entry, LDAPData

if TYPE_CHECKING:
    from ldap.ldapobject import LDAPObject

    from .pool import ConnectionPool

logger = logging.getLogger("django-ldapclient")

#: Scope names we accept, and the python-ldap scope each one maps to.
SCOPES: dict[str, int] = {
    "base": ldap.SCOPE_BASE,  # type: ignore[attr-defined]
    "one": ldap.SCOPE_ONELEVEL,  # type: ignore[attr-defined]
    "sub": ldap.SCOPE_SUBTREE,  # type: ignore[attr-defined]
}
DEFAULT_FILTER = "(objectclass=*)"
#: Seconds the fetch thread waits on the server before checking whether it
#: has been told to stop.
POLL_INTERVAL = 0.1


def resolve_scope(scope: str | int | None) -> int:
    """
    Turn a scope name (``"base"``, ``"one"``, ``"sub"``) or python-ldap
    ``SCOPE_*`` constant into the python-ldap constant.  ``None`` means a
    subtree search.

    Raises:
        ConfigurationError: we don't know ``scope``

    """
    if scope is None:
        return ldap.SCOPE_SUBTREE  # type: ignore[attr-defined]
    if isinstance(scope, str) and scope.lower() in SCOPES:
        return SCOPES[scope.lower()]
    if (
        isinstance(scope, int)
        and not isinstance(scope, bool)
        and scope in SCOPES.values()
    ):
        return scope
    msg = f"Invalid search scope: {scope!r}. Use one of: {', '.join(SCOPES)}"
    raise ConfigurationError(msg)


def resolve_filter(filterstr: str | Filter | None) -> str:
    if filterstr is None or filterstr == "":
        return DEFAULT_FILTER
    if isinstance(filterstr, Filter):
        return filterstr.to_string()
    if isinstance(filterstr, str):
        return filterstr
    msg = f"Invalid search filter: {filterstr!r}"
    raise ConfigurationError(msg)


class SearchCriteria(NamedTuple):
    base: str
    scope: int
    filterstr: str
    attrlist: list[str]

    @classmethod
    def build(
        cls,
        base: str,
        scope: str | int | None = None,
        filterstr: str | Filter | None = None,
        attributes: Iterable[str] | None = None,
    ) -> "SearchCriteria":
        """
        Normalize the arguments of a search.

        Args:
            base: the base DN of the search

        Keyword Args:
            scope: ``"base"``, ``"one"``, ``"sub"`` or a ``SCOPE_*`` constant;
                defaults to a subtree search
            filterstr: a filter string, or a ``ldap_filter.Filter``; defaults to
                ``(objectclass=*)``
            attributes: the attributes to return; defaults to all user
                attributes

        Raises:
            ConfigurationError: ``scope`` or ``filterstr`` is invalid

        Returns:
            A :py:class:`SearchCriteria`.

        """
        return cls(
            base=base,
            scope=resolve_scope(scope),
            filterstr=resolve_filter(filterstr),
            attrlist=attribute_names(attributes) or ["*"],
        )


def _get_pctrls(serverctrls: list[Any] | None) -> list[SimplePagedResultsControl]:
    """
    Find the paged results controls among the controls the server sent back.
    """
    return [
        c
        for c in serverctrls or []
        if c.controlType == SimplePagedResultsControl.controlType
    ]


def _paged_search(
    conn: "LDAPObject", criteria: SearchCriteria, page_size: int
) -> list[LDAPData]:
    # Initialize the LDAP controls for paging. Note that we pass ''
    # for the cookie because on first iteration, it starts out empty.
    paging = SimplePagedResultsControl(True, size=page_size, cookie="")  # noqa: FBT003
    results: list[LDAPData] = []
    while True:
        msgid = conn.search_ext(
            criteria.base,
            criteria.scope,
            criteria.filterstr,
            criteria.attrlist,
            serverctrls=[paging],
        )
        _, rdata, _, serverctrls = conn.result3(msgid)
        for dn, attrs in rdata:
            # Search references have a list of URLs instead of attributes
            if isinstance(attrs, dict):
                results.append((dn, attrs))
        paged_controls = _get_pctrls(serverctrls)
        if not paged_controls or not paged_controls[0].cookie:
            break
        # Push cookie back into the request control.
        paging.cookie = paged_controls[0].cookie
    return results


def run_search(
    conn: "LDAPObject", criteria: SearchCriteria, page_size: int | None = None
) -> list[Entry]:
    """
    Run a search on ``conn`` and decode every entry it returns.

    Raises:
        ldap.LDAPError: the search failed

    """
    if page_size:
        data = _paged_search(conn, criteria, page_size)
    else:
        data = conn.search_s(
            criteria.base,
            criteria.scope,
            filterstr=criteria.filterstr,
            attrlist=criteria.attrlist,
        )
    if not data:
        return []
    entries = [decode_entry(obj) for obj in data]
    return [entry for entry in entries if entry]


def search(
    pool: "ConnectionPool",
    base: str,
    scope: str | int | None = None,
    filterstr: str | Filter | None = None,
    attributes: Iterable[str] | None = None,
    page_size: int | None = None,
) -> list[Entry]:
    """
    Search the directory and return every matching entry.

    Example:
        >>> search(pool, "ou=people,dc=example,dc=com", filterstr="(uid=a*)",
        ...        attributes=["uid", "mail"])
        [{'dn': 'uid=alice,ou=people,dc=example,dc=com', 'uid': 'alice', ...}]

    Args:
        pool: the connection pool
        base: the base DN of the search

    Keyword Args:
        scope: ``"base"``, ``"one"`` or ``"sub"``; defaults to ``"sub"``
        filterstr: the search filter; defaults to ``(objectclass=*)``
        attributes: the attributes to return; defaults to all user attributes
        page_size: if given, use the Simple Paged Results control with pages of
            this many entries.  Use this for result sets bigger than the
            server's size limit.

    Raises:
        ConfigurationError: ``scope`` or ``filterstr`` is invalid
        SearchError: the server rejected the search

    Returns:
        A list of entries, in the order the server returned them.  Search
        references are dropped.

    """
    criteria = SearchCriteria.build(base, scope, filterstr, attributes)
    try:
        with pool.connection() as conn:
            return run_search(conn, criteria, page_size=page_size)
    except ldap.LDAPError as exc:  # type: ignore[attr-defined]
        raise SearchError.from_ldap_error(exc) from exc


class _End:
    """Queued by the fetch thread after the last result."""


_END = _End()


class EntrySource:
    """
    Streams the results of one search through a bounded queue.

    A background thread issues the search and pushes decoded entries onto a
    queue of at most ``queue_size`` items; when the queue is full it waits,
    which in turn stops it from reading further results off the connection.
    Use it as a context manager, so that the thread is stopped and any
    unfinished search is abandoned however the block exits::

        with EntrySource(conn, criteria, queue_size=10) as source:
            for entry in source:
                ...

    Search references, which we can't turn into entries, are reported as
    :py:class:`EntrySourceError` with ``may_continue=True``; iterating skips
    them.  Any failure of the search itself is an :py:class:`EntrySourceError`
    with ``may_continue=False`` and ends the stream.

    Args:
        conn: a bound connection.  Nothing else may use it until the source is
            closed.
        criteria: what to search for

    Keyword Args:
        queue_size: the most entries to hold in memory at once
        poll_interval: seconds to wait on the server between checks for
            :py:meth:`close`

    """

    def __init__(
        self,
        conn: "LDAPObject",
        criteria: SearchCriteria,
        queue_size: int = 100,
        poll_interval: float = POLL_INTERVAL,
    ) -> None:
        if queue_size < 1:
            msg = f"queue_size must be at least 1, not {queue_size}"
            raise ValueError(msg)
        self.conn = conn
        self.criteria = criteria
        self.queue_size = queue_size
        self.poll_interval = poll_interval
        timeout = getattr(conn, "timeout", -1)
        #: Seconds to wait for the next result before giving up; ``None`` means
        #: wait forever.
        self.response_timeout: float | None = (
            timeout if isinstance(timeout, (int, float)) and timeout > 0 else None
        )
        self._queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._msgid: int | None = None
        self._complete: bool = False
        self._exhausted: bool = False

    def __enter__(self) -> "EntrySource":
        self.open()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __iter__(self) -> Iterator[Entry]:
        while True:
            try:
                entry = self.next_entry()
            except EntrySourceError as exc:
                if exc.may_continue:
                    logger.debug("ldapclient.search.skipped error=%s", exc)
                    continue
                raise
            if entry is None:
                return
            yield entry

    def open(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._fetch, name="ldapclient-entry-source", daemon=True
        )
        self._thread.start()

    def next_entry(self) -> Entry | None:
        """
        Return the next entry, waiting for the fetch thread if need be.

        Raises:
            EntrySourceError: the next result could not be turned into an
                entry.  Check :py:attr:`EntrySourceError.may_continue` to see
                whether it is worth calling us again.

        Returns:
            The next entry, or ``None`` when there are no more.

        """
        if self._exhausted:
            return None
        self.open()
        item = self._queue.get()
        if item is _END:
            self._exhausted = True
            return None
        if isinstance(item, EntrySourceError):
            if not item.may_continue:
                self._exhausted = True
            raise item
        return item

    def close(self) -> None:
        """
        Stop the fetch thread, and abandon the search on the server if it
        hasn't finished.
        """
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
        self._exhausted = True
        if self._msgid is not None and not self._complete:
            with suppress(ldap.LDAPError):  # type: ignore[attr-defined]
                self.conn.abandon_ext(self._msgid)
            logger.debug("ldapclient.search.abandoned msgid=%s", self._msgid)

    def _put(self, item: Any) -> bool:
        while not self._stop.is_set():
            try:
                self._queue.put(item, timeout=self.poll_interval)
            except queue.Full:
                continue
            return True
        return False

    def _deadline(self) -> float | None:
        if self.response_timeout is None:
            return None
        return time.monotonic() + self.response_timeout

    def _fetch(self) -> None:
        try:
            self._msgid = self.conn.search_ext(
                self.criteria.base,
                self.criteria.scope,
                self.criteria.filterstr,
                self.criteria.attrlist,
            )
            deadline = self._deadline()
            while not self._stop.is_set():
                try:
                    rtype, rdata, _, _ = self.conn.result3(
                        self._msgid, all=0, timeout=self.poll_interval
                    )
                except ldap.TIMEOUT:  # type: ignore[attr-defined]
                    if deadline is not None and time.monotonic() > deadline:
                        raise
                    continue
                if rtype is None:
                    continue
                deadline = self._deadline()
                if rtype == ldap.RES_SEARCH_RESULT:  # type: ignore[attr-defined]
                    self._complete = True
                for dn, attrs in rdata or []:
                    if isinstance(attrs, dict):
                        item: Any = decode_entry((dn, attrs))
                    else:
                        item = EntrySourceError(
                            f"Search reference: {attrs!r}",
                            name="Referral",
                            may_continue=True,
                        )
                    if not self._put(item):
                        return
                if self._complete:
                    break
        except ldap.LDAPError as exc:  # type: ignore[attr-defined]
            self._put(EntrySourceError.from_ldap_error(exc))
        except Exception as exc:
            error = EntrySourceError(f"Search failed: {exc}")
            error.__cause__ = exc
            self._put(error)
        finally:
            self._put(_END)


def search_each(
    pool: "ConnectionPool",
    base: str,
    fn: Callable[[Entry], Any],
    scope: str | int | None = None,
    filterstr: str | Filter | None = None,
    attributes: Iterable[str] | None = None,
    queue_size: int = 100,
) -> None:
    """
    Search the directory and call ``fn`` with each matching entry, in server
    order, without holding more than ``queue_size`` entries in memory.

    ``fn`` runs on the calling thread.  While it runs, the search is not read
    any further than the queue allows, so a slow ``fn`` slows down the search
    instead of filling up memory.

    Example:
        >>> search_each(pool, "dc=example,dc=com", print,
        ...             filterstr="(objectClass=person)", queue_size=10)

    Args:
        pool: the connection pool
        base: the base DN of the search
        fn: called once for each entry; its return value is ignored

    Keyword Args:
        scope: ``"base"``, ``"one"`` or ``"sub"``; defaults to ``"sub"``
        filterstr: the search filter; defaults to ``(objectclass=*)``
        attributes: the attributes to return; defaults to all user attributes
        queue_size: the most entries to hold in memory at once

    Raises:
        ConfigurationError: ``scope`` or ``filterstr`` is invalid
        EntrySourceError: the search failed
        Exception: whatever ``fn`` raised

    """
    criteria = SearchCriteria.build(base, scope, filterstr, attributes)
    conn = pool.checkout()
    try:
        with EntrySource(conn, criteria, queue_size=queue_size) as source:
            for entry in source:
                fn(entry)
    except BaseException:
        # We can't tell what state the connection is in
        pool.release_defunct(conn)
        raise
    pool.release(conn)
