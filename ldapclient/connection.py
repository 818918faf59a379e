"""
Connection options and pool construction.

:py:func:`connect` has two strategies, picked by how many hosts the ``host``
option resolves to:

* **one host**: open a connection and bind right away, so bad credentials
  or an unreachable server raise :py:class:`BindError` from ``connect``
  itself.  The pool is then filled up to ``num_connections`` with connections
  bound the same way.
* **several hosts**: build a round-robin :py:class:`ServerSet` over them and
  return a pool that opens and binds connections lazily, on checkout.  No
  network I/O happens in ``connect``, so connection problems only show up
  when the pool is first used.
"""

import logging
import threading
from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ldapclient import ldap

from .exceptions import BindError, ConfigurationError
from .hosts import Endpoint, resolve_host
from .pool import CONNECTION_ERRORS, ConnectionPool

if TYPE_CHECKING:
    from ldap.ldapobject import LDAPObject

logger = logging.getLogger("django-ldapclient")

LDAP_PORT = 389
LDAPS_PORT = 636


def default_port(ssl: bool) -> int:
    return LDAPS_PORT if ssl else LDAP_PORT


class ConnectOptions:
    """
    Everything :py:func:`connect` needs to know to build a pool.

    Keyword Args:
        host: a host specification; see :py:mod:`ldapclient.hosts`
        bind_dn: the DN to bind as.  If not given, we bind anonymously.
        password: the password for ``bind_dn``
        num_connections: the number of connections in the pool
        ssl: if ``True``, connect with ldaps
        trust_store: path to a PEM file of CA certificates to verify the server
            certificate against.  If not given, **any** server certificate is
            accepted.
        start_tls: if ``True``, issue StartTLS on each plain connection
        follow_referrals: if ``True``, let libldap chase referrals
        connect_timeout: milliseconds to wait for a TCP connection to be made
        timeout: milliseconds to wait for the server to answer a request

    Raises:
        ConfigurationError: an option has an invalid value

    """

    #: The options we know about, with their defaults.
    DEFAULTS: dict[str, Any] = {
        "host": None,
        "bind_dn": None,
        "password": None,
        "num_connections": 1,
        "ssl": False,
        "trust_store": None,
        "start_tls": False,
        "follow_referrals": False,
        "connect_timeout": 60000,
        "timeout": 300000,
    }

    host: Any
    bind_dn: str | None
    password: str | None
    num_connections: int
    ssl: bool
    trust_store: str | None
    start_tls: bool
    follow_referrals: bool
    connect_timeout: int
    timeout: int

    def __init__(self, **kwargs: Any) -> None:
        unknown = set(kwargs) - set(self.DEFAULTS)
        if unknown:
            msg = f"Unknown ldap connection options: {', '.join(sorted(unknown))}"
            raise ConfigurationError(msg)
        for name, default in self.DEFAULTS.items():
            value = kwargs.get(name)
            setattr(self, name, default if value is None else value)
        self.validate()

    def __repr__(self) -> str:
        # Never show the password
        shown = {
            name: getattr(self, name)
            for name in self.DEFAULTS
            if name != "password"
        }
        return f"<ConnectOptions {shown!r}>"

    def validate(self) -> None:
        if isinstance(self.num_connections, bool) or not isinstance(
            self.num_connections, int
        ):
            msg = f"num_connections must be an integer, not {self.num_connections!r}"
            raise ConfigurationError(msg)
        if self.num_connections < 1:
            msg = f"num_connections must be at least 1, not {self.num_connections}"
            raise ConfigurationError(msg)
        for name in ("connect_timeout", "timeout"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                msg = f"{name} must be a number of milliseconds, not {value!r}"
                raise ConfigurationError(msg)
            if value < 0:
                msg = f"{name} must not be negative: {value}"
                raise ConfigurationError(msg)
        if self.trust_store:
            path = Path(self.trust_store)
            if not path.exists():
                msg = f"Trust store file does not exist: {self.trust_store}"
                raise ConfigurationError(msg)
            if not path.is_file():
                msg = f"Trust store file is not a file: {self.trust_store}"
                raise ConfigurationError(msg)

    @classmethod
    def coerce(
        cls, options: "ConnectOptions | Mapping[str, Any] | None" = None, **kwargs: Any
    ) -> "ConnectOptions":
        """
        Build a :py:class:`ConnectOptions` from another one, a dict, or keyword
        arguments.  Keyword arguments win over ``options``.

        Args:
            options: existing options to start from

        Keyword Args:
            **kwargs: option overrides

        Raises:
            ConfigurationError: ``options`` is of the wrong type, or an option is
                invalid

        Returns:
            A new :py:class:`ConnectOptions`.

        """
        if options is None:
            base: dict[str, Any] = {}
        elif isinstance(options, ConnectOptions):
            base = options.as_dict()
        elif isinstance(options, Mapping):
            base = dict(options)
        else:
            msg = f"Invalid options for an ldap connection: {options!r}"
            raise ConfigurationError(msg)
        base.update(kwargs)
        return cls(**base)

    def as_dict(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in self.DEFAULTS}

    @property
    def timeout_seconds(self) -> float:
        """The response timeout in seconds, or -1 for no limit."""
        return self.timeout / 1000.0 if self.timeout else -1

    @property
    def connect_timeout_seconds(self) -> float:
        """The connect timeout in seconds, or -1 for no limit."""
        return self.connect_timeout / 1000.0 if self.connect_timeout else -1

    @property
    def uses_tls(self) -> bool:
        return bool(self.ssl or self.start_tls)


def open_connection(endpoint: Endpoint, options: ConnectOptions) -> "LDAPObject":
    """
    Create a new, not yet bound, LDAP connection object for ``endpoint``.

    Args:
        endpoint: where to connect to
        options: the connection options

    Returns:
        An ``LDAPObject``.  If ``options.start_tls`` is set, StartTLS has
        already been negotiated on it.

    """
    uri = endpoint.uri(ssl=options.ssl, default_port=default_port(options.ssl))
    ldap_object = ldap.initialize(uri)
    try:
        ldap_object.set_option(ldap.OPT_PROTOCOL_VERSION, ldap.VERSION3)  # type: ignore[attr-defined]
        if options.follow_referrals:
            ldap_object.set_option(ldap.OPT_REFERRALS, 1)  # type: ignore[attr-defined]
        else:
            ldap_object.set_option(ldap.OPT_REFERRALS, 0)  # type: ignore[attr-defined]
        ldap_object.set_option(
            ldap.OPT_NETWORK_TIMEOUT,  # type: ignore[attr-defined]
            float(options.connect_timeout_seconds),
        )
        ldap_object.set_option(ldap.OPT_TIMEOUT, float(options.timeout_seconds))  # type: ignore[attr-defined]
        # The *_s methods of LDAPObject use this attribute as their response timeout
        ldap_object.timeout = options.timeout_seconds
        if options.uses_tls:
            if options.trust_store:
                ldap_object.set_option(ldap.OPT_X_TLS_CACERTFILE, str(options.trust_store))  # type: ignore[attr-defined]
                ldap_object.set_option(
                    ldap.OPT_X_TLS_REQUIRE_CERT,  # type: ignore[attr-defined]
                    ldap.OPT_X_TLS_DEMAND,  # type: ignore[attr-defined]
                )
            else:
                # No trust store means we trust any certificate at all
                ldap_object.set_option(
                    ldap.OPT_X_TLS_REQUIRE_CERT,  # type: ignore[attr-defined]
                    ldap.OPT_X_TLS_NEVER,  # type: ignore[attr-defined]
                )
            ldap_object.set_option(ldap.OPT_X_TLS_NEWCTX, 0)  # type: ignore[attr-defined]
        if options.start_tls and not options.ssl:
            ldap_object.start_tls_s()
    except ldap.LDAPError:  # type: ignore[attr-defined]
        _unbind(ldap_object)
        raise
    logger.debug("ldapclient.connection.opened uri=%s", uri)
    return ldap_object


def bind_connection(conn: "LDAPObject", options: ConnectOptions) -> None:
    """
    Bind ``conn`` with the credentials in ``options``, or anonymously if there
    is no ``bind_dn``.

    Raises:
        ldap.LDAPError: the bind failed

    """
    if options.bind_dn:
        conn.simple_bind_s(options.bind_dn, options.password or "")
    else:
        conn.simple_bind_s()


class ServerSet:
    """
    A round-robin set of servers.

    Each call to :py:meth:`rotation` starts one step further along the list of
    endpoints, and yields every endpoint once, so a caller can fail over to
    the next server when the first one is down.

    Args:
        endpoints: the servers, in order

    """

    def __init__(self, endpoints: list[Endpoint]) -> None:
        if not endpoints:
            msg = "A server set needs at least one endpoint"
            raise ConfigurationError(msg)
        self.endpoints = list(endpoints)
        self._next: int = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self.endpoints)

    def rotation(self) -> Iterator[Endpoint]:
        with self._lock:
            start = self._next
            self._next = (start + 1) % len(self.endpoints)
        for i in range(len(self.endpoints)):
            yield self.endpoints[(start + i) % len(self.endpoints)]


class Connector:
    """
    Opens bound connections for a :py:class:`ConnectionPool`.

    Calling the connector opens a connection to the next server of its
    :py:class:`ServerSet` and binds it.  If the server is down, the next one
    is tried, until each has been tried once.  A rejected bind is not retried
    elsewhere.

    Args:
        server_set: the servers to connect to
        options: connection options, including the bind identity

    """

    def __init__(self, server_set: ServerSet, options: ConnectOptions) -> None:
        self.server_set = server_set
        self.options = options

    def __call__(self) -> "LDAPObject":
        """
        Open and bind a new connection.

        Raises:
            BindError: the bind was rejected, or no server could be reached

        Returns:
            A bound ``LDAPObject``.

        """
        last_error: Exception | None = None
        for endpoint in self.server_set.rotation():
            try:
                return self._open(endpoint)
            except CONNECTION_ERRORS as exc:
                logger.warning(
                    "ldapclient.connection.failover endpoint=%s error=%s",
                    endpoint,
                    exc,
                )
                last_error = exc
            except ldap.LDAPError as exc:  # type: ignore[attr-defined]
                raise BindError.from_ldap_error(exc) from exc
        raise BindError.from_ldap_error(last_error) from last_error  # type: ignore[arg-type]

    def _open(self, endpoint: Endpoint) -> "LDAPObject":
        conn = open_connection(endpoint, self.options)
        try:
            bind_connection(conn, self.options)
        except ldap.LDAPError:  # type: ignore[attr-defined]
            _unbind(conn)
            raise
        logger.debug(
            "ldapclient.connection.bound endpoint=%s bind_dn=%s",
            endpoint,
            self.options.bind_dn or "<anonymous>",
        )
        return conn

    def bind(self, conn: "LDAPObject") -> None:
        """
        Bind ``conn`` again with the pool's identity.

        Raises:
            ldap.LDAPError: the bind failed

        """
        bind_connection(conn, self.options)


def _unbind(conn: "LDAPObject") -> None:
    try:
        conn.unbind_s()
    except ldap.LDAPError as exc:  # type: ignore[attr-defined]
        logger.debug("ldapclient.connection.unbind.failed error=%s", exc)


def connect(
    options: ConnectOptions | Mapping[str, Any] | None = None, **kwargs: Any
) -> ConnectionPool:
    """
    Connect to one or more LDAP servers and return a thread-safe connection
    pool.

    Example:
        >>> pool = connect(
        ...     host=["ldap1.example.com", "ldap2.example.com:3389"],
        ...     bind_dn="cn=admin,dc=example,dc=com",
        ...     password="secret",
        ...     num_connections=4,
        ...     ssl=True,
        ... )

    Args:
        options: a :py:class:`ConnectOptions` or a dict of option names to values

    Keyword Args:
        **kwargs: options, overriding anything in ``options``; see
            :py:class:`ConnectOptions`

    Raises:
        ConfigurationError: the options or host specification are malformed
        BindError: single host only: the bind failed or the server could not
            be reached

    Returns:
        A :py:class:`ConnectionPool`.  Close it with
        :py:meth:`ConnectionPool.close` when you're done with it.

    """
    options = ConnectOptions.coerce(options, **kwargs)
    endpoints = resolve_host(options.host)
    if len(endpoints) > 1:
        return connect_to_hosts(endpoints, options)
    return connect_to_host(endpoints[0], options)


def _checkout_timeout(options: ConnectOptions) -> float | None:
    return options.timeout_seconds if options.timeout else None


def connect_to_host(endpoint: Endpoint, options: ConnectOptions) -> ConnectionPool:
    connector = Connector(ServerSet([endpoint]), options)
    connections: list["LDAPObject"] = []
    try:
        for _ in range(options.num_connections):
            connections.append(connector())
    except BaseException:
        for conn in connections:
            _unbind(conn)
        raise
    return ConnectionPool(
        connector,
        size=options.num_connections,
        connections=connections,
        checkout_timeout=_checkout_timeout(options),
    )


def connect_to_hosts(endpoints: list[Endpoint], options: ConnectOptions) -> ConnectionPool:
    connector = Connector(ServerSet(endpoints), options)
    return ConnectionPool(
        connector,
        size=options.num_connections,
        checkout_timeout=_checkout_timeout(options),
    )
