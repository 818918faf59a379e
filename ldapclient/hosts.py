"""
Host specification parsing.

A host specification is any of:

* ``None``: the local host, on the default port
* ``"address"``, ``"address:port"``, ``":port"`` or ``"[v6 address]:port"``
* a mapping like ``{"address": "ldap1.example.com", "port": 3389}``; both
  keys are optional
* an :py:class:`Endpoint`
* a list or tuple of any of the above, which puts us into multi-host mode

Ports that aren't given are left as ``None`` here, because the default depends
on whether we end up using ldaps or not.
"""

from collections.abc import Mapping
from typing import Any, NamedTuple

from .exceptions import ConfigurationError

DEFAULT_ADDRESS = "localhost"


class Endpoint(NamedTuple):
    address: str = DEFAULT_ADDRESS
    port: int | None = None

    def uri(self, ssl: bool = False, default_port: int | None = None) -> str:
        """
        Return an LDAP URI for this endpoint, suitable for ``ldap.initialize``.

        Keyword Args:
            ssl: if ``True``, use the ``ldaps`` scheme
            default_port: port to use if we don't have one

        Returns:
            The LDAP URI.

        """
        scheme = "ldaps" if ssl else "ldap"
        host = self.address
        if ":" in host:
            host = f"[{host}]"
        port = self.port if self.port is not None else default_port
        if port is None:
            return f"{scheme}://{host}"
        return f"{scheme}://{host}:{port}"

    def __str__(self) -> str:
        if self.port is None:
            return self.address
        return f"{self.address}:{self.port}"


def _parse_port(value: Any, spec: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        port = int(value)
    except (TypeError, ValueError) as exc:
        msg = f"Invalid port for an ldap connection: {spec!r}"
        raise ConfigurationError(msg) from exc
    if not 0 < port < 65536:  # noqa: PLR2004
        msg = f"Port out of range for an ldap connection: {spec!r}"
        raise ConfigurationError(msg)
    return port


def _parse_host_string(spec: str) -> Endpoint:
    spec = spec.strip()
    if spec.startswith("["):
        # [v6 address] or [v6 address]:port
        address, _, rest = spec[1:].partition("]")
        port = rest[1:] if rest.startswith(":") else ""
    elif spec.count(":") > 1:
        # a bare IPv6 address; there's no way to tell a port apart
        address, port = spec, ""
    else:
        address, _, port = spec.rpartition(":") if ":" in spec else (spec, "", "")
    return Endpoint(
        address=address or DEFAULT_ADDRESS,
        port=int(port) if port.isdigit() else None,
    )


def _parse_host_mapping(spec: Mapping[str, Any]) -> Endpoint:
    unknown = set(spec) - {"address", "port"}
    if unknown:
        msg = (
            f"Unknown keys in host for an ldap connection: {', '.join(sorted(unknown))}"
        )
        raise ConfigurationError(msg)
    return Endpoint(
        address=spec.get("address") or DEFAULT_ADDRESS,
        port=_parse_port(spec.get("port"), spec),
    )


def resolve_endpoint(spec: Any) -> Endpoint:
    """
    Resolve a single (non-collection) host specification.

    Args:
        spec: the host specification

    Raises:
        ConfigurationError: ``spec`` is not something we understand

    Returns:
        The resolved :py:class:`Endpoint`.

    """
    if spec is None:
        return Endpoint()
    if isinstance(spec, Endpoint):
        return Endpoint(spec.address or DEFAULT_ADDRESS, spec.port)
    if isinstance(spec, str):
        return _parse_host_string(spec)
    if isinstance(spec, Mapping):
        return _parse_host_mapping(spec)
    msg = f"Invalid host for an ldap connection: {spec!r}"
    raise ConfigurationError(msg)


def resolve_host(spec: Any) -> list[Endpoint]:
    """
    Resolve a host specification into a list of endpoints, preserving order.

    Args:
        spec: the host specification

    Raises:
        ConfigurationError: ``spec`` is malformed, or is an empty collection

    Returns:
        A list with one :py:class:`Endpoint` per host.

    """
    if isinstance(spec, (list, tuple)) and not isinstance(spec, Endpoint):
        if not spec:
            msg = "An empty collection of hosts was given for an ldap connection"
            raise ConfigurationError(msg)
        endpoints = []
        for host in spec:
            if isinstance(host, (list, tuple)) and not isinstance(host, Endpoint):
                msg = f"Nested host collections are not supported: {spec!r}"
                raise ConfigurationError(msg)
            endpoints.append(resolve_endpoint(host))
        return endpoints
    return [resolve_endpoint(spec)]
