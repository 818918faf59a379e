"""
Build connection pools from Django settings.

``settings.LDAP_SERVERS`` maps a name to a dict of
:py:class:`ldapclient.connection.ConnectOptions` keyword arguments::

    LDAP_SERVERS = {
        "default": {
            "host": ["ldap1.example.com", "ldap2.example.com"],
            "bind_dn": "cn=reader,dc=example,dc=com",
            "password": env.str("LDAP_PASSWORD"),
            "num_connections": 4,
            "start_tls": True,
            "trust_store": "/etc/pki/tls/certs/ca-bundle.crt",
        },
    }
"""

from typing import Any

from django.conf import settings

from .connection import ConnectOptions, connect
from .exceptions import ConfigurationError
from .pool import ConnectionPool

DEFAULT_SERVER = "default"


def get_server_config(name: str = DEFAULT_SERVER) -> dict[str, Any]:
    """
    Return ``settings.LDAP_SERVERS[name]``.

    Raises:
        ConfigurationError: there is no ``settings.LDAP_SERVERS``, or it has no
            key ``name``

    """
    try:
        servers = settings.LDAP_SERVERS
    except AttributeError as e:
        msg = "settings.LDAP_SERVERS does not exist!"
        raise ConfigurationError(msg) from e
    try:
        config = servers[name]
    except KeyError as e:
        msg = f"settings.LDAP_SERVERS has no key '{name}'"
        raise ConfigurationError(msg) from e
    if not isinstance(config, dict):
        msg = f"settings.LDAP_SERVERS['{name}'] must be a dict"
        raise ConfigurationError(msg)
    return config


def get_connect_options(name: str = DEFAULT_SERVER, **kwargs: Any) -> ConnectOptions:
    """
    Build the :py:class:`ConnectOptions` for the server named ``name`` in
    ``settings.LDAP_SERVERS``.

    Args:
        name: the key into ``settings.LDAP_SERVERS``

    Keyword Args:
        **kwargs: options overriding those from the settings

    Raises:
        ConfigurationError: the configuration is missing or invalid

    Returns:
        The connection options.

    """
    return ConnectOptions.coerce(get_server_config(name), **kwargs)


def connect_from_settings(name: str = DEFAULT_SERVER, **kwargs: Any) -> ConnectionPool:
    """
    Like :py:func:`ldapclient.connect`, but takes its options from
    ``settings.LDAP_SERVERS[name]``.
    """
    return connect(get_connect_options(name, **kwargs))
