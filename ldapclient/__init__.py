from .client import add, bind, delete, get, modify  # noqa: F401
from .codec import ALL  # noqa: F401
from .connection import ConnectOptions, connect  # noqa: F401
from .exceptions import (  # noqa: F401
    BindError,
    ConfigurationError,
    ConnectionPoolError,
    EntrySourceError,
    LdapClientError,
    LDAPResultError,
    SearchError,
    WriteError,
)
from .hosts import Endpoint  # noqa: F401
from .pool import ConnectionPool  # noqa: F401
from .search import search, search_each  # noqa: F401

__version__ = "1.0.0"
