from .evebox import (
    ERR_BAD_JSON,
    ERR_HTTP_STATUS,
    ERR_TIMEOUT,
    ERR_TRANSPORT,
    BackendError,
    EventBackend,
    HttpEventBackend,
)

__all__ = [
    "ERR_BAD_JSON",
    "ERR_HTTP_STATUS",
    "ERR_TIMEOUT",
    "ERR_TRANSPORT",
    "BackendError",
    "EventBackend",
    "HttpEventBackend",
]
