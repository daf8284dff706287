"""Shared models, configuration and errors."""

from .config import Config
from .exceptions import (
    ConfigurationError,
    MailBridgeError,
    MalformedResponseError,
    NotFoundError,
    RateLimitedError,
    TransportError,
    UnsupportedOperationError,
)
from .models import (
    Addresses,
    BodyPart,
    Contact,
    FileList,
    FileResource,
    Folder,
    ListOptions,
    ListParams,
    MessageList,
    MessageResource,
    Page,
)

__all__ = [
    "Config",
    "ConfigurationError",
    "MailBridgeError",
    "MalformedResponseError",
    "NotFoundError",
    "RateLimitedError",
    "TransportError",
    "UnsupportedOperationError",
    "Addresses",
    "BodyPart",
    "Contact",
    "FileList",
    "FileResource",
    "Folder",
    "ListOptions",
    "ListParams",
    "MessageList",
    "MessageResource",
    "Page",
]
