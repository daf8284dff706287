"""mailbridge: one async interface over Gmail, Unipile, Nylas, Office 365 and IMAP mailboxes."""

from .connectors import (
    EmailConnector,
    GmailConnector,
    IMAPConnector,
    NylasConnector,
    Office365Connector,
    UnipileConnector,
)
from .core import (
    Config,
    ConfigurationError,
    FileList,
    FileResource,
    ListOptions,
    ListParams,
    MailBridgeError,
    MessageList,
    MessageResource,
    NotFoundError,
    RateLimitedError,
    UnsupportedOperationError,
)
from .core.logging_config import configure_logging
from .factory import build_registry
from .registry import ConnectorRegistry

__version__ = "0.1.0"

__all__ = [
    "EmailConnector",
    "GmailConnector",
    "IMAPConnector",
    "NylasConnector",
    "Office365Connector",
    "UnipileConnector",
    "Config",
    "ConfigurationError",
    "FileList",
    "FileResource",
    "ListOptions",
    "ListParams",
    "MailBridgeError",
    "MessageList",
    "MessageResource",
    "NotFoundError",
    "RateLimitedError",
    "UnsupportedOperationError",
    "configure_logging",
    "build_registry",
    "ConnectorRegistry",
]
