"""Build a :class:`ConnectorRegistry` from configuration.

Every connector whose credentials are present in :class:`Config` is
registered; the others are skipped with a log line. All connectors share one
folder cache.
"""

import logging
from typing import Optional

from .connectors import GmailConnector, IMAPConnector, NylasConnector, Office365Connector, UnipileConnector
from .core.config import Config
from .core.logging_config import configure_logging
from .normalization.folders import FolderCache
from .registry import ConnectorRegistry

logger = logging.getLogger(__name__)


def build_registry(config: Optional[Config] = None, *, setup_logging: bool = False) -> ConnectorRegistry:
    config = config or Config()
    if setup_logging:
        configure_logging(config.LOG_LEVEL, config.LOG_FILE)

    folder_cache = FolderCache(config.FOLDER_CACHE_TTL_SECONDS)
    registry = ConnectorRegistry()

    if config.GMAIL_CLIENT_ID and config.GMAIL_CLIENT_SECRET:
        registry.use(GmailConnector(config, folder_cache=folder_cache))
    else:
        logger.info("Gmail connector disabled: GMAIL_CLIENT_ID/GMAIL_CLIENT_SECRET not set")

    if config.UNIPILE_BASE_URL and config.UNIPILE_ACCESS_TOKEN:
        registry.use(UnipileConnector(config, folder_cache=folder_cache))
    else:
        logger.info("Unipile connector disabled: UNIPILE_BASE_URL/UNIPILE_ACCESS_TOKEN not set")

    if config.NYLAS_API_KEY:
        registry.use(NylasConnector(config, folder_cache=folder_cache))
    else:
        logger.info("Nylas connector disabled: NYLAS_API_KEY not set")

    if config.OFFICE365_CLIENT_ID and config.OFFICE365_CLIENT_SECRET:
        registry.use(Office365Connector(config, folder_cache=folder_cache))
    else:
        logger.info("Office 365 connector disabled: OFFICE365_CLIENT_ID/OFFICE365_CLIENT_SECRET not set")

    if config.IMAP_HOST:
        registry.use(IMAPConnector(config, folder_cache=folder_cache))
    else:
        logger.info("IMAP connector disabled: IMAP_HOST not set")

    logger.info("Registered connectors: %s", ", ".join(registry.list_connectors()) or "none")
    return registry
