"""
Core configuration module for mailbridge.

Centralizes connector credentials and the paging/fan-out tuning knobs. Values
come from the environment (optionally a ``.env`` file) with sane defaults.
"""

import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class Config:
    """
    Application configuration.

    Every attribute can be overridden through the environment variable of the
    same name prefixed with ``MAILBRIDGE_`` where noted.
    """

    # Gmail OAuth client
    GMAIL_CLIENT_ID: str = os.getenv("GMAIL_CLIENT_ID", "")
    GMAIL_CLIENT_SECRET: str = os.getenv("GMAIL_CLIENT_SECRET", "")
    GMAIL_TOKEN_URI: str = os.getenv("GMAIL_TOKEN_URI", "https://oauth2.googleapis.com/token")

    # Unipile aggregator
    UNIPILE_BASE_URL: str = os.getenv("UNIPILE_BASE_URL", "")
    UNIPILE_ACCESS_TOKEN: str = os.getenv("UNIPILE_ACCESS_TOKEN", "")

    # Nylas v3
    NYLAS_API_KEY: str = os.getenv("NYLAS_API_KEY", "")
    NYLAS_API_URI: str = os.getenv("NYLAS_API_URI", "https://api.us.nylas.com")

    # Office 365 through Microsoft Graph
    OFFICE365_CLIENT_ID: str = os.getenv("OFFICE365_CLIENT_ID", "")
    OFFICE365_CLIENT_SECRET: str = os.getenv("OFFICE365_CLIENT_SECRET", "")
    OFFICE365_TOKEN_URL: str = os.getenv(
        "OFFICE365_TOKEN_URL", "https://login.microsoftonline.com/common/oauth2/v2.0/token"
    )
    GRAPH_API_URL: str = os.getenv("GRAPH_API_URL", "https://graph.microsoft.com/v1.0")

    # Plain IMAP
    IMAP_HOST: str = os.getenv("IMAP_HOST", "")
    IMAP_PORT: int = int(os.getenv("IMAP_PORT", "993"))
    IMAP_USE_SSL: bool = _env_bool("IMAP_USE_SSL", "true")

    # Paging
    DEFAULT_PAGE_SIZE: int = int(os.getenv("MAILBRIDGE_DEFAULT_PAGE_SIZE", "20"))
    GMAIL_MAX_PAGE_SIZE: int = int(os.getenv("MAILBRIDGE_GMAIL_MAX_PAGE_SIZE", "100"))
    ATTACHMENT_MIN_PAGE_SIZE: int = int(os.getenv("MAILBRIDGE_ATTACHMENT_MIN_PAGE_SIZE", "100"))

    # Participant fan-out
    GMAIL_PARTICIPANT_CHUNK: int = int(os.getenv("MAILBRIDGE_GMAIL_PARTICIPANT_CHUNK", "50"))
    NYLAS_PARTICIPANT_CAP: int = int(os.getenv("MAILBRIDGE_NYLAS_PARTICIPANT_CAP", "25"))
    UNIPILE_PARTICIPANT_CAP: int = int(os.getenv("MAILBRIDGE_UNIPILE_PARTICIPANT_CAP", "25"))
    IMAP_PARTICIPANT_CAP: int = int(os.getenv("MAILBRIDGE_IMAP_PARTICIPANT_CAP", "10"))
    OFFICE365_PARTICIPANT_CAP: int = int(os.getenv("MAILBRIDGE_OFFICE365_PARTICIPANT_CAP", "20"))
    FANOUT_CONCURRENCY: int = int(os.getenv("MAILBRIDGE_FANOUT_CONCURRENCY", "5"))

    # Folder role cache
    FOLDER_CACHE_TTL_SECONDS: float = float(os.getenv("MAILBRIDGE_FOLDER_CACHE_TTL_SECONDS", "900"))

    # Transport
    HTTP_TIMEOUT_SECONDS: float = float(os.getenv("MAILBRIDGE_HTTP_TIMEOUT_SECONDS", "30"))

    # Logging
    LOG_LEVEL: str = os.getenv("MAILBRIDGE_LOG_LEVEL", "INFO")
    LOG_FILE: Optional[str] = os.getenv("MAILBRIDGE_LOG_FILE") or None
