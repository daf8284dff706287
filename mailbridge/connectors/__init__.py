"""Email connector implementations package.

- EmailConnector: abstract base class defining the capability set
- GmailConnector: Gmail API
- UnipileConnector: Unipile REST aggregator
- NylasConnector: Nylas v3 REST API
- Office365Connector: Office 365 mailboxes through Microsoft Graph
- IMAPConnector: plain IMAP servers

Example Usage:
    from mailbridge.connectors import GmailConnector

    connector = GmailConnector(client_id="...", client_secret="...")
    page = await connector.list_messages(
        {"access_token": "...", "refresh_token": "..."},
        {"limit": 10, "hasAttachment": True},
    )
"""

from .base import EmailConnector
from .gmail_connector import GmailConnector
from .imap_connector import IMAPConnector
from .nylas_connector import NylasConnector
from .office365_connector import Office365Connector
from .unipile_connector import UnipileConnector

__all__ = [
    "EmailConnector",
    "GmailConnector",
    "IMAPConnector",
    "NylasConnector",
    "Office365Connector",
    "UnipileConnector",
]
