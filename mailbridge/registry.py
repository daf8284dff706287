"""Name -> connector dispatch.

:class:`ConnectorRegistry` keeps one connector per (case-insensitive) name
and forwards calls to it. The ``messages``, ``files`` and ``auth`` facades
group the capability set the way callers think about it::

    registry.use(GmailConnector(config))
    page = await registry.messages.list("gmail", auth, {"limit": 10})
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from .connectors.base import EmailConnector
from .core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

CAPABILITIES = (
    "list_messages",
    "get_message",
    "send_message",
    "list_files",
    "get_file",
    "refresh_auth_credentials",
)


class _Messages:
    def __init__(self, registry: "ConnectorRegistry") -> None:
        self._registry = registry

    async def list(self, connector_name: str, auth: Dict[str, Any], params: Any = None, options: Any = None):
        return await self._registry.call(connector_name, "list_messages", auth, params, options)

    async def get(self, connector_name: str, auth: Dict[str, Any], params: Any, options: Any = None):
        return await self._registry.call(connector_name, "get_message", auth, params, options)

    async def send(self, connector_name: str, auth: Dict[str, Any], params: Any, options: Any = None):
        return await self._registry.call(connector_name, "send_message", auth, params, options)


class _Files:
    def __init__(self, registry: "ConnectorRegistry") -> None:
        self._registry = registry

    async def list(self, connector_name: str, auth: Dict[str, Any], params: Any = None, options: Any = None):
        return await self._registry.call(connector_name, "list_files", auth, params, options)

    async def get(self, connector_name: str, auth: Dict[str, Any], params: Any, options: Any = None):
        return await self._registry.call(connector_name, "get_file", auth, params, options)


class _Auth:
    def __init__(self, registry: "ConnectorRegistry") -> None:
        self._registry = registry

    async def refresh_credentials_if_expired(self, connector_name: str, auth: Dict[str, Any]):
        return await self._registry.call(connector_name, "refresh_auth_credentials", auth)


class ConnectorRegistry:
    """Registry of email connectors addressed by name."""

    def __init__(self) -> None:
        self._connectors: Dict[str, EmailConnector] = {}
        self.messages = _Messages(self)
        self.files = _Files(self)
        self.auth = _Auth(self)

    def use(self, connector: EmailConnector) -> "ConnectorRegistry":
        """Register ``connector`` under its lower-cased name, replacing any previous one."""
        if connector is None:
            raise ConfigurationError("Connector cannot be None")
        name = getattr(connector, "name", None)
        if not name:
            raise ConfigurationError("Connector must have a name")
        key = name.lower()
        if key in self._connectors:
            logger.info("Replacing registered connector %s", key)
        self._connectors[key] = connector
        return self

    def list_connectors(self) -> List[str]:
        return list(self._connectors)

    def get(self, connector_name: str) -> EmailConnector:
        if not connector_name:
            raise ConfigurationError("A connector name is required")
        connector = self._connectors.get(connector_name.lower())
        if connector is None:
            raise ConfigurationError(f"Unknown connector: {connector_name}")
        return connector

    async def call(self, connector_name: str, method: str, *args: Any) -> Any:
        """Invoke ``method`` on the named connector."""
        connector = self.get(connector_name)
        handler = getattr(connector, method, None) if method in CAPABILITIES else None
        if handler is None:
            raise ConfigurationError(f"Connector {connector_name} does not implement {method}()")
        logger.debug("Dispatching %s.%s", connector.name, method)
        return await handler(*args)

    async def aclose(self) -> None:
        """Close the HTTP clients of every registered connector."""
        for connector in self._connectors.values():
            close = getattr(connector, "aclose", None)
            if close is not None:
                await close()
