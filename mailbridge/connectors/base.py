"""Base abstract email connector class.

This module provides the abstract :class:`EmailConnector` base class that
defines the capability set every backend implements: ``list_messages``,
``get_message``, ``send_message``, ``list_files``, ``get_file`` and
``refresh_auth_credentials``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from ..core.config import Config
from ..core.exceptions import (
    ConfigurationError,
    MailBridgeError,
    UnsupportedOperationError,
    classify_backend_error,
)
from ..core.models import (
    FileList,
    FileResource,
    Folder,
    ListOptions,
    ListParams,
    MessageList,
    MessageResource,
    coerce_datetime,
)
from ..normalization.folders import FolderCache
from ..normalization.messages import files_from_messages

logger = logging.getLogger(__name__)

Auth = Dict[str, Any]
TokenListener = Callable[[Auth], None]
ParamsLike = Union[ListParams, Mapping[str, Any], None]
OptionsLike = Union[ListOptions, Mapping[str, Any], None]


def token_expired(expiration: Any) -> bool:
    """True when ``expiration`` (ms epoch, seconds, ISO or datetime) lies in the past."""
    expires_at = coerce_datetime(expiration)
    return expires_at is not None and expires_at <= datetime.now(timezone.utc)


class EmailConnector(ABC):
    """Abstract base class for one email backend."""

    name: str = ""

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        folder_cache: Optional[FolderCache] = None,
        on_token_refreshed: Optional[TokenListener] = None,
    ) -> None:
        self.config = config or Config()
        self.folder_cache = folder_cache or FolderCache(self.config.FOLDER_CACHE_TTL_SECONDS)
        self._token_listeners: List[TokenListener] = []
        if on_token_refreshed is not None:
            self._token_listeners.append(on_token_refreshed)

    # ------------------------------------------------------------------
    @abstractmethod
    async def list_messages(
        self, auth: Auth, params: ParamsLike = None, options: OptionsLike = None
    ) -> MessageList:
        """List messages matching ``params``.

        Parameters
        ----------
        auth:
            Backend credentials (``access_token`` and friends).
        params:
            :class:`ListParams` or a mapping using the same keys.
        options:
            ``raw`` skips normalisation, ``ids_only`` returns identifiers.
        """

    @abstractmethod
    async def get_message(
        self, auth: Auth, params: Mapping[str, Any], options: OptionsLike = None
    ) -> Union[MessageResource, Dict[str, Any]]:
        """Fetch one message by ``params['id']``."""

    @abstractmethod
    async def get_file(
        self, auth: Auth, params: Mapping[str, Any], options: OptionsLike = None
    ) -> Union[FileResource, Dict[str, Any]]:
        """Fetch one attachment by ``params['id']`` within ``params['messageId']``."""

    async def send_message(
        self, auth: Auth, params: Mapping[str, Any], options: OptionsLike = None
    ) -> Dict[str, Any]:
        raise UnsupportedOperationError(f"{self.name} does not support sending messages")

    async def list_files(
        self, auth: Auth, params: ParamsLike = None, options: OptionsLike = None
    ) -> FileList:
        """List files of attachment-bearing messages matching ``params``."""
        list_params = replace(ListParams.from_dict(params), has_attachment=True)
        opts = ListOptions.from_dict(options)
        result = await self.list_messages(auth, list_params, ListOptions(raw=opts.raw))
        if opts.raw:
            return FileList(files=list(result.messages), next_page_token=result.next_page_token)
        return FileList(files=files_from_messages(result.messages), next_page_token=result.next_page_token)

    async def refresh_auth_credentials(self, auth: Auth) -> Auth:
        """Return fresh credentials; unchanged when nothing expired."""
        return auth

    async def fetch_folders(self, auth: Auth) -> List[Folder]:
        """Full, unresolved folder listing of the account."""
        raise UnsupportedOperationError(f"{self.name} does not expose folders")

    async def get_folders(self, auth: Auth) -> List[Folder]:
        """Role-resolved folders, cached per account."""
        return await self.folder_cache.get_or_load(
            self.account_key(auth), lambda: self.fetch_folders(auth)
        )

    # ------------------------------------------------------------------
    def add_token_listener(self, listener: TokenListener) -> None:
        self._token_listeners.append(listener)

    def _emit_token_refreshed(self, token: Auth) -> None:
        logger.info("%s access token refreshed", self.name)
        for listener in self._token_listeners:
            listener(dict(token))

    def account_key(self, auth: Auth) -> str:
        for key in ("account_id", "grant_id", "email", "access_token"):
            if auth.get(key):
                return f"{self.name}:{auth[key]}"
        raise ConfigurationError("auth must identify the account")

    def _list_params(self, params: ParamsLike) -> ListParams:
        list_params = replace(ListParams.from_dict(params))
        if list_params.limit is None:
            list_params.limit = self.config.DEFAULT_PAGE_SIZE
        if list_params.limit <= 0:
            raise ConfigurationError("limit must be a positive integer")
        return list_params

    @staticmethod
    def _require(params: Optional[Mapping[str, Any]], *keys: str) -> None:
        missing = [key for key in keys if not (params or {}).get(key)]
        if missing:
            raise ConfigurationError(f"Missing required parameter(s): {', '.join(missing)}")

    @staticmethod
    def _translate(exc: BaseException) -> MailBridgeError:
        return classify_backend_error(exc)
