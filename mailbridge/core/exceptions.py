"""Typed errors surfaced by connectors.

Every failure leaves the library as a :class:`MailBridgeError` carrying an
HTTP-like ``status_code`` so callers can branch on it without knowing which
backend SDK raised the original exception.
"""

from __future__ import annotations

import imaplib
from typing import Any, Dict, Optional

import httpx
from googleapiclient.errors import HttpError


NOT_FOUND_MARKERS = ("couldn't find", "not found")
RATE_LIMIT_MARKERS = ("too many concurrent query requests", "rate limit")


class MailBridgeError(Exception):
    """Base error with an HTTP-like status code."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "status_code": self.status_code,
            "message": self.message,
        }


class ConfigurationError(MailBridgeError):
    """Missing or invalid parameter/credential, raised before any I/O."""

    status_code = 400


class NotFoundError(MailBridgeError):
    status_code = 404


class RateLimitedError(MailBridgeError):
    """The backend asked us to slow down. Not retried automatically."""

    status_code = 429


class TransportError(MailBridgeError):
    status_code = 500


class MalformedResponseError(TransportError):
    """A backend item is missing a field required to build a resource."""

    status_code = 502


class UnsupportedOperationError(MailBridgeError):
    status_code = 501


def from_status(status_code: Optional[int], message: str) -> MailBridgeError:
    """Build the error subclass matching ``status_code``."""
    if status_code == 404:
        return NotFoundError(message)
    if status_code == 429:
        return RateLimitedError(message)
    if status_code is not None and 400 <= status_code < 500:
        return MailBridgeError(message, status_code)
    return TransportError(message, status_code or 500)


def _status_from_message(message: str) -> Optional[int]:
    lowered = message.lower()
    if any(marker in lowered for marker in NOT_FOUND_MARKERS):
        return 404
    if any(marker in lowered for marker in RATE_LIMIT_MARKERS):
        return 429
    return None


def classify_backend_error(exc: BaseException) -> MailBridgeError:
    """Translate an SDK or transport exception into a :class:`MailBridgeError`.

    Status codes reported by the transport win; otherwise the message text is
    inspected for the phrases aggregators use for missing resources and
    throttling.
    """
    if isinstance(exc, MailBridgeError):
        return exc

    if isinstance(exc, HttpError):
        status = getattr(exc.resp, "status", None)
        try:
            status = int(status) if status is not None else None
        except (TypeError, ValueError):
            status = None
        message = exc._get_reason() if hasattr(exc, "_get_reason") else str(exc)
        return from_status(status or _status_from_message(message), message)

    if isinstance(exc, httpx.HTTPStatusError):
        message = _response_message(exc.response) or str(exc)
        status = exc.response.status_code
        hinted = _status_from_message(message)
        if status >= 500 and hinted:
            status = hinted
        return from_status(status, message)

    if isinstance(exc, httpx.RequestError):
        return TransportError(f"{exc.__class__.__name__}: {exc}")

    if isinstance(exc, imaplib.IMAP4.error):
        message = str(exc)
        return from_status(_status_from_message(message), message)

    message = str(exc) or exc.__class__.__name__
    return from_status(_status_from_message(message), message)


def _response_message(response: httpx.Response) -> Optional[str]:
    try:
        payload = response.json()
    except ValueError:
        return response.text or None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            return error.get("message") or error.get("type")
        if isinstance(error, str):
            return error
        return payload.get("message") or payload.get("detail") or payload.get("title")
    return None
