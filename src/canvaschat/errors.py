from __future__ import annotations

"""Error taxonomy shared by the stream, subscription and reconciliation layers."""

import asyncio
from typing import Optional

import requests


class CanvasChatError(Exception):
    """Base class for every error raised by the engine."""


class TransientIOError(CanvasChatError):
    """Network or backend hiccup; retried by the caller, never fatal."""


class MalformedDirectiveError(CanvasChatError):
    def __init__(self, reason: str, *, tag: Optional[str] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.tag = tag


class IdentityConflictError(CanvasChatError):
    """Two events claimed the same durable id in incompatible ways."""

    def __init__(self, message_id: str, detail: str) -> None:
        super().__init__(f"{message_id}: {detail}")
        self.message_id = message_id
        self.detail = detail


class DurabilityFailure(CanvasChatError):
    """An optimistic write was never confirmed by the durable store."""

    def __init__(self, temp_id: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"Message {temp_id} could not be saved")
        self.temp_id = temp_id
        self.cause = cause


class StreamSessionError(CanvasChatError):
    pass


def translate_error(exc: BaseException) -> CanvasChatError:
    """Map a lower-layer exception onto the taxonomy above."""

    if isinstance(exc, CanvasChatError):
        return exc
    if isinstance(exc, (requests.exceptions.RequestException, ConnectionError, TimeoutError, asyncio.TimeoutError, OSError)):
        return TransientIOError(str(exc) or exc.__class__.__name__)
    return CanvasChatError(str(exc) or exc.__class__.__name__)
