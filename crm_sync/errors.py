# crm_sync/errors.py
"""
Error taxonomy for the integration pipeline.

Workers raise these; the dispatcher is the only place that turns them into
queue decisions (retry with backoff vs. fail immediately).
"""
from __future__ import annotations

import asyncio

import httpx
from pydantic import ValidationError
from sqlalchemy.exc import DBAPIError, OperationalError


class PipelineError(Exception):
    """Base class for errors raised inside the job pipeline."""


class RetryableError(PipelineError):
    """Transient failure: the same job may succeed later."""


class TerminalError(PipelineError):
    """Input or precondition failure: retrying the same payload cannot help."""


class StorageUnavailable(RetryableError):
    pass


class StoreContention(RetryableError):
    pass


class NotFound(TerminalError):
    pass


class PreconditionFailed(TerminalError):
    pass


class InvalidPayload(TerminalError):
    pass


class ExternalServiceError(Exception):
    """Non-2xx (or no) response from an external platform."""

    def __init__(self, service: str, status_code: int | None, message: str, body: str | None = None):
        super().__init__(f"{service}: {message}")
        self.service = service
        self.status_code = status_code
        self.body = body

    @property
    def retryable(self) -> bool:
        # no status → network/timeout
        if self.status_code is None:
            return True
        return self.status_code in (408, 429) or self.status_code >= 500


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, TerminalError):
        return False
    if isinstance(exc, RetryableError):
        return True
    if isinstance(exc, ExternalServiceError):
        return exc.retryable
    if isinstance(exc, ValidationError):
        return False
    if isinstance(exc, (OperationalError, DBAPIError)):
        return True
    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError)):
        return True
    # Unknown failures get the retry budget; maxAttempts bounds them.
    return True
