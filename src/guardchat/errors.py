"""Error taxonomy shared by every guardchat component."""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class GuardchatError(Exception):
    """Base class for all guardchat errors."""


class ValidationError(GuardchatError):
    """User input rejected before any filter or network call."""


class AccessDenied(GuardchatError):
    """The caller does not own the requested conversation."""


class RuleConfigurationError(GuardchatError):
    """A single filter rule could not be compiled."""

    def __init__(self, rule_name: str, message: str) -> None:
        super().__init__(f"Invalid rule '{rule_name}': {message}")
        self.rule_name = rule_name


class UpstreamError(GuardchatError):
    """Any failure talking to the inference server."""


class TransientUpstreamError(UpstreamError):
    """Connection failure or HTTP 5xx; safe to retry."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class FatalUpstreamError(UpstreamError):
    """HTTP 4xx from the inference server; never retried."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamUnavailable(UpstreamError):
    """Retries exhausted on transient failures."""

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class UpstreamProtocolError(UpstreamError):
    """The inference server answered with a body we could not decode."""


class ExtractionError(GuardchatError):
    """Page text could not be fetched for a URL."""


def log_and_return_error(*, operation: str, exc: Exception, user_message: str) -> str:
    """Log full exception details while returning a safe user-facing error."""
    logger.error("Operation '%s' failed: %s", operation, exc, exc_info=exc)
    return user_message
