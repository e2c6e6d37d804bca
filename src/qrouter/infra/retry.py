"""Retry with exponential backoff for Slack and database calls.

Wraps tenacity so every outbound call in the escalation path shares one
policy shape:

    delay(attempt) = initial_delay * backoff_multiplier ** (attempt - 1)
                     capped at max_delay

unless the failure carries a server hint (Slack's ``Retry-After`` header,
a ``retry_after`` body field, or ``TransientError.retry_after``), which
always wins over the computed delay.

Usage
-----
    result = await call_with_retry(
        lambda: client.chat_postMessage(channel=ch, text=text),
        SLACK_RETRY,
        context="chat.postMessage",
    )

Exhausting attempts re-raises the last error unchanged.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, TypeVar

import aiohttp
import structlog
from slack_sdk.errors import SlackApiError
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from qrouter.config import settings
from qrouter.errors import (
    AuthorizationError,
    ConfigurationError,
    PermanentError,
    TransientError,
)

logger = structlog.get_logger()

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[Any]]

_RETRIABLE_SLACK_ERRORS = frozenset({
    "rate_limited",
    "ratelimited",
    "timeout",
    "request_timeout",
    "service_unavailable",
    "internal_error",
    "fatal_error",
})

_PERMANENT_SLACK_ERRORS = frozenset({
    "invalid_auth",
    "account_inactive",
    "token_revoked",
    "token_expired",
    "not_authed",
    "missing_scope",
    "invalid_arg_name",
    "invalid_array_arg",
    "invalid_charset",
    "invalid_form_data",
    "invalid_post_type",
    "missing_post_type",
    "invalid_arguments",
    "channel_not_found",
    "user_not_found",
    "thread_not_found",
    "message_not_found",
    "not_in_channel",
    "is_archived",
})


# ─────────────────────────────────────────────────────────────────────────────
# Policy
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RetryPolicy:
    """Tuning for one class of outbound call."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0

    # Overrides the default classification entirely when set
    is_retriable: Callable[[BaseException], bool] | None = None

    def computed_delay(self, attempt: int) -> float:
        """Backoff delay after the given (1-based) failed attempt."""
        return min(self.initial_delay * self.backoff_multiplier ** (attempt - 1), self.max_delay)

    def with_classifier(self, fn: Callable[[BaseException], bool]) -> RetryPolicy:
        return replace(self, is_retriable=fn)


SLACK_RETRY = RetryPolicy(
    max_attempts=settings.slack_retry_max_attempts,
    initial_delay=settings.slack_retry_initial_delay_s,
    max_delay=settings.slack_retry_max_delay_s,
    backoff_multiplier=settings.slack_retry_backoff_multiplier,
)

# ─────────────────────────────────────────────────────────────────────────────
# Classification
# ─────────────────────────────────────────────────────────────────────────────

def slack_error_code(exc: SlackApiError) -> str | None:
    data = getattr(exc.response, "data", None)
    if isinstance(data, dict):
        code = data.get("error")
        return str(code) if code else None
    return None


def _status_code(exc: BaseException) -> int | None:
    if isinstance(exc, SlackApiError):
        status = getattr(exc.response, "status_code", None)
    elif isinstance(exc, aiohttp.ClientResponseError):
        status = exc.status
    else:
        status = getattr(exc, "status_code", None) or getattr(exc, "status", None)
    return status if isinstance(status, int) else None


def is_retriable(exc: BaseException) -> bool:
    """Default classification: transient failures retry, everything else fails fast."""
    if isinstance(exc, TransientError):
        return True
    if isinstance(exc, (PermanentError, AuthorizationError, ConfigurationError)):
        return False

    if isinstance(exc, SlackApiError):
        code = slack_error_code(exc)
        if code in _RETRIABLE_SLACK_ERRORS:
            return True
        if code in _PERMANENT_SLACK_ERRORS:
            return False

    status = _status_code(exc)
    if status is not None:
        return status == 429 or 500 <= status < 600

    if isinstance(exc, (aiohttp.ClientConnectionError, asyncio.TimeoutError, ConnectionError)):
        return True

    return False


def is_retriable_db(exc: BaseException) -> bool:
    """Dropped connections and lock timeouts retry; integrity errors never do."""
    if isinstance(exc, IntegrityError):
        return False
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    return is_retriable(exc)


DATABASE_RETRY = RetryPolicy(
    max_attempts=3,
    initial_delay=0.5,
    max_delay=5.0,
    backoff_multiplier=2.0,
    is_retriable=is_retriable_db,
)


def retry_after_hint(exc: BaseException | None) -> float | None:
    """Server-provided wait in seconds, if the failure carries one."""
    if exc is None:
        return None
    if isinstance(exc, TransientError):
        return exc.retry_after

    if isinstance(exc, SlackApiError):
        headers = getattr(exc.response, "headers", None) or {}
        for key, value in headers.items():
            if str(key).lower() == "retry-after":
                try:
                    return float(value)
                except (TypeError, ValueError):
                    break
        data = getattr(exc.response, "data", None)
        if isinstance(data, dict) and data.get("retry_after") is not None:
            try:
                return float(data["retry_after"])
            except (TypeError, ValueError):
                return None
    return None


# ─────────────────────────────────────────────────────────────────────────────
# Wait strategy
# ─────────────────────────────────────────────────────────────────────────────

class wait_server_hint(wait_base):
    """Use the server's retry-after hint when present, else the fallback wait."""

    def __init__(self, fallback: wait_base) -> None:
        self.fallback = fallback

    def __call__(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        hint = retry_after_hint(exc)
        if hint is not None and hint >= 0:
            return hint
        return self.fallback(retry_state)


def _policy_wait(policy: RetryPolicy) -> wait_base:
    return wait_server_hint(
        wait_exponential(
            multiplier=policy.initial_delay,
            exp_base=policy.backoff_multiplier,
            max=policy.max_delay,
        )
    )


# ─────────────────────────────────────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────────────────────────────────────

async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy = SLACK_RETRY,
    *,
    context: str | None = None,
    sleep: SleepFn = asyncio.sleep,
) -> T:
    """Await ``fn()`` until it succeeds, the error is fatal, or attempts run out."""
    classifier = policy.is_retriable or is_retriable

    def _before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "retrying_after_error",
            context=context,
            attempt=retry_state.attempt_number,
            max_attempts=policy.max_attempts,
            delay_s=retry_state.next_action.sleep if retry_state.next_action else None,
            error=str(exc),
            error_type=type(exc).__name__,
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=_policy_wait(policy),
        retry=retry_if_exception(classifier),
        before_sleep=_before_sleep,
        sleep=sleep,
        reraise=True,
    )

    try:
        return await retrying(fn)
    except Exception as e:
        logger.error(
            "retry_exhausted_or_non_retriable",
            context=context,
            max_attempts=policy.max_attempts,
            retriable=classifier(e),
            error=str(e),
            error_type=type(e).__name__,
        )
        raise
