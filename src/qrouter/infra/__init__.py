"""Infrastructure utilities: retry/backoff for outbound calls."""

from __future__ import annotations

from qrouter.infra.retry import (
    DATABASE_RETRY,
    SLACK_RETRY,
    RetryPolicy,
    call_with_retry,
    is_retriable,
)

__all__ = [
    "DATABASE_RETRY",
    "SLACK_RETRY",
    "RetryPolicy",
    "call_with_retry",
    "is_retriable",
]
