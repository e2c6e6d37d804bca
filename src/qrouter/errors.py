"""Error taxonomy for the question router.

Every failure the escalation path can observe falls into one of these
buckets, and each bucket has a fixed propagation rule:

    ConflictError       duplicate ingestion; expected, logged at info
    AuthorizationError  no usable tenant credential; skip tenant this tick
    TransientError      rate limit / timeout / 5xx; retried, then error
    PermanentError      not-found / invalid auth / malformed; never retried
    ConfigurationError  no escalation targets; level still advances

Nothing here is user-visible. Failures surface through logs and through
escalation messages that simply do not appear.
"""

from __future__ import annotations


class QRouterError(Exception):
    """Base class for all qrouter errors."""


class ConflictError(QRouterError):
    """A row with the same natural key already exists."""

    def __init__(self, entity: str, key: str) -> None:
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} already exists: {key}")


class AuthorizationError(QRouterError):
    """No installation or bot token exists for a tenant."""

    def __init__(self, team_id: str, reason: str) -> None:
        self.team_id = team_id
        self.reason = reason
        super().__init__(f"Workspace {team_id} is not authorized: {reason}")


class TransientError(QRouterError):
    """A failure that is expected to clear on its own.

    ``retry_after`` carries a server-provided wait hint in seconds. When set
    it always wins over the computed backoff delay.
    """

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        self.code = code
        self.retry_after = retry_after
        super().__init__(message)


class PermanentError(QRouterError):
    """A failure that will not change on retry."""

    def __init__(self, message: str, *, code: str | None = None) -> None:
        self.code = code
        super().__init__(message)


class ConfigurationError(QRouterError):
    """Escalation cannot act because nothing is configured for it."""


class OAuthStateError(QRouterError):
    """Base class for OAuth state redemption failures."""


class OAuthStateNotFoundError(OAuthStateError):
    """The state token was never issued or was already redeemed."""


class OAuthStateExpiredError(OAuthStateError):
    """The state token exists but its redemption window has passed."""
