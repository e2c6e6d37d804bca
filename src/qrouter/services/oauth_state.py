"""Database-backed OAuth state tokens.

Kept in the database rather than in memory so an install handshake that
spans a process restart still completes. Tokens are single-use: a
successful redemption deletes the row, and an expired row is deleted on
the first attempt to redeem it.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from qrouter.config import settings
from qrouter.db.models import OAuthState, utcnow
from qrouter.errors import OAuthStateExpiredError, OAuthStateNotFoundError

logger = structlog.get_logger()


def _short(state: str) -> str:
    return state[:8] + "..."


class OAuthStateStore:
    """Issue, redeem, and sweep OAuth ``state`` parameters."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ttl: timedelta | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._ttl = ttl or timedelta(minutes=settings.oauth_state_ttl_minutes)

    async def issue(self, install_options: dict[str, Any] | None = None, now: datetime | None = None) -> str:
        """Persist a fresh random state token and return it."""
        now = now or utcnow()
        state = secrets.token_hex(32)
        async with self._session_factory() as session:
            session.add(OAuthState(
                state=state,
                install_options=install_options or {},
                expires_at=now + self._ttl,
            ))
            await session.commit()

        logger.info("oauth_state_issued", state=_short(state))
        return state

    async def redeem(self, state: str, now: datetime | None = None) -> dict[str, Any]:
        """Consume a state token and return its install options."""
        now = now or utcnow()
        async with self._session_factory() as session:
            result = await session.execute(select(OAuthState).where(OAuthState.state == state))
            row = result.scalar_one_or_none()
            if row is None:
                logger.warning("oauth_state_not_found", state=_short(state))
                raise OAuthStateNotFoundError("OAuth state not found")

            deleted = await session.execute(delete(OAuthState).where(OAuthState.id == row.id))
            await session.commit()

        if deleted.rowcount == 0:
            # Redeemed concurrently between our read and delete
            logger.warning("oauth_state_already_redeemed", state=_short(state))
            raise OAuthStateNotFoundError("OAuth state not found")

        if row.expires_at < now:
            logger.warning(
                "oauth_state_expired",
                state=_short(state),
                expires_at=row.expires_at.isoformat(),
            )
            raise OAuthStateExpiredError("OAuth state expired")

        logger.info("oauth_state_redeemed", state=_short(state))
        return dict(row.install_options or {})

    async def sweep_expired(self, now: datetime | None = None) -> int:
        """Delete every expired token. Returns how many were removed."""
        now = now or utcnow()
        async with self._session_factory() as session:
            result = await session.execute(delete(OAuthState).where(OAuthState.expires_at < now))
            await session.commit()

        count = result.rowcount or 0
        if count:
            logger.info("oauth_states_swept", count=count)
        return count
