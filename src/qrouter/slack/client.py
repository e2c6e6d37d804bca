"""Authorized Slack client provider for multi-workspace installs.

Each tenant has its own bot token, persisted by the OAuth installer in
``slack_installations``. The escalation engine never talks to Slack with a
global token; it asks this provider for the tenant's client and gets an
``AuthorizationError`` back when the tenant cannot be served, so it can skip
that tenant for the tick instead of retrying calls doomed to fail auth.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Callable

import structlog
from slack_sdk.web.async_client import AsyncWebClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from qrouter.db.models import SlackInstallation, Workspace
from qrouter.errors import AuthorizationError

logger = structlog.get_logger()

ClientFactory = Callable[[str], AsyncWebClient]


@dataclass
class AuthorizedClient:
    """A tenant-scoped Web API client plus the identity it posts as."""

    team_id: str
    client: AsyncWebClient
    bot_user_id: str | None = None
    bot_id: str | None = None

    def is_self(self, message: dict) -> bool:
        """True if a Slack message was authored by this installation's bot."""
        if self.bot_user_id and message.get("user") == self.bot_user_id:
            return True
        if self.bot_id and message.get("bot_id") == self.bot_id:
            return True
        return False


def _default_client_factory(token: str) -> AsyncWebClient:
    return AsyncWebClient(token=token)


class AuthorizedClientProvider:
    """Resolves bearer-authenticated clients from persisted installations."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._client_factory = client_factory or _default_client_factory
        self._clients: dict[tuple[str, str], AsyncWebClient] = {}

    async def client_for(self, team_id: str) -> AuthorizedClient:
        """Return the client for a Slack team ID or raise AuthorizationError."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(SlackInstallation).where(SlackInstallation.team_id == team_id)
            )
            installation = result.scalar_one_or_none()

        if installation is None:
            raise AuthorizationError(team_id, "no installation found")
        if not installation.bot_token:
            raise AuthorizationError(team_id, "installation has no bot token")

        key = (team_id, installation.bot_token)
        client = self._clients.get(key)
        if client is None:
            # Drop any client built from a token that has since been rotated
            for stale in [k for k in self._clients if k[0] == team_id]:
                self._clients.pop(stale, None)
            client = self._client_factory(installation.bot_token)
            self._clients[key] = client
            logger.debug("authorized_client_created", team_id=team_id)

        return AuthorizedClient(
            team_id=team_id,
            client=client,
            bot_user_id=installation.bot_user_id,
            bot_id=installation.bot_id,
        )

    async def client_for_workspace(self, workspace_id: uuid.UUID) -> AuthorizedClient:
        """Same as client_for, keyed by internal workspace UUID."""
        async with self._session_factory() as session:
            workspace = await session.get(Workspace, workspace_id)

        if workspace is None:
            raise AuthorizationError(str(workspace_id), "workspace not found")
        return await self.client_for(workspace.slack_team_id)
