"""Slack Bolt middleware and authorization for qrouter.

Bolt resolves a per-team bot token through ``build_authorize`` (backed by
persisted installations) and ``resolve_workspace_middleware`` attaches the
internal workspace_id to the context, creating the workspace row on first
encounter.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable

import structlog
from slack_bolt.authorization import AuthorizeResult
from slack_bolt.request.async_request import AsyncBoltRequest

from qrouter.errors import AuthorizationError
from qrouter.services.workspaces import WorkspaceDirectory
from qrouter.slack.client import AuthorizedClientProvider

logger = structlog.get_logger()

Middleware = Callable[[AsyncBoltRequest, Any, Callable[[], Awaitable[Any]]], Awaitable[None]]


def build_authorize(provider: AuthorizedClientProvider) -> Callable[..., Awaitable[AuthorizeResult | None]]:
    """Bolt ``authorize`` callable that reads bot tokens from installations."""

    async def authorize(
        enterprise_id: str | None,
        team_id: str | None,
        user_id: str | None = None,
    ) -> AuthorizeResult | None:
        if not team_id:
            return None
        try:
            auth = await provider.client_for(team_id)
        except AuthorizationError as e:
            logger.warning("bolt_authorize_failed", team_id=team_id, reason=e.reason)
            return None
        return AuthorizeResult(
            enterprise_id=enterprise_id,
            team_id=team_id,
            bot_token=auth.client.token,
            bot_user_id=auth.bot_user_id,
            bot_id=auth.bot_id,
            user_id=user_id,
        )

    return authorize


def resolve_workspace_middleware(directory: WorkspaceDirectory) -> Middleware:
    """Attach ``workspace_id`` for the event's team, creating the row lazily."""

    async def middleware(request: AsyncBoltRequest, context: Any, next: Callable[[], Awaitable[Any]]) -> None:
        team_id = context.get("team_id") or (request.body.get("team_id") if request.body else None)
        if not team_id:
            await next()
            return

        workspace = await directory.get_by_team_id(team_id)
        if workspace is None:
            name = None
            domain = None
            client = context.get("client")
            if client is not None:
                try:
                    team_info = await client.team_info()
                    name = team_info.get("team", {}).get("name")
                    domain = team_info.get("team", {}).get("domain")
                except Exception as e:
                    logger.debug("team_info_lookup_failed", team_id=team_id, error=str(e))
            workspace = await directory.ensure_workspace(team_id, name=name, domain=domain)

        # Dict-style assignment; BoltContext has no attribute for custom keys
        context["workspace_id"] = workspace.id
        await next()

    return middleware
