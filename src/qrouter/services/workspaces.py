"""Workspace, channel and user rows: lazy get-or-create.

Rows are created on first encounter. Concurrent first encounters race on
the natural-key unique constraints; the loser rolls back and reads the
winner's row.
"""

from __future__ import annotations

import uuid
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from qrouter.db.models import (
    Channel,
    EscalationLevel,
    Question,
    QuestionStatus,
    User,
    Workspace,
)

logger = structlog.get_logger()


class WorkspaceDirectory:
    """Tenant bookkeeping used by ingestion collaborators and the scheduler."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def ensure_workspace(
        self,
        slack_team_id: str,
        *,
        name: str | None = None,
        domain: str | None = None,
    ) -> Workspace:
        async with self._session_factory() as session:
            workspace = await self._find_workspace(session, slack_team_id)
            if workspace is not None:
                return workspace

            workspace = Workspace(slack_team_id=slack_team_id, name=name, domain=domain)
            session.add(workspace)
            try:
                await session.commit()
                logger.info("workspace_created", team_id=slack_team_id, name=name)
            except IntegrityError:
                await session.rollback()
                workspace = await self._find_workspace(session, slack_team_id)
                if workspace is None:
                    raise
            return workspace

    async def get_by_team_id(self, slack_team_id: str) -> Workspace | None:
        async with self._session_factory() as session:
            return await self._find_workspace(session, slack_team_id)

    @staticmethod
    async def _find_workspace(session: AsyncSession, slack_team_id: str) -> Workspace | None:
        result = await session.execute(
            select(Workspace).where(Workspace.slack_team_id == slack_team_id)
        )
        return result.scalar_one_or_none()

    async def ensure_channel(
        self,
        workspace_id: uuid.UUID,
        slack_channel_id: str,
        *,
        name: str | None = None,
        settings: dict[str, Any] | None = None,
    ) -> Channel:
        async with self._session_factory() as session:
            channel = await self._find_channel(session, workspace_id, slack_channel_id)
            if channel is not None:
                return channel

            channel = Channel(
                workspace_id=workspace_id,
                slack_channel_id=slack_channel_id,
                name=name,
                is_monitored=True,
                settings=settings or {},
            )
            session.add(channel)
            try:
                await session.commit()
                logger.info("channel_created", slack_channel_id=slack_channel_id, name=name)
            except IntegrityError:
                await session.rollback()
                channel = await self._find_channel(session, workspace_id, slack_channel_id)
                if channel is None:
                    raise
            return channel

    @staticmethod
    async def _find_channel(
        session: AsyncSession, workspace_id: uuid.UUID, slack_channel_id: str
    ) -> Channel | None:
        result = await session.execute(
            select(Channel).where(
                Channel.workspace_id == workspace_id,
                Channel.slack_channel_id == slack_channel_id,
            )
        )
        return result.scalar_one_or_none()

    async def ensure_user(
        self,
        workspace_id: uuid.UUID,
        slack_user_id: str,
        *,
        display_name: str | None = None,
        real_name: str | None = None,
    ) -> User:
        async with self._session_factory() as session:
            user = await self._find_user(session, workspace_id, slack_user_id)
            if user is None:
                user = User(
                    workspace_id=workspace_id,
                    slack_user_id=slack_user_id,
                    display_name=display_name,
                    real_name=real_name,
                )
                session.add(user)
                try:
                    await session.commit()
                    logger.info("user_created", slack_user_id=slack_user_id, name=display_name)
                except IntegrityError:
                    await session.rollback()
                    user = await self._find_user(session, workspace_id, slack_user_id)
                    if user is None:
                        raise

            user.touch()
            await session.commit()
            return user

    @staticmethod
    async def _find_user(
        session: AsyncSession, workspace_id: uuid.UUID, slack_user_id: str
    ) -> User | None:
        result = await session.execute(
            select(User).where(
                User.workspace_id == workspace_id,
                User.slack_user_id == slack_user_id,
            )
        )
        return result.scalar_one_or_none()

    async def workspaces_with_open_questions(self) -> list[Workspace]:
        """Tenants the scheduler has work for this tick."""
        open_question = (
            select(Question.id)
            .where(
                Question.workspace_id == Workspace.id,
                Question.status == QuestionStatus.UNANSWERED.value,
                Question.escalation_level.in_(EscalationLevel.SCHEDULABLE),
            )
            .exists()
        )
        async with self._session_factory() as session:
            result = await session.execute(
                select(Workspace).where(open_question).order_by(Workspace.created_at.asc())
            )
            return list(result.scalars().all())
