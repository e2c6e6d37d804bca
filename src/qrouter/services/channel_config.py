"""Effective escalation configuration per channel.

A channel's ``settings`` JSON may override any subset of the workspace
defaults. Resolution is field-by-field: a non-null override wins, anything
absent falls back to WorkspaceConfig, and ``escalation_enabled`` defaults to
True.

The scheduler resolves every channel touched by a tick in a single query
(``effective_configs``) so database round-trips scale with distinct channels,
not with open questions.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Iterable

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.attributes import flag_modified

from qrouter.config import EscalationDefaults
from qrouter.db.models import AnswerDetectionMode, Channel, WorkspaceConfig

logger = structlog.get_logger()

OVERRIDE_FIELDS = (
    "escalation_enabled",
    "first_escalation_minutes",
    "second_escalation_minutes",
    "final_escalation_minutes",
    "answer_detection_mode",
)

_MODE_DESCRIPTIONS = {
    AnswerDetectionMode.EMOJI_ONLY: (
        "Emoji only: questions are answered only when the asker reacts with "
        ":white_check_mark:. Thread replies do not stop escalation."
    ),
    AnswerDetectionMode.THREAD_AUTO: (
        "Thread auto: any thread reply from someone else marks the question "
        "as answered and stops escalation."
    ),
    AnswerDetectionMode.HYBRID: (
        "Hybrid: a thread reply pauses escalation, but the question stays "
        "unanswered until the asker reacts with :white_check_mark:."
    ),
}


@dataclass(frozen=True)
class EffectiveConfig:
    """Merged workspace + channel escalation settings."""

    first_escalation_minutes: int
    second_escalation_minutes: int
    final_escalation_minutes: int
    answer_detection_mode: AnswerDetectionMode
    escalation_enabled: bool = True

    @classmethod
    def from_workspace(cls, config: WorkspaceConfig) -> EffectiveConfig:
        return cls(
            first_escalation_minutes=config.first_escalation_minutes,
            second_escalation_minutes=config.second_escalation_minutes,
            final_escalation_minutes=config.final_escalation_minutes,
            answer_detection_mode=parse_mode(config.answer_detection_mode),
        )

    def overlay(self, overrides: dict[str, Any] | None) -> EffectiveConfig:
        """Apply a channel's non-null override fields on top of this config."""
        if not overrides:
            return self

        def pick(key: str, current: Any) -> Any:
            value = overrides.get(key)
            return current if value is None else value

        return EffectiveConfig(
            first_escalation_minutes=int(pick("first_escalation_minutes", self.first_escalation_minutes)),
            second_escalation_minutes=int(pick("second_escalation_minutes", self.second_escalation_minutes)),
            final_escalation_minutes=int(pick("final_escalation_minutes", self.final_escalation_minutes)),
            answer_detection_mode=parse_mode(
                pick("answer_detection_mode", self.answer_detection_mode)
            ),
            escalation_enabled=bool(pick("escalation_enabled", self.escalation_enabled)),
        )


def parse_mode(value: str | AnswerDetectionMode) -> AnswerDetectionMode:
    """Coerce a stored mode string, falling back to emoji_only if unknown."""
    try:
        return AnswerDetectionMode(value)
    except ValueError:
        logger.warning("unknown_answer_detection_mode", value=value)
        return AnswerDetectionMode.EMOJI_ONLY


def describe_answer_detection_mode(mode: str | AnswerDetectionMode) -> str:
    return _MODE_DESCRIPTIONS[parse_mode(mode)]


class ConfigurationResolver:
    """Reads and maintains workspace and channel escalation settings."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        defaults: EscalationDefaults | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._defaults = defaults or EscalationDefaults.from_settings()

    # ── Workspace ────────────────────────────────────────────────────────

    async def get_workspace_config(self, workspace_id: uuid.UUID) -> WorkspaceConfig:
        """Fetch the workspace config, creating it with defaults on first access."""
        async with self._session_factory() as session:
            config = await self._load_workspace_config(session, workspace_id)
            if config is not None:
                return config

            config = WorkspaceConfig(
                workspace_id=workspace_id,
                first_escalation_minutes=self._defaults.first_minutes,
                second_escalation_minutes=self._defaults.second_minutes,
                final_escalation_minutes=self._defaults.final_minutes,
                answer_detection_mode=self._defaults.answer_detection_mode,
            )
            session.add(config)
            try:
                await session.commit()
            except IntegrityError:
                # Another task created it first
                await session.rollback()
                config = await self._load_workspace_config(session, workspace_id)
                if config is None:
                    raise
                return config

        logger.info("workspace_config_created", workspace_id=str(workspace_id))
        return config

    @staticmethod
    async def _load_workspace_config(
        session: AsyncSession, workspace_id: uuid.UUID
    ) -> WorkspaceConfig | None:
        result = await session.execute(
            select(WorkspaceConfig).where(WorkspaceConfig.workspace_id == workspace_id)
        )
        return result.scalar_one_or_none()

    async def set_answer_detection_mode(
        self, workspace_id: uuid.UUID, mode: str | AnswerDetectionMode
    ) -> WorkspaceConfig:
        resolved = AnswerDetectionMode(mode)
        await self.get_workspace_config(workspace_id)
        async with self._session_factory() as session:
            config = await self._load_workspace_config(session, workspace_id)
            config.answer_detection_mode = resolved.value
            await session.commit()

        logger.info(
            "answer_detection_mode_updated",
            workspace_id=str(workspace_id),
            mode=resolved.value,
        )
        return config

    # ── Channels ─────────────────────────────────────────────────────────

    async def effective_config(self, channel_id: uuid.UUID) -> EffectiveConfig:
        """Resolve a single channel. Prefer ``effective_configs`` in loops."""
        async with self._session_factory() as session:
            channel = await session.get(Channel, channel_id)
        if channel is None:
            raise LookupError(f"channel {channel_id} not found")

        workspace_config = await self.get_workspace_config(channel.workspace_id)
        return EffectiveConfig.from_workspace(workspace_config).overlay(channel.settings)

    async def effective_configs(
        self,
        workspace_config: WorkspaceConfig,
        channel_ids: Iterable[uuid.UUID],
    ) -> dict[uuid.UUID, EffectiveConfig]:
        """Resolve many channels of one workspace with a single query."""
        ids = list(set(channel_ids))
        base = EffectiveConfig.from_workspace(workspace_config)
        if not ids:
            return {}

        async with self._session_factory() as session:
            result = await session.execute(
                select(Channel.id, Channel.settings).where(
                    Channel.workspace_id == workspace_config.workspace_id,
                    Channel.id.in_(ids),
                )
            )
            overrides = {row.id: row.settings for row in result.all()}

        # Channels without a row get the plain workspace defaults
        return {cid: base.overlay(overrides.get(cid)) for cid in ids}

    async def update_channel_settings(
        self, channel_id: uuid.UUID, **changes: Any
    ) -> dict[str, Any]:
        """Merge override fields into a channel's settings. None removes a key."""
        unknown = set(changes) - set(OVERRIDE_FIELDS)
        if unknown:
            raise ValueError(f"unknown channel setting(s): {', '.join(sorted(unknown))}")
        if changes.get("answer_detection_mode") is not None:
            changes["answer_detection_mode"] = AnswerDetectionMode(
                changes["answer_detection_mode"]
            ).value

        async with self._session_factory() as session:
            channel = await session.get(Channel, channel_id)
            if channel is None:
                raise LookupError(f"channel {channel_id} not found")

            merged = dict(channel.settings or {})
            for key, value in changes.items():
                if value is None:
                    merged.pop(key, None)
                else:
                    merged[key] = value
            channel.settings = merged
            flag_modified(channel, "settings")
            await session.commit()

        logger.info(
            "channel_settings_updated",
            channel_id=str(channel_id),
            fields=sorted(changes),
        )
        return merged

    async def clear_channel_settings(self, channel_id: uuid.UUID) -> None:
        async with self._session_factory() as session:
            channel = await session.get(Channel, channel_id)
            if channel is None:
                raise LookupError(f"channel {channel_id} not found")
            channel.settings = {}
            flag_modified(channel, "settings")
            await session.commit()

        logger.info("channel_settings_cleared", channel_id=str(channel_id))
