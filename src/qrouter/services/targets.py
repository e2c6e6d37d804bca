"""Escalation targets: who gets notified at each level.

Targets are rows in ``escalation_targets``. Workspaces installed before
targets existed carry three legacy single-value fields on WorkspaceConfig
instead; until ``migrate_from_legacy_config`` has run (or an admin adds
explicit targets) those are synthesized into a one-target list:

    level 1 -> escalation_user_group   (user_group)
    level 2 -> escalation_channel_id   (channel)
    level 3 -> final_escalation_user_id (user)
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Sequence

import structlog
from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from qrouter.db.models import EscalationLevel, EscalationTarget, TargetType, WorkspaceConfig, utcnow
from qrouter.infra.retry import slack_error_code

logger = structlog.get_logger()

_LEGACY_FIELDS: dict[int, tuple[TargetType, str]] = {
    EscalationLevel.FIRST: (TargetType.USER_GROUP, "escalation_user_group"),
    EscalationLevel.SECOND: (TargetType.CHANNEL, "escalation_channel_id"),
    EscalationLevel.FINAL: (TargetType.USER, "final_escalation_user_id"),
}

_UPDATABLE_FIELDS = frozenset({"target_name", "priority", "is_active", "settings"})


@dataclass(frozen=True)
class ResolvedTarget:
    """One destination the engine will notify at a level."""

    target_type: TargetType
    target_id: str
    target_name: str | None = None
    escalation_level: int = 1
    priority: int = 0
    settings: dict[str, Any] | None = None
    row_id: uuid.UUID | None = None  # None for legacy-synthesized targets

    @classmethod
    def from_row(cls, row: EscalationTarget) -> ResolvedTarget:
        return cls(
            target_type=TargetType(row.target_type),
            target_id=row.target_id,
            target_name=row.target_name,
            escalation_level=row.escalation_level,
            priority=row.priority,
            settings=row.settings,
            row_id=row.id,
        )

    @property
    def label(self) -> str:
        return self.target_name or self.target_id


class TargetValidationError(str, Enum):
    NOT_FOUND = "not_found"
    ARCHIVED = "archived"
    NO_PERMISSION = "no_permission"
    IS_BOT = "is_bot"
    DELETED = "deleted"
    NOT_MEMBER = "not_member"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class TargetValidation:
    valid: bool
    display_name: str | None = None
    reason: str | None = None
    error: TargetValidationError | None = None

    @classmethod
    def ok(cls, display_name: str) -> TargetValidation:
        return cls(valid=True, display_name=display_name)

    @classmethod
    def fail(cls, error: TargetValidationError, reason: str) -> TargetValidation:
        return cls(valid=False, reason=reason, error=error)


def describe_target(target: ResolvedTarget | EscalationTarget) -> str:
    """Human-readable one-liner for admin listings."""
    name = target.target_name or target.target_id
    kind = TargetType(target.target_type)
    if kind is TargetType.USER:
        return f":bust_in_silhouette: User: {name}"
    if kind is TargetType.USER_GROUP:
        return f":busts_in_silhouette: Group: {name}"
    if kind is TargetType.CHANNEL:
        return f":hash: Channel: {name}"
    raise ValueError(f"unhandled target type: {kind}")


class EscalationTargetResolver:
    """Reads and maintains per-level escalation targets for workspaces."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ── Resolution ───────────────────────────────────────────────────────

    async def targets_for_level(self, workspace_id: uuid.UUID, level: int) -> list[ResolvedTarget]:
        """Active targets at a level, in execution order."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(EscalationTarget)
                .where(
                    EscalationTarget.workspace_id == workspace_id,
                    EscalationTarget.escalation_level == level,
                    EscalationTarget.is_active.is_(True),
                )
                .order_by(
                    EscalationTarget.priority.asc(),
                    EscalationTarget.created_at.asc(),
                    EscalationTarget.id.asc(),
                )
            )
            return [ResolvedTarget.from_row(row) for row in result.scalars().all()]

    @staticmethod
    def legacy_fallback(config: WorkspaceConfig, level: int) -> list[ResolvedTarget]:
        """Synthesize at most one target from the legacy config fields."""
        mapping = _LEGACY_FIELDS.get(level)
        if mapping is None:
            return []
        target_type, field_name = mapping
        value = getattr(config, field_name, None)
        if not value:
            return []
        return [ResolvedTarget(target_type=target_type, target_id=value, escalation_level=level)]

    async def resolve(
        self, workspace_id: uuid.UUID, config: WorkspaceConfig, level: int
    ) -> list[ResolvedTarget]:
        """Explicit targets for the level, else the legacy fallback."""
        targets = await self.targets_for_level(workspace_id, level)
        if targets:
            return targets

        fallback = self.legacy_fallback(config, level)
        if fallback:
            logger.debug(
                "legacy_target_fallback",
                workspace_id=str(workspace_id),
                level=level,
                target_type=fallback[0].target_type.value,
            )
        return fallback

    # ── Validation ───────────────────────────────────────────────────────

    async def validate(
        self,
        client: AsyncWebClient,
        target_type: TargetType | str,
        target_id: str,
    ) -> TargetValidation:
        """Check that a prospective target exists and can be notified."""
        try:
            kind = TargetType(target_type)
        except ValueError:
            return TargetValidation.fail(
                TargetValidationError.UNKNOWN, f"Unknown target type: {target_type}"
            )

        try:
            if kind is TargetType.USER:
                return await self._validate_user(client, target_id)
            if kind is TargetType.USER_GROUP:
                return await self._validate_user_group(client, target_id)
            if kind is TargetType.CHANNEL:
                return await self._validate_channel(client, target_id)
            raise ValueError(f"unhandled target type: {kind}")
        except Exception as e:
            logger.error(
                "target_validation_failed",
                target_type=kind.value,
                target_id=target_id,
                error=str(e),
            )
            return TargetValidation.fail(
                TargetValidationError.UNKNOWN, f"Failed to validate target: {e}"
            )

    @staticmethod
    async def _validate_user(client: AsyncWebClient, user_id: str) -> TargetValidation:
        try:
            response = await client.users_info(user=user_id)
        except SlackApiError as e:
            if slack_error_code(e) == "user_not_found":
                return TargetValidation.fail(
                    TargetValidationError.NOT_FOUND, "User not found in this workspace"
                )
            raise

        user = response.get("user") or {}
        if not user:
            return TargetValidation.fail(
                TargetValidationError.NOT_FOUND, "User not found in this workspace"
            )
        if user.get("deleted"):
            return TargetValidation.fail(
                TargetValidationError.DELETED, "This user has been deleted from the workspace"
            )
        if user.get("is_bot"):
            return TargetValidation.fail(
                TargetValidationError.IS_BOT,
                "Bots cannot be escalation targets. Please select a real user.",
            )
        return TargetValidation.ok(user.get("real_name") or user.get("name") or user_id)

    @staticmethod
    async def _validate_user_group(client: AsyncWebClient, group_id: str) -> TargetValidation:
        try:
            response = await client.usergroups_list(include_disabled=True)
        except SlackApiError as e:
            if slack_error_code(e) == "missing_scope":
                return TargetValidation.fail(
                    TargetValidationError.NO_PERMISSION,
                    "Bot lacks permission to access user groups. Reinstall the app with usergroups:read.",
                )
            raise

        group = next(
            (g for g in response.get("usergroups") or [] if g.get("id") == group_id), None
        )
        if group is None:
            return TargetValidation.fail(
                TargetValidationError.NOT_FOUND,
                "User group not found. Make sure the group exists and the bot has access to it.",
            )
        if (group.get("date_delete") or 0) > 0:
            return TargetValidation.fail(
                TargetValidationError.DELETED, "This user group has been deleted"
            )
        return TargetValidation.ok(f"@{group.get('handle') or group_id}")

    @staticmethod
    async def _validate_channel(client: AsyncWebClient, channel_id: str) -> TargetValidation:
        try:
            response = await client.conversations_info(channel=channel_id)
        except SlackApiError as e:
            code = slack_error_code(e)
            if code == "channel_not_found":
                return TargetValidation.fail(
                    TargetValidationError.NOT_FOUND,
                    "Channel not found. Make sure it exists and the bot has been added to it.",
                )
            if code == "missing_scope":
                return TargetValidation.fail(
                    TargetValidationError.NO_PERMISSION,
                    "Bot lacks permission to access this channel.",
                )
            raise

        channel = response.get("channel") or {}
        if not channel:
            return TargetValidation.fail(
                TargetValidationError.NOT_FOUND, "Channel not found or bot lacks access to it"
            )
        name = channel.get("name") or channel_id
        if channel.get("is_archived"):
            return TargetValidation.fail(
                TargetValidationError.ARCHIVED,
                "This channel has been archived. Unarchive it or select a different channel.",
            )
        if not channel.get("is_member"):
            return TargetValidation.fail(
                TargetValidationError.NOT_MEMBER,
                f"Bot is not a member of #{name}. Add the bot to the channel first.",
            )
        return TargetValidation.ok(f"#{name}")

    # ── Administration ───────────────────────────────────────────────────

    async def list_targets(self, workspace_id: uuid.UUID) -> list[EscalationTarget]:
        """Active targets across all levels, grouped by level."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(EscalationTarget)
                .where(
                    EscalationTarget.workspace_id == workspace_id,
                    EscalationTarget.is_active.is_(True),
                )
                .order_by(
                    EscalationTarget.escalation_level.asc(),
                    EscalationTarget.priority.asc(),
                    EscalationTarget.created_at.asc(),
                )
            )
            return list(result.scalars().all())

    async def add_target(
        self,
        workspace_id: uuid.UUID,
        target_type: TargetType | str,
        target_id: str,
        escalation_level: int,
        *,
        target_name: str | None = None,
        priority: int | None = None,
        settings: dict[str, Any] | None = None,
    ) -> EscalationTarget:
        """Add a target. Priority defaults to one past the level's current max."""
        kind = TargetType(target_type)
        if escalation_level < EscalationLevel.FIRST:
            raise ValueError(f"escalation level must be >= 1, got {escalation_level}")

        async with self._session_factory() as session:
            if priority is None:
                result = await session.execute(
                    select(func.max(EscalationTarget.priority)).where(
                        EscalationTarget.workspace_id == workspace_id,
                        EscalationTarget.escalation_level == escalation_level,
                    )
                )
                current = result.scalar_one_or_none()
                priority = 0 if current is None else current + 1

            row = EscalationTarget(
                workspace_id=workspace_id,
                target_type=kind.value,
                target_id=target_id,
                target_name=target_name,
                escalation_level=escalation_level,
                priority=priority,
                settings=settings,
            )
            session.add(row)
            await session.commit()

        logger.info(
            "escalation_target_added",
            workspace_id=str(workspace_id),
            target_type=kind.value,
            target_id=target_id,
            level=escalation_level,
            priority=priority,
        )
        return row

    async def update_target(self, target_row_id: uuid.UUID, **changes: Any) -> EscalationTarget:
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update target field(s): {', '.join(sorted(unknown))}")

        async with self._session_factory() as session:
            row = await session.get(EscalationTarget, target_row_id)
            if row is None:
                raise LookupError(f"escalation target {target_row_id} not found")
            for key, value in changes.items():
                setattr(row, key, value)
            row.updated_at = utcnow()
            await session.commit()
        return row

    async def remove_target(self, target_row_id: uuid.UUID) -> bool:
        async with self._session_factory() as session:
            row = await session.get(EscalationTarget, target_row_id)
            if row is None:
                return False
            await session.delete(row)
            await session.commit()

        logger.info("escalation_target_removed", target_id=str(target_row_id))
        return True

    async def reorder_targets(
        self,
        workspace_id: uuid.UUID,
        escalation_level: int,
        ordered_ids: Sequence[uuid.UUID],
    ) -> None:
        """Rewrite priorities within a level to match ``ordered_ids``."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(EscalationTarget).where(
                    EscalationTarget.workspace_id == workspace_id,
                    EscalationTarget.escalation_level == escalation_level,
                    EscalationTarget.id.in_(list(ordered_ids)),
                )
            )
            rows = {row.id: row for row in result.scalars().all()}
            for index, target_row_id in enumerate(ordered_ids):
                row = rows.get(target_row_id)
                if row is not None:
                    row.priority = index
                    row.updated_at = utcnow()
            await session.commit()

    async def migrate_from_legacy_config(self, workspace_id: uuid.UUID) -> int:
        """Copy legacy single-value targets into rows, once.

        If the workspace already has explicit targets the migration only marks
        itself done. Returns the number of rows created.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(WorkspaceConfig).where(WorkspaceConfig.workspace_id == workspace_id)
            )
            config = result.scalar_one_or_none()
            if config is None or config.migrated_to_targets:
                return 0

            existing = await session.execute(
                select(func.count(EscalationTarget.id)).where(
                    EscalationTarget.workspace_id == workspace_id
                )
            )
            created = 0
            if not existing.scalar_one():
                for level in sorted(_LEGACY_FIELDS):
                    for target in self.legacy_fallback(config, level):
                        session.add(EscalationTarget(
                            workspace_id=workspace_id,
                            target_type=target.target_type.value,
                            target_id=target.target_id,
                            escalation_level=level,
                            priority=0,
                        ))
                        created += 1

            config.migrated_to_targets = True
            await session.commit()

        logger.info(
            "legacy_targets_migrated",
            workspace_id=str(workspace_id),
            created=created,
        )
        return created
