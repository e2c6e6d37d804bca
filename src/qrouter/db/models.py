"""qrouter database models: multi-tenant question tracking schema.

Design principles:
- All tables partitioned by workspace_id for tenant isolation
- (workspace_id, slack_message_id) is unique on questions: the only
  concurrency-control primitive the escalation path relies on
- JSONB columns for flexible per-channel overrides and OAuth payloads
- Escalations is append-only; nothing in this package deletes questions
- Timestamps are always timezone-aware UTC, even on SQLite
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB as _JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator


class JSONB(TypeDecorator):
    """JSONB on PostgreSQL, plain JSON elsewhere; handles UUID/datetime/Enum."""

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect: Any) -> Any:
        if dialect.name == "postgresql":
            return dialect.type_descriptor(_JSONB())
        return dialect.type_descriptor(JSON())

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        """Convert Python objects to JSON-serializable format before storing."""
        if value is None:
            return None
        return json.loads(json.dumps(value, default=self._json_default))

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        return value

    @staticmethod
    def _json_default(obj: Any) -> Any:
        if isinstance(obj, uuid.UUID):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class UTCDateTime(TypeDecorator):
    """DateTime(timezone=True) that always hands back aware UTC datetimes.

    SQLite drops tzinfo on storage; PostgreSQL keeps it. Normalizing on both
    sides keeps threshold arithmetic identical across backends.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class with common utilities."""

    type_annotation_map = {
        dict[str, Any]: JSONB,
        list[str]: JSONB,
        datetime: UTCDateTime,
    }

    def to_dict(self) -> dict[str, Any]:
        """Convert model to dict for serialization."""
        return {
            c.name: getattr(self, c.name)
            for c in self.__table__.columns
        }


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS & CONSTANTS
# ═══════════════════════════════════════════════════════════════════════════════

class QuestionStatus(str, Enum):
    """Question resolution states."""
    UNANSWERED = "unanswered"
    ANSWERED = "answered"      # Terminal
    DISMISSED = "dismissed"    # Terminal (false positive)


class AnswerDetectionMode(str, Enum):
    """What a human thread reply means for an open question."""
    EMOJI_ONLY = "emoji_only"    # Replies ignored; only a ✅ reaction resolves
    THREAD_AUTO = "thread_auto"  # Any reply marks the question answered
    HYBRID = "hybrid"            # Replies pause escalation; ✅ still needed for stats


class TargetType(str, Enum):
    """Escalation notification destination kinds."""
    USER = "user"
    USER_GROUP = "user_group"
    CHANNEL = "channel"


class EscalationLevel:
    """Integer tiers stored in questions.escalation_level."""
    NOT_ESCALATED = 0
    FIRST = 1
    SECOND = 2
    FINAL = 3
    PAUSED = 99  # Terminal for scheduling, not a resolution

    SCHEDULABLE = (NOT_ESCALATED, FIRST, SECOND)


# ═══════════════════════════════════════════════════════════════════════════════
# CORE TENANT TABLES
# ═══════════════════════════════════════════════════════════════════════════════

class Workspace(Base):
    """Multi-tenant workspace: the top-level isolation boundary."""

    __tablename__ = "workspaces"
    __table_args__ = (
        Index("ix_workspaces_slack_team_id", "slack_team_id", unique=True),
        {"comment": "Tenant isolation boundary"},
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    slack_team_id: Mapped[str] = mapped_column(
        String(32), nullable=False,
        comment="Slack workspace/team ID (T1234567890)"
    )
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    domain: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    config: Mapped[WorkspaceConfig | None] = relationship(back_populates="workspace")
    channels: Mapped[list[Channel]] = relationship(back_populates="workspace")


class WorkspaceConfig(Base):
    """Workspace-wide escalation defaults (1:1 with Workspace).

    The three legacy single-target columns predate escalation_targets and are
    only read by the target resolver's fallback path.
    """

    __tablename__ = "workspace_config"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("workspaces.id", ondelete="CASCADE"), unique=True, nullable=False
    )

    first_escalation_minutes: Mapped[int] = mapped_column(Integer, default=2, nullable=False)
    second_escalation_minutes: Mapped[int] = mapped_column(Integer, default=4, nullable=False)
    final_escalation_minutes: Mapped[int] = mapped_column(Integer, default=1440, nullable=False)
    answer_detection_mode: Mapped[str] = mapped_column(
        String(20), default=AnswerDetectionMode.EMOJI_ONLY.value, nullable=False,
        comment="emoji_only|thread_auto|hybrid"
    )

    # Legacy single-value targets
    escalation_user_group: Mapped[str | None] = mapped_column(String(32), nullable=True)
    escalation_channel_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    final_escalation_user_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    migrated_to_targets: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    workspace: Mapped[Workspace] = relationship(back_populates="config")


class User(Base):
    """Workspace member who asks or answers questions."""

    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("workspace_id", "slack_user_id", name="uix_user_workspace_slack"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    slack_user_id: Mapped[str] = mapped_column(
        String(32), nullable=False, comment="Slack user ID (U1234567890)"
    )
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    real_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_seen_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    @property
    def label(self) -> str:
        return self.display_name or self.real_name or self.slack_user_id

    def touch(self) -> None:
        """Update last_seen_at to now."""
        self.last_seen_at = utcnow()


class Channel(Base):
    """Monitored Slack channel with optional settings override."""

    __tablename__ = "channels"
    __table_args__ = (
        UniqueConstraint("workspace_id", "slack_channel_id", name="uix_channel_workspace_slack"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    slack_channel_id: Mapped[str] = mapped_column(
        String(32), nullable=False, comment="Slack channel ID (C1234567890)"
    )
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_monitored: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Any subset of: escalation_enabled, first/second/final_escalation_minutes,
    # answer_detection_mode. Absent keys fall back to WorkspaceConfig.
    settings: Mapped[dict[str, Any]] = mapped_column(
        JSONB, default=dict, nullable=False,
        comment="Per-channel overrides of workspace escalation config"
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    workspace: Mapped[Workspace] = relationship(back_populates="channels")


# ═══════════════════════════════════════════════════════════════════════════════
# ESCALATION TABLES
# ═══════════════════════════════════════════════════════════════════════════════

class EscalationTarget(Base):
    """One notification destination at one escalation level.

    Duplicates are allowed and both execute. Within a level, execution order
    is priority ascending, then insertion order.
    """

    __tablename__ = "escalation_targets"
    __table_args__ = (
        Index("ix_escalation_targets_workspace_level", "workspace_id", "escalation_level", "priority"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    target_type: Mapped[str] = mapped_column(
        String(20), nullable=False, comment="user|user_group|channel"
    )
    target_id: Mapped[str] = mapped_column(String(32), nullable=False)
    target_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    settings: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class Question(Base):
    """A tracked question and its escalation state."""

    __tablename__ = "questions"
    __table_args__ = (
        UniqueConstraint(
            "workspace_id", "slack_message_id",
            name="questions_workspace_id_slack_message_id_key",
        ),
        Index("ix_questions_workspace_status_level", "workspace_id", "status", "escalation_level"),
        Index("ix_questions_asked_at", "asked_at"),
        Index("ix_questions_side_conversation", "is_side_conversation", "status", "asked_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False
    )
    channel_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("channels.id", ondelete="CASCADE"), nullable=False
    )
    asker_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )

    slack_message_id: Mapped[str] = mapped_column(String(32), nullable=False)
    slack_thread_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    message_text: Mapped[str] = mapped_column(Text, nullable=False)
    extracted_keywords: Mapped[list[str]] = mapped_column(JSONB, default=list, nullable=False)
    asked_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default=QuestionStatus.UNANSWERED.value, nullable=False,
        comment="unanswered|answered|dismissed"
    )
    escalation_level: Mapped[int] = mapped_column(
        Integer, default=EscalationLevel.NOT_ESCALATED, nullable=False,
        comment="0 none, 1..3 escalated, 99 paused"
    )
    last_escalated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    answered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    answerer_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    answer_slack_message_id: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # Provenance
    is_side_conversation: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    source_app: Mapped[str] = mapped_column(String(32), default="slack", nullable=False)
    zendesk_ticket_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    channel: Mapped[Channel] = relationship()
    asker: Mapped[User] = relationship(foreign_keys=[asker_id])
    answerer: Mapped[User | None] = relationship(foreign_keys=[answerer_id])
    escalations: Mapped[list[Escalation]] = relationship(back_populates="question")

    @property
    def last_advance_time(self) -> datetime:
        """Reference point for the current level's dwell threshold.

        The last escalation, or an acknowledge/snooze at any level, restarts
        the clock; until then it runs from the original ask.
        """
        if self.last_escalated_at is None:
            return self.asked_at
        return max(self.asked_at, self.last_escalated_at)


class Escalation(Base):
    """Append-only log: one row per escalation attempt."""

    __tablename__ = "escalations"
    __table_args__ = (
        Index("ix_escalations_question", "question_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    question_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("questions.id", ondelete="CASCADE"), nullable=False
    )
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False)
    action_taken: Mapped[str] = mapped_column(Text, nullable=False)
    escalated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    question: Mapped[Question] = relationship(back_populates="escalations")


# ═══════════════════════════════════════════════════════════════════════════════
# OAUTH TABLES
# ═══════════════════════════════════════════════════════════════════════════════

class SlackInstallation(Base):
    """Bot credentials from a completed OAuth install, one per team."""

    __tablename__ = "slack_installations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    team_id: Mapped[str | None] = mapped_column(String(32), unique=True, nullable=True)
    enterprise_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    app_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    bot_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    bot_user_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    bot_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    bot_scopes: Mapped[list[str]] = mapped_column(JSONB, default=list, nullable=False)
    is_enterprise_install: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    installed_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class OAuthState(Base):
    """Short-lived, single-use correlation token for the install handshake."""

    __tablename__ = "oauth_states"
    __table_args__ = (
        Index("oauth_states_expires_at_idx", "expires_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    state: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    install_options: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
