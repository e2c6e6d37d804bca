"""Initial schema: workspaces, channels, questions, escalations, oauth.

Revision ID: 5c0e7a91d2b4
Revises:
Create Date: 2026-10-18 12:00:00.000000+00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers
revision: str = "5c0e7a91d2b4"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Workspaces
    op.create_table(
        "workspaces",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("slack_team_id", sa.String(32), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("domain", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        comment="Tenant isolation boundary",
    )
    op.create_index("ix_workspaces_slack_team_id", "workspaces", ["slack_team_id"], unique=True)

    # Workspace config (1:1)
    op.create_table(
        "workspace_config",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("workspace_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, unique=True),
        sa.Column("first_escalation_minutes", sa.Integer(), nullable=False, server_default="2"),
        sa.Column("second_escalation_minutes", sa.Integer(), nullable=False, server_default="4"),
        sa.Column("final_escalation_minutes", sa.Integer(), nullable=False, server_default="1440"),
        sa.Column("answer_detection_mode", sa.String(20), nullable=False, server_default="emoji_only"),
        sa.Column("escalation_user_group", sa.String(32), nullable=True),
        sa.Column("escalation_channel_id", sa.String(32), nullable=True),
        sa.Column("final_escalation_user_id", sa.String(32), nullable=True),
        sa.Column("migrated_to_targets", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    # Users
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("workspace_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False),
        sa.Column("slack_user_id", sa.String(32), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=True),
        sa.Column("real_name", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_unique_constraint("uix_user_workspace_slack", "users", ["workspace_id", "slack_user_id"])

    # Channels
    op.create_table(
        "channels",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("workspace_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False),
        sa.Column("slack_channel_id", sa.String(32), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("is_monitored", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("settings", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_unique_constraint("uix_channel_workspace_slack", "channels", ["workspace_id", "slack_channel_id"])

    # Escalation targets
    op.create_table(
        "escalation_targets",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("workspace_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False),
        sa.Column("target_type", sa.String(20), nullable=False),
        sa.Column("target_id", sa.String(32), nullable=False),
        sa.Column("target_name", sa.String(255), nullable=True),
        sa.Column("escalation_level", sa.Integer(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("settings", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index(
        "ix_escalation_targets_workspace_level",
        "escalation_targets",
        ["workspace_id", "escalation_level", "priority"],
    )

    # Questions
    op.create_table(
        "questions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("workspace_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False),
        sa.Column("channel_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("channels.id", ondelete="CASCADE"), nullable=False),
        sa.Column("asker_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("slack_message_id", sa.String(32), nullable=False),
        sa.Column("slack_thread_id", sa.String(32), nullable=True),
        sa.Column("message_text", sa.Text(), nullable=False),
        sa.Column("extracted_keywords", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("asked_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="unanswered"),
        sa.Column("escalation_level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_escalated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("answered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("answerer_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("answer_slack_message_id", sa.String(32), nullable=True),
        sa.Column("is_side_conversation", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("source_app", sa.String(32), nullable=False, server_default="slack"),
        sa.Column("zendesk_ticket_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_unique_constraint(
        "questions_workspace_id_slack_message_id_key",
        "questions",
        ["workspace_id", "slack_message_id"],
    )
    op.create_index(
        "ix_questions_workspace_status_level",
        "questions",
        ["workspace_id", "status", "escalation_level"],
    )
    op.create_index("ix_questions_asked_at", "questions", ["asked_at"])
    op.create_index(
        "ix_questions_side_conversation",
        "questions",
        ["is_side_conversation", "status", "asked_at"],
    )

    # Escalation log (append-only)
    op.create_table(
        "escalations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("question_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("questions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("escalation_level", sa.Integer(), nullable=False),
        sa.Column("action_taken", sa.Text(), nullable=False),
        sa.Column("escalated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_escalations_question", "escalations", ["question_id"])

    # Slack installations
    op.create_table(
        "slack_installations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("team_id", sa.String(32), nullable=True, unique=True),
        sa.Column("enterprise_id", sa.String(32), nullable=True),
        sa.Column("app_id", sa.String(32), nullable=True),
        sa.Column("bot_token", sa.Text(), nullable=True),
        sa.Column("bot_user_id", sa.String(32), nullable=True),
        sa.Column("bot_id", sa.String(32), nullable=True),
        sa.Column("bot_scopes", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("is_enterprise_install", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("installed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    # OAuth states
    op.create_table(
        "oauth_states",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("state", sa.String(255), nullable=False, unique=True),
        sa.Column("install_options", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("oauth_states_expires_at_idx", "oauth_states", ["expires_at"])


def downgrade() -> None:
    # Drop tables in reverse order
    op.drop_table("oauth_states")
    op.drop_table("slack_installations")
    op.drop_table("escalations")
    op.drop_table("questions")
    op.drop_table("escalation_targets")
    op.drop_table("channels")
    op.drop_table("users")
    op.drop_table("workspace_config")
    op.drop_table("workspaces")
