"""Unit tests for database models.

Run with: pytest tests/unit/test_models.py -v
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from qrouter.db.models import (
    AnswerDetectionMode,
    Channel,
    EscalationLevel,
    OAuthState,
    Question,
    User,
    Workspace,
)
from tests.support import T0


@pytest.fixture
async def workspace(session_factory) -> Workspace:
    """Create a test workspace."""
    async with session_factory() as db:
        ws = Workspace(slack_team_id="T1234567890", name="Test Workspace", domain="test")
        db.add(ws)
        await db.commit()
        return ws


class TestWorkspace:
    """Test Workspace model."""

    async def test_create_workspace(self, workspace: Workspace) -> None:
        """Workspace gets a UUID and timestamps on insert."""
        assert isinstance(workspace.id, uuid.UUID)
        assert workspace.created_at.tzinfo is not None

    async def test_workspace_unique_slack_team(self, session_factory, workspace: Workspace) -> None:
        """Cannot create duplicate slack_team_id."""
        async with session_factory() as db:
            db.add(Workspace(slack_team_id="T1234567890", name="Duplicate"))
            with pytest.raises(IntegrityError):
                await db.commit()

    async def test_to_dict(self, workspace: Workspace) -> None:
        data = workspace.to_dict()
        assert data["slack_team_id"] == "T1234567890"
        assert set(data) >= {"id", "name", "domain", "created_at"}


class TestColumnTypes:
    """Custom column types behave the same on SQLite as on PostgreSQL."""

    async def test_naive_datetime_stored_as_utc(self, session_factory) -> None:
        async with session_factory() as db:
            db.add(OAuthState(state="abc", expires_at=datetime(2026, 3, 2, 9, 10)))
            await db.commit()

        async with session_factory() as db:
            row = (await db.execute(select(OAuthState))).scalar_one()
        assert row.expires_at == datetime(2026, 3, 2, 9, 10, tzinfo=timezone.utc)

    async def test_aware_datetime_normalized_to_utc(self, session_factory) -> None:
        plus_two = timezone(timedelta(hours=2))
        async with session_factory() as db:
            db.add(OAuthState(state="abc", expires_at=datetime(2026, 3, 2, 11, 10, tzinfo=plus_two)))
            await db.commit()

        async with session_factory() as db:
            row = (await db.execute(select(OAuthState))).scalar_one()
        assert row.expires_at == datetime(2026, 3, 2, 9, 10, tzinfo=timezone.utc)
        assert row.expires_at.utcoffset() == timedelta(0)

    async def test_json_settings_serialize_rich_values(self, session_factory, workspace: Workspace) -> None:
        marker = uuid.uuid4()
        async with session_factory() as db:
            db.add(Channel(
                workspace_id=workspace.id,
                slack_channel_id="C1",
                settings={
                    "answer_detection_mode": AnswerDetectionMode.HYBRID,
                    "owner": marker,
                    "since": T0,
                },
            ))
            await db.commit()

        async with session_factory() as db:
            channel = (await db.execute(select(Channel))).scalar_one()
        assert channel.settings == {
            "answer_detection_mode": "hybrid",
            "owner": str(marker),
            "since": T0.isoformat(),
        }


class TestUser:
    def test_label_prefers_display_name(self) -> None:
        assert User(slack_user_id="U1", display_name="dana", real_name="Dana S").label == "dana"
        assert User(slack_user_id="U1", real_name="Dana S").label == "Dana S"
        assert User(slack_user_id="U1").label == "U1"

    def test_touch(self) -> None:
        user = User(slack_user_id="U1")
        user.touch()
        assert user.last_seen_at is not None


class TestQuestion:
    def test_last_advance_time(self) -> None:
        q = Question(asked_at=T0, escalation_level=EscalationLevel.NOT_ESCALATED)
        assert q.last_advance_time == T0

        q.escalation_level = EscalationLevel.FIRST
        q.last_escalated_at = T0 + timedelta(minutes=3)
        assert q.last_advance_time == T0 + timedelta(minutes=3)

    def test_escalated_without_timestamp_uses_asked_at(self) -> None:
        q = Question(asked_at=T0, escalation_level=EscalationLevel.SECOND, last_escalated_at=None)
        assert q.last_advance_time == T0

    def test_acknowledged_before_first_escalation_restarts_clock(self) -> None:
        q = Question(
            asked_at=T0,
            escalation_level=EscalationLevel.NOT_ESCALATED,
            last_escalated_at=T0 + timedelta(minutes=1),
        )
        assert q.last_advance_time == T0 + timedelta(minutes=1)
