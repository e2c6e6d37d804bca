"""Pytest configuration and shared fixtures.

Run with:
    pytest tests/                          # Run all tests
    pytest tests/unit/test_retry.py -v     # Run specific test file

Store tests run against SQLite (aiosqlite) on a per-test temp file so that
concurrent sessions get their own connections and unique-constraint races
behave like they do on PostgreSQL.
"""

from __future__ import annotations

from dataclasses import dataclass

import pytest
import pytest_asyncio

from qrouter.db.models import Base, Channel, SlackInstallation, User, Workspace
from qrouter.db.session import build_engine, build_session_factory
from qrouter.services import WorkspaceDirectory
from tests.support import BOT_ID, BOT_USER_ID, TEAM_ID


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """A fresh SQLite database per test."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'qrouter.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def directory(session_factory) -> WorkspaceDirectory:
    return WorkspaceDirectory(session_factory)


@dataclass
class Tenant:
    workspace: Workspace
    channel: Channel
    asker: User


@pytest_asyncio.fixture
async def tenant(session_factory, directory) -> Tenant:
    """An installed workspace with one monitored channel and one asker."""
    workspace = await directory.ensure_workspace(TEAM_ID, name="Acme", domain="acme")
    channel = await directory.ensure_channel(workspace.id, "C0000000001", name="support")
    asker = await directory.ensure_user(workspace.id, "U0000000001", display_name="dana")

    async with session_factory() as session:
        session.add(SlackInstallation(
            team_id=TEAM_ID,
            bot_token="xoxb-test",
            bot_user_id=BOT_USER_ID,
            bot_id=BOT_ID,
        ))
        await session.commit()

    return Tenant(workspace=workspace, channel=channel, asker=asker)
