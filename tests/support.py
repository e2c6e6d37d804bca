"""Shared test helpers: fixed clock, Slack client doubles, Slack errors."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock

from slack_sdk.errors import SlackApiError

from qrouter.services.questions import NewQuestion

T0 = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)

TEAM_ID = "T0000000001"
BOT_USER_ID = "UBOT000001"
BOT_ID = "BBOT000001"


def slack_error(code: str, *, status: int = 200, headers: dict | None = None, **data: Any) -> SlackApiError:
    """Build a SlackApiError the way the SDK raises it."""
    response = MagicMock()
    response.status_code = status
    response.headers = headers or {}
    response.data = {"ok": False, "error": code, **data}
    return SlackApiError(f"The request to the Slack API failed. ({code})", response)


def make_slack_client() -> AsyncMock:
    """AsyncWebClient stand-in with sane successful defaults."""
    client = AsyncMock()
    client.token = "xoxb-test"
    client.conversations_replies.return_value = {"ok": True, "messages": []}
    client.chat_postMessage.return_value = {"ok": True, "ts": "1700000000.999999"}
    client.chat_getPermalink.return_value = {
        "ok": True,
        "permalink": "https://acme.slack.com/archives/C0000000001/p1700000000000100",
    }
    return client


def new_question(
    channel_id: uuid.UUID,
    asker_id: uuid.UUID,
    *,
    text: str = "How do I reset my API key?",
    asked_at: datetime = T0,
    **fields: Any,
) -> NewQuestion:
    """NewQuestion with sensible defaults for store and engine tests."""
    return NewQuestion(
        channel_id=channel_id,
        asker_id=asker_id,
        message_text=text,
        asked_at=asked_at,
        **fields,
    )
