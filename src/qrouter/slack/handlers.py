"""Slack event handlers for qrouter.

Handles:
- reaction_added: the asker's check-mark answers a tracked question,
  a no-entry reaction from anyone dismisses it as a false positive,
  eyes acknowledges it and no_bell snoozes it for an hour
"""

from __future__ import annotations

import uuid
from typing import Any

import structlog
from slack_bolt.async_app import AsyncApp, AsyncBoltContext

from qrouter.db.models import QuestionStatus
from qrouter.services.questions import QuestionStore
from qrouter.services.workspaces import WorkspaceDirectory

logger = structlog.get_logger()

ANSWER_REACTIONS = frozenset({"white_check_mark", "heavy_check_mark", "ballot_box_with_check"})
DISMISS_REACTIONS = frozenset({"no_entry", "no_entry_sign"})
ACKNOWLEDGE_REACTIONS = frozenset({"eyes"})
SNOOZE_REACTIONS = frozenset({"no_bell"})

_TRACKED_REACTIONS = ANSWER_REACTIONS | DISMISS_REACTIONS | ACKNOWLEDGE_REACTIONS | SNOOZE_REACTIONS

ACKNOWLEDGED = "acknowledged"
SNOOZED = "snoozed"


async def handle_reaction(
    event: dict[str, Any],
    workspace_id: uuid.UUID,
    questions: QuestionStore,
    directory: WorkspaceDirectory,
) -> str | None:
    """Apply a reaction to its question. Returns what changed, if anything.

    The result is the new status for answer/dismiss, or ``acknowledged`` /
    ``snoozed`` when only the escalation clock moved.
    """
    item = event.get("item") or {}
    if item.get("type") != "message":
        return None

    reaction = event.get("reaction")
    if reaction not in _TRACKED_REACTIONS:
        return None

    question = await questions.find_by_message_id(workspace_id, item.get("ts", ""))
    if question is None or question.status == QuestionStatus.ANSWERED.value:
        return None

    reactor = event.get("user")
    if reaction in ANSWER_REACTIONS:
        # Only the asker can confirm their own question was answered
        if reactor != question.asker.slack_user_id:
            logger.debug(
                "answer_reaction_ignored",
                question_id=str(question.id),
                reactor=reactor,
            )
            return None
        answerer = await directory.ensure_user(workspace_id, reactor)
        if await questions.mark_answered(question.id, answerer.id):
            return QuestionStatus.ANSWERED.value
        return None

    if reaction in ACKNOWLEDGE_REACTIONS:
        return ACKNOWLEDGED if await questions.acknowledge(question.id) else None

    if reaction in SNOOZE_REACTIONS:
        return SNOOZED if await questions.snooze(question.id) else None

    if await questions.mark_dismissed(question.id):
        return QuestionStatus.DISMISSED.value
    return None


def register_handlers(app: AsyncApp, questions: QuestionStore, directory: WorkspaceDirectory) -> None:
    """Register all Slack event handlers with the Bolt app."""

    @app.event("reaction_added")
    async def handle_reaction_added(event: dict[str, Any], context: AsyncBoltContext) -> None:
        workspace_id = context.get("workspace_id")
        if not workspace_id:
            return
        try:
            status = await handle_reaction(event, workspace_id, questions, directory)
        except Exception as e:
            logger.error(
                "reaction_handler_failed",
                reaction=event.get("reaction"),
                error=str(e),
                exc_info=True,
            )
            return
        if status:
            logger.info(
                "question_status_from_reaction",
                workspace_id=str(workspace_id),
                reaction=event.get("reaction"),
                status=status,
            )

    @app.event("reaction_removed")
    async def handle_reaction_removed() -> None:
        # Acknowledged so Bolt does not warn about unhandled events
        return
