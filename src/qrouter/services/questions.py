"""Question store: owns the Question entity.

Ingestion is insert-first: the caller never checks for an existing row,
it tries the insert and lets the (workspace_id, slack_message_id) unique
constraint decide. A duplicate delivery of the same Slack event, even a
concurrent one, therefore yields exactly one row and an ``AlreadyExists``
sentinel for the loser.

The escalation level is only written by the escalation engine; status is
only written by answer/dismiss paths. last_escalated_at is also the dwell
clock, which acknowledge and snooze push forward but never back.
"""

from __future__ import annotations

import math
import re
import statistics
import uuid
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Mapping

import structlog
from sqlalchemy import distinct, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from qrouter.db.models import (
    Escalation,
    EscalationLevel,
    Question,
    QuestionStatus,
    utcnow,
)
from qrouter.errors import ConflictError
from qrouter.services.channel_config import EffectiveConfig

logger = structlog.get_logger()

_STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at",
    "to", "for", "of", "with", "by", "from", "is", "are",
    "how", "what", "when", "where", "why", "who", "does",
    "can", "could", "should", "would", "i", "you", "we",
    "this", "that", "there", "have", "anyone", "know",
})
_NON_WORD_RE = re.compile(r"[^a-z0-9\s]")
_MAX_KEYWORDS = 5

SNOOZE_DURATION = timedelta(hours=1)


def extract_keywords(text: str) -> list[str]:
    """Top keywords by frequency: lowercase, >3 chars, stopwords removed."""
    words = [
        w for w in _NON_WORD_RE.sub(" ", text.lower()).split()
        if len(w) > 3 and w not in _STOP_WORDS
    ]
    # Counter preserves first-seen order for ties
    return [w for w, _ in Counter(words).most_common(_MAX_KEYWORDS)]


@dataclass(frozen=True)
class AlreadyExists:
    """Returned by insert_if_absent when the question was already stored."""

    workspace_id: uuid.UUID
    slack_message_id: str


@dataclass
class NewQuestion:
    """Fields an ingestion collaborator supplies for a detected question."""

    channel_id: uuid.UUID
    asker_id: uuid.UUID
    message_text: str
    asked_at: datetime
    slack_thread_id: str | None = None
    keywords: list[str] | None = None
    is_side_conversation: bool = False
    source_app: str = "slack"
    zendesk_ticket_id: str | None = None


def threshold_minutes(level: int, config: EffectiveConfig) -> int | None:
    """Dwell time before a question at ``level`` moves to the next level."""
    if level == EscalationLevel.NOT_ESCALATED:
        return config.first_escalation_minutes
    if level == EscalationLevel.FIRST:
        return config.second_escalation_minutes
    if level == EscalationLevel.SECOND:
        return config.final_escalation_minutes
    return None


def is_due(question: Question, config: EffectiveConfig, now: datetime) -> bool:
    """True when the question has sat at its current level past the threshold.

    Measured from the previous escalation, not the original ask, so each
    level's dwell time is independent.
    """
    if question.status != QuestionStatus.UNANSWERED.value:
        return False
    if not config.escalation_enabled:
        return False
    minutes = threshold_minutes(question.escalation_level, config)
    if minutes is None:
        return False
    return now - question.last_advance_time > timedelta(minutes=minutes)


# ═══════════════════════════════════════════════════════════════════════════════
# STATS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class ChannelStats:
    channel_id: str
    channel_name: str | None
    total: int = 0
    answered: int = 0

    @property
    def answer_rate(self) -> float:
        return (self.answered / self.total) * 100 if self.total else 0.0


@dataclass
class ResponderStats:
    user_id: str
    name: str
    count: int


@dataclass
class QuestionStats:
    """Read-only aggregate over a workspace's questions since a cutoff."""

    total: int = 0
    answered: int = 0
    unanswered: int = 0
    dismissed: int = 0
    answer_rate: float = 0.0
    avg_response_minutes: float = 0.0
    median_response_minutes: float = 0.0
    p90_response_minutes: float = 0.0
    top_responders: list[ResponderStats] = field(default_factory=list)
    channels: list[ChannelStats] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for ch, raw in zip(self.channels, data["channels"]):
            raw["answer_rate"] = ch.answer_rate
        return data


def _percentile(values: list[float], pct: float) -> float:
    """Nearest-rank percentile; 0.0 for an empty sample."""
    if not values:
        return 0.0
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100 * len(ordered)))
    return ordered[rank - 1]


# ═══════════════════════════════════════════════════════════════════════════════
# STORE
# ═══════════════════════════════════════════════════════════════════════════════

class QuestionStore:
    """Persistence operations for questions and the escalation log."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ── Ingestion ────────────────────────────────────────────────────────

    async def create_question(
        self,
        workspace_id: uuid.UUID,
        slack_message_id: str,
        fields: NewQuestion,
    ) -> Question:
        """Insert a question; raise ConflictError if it already exists."""
        question = Question(
            workspace_id=workspace_id,
            channel_id=fields.channel_id,
            asker_id=fields.asker_id,
            slack_message_id=slack_message_id,
            slack_thread_id=fields.slack_thread_id,
            message_text=fields.message_text,
            extracted_keywords=(
                fields.keywords if fields.keywords is not None
                else extract_keywords(fields.message_text)
            ),
            asked_at=fields.asked_at,
            status=QuestionStatus.UNANSWERED.value,
            escalation_level=EscalationLevel.NOT_ESCALATED,
            is_side_conversation=fields.is_side_conversation,
            source_app=fields.source_app,
            zendesk_ticket_id=fields.zendesk_ticket_id,
        )

        async with self._session_factory() as session:
            session.add(question)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                if await self._exists(session, workspace_id, slack_message_id):
                    raise ConflictError(
                        "question", f"{workspace_id}:{slack_message_id}"
                    ) from None
                raise

        logger.info(
            "question_stored",
            question_id=str(question.id),
            workspace_id=str(workspace_id),
            slack_message_id=slack_message_id,
            keywords=question.extracted_keywords,
        )
        return question

    async def insert_if_absent(
        self,
        workspace_id: uuid.UUID,
        slack_message_id: str,
        fields: NewQuestion,
    ) -> Question | AlreadyExists:
        """Insert a question, treating duplicate delivery as a no-op."""
        try:
            return await self.create_question(workspace_id, slack_message_id, fields)
        except ConflictError:
            logger.info(
                "question_already_stored",
                workspace_id=str(workspace_id),
                slack_message_id=slack_message_id,
            )
            return AlreadyExists(workspace_id, slack_message_id)

    @staticmethod
    async def _exists(session: AsyncSession, workspace_id: uuid.UUID, slack_message_id: str) -> bool:
        result = await session.execute(
            select(Question.id).where(
                Question.workspace_id == workspace_id,
                Question.slack_message_id == slack_message_id,
            )
        )
        return result.first() is not None

    # ── Lookups ──────────────────────────────────────────────────────────

    async def get(self, question_id: uuid.UUID) -> Question | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Question)
                .where(Question.id == question_id)
                .options(selectinload(Question.channel), selectinload(Question.asker))
            )
            return result.scalar_one_or_none()

    async def find_by_message_id(
        self, workspace_id: uuid.UUID, slack_message_id: str
    ) -> Question | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Question)
                .where(
                    Question.workspace_id == workspace_id,
                    Question.slack_message_id == slack_message_id,
                )
                .options(selectinload(Question.channel), selectinload(Question.asker))
            )
            return result.scalar_one_or_none()

    async def open_channel_ids(self, workspace_id: uuid.UUID) -> set[uuid.UUID]:
        """Distinct channels holding at least one schedulable question."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(distinct(Question.channel_id)).where(
                    Question.workspace_id == workspace_id,
                    Question.status == QuestionStatus.UNANSWERED.value,
                    Question.escalation_level.in_(EscalationLevel.SCHEDULABLE),
                )
            )
            return {row[0] for row in result.all()}

    async def find_escalation_candidates(
        self,
        workspace_id: uuid.UUID,
        configs: Mapping[uuid.UUID, EffectiveConfig],
        now: datetime | None = None,
    ) -> list[Question]:
        """Unanswered, non-paused questions past their current level's threshold.

        ``configs`` maps channel_id to that channel's effective config;
        questions in channels missing from the map are not considered.
        """
        now = now or utcnow()
        enabled = [cid for cid, cfg in configs.items() if cfg.escalation_enabled]
        if not enabled:
            return []

        async with self._session_factory() as session:
            result = await session.execute(
                select(Question)
                .where(
                    Question.workspace_id == workspace_id,
                    Question.status == QuestionStatus.UNANSWERED.value,
                    Question.escalation_level.in_(EscalationLevel.SCHEDULABLE),
                    Question.channel_id.in_(enabled),
                )
                .options(selectinload(Question.channel), selectinload(Question.asker))
                .order_by(Question.asked_at.asc())
            )
            questions = list(result.scalars().all())

        return [q for q in questions if is_due(q, configs[q.channel_id], now)]

    # ── Status transitions ───────────────────────────────────────────────

    async def mark_answered(
        self,
        question_id: uuid.UUID,
        answerer_id: uuid.UUID | None,
        at: datetime | None = None,
        *,
        answer_message_id: str | None = None,
    ) -> bool:
        """Set status=answered. Returns False if it was already answered."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(Question)
                .where(
                    Question.id == question_id,
                    Question.status != QuestionStatus.ANSWERED.value,
                )
                .values(
                    status=QuestionStatus.ANSWERED.value,
                    answered_at=at or utcnow(),
                    answerer_id=answerer_id,
                    answer_slack_message_id=answer_message_id,
                    updated_at=utcnow(),
                )
            )
            await session.commit()

        changed = result.rowcount > 0
        if changed:
            logger.info("question_answered", question_id=str(question_id))
        return changed

    async def mark_dismissed(self, question_id: uuid.UUID) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(Question)
                .where(
                    Question.id == question_id,
                    Question.status == QuestionStatus.UNANSWERED.value,
                )
                .values(status=QuestionStatus.DISMISSED.value, updated_at=utcnow())
            )
            await session.commit()

        changed = result.rowcount > 0
        if changed:
            logger.info("question_dismissed", question_id=str(question_id))
        return changed

    # ── Escalation state ─────────────────────────────────────────────────

    async def advance_level(
        self, question_id: uuid.UUID, new_level: int, at: datetime | None = None
    ) -> bool:
        """Move a question up to ``new_level``. Never lowers the level.

        Re-applying the same level is a harmless no-op, which is what makes
        duplicate advancement from overlapping work safe.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                update(Question)
                .where(
                    Question.id == question_id,
                    Question.escalation_level < new_level,
                )
                .values(
                    escalation_level=new_level,
                    last_escalated_at=at or utcnow(),
                    updated_at=utcnow(),
                )
            )
            await session.commit()
        return result.rowcount > 0

    async def pause(self, question_id: uuid.UUID) -> bool:
        """Stop scheduling a question without resolving it."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(Question)
                .where(
                    Question.id == question_id,
                    Question.status == QuestionStatus.UNANSWERED.value,
                )
                .values(escalation_level=EscalationLevel.PAUSED, updated_at=utcnow())
            )
            await session.commit()

        changed = result.rowcount > 0
        if changed:
            logger.info("question_paused", question_id=str(question_id))
        return changed

    async def acknowledge(self, question_id: uuid.UUID, at: datetime | None = None) -> bool:
        """Someone is on it: restart the current level's dwell clock at ``at``."""
        changed = await self._restart_dwell(question_id, at or utcnow())
        if changed:
            logger.info("question_acknowledged", question_id=str(question_id))
        return changed

    async def snooze(
        self,
        question_id: uuid.UUID,
        at: datetime | None = None,
        duration: timedelta = SNOOZE_DURATION,
    ) -> bool:
        """Hold escalation: the dwell clock restarts ``duration`` after ``at``."""
        until = (at or utcnow()) + duration
        changed = await self._restart_dwell(question_id, until)
        if changed:
            logger.info("question_snoozed", question_id=str(question_id), until=until.isoformat())
        return changed

    async def _restart_dwell(self, question_id: uuid.UUID, start: datetime) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(Question)
                .where(
                    Question.id == question_id,
                    Question.status == QuestionStatus.UNANSWERED.value,
                    Question.escalation_level.in_(EscalationLevel.SCHEDULABLE),
                    or_(
                        Question.last_escalated_at.is_(None),
                        Question.last_escalated_at < start,
                    ),
                )
                .values(last_escalated_at=start, updated_at=utcnow())
            )
            await session.commit()
        return result.rowcount > 0

    async def record_escalation(
        self,
        question_id: uuid.UUID,
        level: int,
        action_taken: str,
        at: datetime | None = None,
    ) -> Escalation:
        row = Escalation(
            question_id=question_id,
            escalation_level=level,
            action_taken=action_taken,
            escalated_at=at or utcnow(),
        )
        async with self._session_factory() as session:
            session.add(row)
            await session.commit()
        return row

    async def escalation_history(self, question_id: uuid.UUID) -> list[Escalation]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Escalation)
                .where(Escalation.question_id == question_id)
                .order_by(Escalation.escalated_at.asc(), Escalation.escalation_level.asc())
            )
            return list(result.scalars().all())

    # ── Stats ────────────────────────────────────────────────────────────

    async def compute_stats(self, workspace_id: uuid.UUID, since: datetime) -> QuestionStats:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Question)
                .where(Question.workspace_id == workspace_id, Question.asked_at >= since)
                .options(selectinload(Question.channel), selectinload(Question.answerer))
            )
            questions = list(result.scalars().all())

        stats = QuestionStats(total=len(questions))
        response_minutes: list[float] = []
        responders: dict[str, ResponderStats] = {}
        channels: dict[str, ChannelStats] = {}

        for q in questions:
            answered = q.status == QuestionStatus.ANSWERED.value
            if answered:
                stats.answered += 1
            elif q.status == QuestionStatus.DISMISSED.value:
                stats.dismissed += 1
            else:
                stats.unanswered += 1

            if q.answered_at is not None:
                response_minutes.append((q.answered_at - q.asked_at).total_seconds() / 60)

            if q.answerer is not None:
                key = str(q.answerer.id)
                entry = responders.setdefault(
                    key, ResponderStats(user_id=key, name=q.answerer.label, count=0)
                )
                entry.count += 1

            ch_key = str(q.channel_id)
            ch = channels.setdefault(
                ch_key,
                ChannelStats(channel_id=ch_key, channel_name=q.channel.name if q.channel else None),
            )
            ch.total += 1
            ch.answered += int(answered)

        if stats.total:
            stats.answer_rate = stats.answered / stats.total * 100
        if response_minutes:
            stats.avg_response_minutes = statistics.fmean(response_minutes)
            stats.median_response_minutes = statistics.median(response_minutes)
            stats.p90_response_minutes = _percentile(response_minutes, 90)

        stats.top_responders = sorted(responders.values(), key=lambda r: r.count, reverse=True)[:5]
        stats.channels = sorted(channels.values(), key=lambda c: c.total, reverse=True)
        return stats
