"""EscalationEngine: periodic sweep that moves unanswered questions up a level.

One tick:

1. List workspaces with schedulable questions (unanswered, level 0..2).
2. Per workspace (bounded fan-out across workspaces, sequential within one):
   resolve the tenant's Slack client, its WorkspaceConfig, and the effective
   config of every channel holding open questions in a single query, then
   fetch the candidates past their current level's threshold.
3. Per candidate: poll the thread for a human reply and apply the answer
   detection mode (thread_auto answers, hybrid pauses). In emoji_only
   channels a reply changes nothing, so the poll is skipped.
4. Otherwise resolve targets for the next level, execute every target on its
   own retry budget, collect outcomes, then advance the level and append one
   escalation row. The level advances even when nothing was delivered so a
   misconfigured workspace goes quiet instead of re-triggering forever.

Ticks are single-flight: an overlapping call returns immediately with a
report marked ``skipped_overlap``.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any

import structlog
from slack_sdk.errors import SlackApiError

from qrouter.config import settings
from qrouter.db.models import (
    AnswerDetectionMode,
    Question,
    TargetType,
    Workspace,
    WorkspaceConfig,
    utcnow,
)
from qrouter.errors import AuthorizationError
from qrouter.infra.retry import (
    DATABASE_RETRY,
    SLACK_RETRY,
    RetryPolicy,
    call_with_retry,
    slack_error_code,
)
from qrouter.services.channel_config import ConfigurationResolver, EffectiveConfig
from qrouter.services.questions import QuestionStore
from qrouter.services.targets import EscalationTargetResolver, ResolvedTarget
from qrouter.services.workspaces import WorkspaceDirectory
from qrouter.slack import messages
from qrouter.slack.client import AuthorizedClient, AuthorizedClientProvider

logger = structlog.get_logger()

_AUTH_FAILURE_CODES = frozenset({
    "invalid_auth",
    "not_authed",
    "token_revoked",
    "token_expired",
    "account_inactive",
})

NO_TARGETS_SUMMARY = "no_targets_configured"


class QuestionOutcome(str, Enum):
    ANSWERED = "answered"
    PAUSED = "paused"
    ESCALATED = "escalated"


@dataclass
class TargetOutcome:
    """Result of notifying one target."""

    target: ResolvedTarget
    ok: bool
    action: str | None = None
    error: str | None = None

    def summary(self) -> str:
        label = f"{self.action or self.target.target_type.value}:{self.target.target_id}"
        return f"{label}=ok" if self.ok else f"{label}=failed({self.error})"


@dataclass
class TickReport:
    started_at: datetime
    finished_at: datetime | None = None
    workspaces_processed: int = 0
    workspaces_skipped: int = 0
    escalated: int = 0
    answered: int = 0
    paused: int = 0
    failed: int = 0
    skipped_overlap: bool = False

    def count(self, outcome: QuestionOutcome) -> None:
        if outcome is QuestionOutcome.ANSWERED:
            self.answered += 1
        elif outcome is QuestionOutcome.PAUSED:
            self.paused += 1
        else:
            self.escalated += 1

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return data


@dataclass
class _Delivery:
    """Per-question state shared by every target at one level."""

    question: Question
    workspace: Workspace
    auth: AuthorizedClient
    level: int
    now: datetime
    permalink: str | None = None
    permalink_resolved: bool = False

    @property
    def channel_id(self) -> str:
        return self.question.channel.slack_channel_id

    @property
    def thread_ts(self) -> str:
        return self.question.slack_thread_id or self.question.slack_message_id

    @property
    def minutes(self) -> int:
        return messages.age_minutes(self.question.asked_at, self.now)


def _describe_error(exc: BaseException) -> str:
    if isinstance(exc, SlackApiError):
        return slack_error_code(exc) or "slack_api_error"
    return str(exc) or type(exc).__name__


def _raise_if_unauthorized(exc: BaseException, team_id: str) -> None:
    if isinstance(exc, SlackApiError) and slack_error_code(exc) in _AUTH_FAILURE_CODES:
        raise AuthorizationError(team_id, slack_error_code(exc) or "invalid_auth") from exc


class EscalationEngine:
    """Owns one tick of the escalation sweep. Scheduling lives in crons/scheduler.py."""

    def __init__(
        self,
        questions: QuestionStore,
        configs: ConfigurationResolver,
        targets: EscalationTargetResolver,
        clients: AuthorizedClientProvider,
        workspaces: WorkspaceDirectory,
        *,
        max_concurrent_workspaces: int | None = None,
        direct_message_users: bool | None = None,
        reply_scan_limit: int | None = None,
        slack_retry: RetryPolicy = SLACK_RETRY,
        db_retry: RetryPolicy = DATABASE_RETRY,
    ) -> None:
        self._questions = questions
        self._configs = configs
        self._targets = targets
        self._clients = clients
        self._workspaces = workspaces
        self._max_concurrent = max(
            1, max_concurrent_workspaces or settings.escalation_max_concurrent_workspaces
        )
        self._direct_message_users = (
            settings.direct_message_users if direct_message_users is None else direct_message_users
        )
        self._reply_scan_limit = reply_scan_limit or settings.reply_scan_limit
        self._slack_retry = slack_retry
        self._db_retry = db_retry

        self._lock = asyncio.Lock()
        self.last_report: TickReport | None = None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def wait_idle(self) -> None:
        """Block until any in-flight tick has finished."""
        async with self._lock:
            pass

    # ── Tick ─────────────────────────────────────────────────────────────

    async def tick(self, now: datetime | None = None) -> TickReport:
        now = now or utcnow()
        if self._lock.locked():
            logger.info("escalation_tick_skipped_overlap")
            return TickReport(started_at=now, finished_at=now, skipped_overlap=True)

        async with self._lock:
            report = TickReport(started_at=now)
            try:
                workspaces = await call_with_retry(
                    self._workspaces.workspaces_with_open_questions,
                    self._db_retry,
                    context="list_workspaces",
                )
            except Exception as e:
                logger.error("escalation_tick_failed", error=str(e), error_type=type(e).__name__)
                workspaces = []

            semaphore = asyncio.Semaphore(self._max_concurrent)

            async def _bounded(workspace: Workspace) -> None:
                async with semaphore:
                    await self._process_workspace(workspace, now, report)

            await asyncio.gather(*(_bounded(ws) for ws in workspaces))

            report.finished_at = utcnow()
            self.last_report = report

        if report.escalated or report.answered or report.paused or report.failed:
            logger.info("escalation_tick_complete", **report.to_dict())
        else:
            logger.debug("escalation_tick_complete", **report.to_dict())
        return report

    async def _process_workspace(self, workspace: Workspace, now: datetime, report: TickReport) -> None:
        log = logger.bind(workspace_id=str(workspace.id), team_id=workspace.slack_team_id)

        try:
            auth = await self._clients.client_for(workspace.slack_team_id)
        except AuthorizationError as e:
            log.warning("workspace_skipped_unauthorized", reason=e.reason)
            report.workspaces_skipped += 1
            return

        try:
            ws_config = await self._configs.get_workspace_config(workspace.id)
            channel_ids = await self._questions.open_channel_ids(workspace.id)
            configs = await self._configs.effective_configs(ws_config, channel_ids)
            candidates = await self._questions.find_escalation_candidates(workspace.id, configs, now)
        except Exception as e:
            log.error("workspace_sweep_failed", error=str(e), error_type=type(e).__name__)
            report.workspaces_skipped += 1
            return

        if not candidates:
            report.workspaces_processed += 1
            return
        log.debug("escalation_candidates_found", count=len(candidates))

        for question in candidates:
            try:
                outcome = await self._process_question(
                    question, workspace, ws_config, configs[question.channel_id], auth, now
                )
            except AuthorizationError as e:
                log.warning("workspace_skipped_unauthorized", reason=e.reason)
                report.workspaces_skipped += 1
                return
            except Exception as e:
                report.failed += 1
                log.error(
                    "question_escalation_failed",
                    question_id=str(question.id),
                    level=question.escalation_level,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                continue
            report.count(outcome)

        report.workspaces_processed += 1

    # ── Per question ─────────────────────────────────────────────────────

    async def _process_question(
        self,
        question: Question,
        workspace: Workspace,
        ws_config: WorkspaceConfig,
        config: EffectiveConfig,
        auth: AuthorizedClient,
        now: datetime,
    ) -> QuestionOutcome:
        mode = config.answer_detection_mode
        if mode is not AnswerDetectionMode.EMOJI_ONLY:
            reply = await self._first_human_reply(auth, question)
            if reply is not None:
                if mode is AnswerDetectionMode.THREAD_AUTO:
                    await self._answer_from_reply(question, workspace, reply, now)
                    return QuestionOutcome.ANSWERED
                await call_with_retry(
                    lambda: self._questions.pause(question.id),
                    self._db_retry,
                    context="pause_question",
                )
                logger.info(
                    "question_paused_on_reply",
                    question_id=str(question.id),
                    mode=mode.value,
                )
                return QuestionOutcome.PAUSED

        await self._escalate(question, workspace, ws_config, auth, now)
        return QuestionOutcome.ESCALATED

    async def _first_human_reply(self, auth: AuthorizedClient, question: Question) -> dict | None:
        """First thread reply not authored by this installation's bot.

        A failed check counts as no reply; escalation then proceeds.
        """
        channel = question.channel.slack_channel_id
        root_ts = question.slack_thread_id or question.slack_message_id
        message_ts = question.slack_message_id

        try:
            response = await call_with_retry(
                lambda: auth.client.conversations_replies(
                    channel=channel,
                    ts=root_ts,
                    oldest=message_ts,
                    limit=self._reply_scan_limit,
                ),
                self._slack_retry,
                context="conversations.replies",
            )
        except Exception as e:
            _raise_if_unauthorized(e, auth.team_id)
            logger.warning(
                "reply_check_failed",
                question_id=str(question.id),
                channel=channel,
                error=_describe_error(e),
            )
            return None

        for message in response.get("messages") or []:
            if message.get("ts") in (message_ts, root_ts):
                continue
            if auth.is_self(message):
                continue
            return message
        return None

    async def _answer_from_reply(
        self, question: Question, workspace: Workspace, reply: dict, now: datetime
    ) -> None:
        answerer_id = None
        if reply.get("user"):
            answerer = await self._workspaces.ensure_user(workspace.id, reply["user"])
            answerer_id = answerer.id

        await call_with_retry(
            lambda: self._questions.mark_answered(
                question.id, answerer_id, now, answer_message_id=reply.get("ts")
            ),
            self._db_retry,
            context="mark_answered",
        )
        logger.info(
            "question_answered_by_reply",
            question_id=str(question.id),
            reply_ts=reply.get("ts"),
        )

    async def _escalate(
        self,
        question: Question,
        workspace: Workspace,
        ws_config: WorkspaceConfig,
        auth: AuthorizedClient,
        now: datetime,
    ) -> list[TargetOutcome]:
        next_level = question.escalation_level + 1
        log = logger.bind(question_id=str(question.id), level=next_level)

        targets = await self._targets.resolve(workspace.id, ws_config, next_level)
        outcomes: list[TargetOutcome] = []
        if not targets:
            log.info(NO_TARGETS_SUMMARY, reason=f"no escalation targets for level {next_level}")
            summary = NO_TARGETS_SUMMARY
        else:
            delivery = _Delivery(question=question, workspace=workspace, auth=auth, level=next_level, now=now)
            for target in targets:
                outcomes.append(await self._execute_target(delivery, target))
            summary = "; ".join(o.summary() for o in outcomes)

        await call_with_retry(
            lambda: self._questions.advance_level(question.id, next_level, now),
            self._db_retry,
            context="advance_level",
        )
        await call_with_retry(
            lambda: self._questions.record_escalation(question.id, next_level, summary, now),
            self._db_retry,
            context="record_escalation",
        )

        log.info(
            "question_escalated",
            targets=len(targets),
            delivered=sum(1 for o in outcomes if o.ok),
            failed=sum(1 for o in outcomes if not o.ok),
        )
        return outcomes

    # ── Per target ───────────────────────────────────────────────────────

    async def _execute_target(self, delivery: _Delivery, target: ResolvedTarget) -> TargetOutcome:
        try:
            action = await self._dispatch(delivery, target)
        except Exception as e:
            logger.error(
                "escalation_target_failed",
                question_id=str(delivery.question.id),
                level=delivery.level,
                target_type=target.target_type.value,
                target_id=target.target_id,
                error=_describe_error(e),
            )
            return TargetOutcome(target=target, ok=False, error=_describe_error(e))
        return TargetOutcome(target=target, ok=True, action=action)

    async def _dispatch(self, delivery: _Delivery, target: ResolvedTarget) -> str:
        kind = target.target_type
        if kind is TargetType.USER:
            await self._post_thread_nudge(delivery, messages.mention_user(target.target_id))
            if not self._direct_message_users:
                return "thread_mention_user"
            try:
                await self._post_direct_note(delivery, target.target_id)
            except Exception as e:
                logger.warning(
                    "direct_message_failed",
                    question_id=str(delivery.question.id),
                    user=target.target_id,
                    error=_describe_error(e),
                )
                return "thread_mention_user+dm_failed"
            return "thread_mention_user+dm"
        if kind is TargetType.USER_GROUP:
            await self._post_thread_nudge(delivery, messages.mention_user_group(target.target_id))
            return "thread_mention_user_group"
        if kind is TargetType.CHANNEL:
            await self._post_channel_alert(delivery, target.target_id)
            return "channel_alert"
        raise ValueError(f"unhandled target type: {kind}")

    async def _post_thread_nudge(self, delivery: _Delivery, mention: str) -> None:
        text = messages.thread_nudge_text(mention, delivery.minutes, delivery.level)
        await call_with_retry(
            lambda: delivery.auth.client.chat_postMessage(
                channel=delivery.channel_id,
                thread_ts=delivery.thread_ts,
                text=text,
            ),
            self._slack_retry,
            context="chat.postMessage:thread",
        )

    async def _post_channel_alert(self, delivery: _Delivery, channel_id: str) -> None:
        question = delivery.question
        text = messages.channel_alert_text(
            asker=question.asker.label,
            channel_name=question.channel.name,
            minutes=delivery.minutes,
            question_text=question.message_text,
            permalink=await self._permalink(delivery),
            level=delivery.level,
        )
        await call_with_retry(
            lambda: delivery.auth.client.chat_postMessage(
                channel=channel_id, text=text, unfurl_links=False
            ),
            self._slack_retry,
            context="chat.postMessage:channel",
        )

    async def _post_direct_note(self, delivery: _Delivery, user_id: str) -> None:
        question = delivery.question
        text = messages.direct_note_text(
            asker=question.asker.label,
            channel_name=question.channel.name,
            minutes=delivery.minutes,
            question_text=question.message_text,
            permalink=await self._permalink(delivery),
        )
        await call_with_retry(
            lambda: delivery.auth.client.chat_postMessage(channel=user_id, text=text),
            self._slack_retry,
            context="chat.postMessage:dm",
        )

    async def _permalink(self, delivery: _Delivery) -> str | None:
        """Thread permalink, fetched at most once per question per tick."""
        if delivery.permalink_resolved:
            return delivery.permalink

        try:
            response = await call_with_retry(
                lambda: delivery.auth.client.chat_getPermalink(
                    channel=delivery.channel_id,
                    message_ts=delivery.question.slack_message_id,
                ),
                self._slack_retry,
                context="chat.getPermalink",
            )
            delivery.permalink = response.get("permalink")
        except Exception as e:
            logger.debug("permalink_lookup_failed", error=_describe_error(e))

        if not delivery.permalink:
            delivery.permalink = messages.fallback_thread_link(
                delivery.workspace.domain,
                delivery.channel_id,
                delivery.question.slack_message_id,
            )
        delivery.permalink_resolved = True
        return delivery.permalink
