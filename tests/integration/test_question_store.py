"""Integration tests for QuestionStore against a real (SQLite) database.

Run with: pytest tests/integration/test_question_store.py -v
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from qrouter.db.models import EscalationLevel, QuestionStatus
from qrouter.errors import ConflictError
from qrouter.services.channel_config import ConfigurationResolver
from qrouter.services.questions import (
    AlreadyExists,
    QuestionStore,
    extract_keywords,
)
from tests.support import T0, new_question


@pytest.fixture
def store(session_factory) -> QuestionStore:
    return QuestionStore(session_factory)


@pytest.fixture
def resolver(session_factory) -> ConfigurationResolver:
    return ConfigurationResolver(session_factory)


async def _configs(resolver, tenant):
    ws_config = await resolver.get_workspace_config(tenant.workspace.id)
    return await resolver.effective_configs(ws_config, [tenant.channel.id])


class TestKeywords:
    def test_frequency_then_first_seen(self) -> None:
        text = "How do I deploy the staging server? The staging deploy keeps failing on server restart."
        assert extract_keywords(text) == ["deploy", "staging", "server", "keeps", "failing"]

    def test_short_and_stop_words_dropped(self) -> None:
        assert extract_keywords("Does anyone know how to do it?") == []


class TestIngestion:
    async def test_create_sets_initial_state(self, store, tenant) -> None:
        q = await store.create_question(
            tenant.workspace.id, "1700000000.000100", new_question(tenant.channel.id, tenant.asker.id)
        )
        assert q.status == QuestionStatus.UNANSWERED.value
        assert q.escalation_level == EscalationLevel.NOT_ESCALATED
        assert q.last_escalated_at is None
        assert q.extracted_keywords == ["reset"]

    async def test_duplicate_raises_conflict(self, store, tenant) -> None:
        fields = new_question(tenant.channel.id, tenant.asker.id)
        await store.create_question(tenant.workspace.id, "1700000000.000100", fields)

        with pytest.raises(ConflictError):
            await store.create_question(tenant.workspace.id, "1700000000.000100", fields)

    async def test_insert_if_absent_is_idempotent(self, store, tenant) -> None:
        fields = new_question(tenant.channel.id, tenant.asker.id)
        first = await store.insert_if_absent(tenant.workspace.id, "1700000000.000100", fields)
        second = await store.insert_if_absent(tenant.workspace.id, "1700000000.000100", fields)

        assert not isinstance(first, AlreadyExists)
        assert second == AlreadyExists(tenant.workspace.id, "1700000000.000100")
        assert (await store.compute_stats(tenant.workspace.id, T0)).total == 1

    async def test_concurrent_duplicates_yield_one_row(self, store, tenant) -> None:
        fields = new_question(tenant.channel.id, tenant.asker.id)
        results = await asyncio.gather(*(
            store.insert_if_absent(tenant.workspace.id, "1700000000.000100", fields)
            for _ in range(5)
        ))

        created = [r for r in results if not isinstance(r, AlreadyExists)]
        assert len(created) == 1
        assert sum(isinstance(r, AlreadyExists) for r in results) == 4
        assert (await store.compute_stats(tenant.workspace.id, T0)).total == 1

    async def test_same_message_id_in_other_workspace_is_distinct(self, store, tenant, directory) -> None:
        other = await directory.ensure_workspace("T0000000002", name="Other")
        channel = await directory.ensure_channel(other.id, "C0000000001")
        asker = await directory.ensure_user(other.id, "U0000000001")

        await store.create_question(
            tenant.workspace.id, "1700000000.000100", new_question(tenant.channel.id, tenant.asker.id)
        )
        q = await store.create_question(other.id, "1700000000.000100", new_question(channel.id, asker.id))
        assert q.workspace_id == other.id


class TestCandidates:
    async def test_first_threshold_is_strict(self, store, resolver, tenant) -> None:
        await store.create_question(
            tenant.workspace.id, "1700000000.000100", new_question(tenant.channel.id, tenant.asker.id)
        )
        configs = await _configs(resolver, tenant)

        before = await store.find_escalation_candidates(
            tenant.workspace.id, configs, T0 + timedelta(minutes=2, seconds=-1)
        )
        exactly = await store.find_escalation_candidates(tenant.workspace.id, configs, T0 + timedelta(minutes=2))
        after = await store.find_escalation_candidates(
            tenant.workspace.id, configs, T0 + timedelta(minutes=2, seconds=1)
        )

        assert before == []
        assert exactly == []
        assert len(after) == 1
        assert after[0].channel.slack_channel_id == "C0000000001"
        assert after[0].asker.slack_user_id == "U0000000001"

    async def test_next_threshold_measured_from_last_escalation(self, store, resolver, tenant) -> None:
        q = await store.create_question(
            tenant.workspace.id, "1700000000.000100", new_question(tenant.channel.id, tenant.asker.id)
        )
        first_escalation = T0 + timedelta(minutes=2, seconds=1)
        await store.advance_level(q.id, EscalationLevel.FIRST, first_escalation)
        configs = await _configs(resolver, tenant)

        early = await store.find_escalation_candidates(
            tenant.workspace.id, configs, first_escalation + timedelta(minutes=3, seconds=59)
        )
        due = await store.find_escalation_candidates(
            tenant.workspace.id, configs, first_escalation + timedelta(minutes=4, seconds=1)
        )

        assert early == []
        assert [c.id for c in due] == [q.id]

    async def test_final_and_paused_never_candidates(self, store, resolver, tenant) -> None:
        done = await store.create_question(
            tenant.workspace.id, "1700000000.000100", new_question(tenant.channel.id, tenant.asker.id)
        )
        paused = await store.create_question(
            tenant.workspace.id, "1700000000.000200", new_question(tenant.channel.id, tenant.asker.id)
        )
        await store.advance_level(done.id, EscalationLevel.FINAL, T0)
        await store.pause(paused.id)
        configs = await _configs(resolver, tenant)

        far_future = T0 + timedelta(days=30)
        assert await store.find_escalation_candidates(tenant.workspace.id, configs, far_future) == []
        assert await store.open_channel_ids(tenant.workspace.id) == set()

    async def test_disabled_channel_excluded(self, store, resolver, tenant) -> None:
        await store.create_question(
            tenant.workspace.id, "1700000000.000100", new_question(tenant.channel.id, tenant.asker.id)
        )
        await resolver.update_channel_settings(tenant.channel.id, escalation_enabled=False)
        configs = await _configs(resolver, tenant)

        assert await store.find_escalation_candidates(
            tenant.workspace.id, configs, T0 + timedelta(hours=1)
        ) == []

    async def test_ordered_oldest_first(self, store, resolver, tenant) -> None:
        newer = await store.create_question(
            tenant.workspace.id, "1700000000.000200",
            new_question(tenant.channel.id, tenant.asker.id, asked_at=T0 + timedelta(seconds=30)),
        )
        older = await store.create_question(
            tenant.workspace.id, "1700000000.000100", new_question(tenant.channel.id, tenant.asker.id)
        )
        configs = await _configs(resolver, tenant)

        due = await store.find_escalation_candidates(tenant.workspace.id, configs, T0 + timedelta(minutes=10))
        assert [q.id for q in due] == [older.id, newer.id]

    async def test_acknowledge_restarts_first_level_clock(self, store, resolver, tenant) -> None:
        q = await store.create_question(
            tenant.workspace.id, "1700000000.000100", new_question(tenant.channel.id, tenant.asker.id)
        )
        acked = T0 + timedelta(minutes=1, seconds=30)
        assert await store.acknowledge(q.id, acked) is True
        configs = await _configs(resolver, tenant)

        # Would have been due 2 minutes after the ask without the acknowledgement
        held = await store.find_escalation_candidates(
            tenant.workspace.id, configs, T0 + timedelta(minutes=3)
        )
        due = await store.find_escalation_candidates(
            tenant.workspace.id, configs, acked + timedelta(minutes=2, seconds=1)
        )

        assert held == []
        assert [c.id for c in due] == [q.id]
        assert (await store.get(q.id)).escalation_level == EscalationLevel.NOT_ESCALATED

    async def test_snooze_holds_for_duration_then_threshold(self, store, resolver, tenant) -> None:
        q = await store.create_question(
            tenant.workspace.id, "1700000000.000100", new_question(tenant.channel.id, tenant.asker.id)
        )
        await store.advance_level(q.id, EscalationLevel.FIRST, T0 + timedelta(minutes=3))
        snoozed_at = T0 + timedelta(minutes=5)
        assert await store.snooze(q.id, snoozed_at) is True
        configs = await _configs(resolver, tenant)

        held = await store.find_escalation_candidates(
            tenant.workspace.id, configs, snoozed_at + timedelta(minutes=59)
        )
        due = await store.find_escalation_candidates(
            tenant.workspace.id, configs, snoozed_at + timedelta(hours=1, minutes=4, seconds=1)
        )

        assert held == []
        assert [c.id for c in due] == [q.id]

    async def test_acknowledge_never_moves_clock_back(self, store, tenant) -> None:
        q = await store.create_question(
            tenant.workspace.id, "1700000000.000100", new_question(tenant.channel.id, tenant.asker.id)
        )
        await store.snooze(q.id, T0)

        assert await store.acknowledge(q.id, T0 + timedelta(minutes=5)) is False
        assert (await store.get(q.id)).last_escalated_at == T0 + timedelta(hours=1)

    async def test_acknowledge_ignores_resolved_and_final(self, store, tenant) -> None:
        answered = await store.create_question(
            tenant.workspace.id, "1700000000.000100", new_question(tenant.channel.id, tenant.asker.id)
        )
        final = await store.create_question(
            tenant.workspace.id, "1700000000.000200", new_question(tenant.channel.id, tenant.asker.id)
        )
        await store.mark_answered(answered.id, tenant.asker.id)
        await store.advance_level(final.id, EscalationLevel.FINAL, T0)

        assert await store.acknowledge(answered.id, T0 + timedelta(minutes=1)) is False
        assert await store.snooze(final.id, T0 + timedelta(minutes=1)) is False


class TestTransitions:
    async def test_level_never_decreases(self, store, tenant) -> None:
        q = await store.create_question(
            tenant.workspace.id, "1700000000.000100", new_question(tenant.channel.id, tenant.asker.id)
        )
        assert await store.advance_level(q.id, 2, T0 + timedelta(minutes=5))
        assert not await store.advance_level(q.id, 1, T0 + timedelta(minutes=6))
        assert not await store.advance_level(q.id, 2, T0 + timedelta(minutes=7))

        stored = await store.get(q.id)
        assert stored.escalation_level == 2
        assert stored.last_escalated_at == T0 + timedelta(minutes=5)

    async def test_mark_answered_once(self, store, tenant) -> None:
        q = await store.create_question(
            tenant.workspace.id, "1700000000.000100", new_question(tenant.channel.id, tenant.asker.id)
        )
        await store.advance_level(q.id, 1, T0 + timedelta(minutes=3))

        assert await store.mark_answered(
            q.id, tenant.asker.id, T0 + timedelta(minutes=4), answer_message_id="1700000000.000300"
        )
        assert not await store.mark_answered(q.id, tenant.asker.id, T0 + timedelta(minutes=9))

        stored = await store.get(q.id)
        assert stored.status == QuestionStatus.ANSWERED.value
        assert stored.answered_at == T0 + timedelta(minutes=4)
        assert stored.answer_slack_message_id == "1700000000.000300"
        # Answering leaves the escalation level where it was
        assert stored.escalation_level == 1

    async def test_dismiss_only_from_unanswered(self, store, tenant) -> None:
        q = await store.create_question(
            tenant.workspace.id, "1700000000.000100", new_question(tenant.channel.id, tenant.asker.id)
        )
        await store.mark_answered(q.id, tenant.asker.id, T0)
        assert not await store.mark_dismissed(q.id)

        other = await store.create_question(
            tenant.workspace.id, "1700000000.000200", new_question(tenant.channel.id, tenant.asker.id)
        )
        assert await store.mark_dismissed(other.id)
        assert (await store.get(other.id)).status == QuestionStatus.DISMISSED.value

    async def test_pause_keeps_question_unanswered(self, store, tenant) -> None:
        q = await store.create_question(
            tenant.workspace.id, "1700000000.000100", new_question(tenant.channel.id, tenant.asker.id)
        )
        assert await store.pause(q.id)

        stored = await store.get(q.id)
        assert stored.status == QuestionStatus.UNANSWERED.value
        assert stored.escalation_level == EscalationLevel.PAUSED

    async def test_escalation_history_in_order(self, store, tenant) -> None:
        q = await store.create_question(
            tenant.workspace.id, "1700000000.000100", new_question(tenant.channel.id, tenant.asker.id)
        )
        await store.record_escalation(q.id, 2, "channel_alert:C9=ok", T0 + timedelta(minutes=7))
        await store.record_escalation(q.id, 1, "thread_mention_user_group:S1=ok", T0 + timedelta(minutes=3))

        history = await store.escalation_history(q.id)
        assert [(e.escalation_level, e.action_taken) for e in history] == [
            (1, "thread_mention_user_group:S1=ok"),
            (2, "channel_alert:C9=ok"),
        ]


class TestStats:
    async def test_compute_stats(self, store, tenant, directory) -> None:
        helper = await directory.ensure_user(tenant.workspace.id, "U0000000002", display_name="sam")
        answered = []
        for i, minutes in enumerate([2, 4, 10]):
            q = await store.create_question(
                tenant.workspace.id, f"1700000000.00010{i}",
                new_question(tenant.channel.id, tenant.asker.id),
            )
            await store.mark_answered(q.id, helper.id, T0 + timedelta(minutes=minutes))
            answered.append(q)
        dismissed = await store.create_question(
            tenant.workspace.id, "1700000000.000200", new_question(tenant.channel.id, tenant.asker.id)
        )
        await store.mark_dismissed(dismissed.id)
        await store.create_question(
            tenant.workspace.id, "1700000000.000300", new_question(tenant.channel.id, tenant.asker.id)
        )
        # Outside the window
        await store.create_question(
            tenant.workspace.id, "1690000000.000100",
            new_question(tenant.channel.id, tenant.asker.id, asked_at=T0 - timedelta(days=40)),
        )

        stats = await store.compute_stats(tenant.workspace.id, since=T0 - timedelta(days=7))

        assert stats.total == 5
        assert (stats.answered, stats.dismissed, stats.unanswered) == (3, 1, 1)
        assert stats.answer_rate == pytest.approx(60.0)
        assert stats.avg_response_minutes == pytest.approx(16 / 3)
        assert stats.median_response_minutes == pytest.approx(4.0)
        assert stats.p90_response_minutes == pytest.approx(10.0)
        assert [(r.name, r.count) for r in stats.top_responders] == [("sam", 3)]
        assert stats.channels[0].channel_name == "support"
        assert stats.channels[0].answer_rate == pytest.approx(60.0)

        data = stats.to_dict()
        assert data["channels"][0]["answer_rate"] == pytest.approx(60.0)

    async def test_empty_workspace(self, store, tenant) -> None:
        stats = await store.compute_stats(tenant.workspace.id, since=T0)
        assert stats.total == 0
        assert stats.answer_rate == 0.0
        assert stats.p90_response_minutes == 0.0
