"""Unit tests for escalation message text.

Run with: pytest tests/unit/test_messages.py -v
"""

from __future__ import annotations

from datetime import timedelta

from qrouter.slack import messages
from tests.support import T0


class TestMentions:
    def test_user_mention(self) -> None:
        assert messages.mention_user("U123") == "<@U123>"

    def test_user_group_mention(self) -> None:
        assert messages.mention_user_group("S123") == "<!subteam^S123>"


class TestAge:
    def test_rounds_to_nearest_minute(self) -> None:
        assert messages.age_minutes(T0, T0 + timedelta(minutes=2, seconds=31)) == 3

    def test_clock_skew_never_negative(self) -> None:
        assert messages.age_minutes(T0, T0 - timedelta(minutes=1)) == 0


class TestFallbackLink:
    def test_builds_archive_url(self) -> None:
        link = messages.fallback_thread_link("acme", "C1", "1700000000.000100")
        assert link == "https://acme.slack.com/archives/C1/p1700000000000100"

    def test_no_domain_no_link(self) -> None:
        assert messages.fallback_thread_link(None, "C1", "1700000000.000100") is None


class TestThreadNudge:
    def test_first_levels_warn(self) -> None:
        text = messages.thread_nudge_text("<@U1>", 3, level=1)
        assert text.startswith(":warning:")
        assert "3 minutes" in text
        assert "<@U1>" in text

    def test_final_level_is_louder(self) -> None:
        text = messages.thread_nudge_text("<!subteam^S1>", 1441, level=3)
        assert text.startswith(":rotating_light:")
        assert "still unanswered" in text


class TestChannelAlert:
    def test_quotes_question_and_links_thread(self) -> None:
        text = messages.channel_alert_text(
            asker="dana",
            channel_name="support",
            minutes=5,
            question_text="How do I rotate the API key?\nIt keeps failing.",
            permalink="https://acme.slack.com/archives/C1/p1",
            level=2,
        )
        assert "*Unanswered Question Alert*" in text
        assert "Question from dana in #support (5 minutes old):" in text
        assert "> How do I rotate the API key?\n> It keeps failing." in text
        assert "<https://acme.slack.com/archives/C1/p1|View Thread →>" in text

    def test_final_header_and_missing_link(self) -> None:
        text = messages.channel_alert_text(
            asker="dana",
            channel_name=None,
            minutes=1500,
            question_text="anyone?",
            permalink=None,
            level=3,
        )
        assert "*Final Escalation: Unanswered Question*" in text
        assert "a monitored channel" in text
        assert "View Thread" not in text

    def test_long_question_truncated(self) -> None:
        text = messages.channel_alert_text(
            asker="dana",
            channel_name="support",
            minutes=5,
            question_text="x" * 2000,
            permalink=None,
            level=2,
        )
        quoted = text.split("\n")[-1]
        assert quoted.endswith("…")
        assert len(quoted) <= messages.MAX_QUOTE_CHARS + 2


class TestDirectNote:
    def test_mentions_wait_and_link(self) -> None:
        text = messages.direct_note_text(
            asker="dana",
            channel_name="support",
            minutes=1441,
            question_text="Where is the runbook?",
            permalink="https://acme.slack.com/archives/C1/p1",
        )
        assert "waiting 1441 minutes" in text
        assert "> Where is the runbook?" in text
        assert "Jump to the thread" in text
