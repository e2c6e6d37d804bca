"""Slack message text for escalation notifications.

Three shapes:
- thread nudge: posted as a reply under the question, mentioning a user
  or user group
- channel alert: standalone post in an escalation channel quoting the
  question with a link back to the thread
- direct note: DM to an individual target with the same link

All functions are pure so they can be tested without a client.
"""

from __future__ import annotations

from datetime import datetime

MAX_QUOTE_CHARS = 500
_ELLIPSIS = "…"


def mention_user(slack_user_id: str) -> str:
    return f"<@{slack_user_id}>"


def mention_user_group(group_id: str) -> str:
    return f"<!subteam^{group_id}>"


def age_minutes(asked_at: datetime, now: datetime) -> int:
    return max(0, round((now - asked_at).total_seconds() / 60))


def fallback_thread_link(team_domain: str | None, channel_id: str, message_ts: str) -> str | None:
    """Build an archive link when chat.getPermalink is unavailable."""
    if not team_domain:
        return None
    return f"https://{team_domain}.slack.com/archives/{channel_id}/p{message_ts.replace('.', '')}"


def _quote(text: str) -> str:
    body = text.strip()
    if len(body) > MAX_QUOTE_CHARS:
        body = body[:MAX_QUOTE_CHARS - 1].rstrip() + _ELLIPSIS
    return "\n".join(f"> {line}" for line in body.splitlines() or [""])


def thread_nudge_text(mention: str, minutes: int, level: int) -> str:
    if level >= 3:
        lead = f":rotating_light: This question is still unanswered after {minutes} minutes."
    else:
        lead = f":warning: This question has been unanswered for {minutes} minutes."
    return f"{lead}\n\n{mention} - Can someone help with this?"


def channel_alert_text(
    *,
    asker: str,
    channel_name: str | None,
    minutes: int,
    question_text: str,
    permalink: str | None,
    level: int,
) -> str:
    header = (
        ":rotating_light: *Final Escalation: Unanswered Question*"
        if level >= 3
        else ":rotating_light: *Unanswered Question Alert*"
    )
    where = f"#{channel_name}" if channel_name else "a monitored channel"
    lines = [
        header,
        "",
        f"Question from {asker} in {where} ({minutes} minutes old):",
        "",
        _quote(question_text),
    ]
    if permalink:
        lines += ["", f"<{permalink}|View Thread →>"]
    return "\n".join(lines)


def direct_note_text(
    *,
    asker: str,
    channel_name: str | None,
    minutes: int,
    question_text: str,
    permalink: str | None,
) -> str:
    where = f"#{channel_name}" if channel_name else "a monitored channel"
    lines = [
        f":wave: A question from {asker} in {where} has been waiting {minutes} minutes for an answer:",
        "",
        _quote(question_text),
    ]
    if permalink:
        lines += ["", f"<{permalink}|Jump to the thread →>"]
    return "\n".join(lines)
