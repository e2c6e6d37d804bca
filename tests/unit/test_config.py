"""Unit tests for settings and effective channel config.

Run with: pytest tests/unit/test_config.py -v
"""

from __future__ import annotations

from qrouter.config import EscalationDefaults, Settings
from qrouter.db.models import AnswerDetectionMode, WorkspaceConfig
from qrouter.services.channel_config import (
    EffectiveConfig,
    describe_answer_detection_mode,
    parse_mode,
)


def _workspace_config(**overrides) -> WorkspaceConfig:
    values = {
        "first_escalation_minutes": 2,
        "second_escalation_minutes": 4,
        "final_escalation_minutes": 1440,
        "answer_detection_mode": "emoji_only",
    }
    values.update(overrides)
    return WorkspaceConfig(**values)


class TestSettings:
    def test_defaults(self) -> None:
        s = Settings(_env_file=None)
        assert s.default_first_escalation_minutes == 2
        assert s.default_second_escalation_minutes == 4
        assert s.default_final_escalation_minutes == 1440
        assert s.oauth_state_ttl_minutes == 10

    def test_invalid_mode_falls_back(self) -> None:
        s = Settings(_env_file=None, default_answer_detection_mode="telepathy")
        assert s.default_answer_detection_mode == "emoji_only"

    def test_env_prefix(self, monkeypatch) -> None:
        monkeypatch.setenv("QROUTER_DEFAULT_FIRST_ESCALATION_MINUTES", "7")
        assert Settings(_env_file=None).default_first_escalation_minutes == 7

    def test_concurrency_floor(self) -> None:
        s = Settings(_env_file=None, escalation_max_concurrent_workspaces=0)
        assert s.escalation_max_concurrent_workspaces == 1

    def test_escalation_defaults_from_settings(self) -> None:
        s = Settings(_env_file=None, default_final_escalation_minutes=60)
        defaults = EscalationDefaults.from_settings(s)
        assert defaults.final_minutes == 60
        assert defaults.answer_detection_mode == "emoji_only"


class TestEffectiveConfig:
    def test_from_workspace(self) -> None:
        cfg = EffectiveConfig.from_workspace(_workspace_config(answer_detection_mode="hybrid"))
        assert cfg.first_escalation_minutes == 2
        assert cfg.answer_detection_mode is AnswerDetectionMode.HYBRID
        assert cfg.escalation_enabled is True

    def test_overlay_field_by_field(self) -> None:
        base = EffectiveConfig.from_workspace(_workspace_config())
        cfg = base.overlay({"first_escalation_minutes": 10, "answer_detection_mode": "thread_auto"})
        assert cfg.first_escalation_minutes == 10
        assert cfg.second_escalation_minutes == 4
        assert cfg.final_escalation_minutes == 1440
        assert cfg.answer_detection_mode is AnswerDetectionMode.THREAD_AUTO

    def test_null_override_falls_back(self) -> None:
        base = EffectiveConfig.from_workspace(_workspace_config())
        cfg = base.overlay({"first_escalation_minutes": None, "escalation_enabled": None})
        assert cfg == base

    def test_disable_channel(self) -> None:
        base = EffectiveConfig.from_workspace(_workspace_config())
        assert base.overlay({"escalation_enabled": False}).escalation_enabled is False

    def test_empty_overlay_is_identity(self) -> None:
        base = EffectiveConfig.from_workspace(_workspace_config())
        assert base.overlay({}) is base
        assert base.overlay(None) is base


class TestModes:
    def test_unknown_mode_parses_as_emoji_only(self) -> None:
        assert parse_mode("bogus") is AnswerDetectionMode.EMOJI_ONLY

    def test_every_mode_described(self) -> None:
        for mode in AnswerDetectionMode:
            assert describe_answer_detection_mode(mode)
        assert "pauses" in describe_answer_detection_mode("hybrid")
