"""Persistence-facing services used by the escalation engine and Slack handlers."""

from qrouter.services.channel_config import ConfigurationResolver, EffectiveConfig
from qrouter.services.oauth_state import OAuthStateStore
from qrouter.services.questions import AlreadyExists, NewQuestion, QuestionStore
from qrouter.services.targets import EscalationTargetResolver, ResolvedTarget
from qrouter.services.workspaces import WorkspaceDirectory

__all__ = [
    "AlreadyExists",
    "ConfigurationResolver",
    "EffectiveConfig",
    "EscalationTargetResolver",
    "NewQuestion",
    "OAuthStateStore",
    "QuestionStore",
    "ResolvedTarget",
    "WorkspaceDirectory",
]
