"""Slack integration: tenant clients, escalation messages, handlers, middleware."""

from qrouter.slack.client import AuthorizedClient, AuthorizedClientProvider
from qrouter.slack.handlers import register_handlers
from qrouter.slack.middleware import build_authorize, resolve_workspace_middleware

__all__ = [
    "AuthorizedClient",
    "AuthorizedClientProvider",
    "build_authorize",
    "register_handlers",
    "resolve_workspace_middleware",
]
