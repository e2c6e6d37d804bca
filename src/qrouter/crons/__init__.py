"""Periodic work: the escalation sweep and its scheduler."""

from qrouter.crons.escalation import EscalationEngine, TargetOutcome, TickReport
from qrouter.crons.scheduler import EscalationScheduler

__all__ = ["EscalationEngine", "EscalationScheduler", "TargetOutcome", "TickReport"]
