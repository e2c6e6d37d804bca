"""EscalationScheduler: APScheduler wrapper that drives periodic work.

Two interval jobs:
- ``_global:escalation_tick`` runs EscalationEngine.tick every
  ``escalation_check_interval_s`` seconds
- ``_global:oauth_state_sweep`` deletes expired OAuth state tokens

Both jobs are single-flight (``max_instances=1``) and missed runs are
coalesced, so a slow tick delays the next one instead of overlapping it.
"""

from __future__ import annotations

from typing import Any

import structlog
from apscheduler.events import EVENT_JOB_MISSED
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from qrouter.config import settings
from qrouter.crons.escalation import EscalationEngine
from qrouter.services.oauth_state import OAuthStateStore

logger = structlog.get_logger()

_MISFIRE_GRACE_TIME_S = 60
ESCALATION_JOB_ID = "_global:escalation_tick"
OAUTH_SWEEP_JOB_ID = "_global:oauth_state_sweep"


class EscalationScheduler:
    """Owns the timer. Construct one per process; tests construct their own."""

    def __init__(
        self,
        engine: EscalationEngine,
        oauth_states: OAuthStateStore | None = None,
        *,
        interval_s: int | None = None,
        sweep_interval_minutes: int | None = None,
    ) -> None:
        self.engine = engine
        self.oauth_states = oauth_states
        self.interval_s = interval_s or settings.escalation_check_interval_s
        self.sweep_interval_minutes = (
            sweep_interval_minutes or settings.oauth_state_sweep_interval_minutes
        )
        self.scheduler = AsyncIOScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": _MISFIRE_GRACE_TIME_S,
            }
        )
        self.scheduler.add_listener(self._on_job_missed, EVENT_JOB_MISSED)
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @staticmethod
    def _on_job_missed(event: Any) -> None:
        logger.warning(
            "scheduled_job_missed",
            job_id=event.job_id,
            scheduled_run_time=str(event.scheduled_run_time),
        )

    async def start(self) -> None:
        if self._running:
            return

        self.scheduler.add_job(
            self._run_escalation_tick,
            trigger=IntervalTrigger(seconds=self.interval_s),
            id=ESCALATION_JOB_ID,
            name="Escalation sweep",
            replace_existing=True,
        )
        if self.oauth_states is not None:
            self.scheduler.add_job(
                self._run_oauth_sweep,
                trigger=IntervalTrigger(minutes=self.sweep_interval_minutes),
                id=OAUTH_SWEEP_JOB_ID,
                name="OAuth state sweep",
                replace_existing=True,
            )

        self.scheduler.start()
        self._running = True
        logger.info(
            "escalation_scheduler_started",
            interval_s=self.interval_s,
            jobs=[job.id for job in self.scheduler.get_jobs()],
        )

    async def stop(self) -> None:
        """Stop the timer, then let an in-flight tick finish."""
        if not self._running:
            return
        self.scheduler.shutdown(wait=False)
        self._running = False
        if self.engine.running:
            logger.info("escalation_scheduler_waiting_for_tick")
        await self.engine.wait_idle()
        logger.info("escalation_scheduler_stopped")

    async def _run_escalation_tick(self) -> None:
        try:
            await self.engine.tick()
        except Exception as e:
            logger.error("escalation_tick_crashed", error=str(e), exc_info=True)

    async def _run_oauth_sweep(self) -> None:
        try:
            await self.oauth_states.sweep_expired()
        except Exception as e:
            logger.warning("oauth_state_sweep_failed", error=str(e))
