"""Periodic purge of dead sessions and verification codes.

Both purges only delete rows that are already logically dead (expired,
consumed, or inactive past retention), so they can run alongside normal
traffic. A failed run is logged and simply retried on the next tick.
"""

import logging
from datetime import datetime, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from auth.config import AuthConfig
from auth.session import SessionManager
from auth.verification import VerificationCodeManager

logger = logging.getLogger(__name__)


class PurgeScheduler:
    """Runs SessionManager.purge_stale and VerificationCodeManager.purge_expired on intervals."""

    def __init__(self, sessions: SessionManager, codes: VerificationCodeManager, config: AuthConfig):
        self._sessions = sessions
        self._codes = codes
        self._config = config
        self.scheduler: BackgroundScheduler | None = None
        self._is_running = False
        self.last_results: dict = {}

    def initialize(self) -> None:
        if self.scheduler is not None:
            return

        self.scheduler = BackgroundScheduler(
            timezone="UTC",
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 300,
            },
        )

        self.scheduler.add_job(
            self.purge_sessions,
            trigger=IntervalTrigger(minutes=self._config.session_purge_interval_minutes),
            id="purge_sessions",
            name="Stale session purge",
            replace_existing=True,
        )

        self.scheduler.add_job(
            self.purge_codes,
            trigger=IntervalTrigger(minutes=self._config.code_purge_interval_minutes),
            id="purge_verification_codes",
            name="Expired verification code purge",
            replace_existing=True,
        )

        logger.info("Purge scheduler initialized")

    def start(self) -> None:
        if self.scheduler is None:
            self.initialize()

        if not self._is_running:
            self.scheduler.start()
            self._is_running = True
            logger.info("Purge scheduler started")

    def stop(self) -> None:
        if self.scheduler and self._is_running:
            self.scheduler.shutdown(wait=False)
            self._is_running = False
            logger.info("Purge scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._is_running

    def _run(self, job_name: str, purge) -> int | None:
        try:
            deleted = purge()
        except Exception as e:
            logger.error(f"Purge job {job_name} failed: {e}", exc_info=True)
            self.last_results[job_name] = {
                "status": "failed",
                "error": str(e),
                "run_at": datetime.now(timezone.utc).isoformat(),
            }
            return None

        self.last_results[job_name] = {
            "status": "ok",
            "deleted": deleted,
            "run_at": datetime.now(timezone.utc).isoformat(),
        }
        return deleted

    def purge_sessions(self) -> int | None:
        return self._run("sessions", self._sessions.purge_stale)

    def purge_codes(self) -> int | None:
        return self._run("verification_codes", self._codes.purge_expired)
