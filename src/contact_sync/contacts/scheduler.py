"""Background scheduler for the periodic full contact sync.

Wraps an APScheduler AsyncIOScheduler with one cron job that calls
ReconciliationEngine.full_sync() directly. The job never raises into the
scheduler: an overlapping run is skipped and any other failure is logged,
leaving the next scheduled run untouched.
"""

from __future__ import annotations

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
import structlog

from src.contact_sync.contacts.engine import ReconciliationEngine
from src.contact_sync.contacts.errors import InvalidCredentialsError, SyncInProgressError
from src.contact_sync.contacts.schemas import SyncReport

logger = structlog.get_logger(__name__)

JOB_ID = "contact_full_sync"


class SyncScheduler:
    """Cron-driven trigger for full contact syncs.

    Args:
        engine: ReconciliationEngine to run.
        cron: Five-field crontab expression. Default: midnight daily.
        timezone: Timezone the cron expression is evaluated in.
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        cron: str = "0 0 * * *",
        timezone: str = "UTC",
    ) -> None:
        self._engine = engine
        self._trigger = CronTrigger.from_crontab(cron, timezone=timezone)
        self._cron = cron
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """Register the sync job and start the scheduler on the running loop."""
        if self.running:
            return
        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.run_sync,
            trigger=self._trigger,
            id=JOB_ID,
            name="Full Wealthbox contact sync",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600,
        )
        self._scheduler.start()
        logger.info("sync_scheduler.started", cron=self._cron)

    def shutdown(self) -> None:
        """Stop the scheduler without waiting for a running job."""
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("sync_scheduler.stopped")
        self._scheduler = None

    async def run_sync(self) -> SyncReport | None:
        """Job body: run one full sync, absorbing every failure into the log."""
        logger.info("sync_scheduler.run_triggered")
        try:
            report = await self._engine.full_sync()
        except SyncInProgressError:
            logger.info("sync_scheduler.run_skipped", reason="already_running")
            return None
        except InvalidCredentialsError:
            logger.error("sync_scheduler.run_failed", reason="invalid_credentials")
            return None
        except Exception as exc:
            logger.error("sync_scheduler.run_failed", error=str(exc), exc_info=True)
            return None

        logger.info(
            "sync_scheduler.run_complete",
            total=report.total,
            succeeded=report.succeeded,
            failed=report.failed,
        )
        return report
