import logging
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger

from sync import SyncService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DEBOUNCE_JOB_ID = "sync_debounce"


class SyncScheduler:
    """Runs sync cycles off the request path.

    Local edits are coalesced: every change pushes the single debounce job
    further out, so a burst of edits ends in one cycle.
    """

    def __init__(
        self, sync_service: SyncService, timezone: str, debounce_secs: float
    ) -> None:
        self.sync_service = sync_service
        self.tz = ZoneInfo(timezone)
        self.debounce_secs = debounce_secs
        self.scheduler = BackgroundScheduler(timezone=self.tz)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"sync_run: source={source}")
        ran = self.sync_service.sync_now(source)
        logger.info(
            f"sync_run: source={source} ran={ran} status={self.sync_service.status.value}"
        )

    def start(self) -> None:
        self.scheduler.start()
        logger.info("Sync scheduler started")
        if self.sync_service.is_enabled():
            self.trigger_now("startup")

    def trigger_now(self, source: str) -> None:
        if not self.scheduler.running:
            return
        self.scheduler.add_job(
            self._run_job,
            DateTrigger(run_date=datetime.now(self.tz)),
            args=[source],
            id=f"sync_{source}",
            replace_existing=True,
            misfire_grace_time=60,
        )

    def notify_change(self) -> None:
        if not self.scheduler.running or not self.sync_service.is_enabled():
            return
        run_at = datetime.now(self.tz) + timedelta(seconds=self.debounce_secs)
        self.scheduler.add_job(
            self._run_job,
            DateTrigger(run_date=run_at),
            args=["local_change"],
            id=DEBOUNCE_JOB_ID,
            replace_existing=True,
            misfire_grace_time=60,
        )

    def notify_foreground(self) -> None:
        if self.sync_service.is_enabled():
            self.trigger_now("foreground")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Sync scheduler stopped")
