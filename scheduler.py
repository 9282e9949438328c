import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import sessionmaker

from config import get_settings
from database import SessionLocal, session_scope
from services import audit_event_totals


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class TotalsAuditScheduler:
    """Nightly check that stored totals still match their expenses.

    Drift is only reported; repairing it is left to an explicit recalculation.
    """

    def __init__(self, session_factory: sessionmaker = SessionLocal) -> None:
        settings = get_settings()
        self.session_factory = session_factory
        self.enabled = settings.audit_enabled
        self.audit_hour = settings.audit_hour
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> int:
        logger.info(f"totals_audit_run: source={source}")
        with session_scope(self.session_factory) as session:
            drifts = audit_event_totals(session)
        for drift in drifts:
            fields = ",".join(f"{c.scope}.{c.field}" for c in drift.changes)
            logger.warning(
                f"totals_drift: user={drift.user_id} event={drift.event_id} fields={fields}"
            )
        logger.info(f"totals_audit_run: source={source} drifted_events={len(drifts)}")
        return len(drifts)

    def start(self) -> None:
        if not self.enabled:
            logger.info("Totals audit disabled")
            return

        trigger = CronTrigger(hour=self.audit_hour, minute=0)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=[f"daily_{self.audit_hour:02d}:00"],
            id="totals_audit_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.start()
        logger.info(f"Scheduler started with daily totals audit at {self.audit_hour:02d}:00")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
