import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import sessionmaker

from config import get_settings
from database import session_scope
from recurrence import RecurringTransactionProcessor
from reports import BudgetAlertJob, MonthlyReportJob


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class UserConcurrencyLimiter:
    """Bounds how many recurring workers run at once for a single user.

    A user's semaphore lives only while some worker holds or waits on it.
    """

    def __init__(self, limit: int) -> None:
        self.limit = max(1, limit)
        self._slots: dict[int, tuple[threading.BoundedSemaphore, int]] = {}
        self._lock = threading.Lock()

    def _checkout(self, user_id: int) -> threading.BoundedSemaphore:
        with self._lock:
            sem, users = self._slots.get(user_id, (None, 0))
            if sem is None:
                sem = threading.BoundedSemaphore(self.limit)
            self._slots[user_id] = (sem, users + 1)
            return sem

    def _checkin(self, user_id: int) -> None:
        with self._lock:
            sem, users = self._slots[user_id]
            if users <= 1:
                del self._slots[user_id]
            else:
                self._slots[user_id] = (sem, users - 1)

    @contextmanager
    def slot(self, user_id: int) -> Iterator[None]:
        sem = self._checkout(user_id)
        try:
            with sem:
                yield
        finally:
            self._checkin(user_id)


class SchedulerManager:
    def __init__(self, session_factory: Optional[sessionmaker] = None) -> None:
        self.settings = get_settings()
        self.session_factory = session_factory
        self.scheduler = BackgroundScheduler(
            timezone=self.settings.timezone,
            executors={"default": ThreadPoolExecutor(20)},
        )
        self.limiter = UserConcurrencyLimiter(self.settings.recurring_user_concurrency)

    def enqueue_recurring(self, transaction_id: int, user_id: int) -> None:
        # Same job id for the same template: a repeat enqueue replaces the
        # pending job instead of stacking a second one.
        self.scheduler.add_job(
            self.process_recurring,
            args=[transaction_id, user_id],
            id=f"recurring:{transaction_id}",
            replace_existing=True,
            misfire_grace_time=3600,
        )

    def process_recurring(self, transaction_id: int, user_id: int) -> None:
        with self.limiter.slot(user_id):
            try:
                with session_scope(self.session_factory) as session:
                    RecurringTransactionProcessor(session).process(
                        transaction_id, user_id
                    )
            except Exception:
                logger.exception(
                    f"recurring_failed: transaction={transaction_id} user={user_id}"
                )

    def trigger_recurring(self, source: str = "manual") -> int:
        logger.info(f"scheduler_run: source={source}")
        with session_scope(self.session_factory) as session:
            count = RecurringTransactionProcessor(session).trigger(
                self.enqueue_recurring
            )
        logger.info(f"scheduler_run: source={source} enqueued={count}")
        return count

    def run_monthly_reports(self) -> None:
        MonthlyReportJob(self.session_factory).run()

    def run_budget_alerts(self) -> None:
        BudgetAlertJob(self.session_factory).run()

    def start(self) -> None:
        tz = self.settings.timezone
        self.scheduler.add_job(
            self.trigger_recurring,
            CronTrigger.from_crontab(self.settings.recurring_cron, timezone=tz),
            args=["cron"],
            id="recurring_trigger",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self.run_monthly_reports,
            CronTrigger.from_crontab(self.settings.report_cron, timezone=tz),
            id="monthly_reports",
            replace_existing=True,
            misfire_grace_time=6 * 3600,
        )
        self.scheduler.add_job(
            self.run_budget_alerts,
            IntervalTrigger(hours=self.settings.budget_alert_hours),
            id="budget_alerts",
            replace_existing=True,
            misfire_grace_time=600,
        )
        self.scheduler.start()
        self.trigger_recurring("startup")
        logger.info(
            f"Scheduler started: recurring={self.settings.recurring_cron!r} "
            f"reports={self.settings.report_cron!r} "
            f"alerts_every={self.settings.budget_alert_hours}h"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
