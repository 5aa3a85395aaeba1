import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import Settings, get_settings
from database import session_scope
from periods import local_today
from services import BudgetPeriodService, RecurringSeriesService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DAILY_JOB_ID = "maintenance_daily"
SAFETY_JOB_ID = "maintenance_safety_net"


@dataclass
class MaintenanceReport:
    occurrences_posted: int = 0
    overdue_periods: int = 0


def process_overdue_periods(
    session, as_of: Optional[date] = None, auto_rollover: Optional[bool] = None
) -> int:
    """Roll over (or just report) every open period that has run past its end.

    Returns the number of overdue periods found.
    """
    as_of = as_of or local_today()
    if auto_rollover is None:
        auto_rollover = get_settings().auto_rollover
    service = BudgetPeriodService(session)
    overdue = service.overdue_people(as_of)
    for person, period in overdue:
        if not auto_rollover:
            logger.info(
                f"period_overdue: person_id={person.id} period_id={period.id} "
                f"start={period.start_date} as_of={as_of}"
            )
            continue
        service.rollover(person.id, as_of)
    return len(overdue)


def run_maintenance(
    session, as_of: Optional[date] = None, auto_rollover: Optional[bool] = None
) -> MaintenanceReport:
    """Post due recurring occurrences, then settle overdue periods.

    Occurrences go first so a rollover on the same day sees them.
    """
    as_of = as_of or local_today()
    report = MaintenanceReport()
    report.occurrences_posted = RecurringSeriesService(session).execute_due(as_of)
    report.overdue_periods = process_overdue_periods(session, as_of, auto_rollover)
    return report


class SchedulerManager:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"maintenance_run: source={source}")
        with session_scope() as session:
            report = run_maintenance(session)
        logger.info(
            f"maintenance_run: source={source} "
            f"occurrences_posted={report.occurrences_posted} "
            f"overdue_periods={report.overdue_periods}"
        )

    def register_jobs(self) -> None:
        settings = self.settings
        self.scheduler.add_job(
            self._run_job,
            CronTrigger(
                hour=settings.maintenance_hour, minute=settings.maintenance_minute
            ),
            args=[f"daily_{settings.maintenance_time}"],
            id=DAILY_JOB_ID,
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self._run_job,
            IntervalTrigger(minutes=settings.safety_interval_minutes),
            args=["safety_net"],
            id=SAFETY_JOB_ID,
            replace_existing=True,
            misfire_grace_time=300,
        )

    def start(self) -> None:
        self._run_job("startup")
        self.register_jobs()
        self.scheduler.start()
        logger.info(
            f"scheduler_started: daily={self.settings.maintenance_time} "
            f"safety_interval_minutes={self.settings.safety_interval_minutes}"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("scheduler_stopped")
