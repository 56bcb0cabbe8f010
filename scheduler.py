import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from errors import LedgerError
from periods import local_today
from quotes import PriceQuoteService
from services import InvestmentService, SalaryService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, quotes: Optional[PriceQuoteService] = None) -> None:
        settings = get_settings()
        self.settings = settings
        self.quotes = quotes or PriceQuoteService(settings)
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_salary_job(self, source: str = "manual") -> None:
        today = local_today()
        logger.info(f"salary_job: source={source} today={today.isoformat()}")
        try:
            with session_scope() as session:
                txn = SalaryService(session).auto_process(today)
        except LedgerError as exc:
            logger.warning(f"salary_job: source={source} failed: {exc}")
            return
        if txn is None:
            logger.info(f"salary_job: source={source} nothing_due")
        else:
            logger.info(f"salary_job: source={source} transaction_id={txn.id}")

    def _run_prices_job(self, source: str = "manual") -> None:
        logger.info(f"prices_job: source={source}")
        with session_scope() as session:
            result = InvestmentService(session).refresh_all_prices(self.quotes)
        logger.info(
            f"prices_job: source={source} updated={result['updated']} "
            f"failed={len(result['failed'])}"
        )

    def start(self) -> None:
        self._run_salary_job("startup")

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_salary_job,
            trigger,
            args=["hourly"],
            id="salary_hourly",
            replace_existing=True,
            misfire_grace_time=300,
        )

        trigger = IntervalTrigger(minutes=self.settings.price_refresh_minutes)
        self.scheduler.add_job(
            self._run_prices_job,
            trigger,
            args=["interval"],
            id="prices_refresh",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            "Scheduler started with hourly salary check and price refresh every "
            f"{self.settings.price_refresh_minutes} minutes"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
