import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from engine import BudgetEngine
from errors import EngineError

logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, engine: Optional[BudgetEngine] = None) -> None:
        self.engine = engine or BudgetEngine.from_settings()
        self.scheduler = BackgroundScheduler(timezone=self.engine.settings.timezone)

    def _run_job(self, source: str = "manual") -> int:
        logger.info(f"scheduler_run: source={source}")
        try:
            user_ids = self.engine.user_ids()
        except EngineError:
            logger.exception(f"scheduler_run_failed: source={source} stage=user_ids")
            return 0

        processed = 0
        for user_id in user_ids:
            try:
                summary = self.engine.run_for_user(user_id)
            except EngineError:
                logger.exception(f"scheduler_user_failed: source={source} user_id={user_id}")
                continue
            processed += 1
            logger.info(
                f"scheduler_user: source={source} user_id={user_id} "
                f"posted={summary.advance.posted} "
                f"forecasts={summary.forecasts_refreshed} "
                f"discrepancies={len(summary.reconcile.discrepancies)} "
                f"errors={len(summary.advance.errors) + len(summary.reconcile.errors)}"
            )
        logger.info(
            f"scheduler_run: source={source} users={len(user_ids)} processed={processed}"
        )
        return processed

    def run_once(self, source: str = "manual") -> int:
        return self._run_job(source)

    def start(self) -> None:
        self._run_job("startup")

        # (job id, trigger, source label, misfire grace seconds)
        jobs = [
            ("budget_daily", CronTrigger(hour=3, minute=15), "daily_03:15", 3600),
            ("budget_hourly_safety", IntervalTrigger(hours=1), "hourly_safety_net", 300),
        ]
        for job_id, trigger, source, grace in jobs:
            self.scheduler.add_job(
                self._run_job,
                trigger,
                args=[source],
                id=job_id,
                replace_existing=True,
                misfire_grace_time=grace,
                max_instances=1,
                coalesce=True,
            )

        self.scheduler.start()
        logger.info(f"scheduler_started: jobs={[job_id for job_id, *_ in jobs]}")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
