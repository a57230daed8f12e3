"""
APScheduler-based Scheduler for the Learning Engine
Runs the hourly outcome sweep and the periodic optimization check on the
application's event loop.
"""
import logging
from datetime import datetime, time
from typing import Optional

import pytz
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.config import DEFAULT_SETTINGS

logger = logging.getLogger(__name__)


class LearningScheduler:
    def __init__(self, manager, outcome_interval_minutes: Optional[int] = None,
                 optimization_interval_hours: Optional[int] = None, timezone: Optional[str] = None):
        self.manager = manager
        self.is_running = False
        self.is_sweeping = False
        self.is_optimizing = False
        self.last_sweep_result = None
        self.last_optimization_result = None
        self.outcome_interval_minutes = outcome_interval_minutes or DEFAULT_SETTINGS["outcome_check_interval_minutes"]
        self.optimization_interval_hours = optimization_interval_hours or DEFAULT_SETTINGS["optimization_check_interval_hours"]
        self.timezone = timezone or DEFAULT_SETTINGS["timezone"]
        self.scheduler = AsyncIOScheduler(timezone=pytz.timezone(self.timezone))

    @classmethod
    async def from_store(cls, manager, outcome_interval_minutes: Optional[int] = None,
                         optimization_interval_hours: Optional[int] = None, timezone: Optional[str] = None):
        """Build a scheduler from the settings table. Explicit arguments win over stored values"""
        settings = await manager.context.store.get_settings(
            "outcome_check_interval_minutes", "optimization_check_interval_hours", "timezone")
        return cls(
            manager,
            outcome_interval_minutes=outcome_interval_minutes or settings.get("outcome_check_interval_minutes"),
            optimization_interval_hours=optimization_interval_hours or settings.get("optimization_check_interval_hours"),
            timezone=timezone or settings.get("timezone"),
        )

    def is_market_open(self) -> bool:
        """Check if US markets are currently open (Mon-Fri 9:30-16:00 ET)"""
        et = pytz.timezone('US/Eastern')
        now = datetime.now(et)
        if now.weekday() >= 5:
            return False
        return time(9, 30) <= now.time() <= time(16, 0)

    async def run_outcome_sweep(self):
        """Poll prices for open recommendations and close resolved ones"""
        if self.is_sweeping:
            logger.info("Outcome sweep already in progress")
            return None

        self.is_sweeping = True
        try:
            self.last_sweep_result = await self.manager.update_tracking()
            return self.last_sweep_result
        except Exception as e:
            logger.error(f"Outcome sweep failed: {e}", exc_info=True)
            return None
        finally:
            self.is_sweeping = False

    async def run_optimization_check(self, force: bool = False):
        """Let the optimizer decide whether a pass is due, and run it if so"""
        if self.is_optimizing:
            logger.info("Optimization already in progress")
            return None

        self.is_optimizing = True
        try:
            if force:
                report = await self.manager.force_optimization()
            else:
                report = await self.manager.run_periodic_optimization()
            self.last_optimization_result = {
                'status': report.get('status'),
                'reason': report.get('reason'),
                'timestamp': report.get('timestamp'),
            }
            return report
        except Exception as e:
            logger.error(f"Optimization check failed: {e}", exc_info=True)
            return None
        finally:
            self.is_optimizing = False

    def start(self):
        """Start the scheduler. Must be called from a running event loop."""
        if self.is_running:
            return

        self.scheduler.add_job(
            self.run_outcome_sweep,
            IntervalTrigger(minutes=self.outcome_interval_minutes),
            id='outcome_sweep',
            name='Recommendation Outcome Sweep',
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.add_job(
            self.run_optimization_check,
            IntervalTrigger(hours=self.optimization_interval_hours),
            id='strategy_optimization',
            name='Strategy Optimization Check',
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.start()
        self.is_running = True
        logger.info(f"Scheduler started: outcome sweep every {self.outcome_interval_minutes}m, "
                    f"optimization check every {self.optimization_interval_hours}h")

    def stop(self):
        """Stop the scheduler"""
        if not self.is_running:
            return
        self.scheduler.shutdown(wait=False)
        self.is_running = False
        logger.info("Scheduler stopped")

    def trigger_manual_optimization(self) -> bool:
        """Queue an immediate forced optimization pass"""
        if self.is_optimizing or not self.is_running:
            return False

        self.scheduler.add_job(
            self.run_optimization_check,
            args=[True],
            trigger='date',
            run_date=datetime.now(self.scheduler.timezone),
            id='manual_optimization',
            name='Manual Optimization (User Triggered)',
            replace_existing=True,
        )
        logger.info("Manual optimization queued")
        return True

    def get_status(self) -> dict:
        """Get scheduler status"""
        jobs = []
        if self.is_running:
            for job in self.scheduler.get_jobs():
                jobs.append({
                    "id": job.id,
                    "name": job.name,
                    "next_run": str(job.next_run_time) if job.next_run_time else None
                })

        return {
            "is_running": self.is_running,
            "is_sweeping": self.is_sweeping,
            "is_optimizing": self.is_optimizing,
            "is_market_open": self.is_market_open(),
            "outcome_interval_minutes": self.outcome_interval_minutes,
            "optimization_interval_hours": self.optimization_interval_hours,
            "timezone": self.timezone,
            "jobs": jobs,
            "last_sweep": self.last_sweep_result,
            "last_optimization": self.last_optimization_result,
        }
