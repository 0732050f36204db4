# backend/jobs.py — Scheduled Jobs + Execution History
# APScheduler drives four jobs; every run (scheduled or manual) is
# recorded in job_execution_history.

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session

from models import (
    SessionLocal, JobExecution, JobStatus, JobTrigger, Competitor,
    MARKET_RESEARCH_ENABLED, MARKET_RESEARCH_SCHEDULE, MARKET_RESEARCH_TIMEZONE,
    MARKET_SNAPSHOT_RETENTION_DAYS, COMPETITOR_SCRAPER_ENABLED, COMPETITOR_SCRAPER_SCHEDULE,
)
from scraper import ScraperError
import alerts
import market
import scraper
import system

logger = logging.getLogger(__name__)

JobFunc = Callable[[Session], Awaitable[Dict[str, Any]]]


# ---------------------------------------------------------------------------
# EXECUTION HISTORY
# ---------------------------------------------------------------------------
def start_execution(db: Session, job_name: str, triggered_by: str = "scheduled") -> JobExecution:
    row = JobExecution(
        job_name=job_name,
        status=JobStatus.running,
        started_at=datetime.utcnow(),
        triggered_by=JobTrigger(triggered_by),
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def finish_execution(
    db: Session,
    row: JobExecution,
    status: JobStatus,
    result_data: Optional[Dict[str, Any]] = None,
    error_message: Optional[str] = None,
) -> JobExecution:
    row.completed_at = datetime.utcnow()
    row.duration_ms = int((row.completed_at - row.started_at).total_seconds() * 1000)
    row.status = status
    row.result_data = result_data
    row.error_message = error_message
    db.commit()
    db.refresh(row)
    return row


def latest_execution(db: Session, job_name: str) -> Optional[JobExecution]:
    return db.query(JobExecution).filter(
        JobExecution.job_name == job_name,
    ).order_by(JobExecution.started_at.desc(), JobExecution.id.desc()).first()


def execution_history(db: Session, job_name: Optional[str] = None, limit: int = 20) -> List[JobExecution]:
    q = db.query(JobExecution)
    if job_name:
        q = q.filter(JobExecution.job_name == job_name)
    return q.order_by(JobExecution.started_at.desc(), JobExecution.id.desc()).limit(limit).all()


def batch_status(total: int, failed: int) -> JobStatus:
    if total and failed == total:
        return JobStatus.failed
    if failed:
        return JobStatus.partial
    return JobStatus.success


# ---------------------------------------------------------------------------
# JOBS (each returns a result dict; "status" key is optional)
# ---------------------------------------------------------------------------
async def market_research_job(db: Session) -> Dict[str, Any]:
    results = await market.analyze_all_vehicles(db)
    analyzed = [r["vehicle_id"] for r in results if r.get("success") and not r.get("no_results")]
    raised = alerts.detect_all_alerts(db, analyzed)
    failed = sum(1 for r in results if not r.get("success"))

    return {
        "status": batch_status(len(results), failed),
        "vehicles": len(results),
        "successful": len(results) - failed,
        "failed": failed,
        "no_results": sum(1 for r in results if r.get("no_results")),
        "alerts": len(raised),
    }


async def market_cleanup_job(db: Session) -> Dict[str, Any]:
    deleted = market.cleanup_old_snapshots(db, MARKET_SNAPSHOT_RETENTION_DAYS)
    return {"deleted_snapshots": deleted, "retention_days": MARKET_SNAPSHOT_RETENTION_DAYS}


async def storage_monitoring_job(db: Session) -> Dict[str, Any]:
    metric = system.record_storage_metric(db)
    return {
        "size_mb": metric.metric_value,
        "storage_status": metric.metric_data.get("status"),
        "percent_used": metric.metric_data.get("percent_used"),
    }


async def competitor_scraper_job(db: Session) -> Dict[str, Any]:
    """Scrape active competitors one at a time, alphabetically."""
    targets = db.query(Competitor).filter(Competitor.active.is_(True)).order_by(Competitor.name.asc()).all()
    totals = {"added": 0, "updated": 0, "sold": 0, "errors": 0}
    failures = []

    for competitor_id, name in [(c.id, c.name) for c in targets]:
        try:
            result = await scraper.scrape_competitor(db, competitor_id)
            for key in totals:
                totals[key] += result.get(key, 0)
        except (ScraperError, LookupError) as exc:
            failures.append({
                "competitor_id": competitor_id,
                "name": name,
                "error": str(exc),
                "error_type": getattr(exc, "error_type", "NOT_FOUND"),
            })

    return {
        "status": batch_status(len(targets), len(failures)),
        "competitors": len(targets),
        "succeeded": len(targets) - len(failures),
        "failed": len(failures),
        "failures": failures,
        **totals,
    }


# ---------------------------------------------------------------------------
# MANAGER
# ---------------------------------------------------------------------------
class JobSpec:
    def __init__(self, name: str, func: JobFunc, trigger: Optional[CronTrigger], enabled: bool, schedule: str):
        self.name = name
        self.func = func
        self.trigger = trigger
        self.enabled = enabled
        self.schedule = schedule


class JobManager:
    """Registers jobs, guards against overlapping runs and owns the scheduler."""

    def __init__(self, session_factory=SessionLocal, scheduler: Optional[AsyncIOScheduler] = None):
        self.session_factory = session_factory
        self.scheduler = scheduler or AsyncIOScheduler()
        self.jobs: Dict[str, JobSpec] = {}
        self.state: Dict[str, Dict[str, Any]] = {}

    def register(
        self,
        name: str,
        func: JobFunc,
        schedule: str,
        enabled: bool = True,
        timezone: Optional[str] = None,
    ) -> None:
        trigger = CronTrigger.from_crontab(schedule, timezone=timezone) if schedule else None
        self.jobs[name] = JobSpec(name, func, trigger, enabled, schedule)
        self.state[name] = {"is_running": False, "last_run": None, "last_result": None}

    async def run_job(self, name: str, triggered_by: str = "manual") -> Dict[str, Any]:
        if name not in self.jobs:
            raise KeyError(f"Unknown job: {name}")
        state = self.state[name]
        if state["is_running"]:
            logger.warning("Job %s already running, skipping %s trigger", name, triggered_by)
            return {"success": False, "message": "Job already running"}

        state["is_running"] = True
        db = self.session_factory()
        logger.info("Job %s started (%s)", name, triggered_by)
        try:
            execution = start_execution(db, name, triggered_by)
            try:
                result = await self.jobs[name].func(db)
            except Exception as exc:
                logger.exception("Job %s failed", name)
                db.rollback()
                finish_execution(db, execution, JobStatus.failed, None, str(exc))
                state["last_result"] = {"success": False, "error": str(exc)}
            else:
                status = result.pop("status", JobStatus.success)
                finish_execution(db, execution, status, result)
                state["last_result"] = {"success": status != JobStatus.failed, "status": status.value, **result}
                logger.info("Job %s finished with status %s in %sms", name, status.value, execution.duration_ms)
        finally:
            state["is_running"] = False
            state["last_run"] = datetime.utcnow()
            db.close()
        return state["last_result"]

    def start_all(self) -> None:
        for spec in self.jobs.values():
            if not spec.enabled or spec.trigger is None:
                logger.info("Job %s disabled", spec.name)
                continue
            self.scheduler.add_job(
                self.run_job, spec.trigger, args=[spec.name, "scheduled"],
                id=spec.name, replace_existing=True, max_instances=1, coalesce=True,
            )
            logger.info("Job %s scheduled (%s)", spec.name, spec.schedule)
        if not self.scheduler.running:
            self.scheduler.start()

    def stop_all(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Job scheduler stopped")

    def get_status(self) -> Dict[str, Any]:
        out = {}
        for name, spec in self.jobs.items():
            scheduled = self.scheduler.get_job(name) if self.scheduler.running else None
            out[name] = {
                "enabled": spec.enabled,
                "schedule": spec.schedule,
                "next_run": getattr(scheduled, "next_run_time", None),
                **self.state[name],
            }
        return out


def build_job_manager(session_factory=SessionLocal) -> JobManager:
    manager = JobManager(session_factory)
    manager.register(
        "market_research", market_research_job, MARKET_RESEARCH_SCHEDULE,
        enabled=MARKET_RESEARCH_ENABLED, timezone=MARKET_RESEARCH_TIMEZONE,
    )
    manager.register("market_cleanup", market_cleanup_job, "0 3 * * sun", timezone=MARKET_RESEARCH_TIMEZONE)
    manager.register("storage_monitoring", storage_monitoring_job, "0 4 * * *", timezone=MARKET_RESEARCH_TIMEZONE)
    manager.register(
        "competitor_scraper", competitor_scraper_job, COMPETITOR_SCRAPER_SCHEDULE,
        enabled=COMPETITOR_SCRAPER_ENABLED, timezone=MARKET_RESEARCH_TIMEZONE,
    )
    return manager


job_manager = build_job_manager()
