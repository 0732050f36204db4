# backend/routes_market.py — Market Research, History, System & VIN Evaluation Routes

import logging
from typing import Optional, List

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from models import get_db, User, MARKET_SNAPSHOT_RETENTION_DAYS
from schemas import (
    AnalyzeRequest, AlertDismissMany, VinEvaluateRequest, JobExecutionOut, MessageResponse,
)
from deps import get_current_user, require_admin, require_manager
from autodev import AutoDevClientError
from jobs import job_manager
import alerts
import history
import jobs
import market
import system

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/market-research", tags=["market-research"])
history_router = APIRouter(prefix="/api/market-history", tags=["market-history"])
system_router = APIRouter(prefix="/api/market-system", tags=["market-system"])
vin_router = APIRouter(prefix="/api/vin-evaluation", tags=["vin-evaluation"])

SEVERITIES = ("info", "warning", "critical")


def _upstream_error(exc: AutoDevClientError) -> HTTPException:
    if exc.code == "MISSING_API_KEY":
        return HTTPException(400, str(exc))
    return HTTPException(502, {"message": str(exc), "code": exc.code, "status": exc.status})


# ---------------------------------------------------------------------------
# OVERVIEW + VEHICLE
# ---------------------------------------------------------------------------
@router.get("/overview")
def overview(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return market.get_overview(db)


@router.get("/dashboard-widget")
def dashboard_widget(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return alerts.get_dashboard_widget(db)


@router.get("/vehicle/{vehicle_id}")
def vehicle_detail(vehicle_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    try:
        return market.get_vehicle_detail(db, vehicle_id)
    except LookupError:
        raise HTTPException(404, "Vehicle not found.")


@router.post("/vehicle/{vehicle_id}/analyze")
async def analyze_vehicle(
    vehicle_id: int,
    payload: Optional[AnalyzeRequest] = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_manager),
):
    payload = payload or AnalyzeRequest()
    try:
        result = await market.analyze_vehicle(
            db, vehicle_id, expansion=payload.expansion, manual=True, year_range=payload.year_range,
        )
    except LookupError:
        raise HTTPException(404, "Vehicle not found.")
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    except AutoDevClientError as exc:
        logger.warning("Manual analysis of vehicle %s failed [%s]: %s", vehicle_id, exc.code, exc)
        raise _upstream_error(exc)

    if result.get("success") and not result.get("no_results"):
        raised = alerts.detect_alerts(db, vehicle_id)
        result["alerts"] = [market.alert_dict(a) for a in raised]
    return result


@router.post("/analyze-all", response_model=MessageResponse, status_code=202)
async def analyze_all(background_tasks: BackgroundTasks, user: User = Depends(require_manager)):
    if job_manager.state["market_research"]["is_running"]:
        raise HTTPException(409, "Market research job already running.")
    background_tasks.add_task(job_manager.run_job, "market_research", "api")
    logger.info("Batch market analysis queued by %s", user.email)
    return {"message": "Market analysis started in the background."}


# ---------------------------------------------------------------------------
# ALERTS
# ---------------------------------------------------------------------------
@router.get("/alerts")
def list_alerts(
    severity: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    vehicle_id: Optional[int] = Query(None),
    include_dismissed: bool = Query(False),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    if severity and severity not in SEVERITIES:
        raise HTTPException(400, f"Invalid severity '{severity}'.")
    rows = alerts.get_recent_alerts(db, severity, limit, vehicle_id, include_dismissed)
    return {"alerts": [market.alert_dict(a) for a in rows], "count": len(rows)}


@router.post("/alerts/dismiss")
def dismiss_many(payload: AlertDismissMany, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return {"dismissed": alerts.dismiss_alerts(db, payload.alert_ids)}


@router.post("/alerts/{alert_id}/dismiss")
def dismiss_one(alert_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    alert = alerts.dismiss_alert(db, alert_id)
    if alert is None:
        raise HTTPException(404, "Alert not found.")
    return market.alert_dict(alert)


@router.post("/alerts/{alert_id}/resolve")
def resolve_one(alert_id: int, db: Session = Depends(get_db), user: User = Depends(require_manager)):
    alert = alerts.resolve_alert(db, alert_id)
    if alert is None:
        raise HTTPException(404, "Alert not found.")
    return market.alert_dict(alert)


# ---------------------------------------------------------------------------
# JOBS
# ---------------------------------------------------------------------------
@router.get("/jobs/status")
def jobs_status(user: User = Depends(get_current_user)):
    return job_manager.get_status()


@router.post("/jobs/{job_name}/run")
async def run_job(job_name: str, user: User = Depends(require_manager)):
    try:
        return await job_manager.run_job(job_name, "manual")
    except KeyError:
        raise HTTPException(404, f"Unknown job '{job_name}'.")


@router.get("/jobs/history", response_model=List[JobExecutionOut])
def jobs_history(
    job_name: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return jobs.execution_history(db, job_name, limit)


# ---------------------------------------------------------------------------
# HISTORY
# ---------------------------------------------------------------------------
@history_router.get("/aggregate")
def history_aggregate(
    days: int = Query(30, ge=1, le=365),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return {"days": days, "data": history.aggregate(db, days)}


@history_router.get("/trends")
def history_trends(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return history.trends(db)


@history_router.get("/sold-analysis")
def history_sold(
    months: int = Query(6, ge=1, le=36),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return history.sold_analysis(db, months)


# ---------------------------------------------------------------------------
# SYSTEM
# ---------------------------------------------------------------------------
@system_router.get("/storage")
def storage(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return system.storage_usage(db)


@system_router.get("/health")
def system_health(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return system.health(db, job_manager.get_status())


@system_router.post("/cleanup")
def cleanup(
    retention_days: int = Query(MARKET_SNAPSHOT_RETENTION_DAYS, ge=1),
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    deleted = market.cleanup_old_snapshots(db, retention_days)
    return {"deleted_snapshots": deleted, "retention_days": retention_days}


# ---------------------------------------------------------------------------
# VIN EVALUATION
# ---------------------------------------------------------------------------
@vin_router.post("/evaluate")
async def evaluate(payload: VinEvaluateRequest, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    try:
        return await market.evaluate_vin(
            db, payload.vin, payload.year, payload.make, payload.model, payload.mileage,
            trim=payload.trim, force_refresh=payload.force_refresh,
        )
    except AutoDevClientError as exc:
        logger.warning("VIN evaluation for %s failed [%s]: %s", payload.vin, exc.code, exc)
        raise _upstream_error(exc)


@vin_router.get("/cache/{vin}")
def cache_status(vin: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    cached = market.get_cached_evaluation(db, vin)
    return {"vin": vin.upper(), "cached": cached is not None, "cache_age": cached.created_at if cached else None}
