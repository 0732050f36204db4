# backend/system.py — Storage monitoring + health checks

import logging
from datetime import datetime
from typing import Dict, Any, Optional

from sqlalchemy import text, func
from sqlalchemy.orm import Session

from models import (
    MarketSnapshot, MarketMetrics, MarketAlert, MarketPriceHistory, MarketPlatformTracking,
    CompetitorInventory, JobExecution, SystemMetric,
    AUTODEV_API_KEY, SMTP_HOST, ALERT_EMAIL_TO,
    STORAGE_LIMIT_MB, STORAGE_WARNING_MB, STORAGE_CRITICAL_MB,
)

logger = logging.getLogger(__name__)

MB = 1024 * 1024

TRACKED_TABLES = [
    ("market_snapshots", MarketSnapshot),
    ("market_metrics", MarketMetrics),
    ("market_alerts", MarketAlert),
    ("market_price_history", MarketPriceHistory),
    ("market_platform_tracking", MarketPlatformTracking),
    ("competitor_inventory", CompetitorInventory),
    ("job_execution_history", JobExecution),
]


def database_size_bytes(db: Session) -> int:
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return int(db.execute(text("SELECT pg_database_size(current_database())")).scalar() or 0)
    if dialect == "sqlite":
        page_count = db.execute(text("PRAGMA page_count")).scalar() or 0
        page_size = db.execute(text("PRAGMA page_size")).scalar() or 0
        return int(page_count) * int(page_size)
    raise NotImplementedError(f"Storage size not supported for dialect '{dialect}'")


def storage_status(size_mb: float) -> str:
    if size_mb >= STORAGE_CRITICAL_MB:
        return "critical"
    if size_mb >= STORAGE_WARNING_MB:
        return "warning"
    return "ok"


def storage_usage(db: Session) -> Dict[str, Any]:
    size_bytes = database_size_bytes(db)
    size_mb = round(size_bytes / MB, 2)
    oldest = db.query(func.min(MarketSnapshot.snapshot_date)).scalar()

    return {
        "total_size_bytes": size_bytes,
        "total_size_mb": size_mb,
        "max_limit_mb": STORAGE_LIMIT_MB,
        "remaining_mb": round(STORAGE_LIMIT_MB - size_mb, 2),
        "percent_used": round(size_mb / STORAGE_LIMIT_MB * 100, 2) if STORAGE_LIMIT_MB else None,
        "status": storage_status(size_mb),
        "thresholds": {"warning": STORAGE_WARNING_MB, "critical": STORAGE_CRITICAL_MB},
        "table_rows": {name: db.query(func.count(model.id)).scalar() for name, model in TRACKED_TABLES},
        "snapshot_count": db.query(func.count(MarketSnapshot.id)).scalar(),
        "oldest_snapshot": oldest,
    }


def record_storage_metric(db: Session) -> SystemMetric:
    usage = storage_usage(db)
    row = SystemMetric(
        metric_type="storage",
        metric_name="database_size",
        metric_value=usage["total_size_mb"],
        metric_unit="MB",
        metric_data={
            "status": usage["status"],
            "percent_used": usage["percent_used"],
            "table_rows": usage["table_rows"],
        },
    )
    db.add(row)
    db.commit()
    db.refresh(row)

    if usage["status"] == "critical":
        logger.error("Database storage critical: %.2f MB of %.0f MB", usage["total_size_mb"], STORAGE_LIMIT_MB)
    elif usage["status"] == "warning":
        logger.warning("Database storage warning: %.2f MB of %.0f MB", usage["total_size_mb"], STORAGE_LIMIT_MB)
    else:
        logger.info("Database storage at %.2f MB", usage["total_size_mb"])
    return row


def health(db: Session, jobs_status: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    checks = {"database": False, "autodev_api": bool(AUTODEV_API_KEY), "email": bool(SMTP_HOST and ALERT_EMAIL_TO)}
    storage = None

    try:
        db.execute(text("SELECT 1"))
        checks["database"] = True
        storage = storage_usage(db)
    except Exception:
        logger.exception("Database health check failed")

    checks["storage"] = storage is not None and storage["status"] != "critical"

    if not checks["database"]:
        overall = "unhealthy"
    elif all(checks.values()) and storage["status"] == "ok":
        overall = "healthy"
    else:
        overall = "degraded"

    return {
        "status": overall,
        "healthy": overall == "healthy",
        "checks": checks,
        "storage_status": storage["status"] if storage else None,
        "jobs": jobs_status or {},
        "timestamp": datetime.utcnow(),
    }
