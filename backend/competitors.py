# backend/competitors.py — Competitor reporting
# Stats, inventory browsing, sales rollups and daily metrics over
# scraped competitor inventory.

from datetime import date, datetime, timedelta
from typing import List, Optional, Dict, Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from models import (
    Competitor, CompetitorInventory, CompetitorMetrics, CompetitorVehicleStatus,
)
import engine

MAX_PAGE_SIZE = 100

SORTS = {
    "price_asc": (CompetitorInventory.current_price.asc(),),
    "price_desc": (CompetitorInventory.current_price.desc(),),
    "days_oldest": (CompetitorInventory.first_seen_at.asc(),),
    "days_newest": (CompetitorInventory.first_seen_at.desc(),),
    "mileage_asc": (CompetitorInventory.mileage.asc(),),
    "mileage_desc": (CompetitorInventory.mileage.desc(),),
}


def competitor_dict(c: Competitor) -> Dict[str, Any]:
    return {
        "id": c.id,
        "name": c.name,
        "website_url": c.website_url,
        "inventory_url": c.inventory_url,
        "platform_type": c.platform_type.value if c.platform_type else None,
        "scraper_config": c.scraper_config or {},
        "use_playwright": c.use_playwright,
        "active": c.active,
        "last_scraped_at": c.last_scraped_at,
        "last_successful_scrape_at": c.last_successful_scrape_at,
        "scrape_error": c.scrape_error,
        "scrape_error_type": c.scrape_error_type,
        "created_at": c.created_at,
    }


def inventory_dict(row: CompetitorInventory, now: Optional[datetime] = None) -> Dict[str, Any]:
    if row.status == CompetitorVehicleStatus.active:
        dom = engine.days_between(row.first_seen_at, now)
    else:
        dom = row.days_on_market
    return {
        "id": row.id,
        "vin": row.vin,
        "stock_number": row.stock_number,
        "year": row.year,
        "make": row.make,
        "model": row.model,
        "trim": row.trim,
        "mileage": row.mileage,
        "exterior_color": row.exterior_color,
        "listing_url": row.listing_url,
        "current_price": row.current_price,
        "initial_price": row.initial_price,
        "price_drop": (
            round(row.initial_price - row.current_price, 2)
            if row.initial_price is not None and row.current_price is not None else None
        ),
        "status": row.status.value,
        "first_seen_at": row.first_seen_at,
        "last_seen_at": row.last_seen_at,
        "sold_at": row.sold_at,
        "days_on_market": dom,
        "completeness": row.completeness,
        "data_warnings": row.data_warnings or [],
        "is_duplicate_vin": row.is_duplicate_vin,
        "duplicate_warning": row.duplicate_warning,
    }


def _sold_between(db: Session, competitor_id: str, start: datetime, end: datetime) -> List[CompetitorInventory]:
    return db.query(CompetitorInventory).filter(
        CompetitorInventory.competitor_id == competitor_id,
        CompetitorInventory.status == CompetitorVehicleStatus.sold,
        CompetitorInventory.sold_at >= start,
        CompetitorInventory.sold_at < end,
    ).order_by(CompetitorInventory.sold_at.desc()).all()


# ---------------------------------------------------------------------------
# STATS
# ---------------------------------------------------------------------------
def competitor_stats(db: Session, competitor_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.utcnow()
    active = db.query(CompetitorInventory).filter(
        CompetitorInventory.competitor_id == competitor_id,
        CompetitorInventory.status == CompetitorVehicleStatus.active,
    ).all()
    start, end = engine.month_bounds(now.year, now.month)
    sold = _sold_between(db, competitor_id, start, end)

    return {
        "total_inventory": len(active),
        "monthly_sales": len(sold),
        "avg_days_on_market": engine.safe_mean(
            (engine.days_between(r.first_seen_at, now) for r in active), digits=1
        ),
        "avg_sale_price": engine.safe_mean(r.current_price for r in sold),
        "avg_price_drop": engine.safe_mean(
            r.initial_price - r.current_price
            for r in sold if r.initial_price is not None and r.current_price is not None
        ),
        "price_distribution": engine.price_buckets(r.current_price for r in active),
    }


def list_competitors(db: Session) -> List[Dict[str, Any]]:
    rows = db.query(Competitor).order_by(Competitor.name.asc()).all()
    return [{**competitor_dict(c), "stats": competitor_stats(db, c.id)} for c in rows]


def record_daily_metrics(db: Session, competitor_id: str, now: Optional[datetime] = None) -> CompetitorMetrics:
    now = now or datetime.utcnow()
    stats = competitor_stats(db, competitor_id, now)

    row = db.query(CompetitorMetrics).filter(
        CompetitorMetrics.competitor_id == competitor_id,
        CompetitorMetrics.date == now.date(),
    ).first()
    if row is None:
        row = CompetitorMetrics(competitor_id=competitor_id, date=now.date())
        db.add(row)

    row.total_inventory = stats["total_inventory"]
    row.avg_days_on_market = stats["avg_days_on_market"]
    row.monthly_sales = stats["monthly_sales"]
    row.avg_sale_price = stats["avg_sale_price"]
    row.avg_price_drop = stats["avg_price_drop"]
    db.commit()
    return row


# ---------------------------------------------------------------------------
# INVENTORY BROWSING
# ---------------------------------------------------------------------------
def query_inventory(
    db: Session,
    competitor_id: str,
    status: Optional[str] = "active",
    page: int = 1,
    limit: int = 25,
    year: Optional[int] = None,
    make: Optional[str] = None,
    model: Optional[str] = None,
    sort_by: Optional[str] = None,
) -> Dict[str, Any]:
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    page = max(1, page)

    q = db.query(CompetitorInventory).filter(CompetitorInventory.competitor_id == competitor_id)
    if status and status != "all":
        q = q.filter(CompetitorInventory.status == CompetitorVehicleStatus(status))
    if year:
        q = q.filter(CompetitorInventory.year == year)
    if make:
        q = q.filter(CompetitorInventory.make.ilike(f"%{make}%"))
    if model:
        q = q.filter(CompetitorInventory.model.ilike(f"%{model}%"))

    total = q.count()
    order = SORTS.get(sort_by, (CompetitorInventory.last_seen_at.desc(),))
    rows = q.order_by(*order, CompetitorInventory.id).offset((page - 1) * limit).limit(limit).all()

    now = datetime.utcnow()
    return {
        "vehicles": [inventory_dict(r, now) for r in rows],
        "pagination": {
            "total": total,
            "page": page,
            "limit": limit,
            "pages": (total + limit - 1) // limit,
        },
    }


def _grouped(db: Session, competitor_id: str, column, status: str) -> List[Dict[str, Any]]:
    rows = db.query(column, func.count(CompetitorInventory.id)).filter(
        CompetitorInventory.competitor_id == competitor_id,
        CompetitorInventory.status == CompetitorVehicleStatus(status),
        column.isnot(None),
    ).group_by(column).order_by(column).all()
    return [{"value": value, "count": count} for value, count in rows]


def inventory_filters(db: Session, competitor_id: str, status: str = "active") -> Dict[str, Any]:
    return {
        "years": _grouped(db, competitor_id, CompetitorInventory.year, status),
        "makes": _grouped(db, competitor_id, CompetitorInventory.make, status),
        "models": _grouped(db, competitor_id, CompetitorInventory.model, status),
    }


# ---------------------------------------------------------------------------
# SALES
# ---------------------------------------------------------------------------
def _sales_block(rows: List[CompetitorInventory]) -> Dict[str, Any]:
    return {
        "count": len(rows),
        "avg_sale_price": engine.safe_mean(r.current_price for r in rows),
        "avg_days_on_market": engine.safe_mean((r.days_on_market for r in rows), digits=1),
        "price_distribution": engine.price_buckets(r.current_price for r in rows),
    }


def sales(db: Session, competitor_id: str, month: int, year: int) -> Dict[str, Any]:
    start, end = engine.month_bounds(year, month)
    rows = _sold_between(db, competitor_id, start, end)
    return {
        "month": month,
        "year": year,
        **_sales_block(rows),
        "vehicles": [inventory_dict(r) for r in rows],
    }


def sales_summary(
    db: Session,
    competitor_id: str,
    months: int = 12,
    make: Optional[str] = None,
    model: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or datetime.utcnow()

    # Walk back month by month from the current one
    buckets = []
    y, m = now.year, now.month
    for _ in range(months):
        buckets.append((y, m))
        m -= 1
        if m == 0:
            y, m = y - 1, 12
    buckets.reverse()

    window_start, _ = engine.month_bounds(*buckets[0])
    _, window_end = engine.month_bounds(*buckets[-1])
    sold = _sold_between(db, competitor_id, window_start, window_end)

    makes = sorted({r.make for r in sold if r.make})
    models = sorted({r.model for r in sold if r.model and (not make or (r.make or "").lower() == make.lower())})

    if make:
        sold = [r for r in sold if (r.make or "").lower() == make.lower()]
    if model:
        sold = [r for r in sold if (r.model or "").lower() == model.lower()]

    out = []
    for by, bm in buckets:
        rows = [r for r in sold if r.sold_at.year == by and r.sold_at.month == bm]
        out.append({
            "month": f"{by:04d}-{bm:02d}",
            "label": engine.month_label(date(by, bm, 1)),
            **_sales_block(rows),
        })

    return {
        "months": out,
        "total_sold": len(sold),
        "available_makes": makes,
        "available_models": models,
    }


def metrics_history(db: Session, competitor_id: str, days: int = 30) -> List[CompetitorMetrics]:
    since = date.today() - timedelta(days=days)
    return db.query(CompetitorMetrics).filter(
        CompetitorMetrics.competitor_id == competitor_id,
        CompetitorMetrics.date >= since,
    ).order_by(CompetitorMetrics.date.asc()).all()
