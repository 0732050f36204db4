# backend/market.py — Market Research Service
# Snapshots competitor pricing for owned vehicles, stores metrics,
# platform sightings and daily median history; VIN evaluation cache.

import asyncio
import logging
from datetime import date, datetime, timedelta
from typing import List, Optional, Dict, Any

from sqlalchemy.orm import Session

from models import (
    Inventory, InventoryStatus, MarketSnapshot, MarketMetrics, MarketPlatformTracking,
    MarketPriceHistory, MarketAlert, VinEvaluationCache,
    MARKET_ANALYSIS_DELAY_SECONDS,
)
from autodev import AutoDevClient, get_client
import engine

logger = logging.getLogger(__name__)

MAX_EXPANSION_RETRIES = 5
VIN_CACHE_TTL_DAYS = 7
DETAIL_HISTORY_DAYS = 30
DETAIL_ALERT_LIMIT = 10


# ---------------------------------------------------------------------------
# SERIALIZERS
# ---------------------------------------------------------------------------
def vehicle_summary(v: Inventory) -> Dict[str, Any]:
    return {
        "id": v.id,
        "year": v.year,
        "make": v.make,
        "model": v.model,
        "trim": v.trim,
        "vin": v.vin,
        "stock_number": v.stock_number,
        "price": v.price,
        "mileage": v.mileage,
        "status": v.status.value if v.status else None,
        "date_added": v.date_added,
    }


def snapshot_dict(s: MarketSnapshot, include_listings: bool = False) -> Dict[str, Any]:
    out = {
        "id": s.id,
        "vehicle_id": s.vehicle_id,
        "snapshot_date": s.snapshot_date,
        "search_params": s.search_params,
        "total_listings": s.total_listings,
        "unique_listings": s.unique_listings,
        "median_price": s.median_price,
        "average_price": s.average_price,
        "min_price": s.min_price,
        "max_price": s.max_price,
    }
    if include_listings:
        out["listings_data"] = s.listings_data or []
    return out


def metrics_dict(m: Optional[MarketMetrics]) -> Optional[Dict[str, Any]]:
    if m is None:
        return None
    return {
        "id": m.id,
        "snapshot_id": m.snapshot_id,
        "our_price": m.our_price,
        "price_delta": m.price_delta,
        "price_delta_percent": m.price_delta_percent,
        "percentile_rank": m.percentile_rank,
        "cheaper_count": m.cheaper_count,
        "more_expensive_count": m.more_expensive_count,
        "competitive_position": m.competitive_position,
        "days_in_market": m.days_in_market,
        "created_at": m.created_at,
    }


def history_dict(h: MarketPriceHistory) -> Dict[str, Any]:
    return {
        "date": h.date,
        "median_price": h.median_price,
        "min_price": h.min_price,
        "max_price": h.max_price,
        "change_1week": h.change_1week,
        "change_2week": h.change_2week,
        "change_1month": h.change_1month,
    }


def platform_dict(p: MarketPlatformTracking) -> Dict[str, Any]:
    return {
        "platform": p.platform,
        "price": p.price,
        "dealer_name": p.dealer_name,
        "listing_url": p.listing_url,
        "is_own_vehicle": p.is_own_vehicle,
        "first_seen": p.first_seen,
        "last_seen": p.last_seen,
        "times_seen": p.times_seen,
    }


def alert_dict(a: MarketAlert) -> Dict[str, Any]:
    return {
        "id": a.id,
        "vehicle_id": a.vehicle_id,
        "snapshot_id": a.snapshot_id,
        "alert_type": a.alert_type,
        "severity": a.severity.value if a.severity else None,
        "title": a.title,
        "message": a.message,
        "alert_data": a.alert_data or {},
        "emailed": a.emailed,
        "resolved": a.resolved,
        "resolved_at": a.resolved_at,
        "dismissed": a.dismissed,
        "dismissed_at": a.dismissed_at,
        "created_at": a.created_at,
    }


# ---------------------------------------------------------------------------
# LOOKUPS
# ---------------------------------------------------------------------------
def get_own_vins(db: Session) -> List[str]:
    return [row[0] for row in db.query(Inventory.vin).filter(Inventory.vin.isnot(None)).all()]


def latest_snapshot(db: Session, vehicle_id: int, offset: int = 0) -> Optional[MarketSnapshot]:
    return db.query(MarketSnapshot).filter(
        MarketSnapshot.vehicle_id == vehicle_id,
    ).order_by(MarketSnapshot.snapshot_date.desc(), MarketSnapshot.id.desc()).offset(offset).first()


# ---------------------------------------------------------------------------
# PERSISTENCE
# ---------------------------------------------------------------------------
def save_snapshot(
    db: Session,
    vehicle_id: int,
    search_params: Dict[str, Any],
    listings: List[Dict[str, Any]],
    total_listings: int,
    unique_listings: int,
    stats: Dict[str, Any],
) -> MarketSnapshot:
    snap = MarketSnapshot(
        vehicle_id=vehicle_id,
        search_params=search_params,
        listings_data=listings,
        total_listings=total_listings,
        unique_listings=unique_listings,
        median_price=stats.get("median"),
        average_price=stats.get("average"),
        min_price=stats.get("min"),
        max_price=stats.get("max"),
        snapshot_date=datetime.utcnow(),
    )
    db.add(snap)
    db.flush()
    return snap


def save_metrics(db: Session, snapshot_id: int, vehicle_id: int, metrics: Dict[str, Any]) -> MarketMetrics:
    row = MarketMetrics(snapshot_id=snapshot_id, vehicle_id=vehicle_id, **metrics)
    db.add(row)
    db.flush()
    return row


def upsert_platform_tracking(db: Session, rows: List[Dict[str, Any]], now: Optional[datetime] = None) -> int:
    """Insert or refresh one (vin, platform) sighting per row."""
    now = now or datetime.utcnow()
    seen = set()
    for r in rows:
        key = (r["vin"], r["platform"])
        if key in seen:
            continue
        seen.add(key)

        existing = db.query(MarketPlatformTracking).filter(
            MarketPlatformTracking.vin == r["vin"],
            MarketPlatformTracking.platform == r["platform"],
        ).first()
        if existing:
            existing.price = r.get("price")
            existing.dealer_name = r.get("dealer_name")
            existing.listing_url = r.get("listing_url")
            existing.is_own_vehicle = r.get("is_own_vehicle", False)
            existing.last_seen = now
            existing.times_seen = (existing.times_seen or 0) + 1
        else:
            db.add(MarketPlatformTracking(
                vin=r["vin"],
                platform=r["platform"],
                is_own_vehicle=r.get("is_own_vehicle", False),
                price=r.get("price"),
                dealer_name=r.get("dealer_name"),
                listing_url=r.get("listing_url"),
                first_seen=now,
                last_seen=now,
                times_seen=1,
            ))
    db.flush()
    return len(seen)


def _median_on(db: Session, vehicle_id: int, day: date) -> Optional[float]:
    row = db.query(MarketPriceHistory).filter(
        MarketPriceHistory.vehicle_id == vehicle_id,
        MarketPriceHistory.date == day,
    ).first()
    return row.median_price if row else None


def _change(current: Optional[float], previous: Optional[float]) -> Optional[float]:
    if current is None or previous is None:
        return None
    return round(current - previous, 2)


def update_price_history(
    db: Session,
    vehicle_id: int,
    median_price: float,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    day: Optional[date] = None,
) -> MarketPriceHistory:
    """One row per vehicle per day; changes compare against the row exactly N days back."""
    day = day or date.today()

    changes = {
        "change_1week": _change(median_price, _median_on(db, vehicle_id, day - timedelta(days=7))),
        "change_2week": _change(median_price, _median_on(db, vehicle_id, day - timedelta(days=14))),
        "change_1month": _change(median_price, _median_on(db, vehicle_id, day - timedelta(days=30))),
    }

    row = db.query(MarketPriceHistory).filter(
        MarketPriceHistory.vehicle_id == vehicle_id,
        MarketPriceHistory.date == day,
    ).first()
    if row is None:
        row = MarketPriceHistory(vehicle_id=vehicle_id, date=day)
        db.add(row)

    row.median_price = median_price
    row.min_price = min_price
    row.max_price = max_price
    for key, val in changes.items():
        setattr(row, key, val)

    db.flush()
    return row


# ---------------------------------------------------------------------------
# ANALYSIS
# ---------------------------------------------------------------------------
async def analyze_vehicle(
    db: Session,
    vehicle_id: int,
    expansion: int = 0,
    manual: bool = False,
    year_range: Optional[str] = None,
    client: Optional[AutoDevClient] = None,
) -> Dict[str, Any]:
    vehicle = db.query(Inventory).filter(Inventory.id == vehicle_id).first()
    if not vehicle:
        raise LookupError(f"Vehicle {vehicle_id} not found")

    client = client or get_client()
    label = f"{vehicle.year} {vehicle.make} {vehicle.model}"
    logger.info("Starting market analysis for vehicle %s (%s), expansion=%s manual=%s",
                vehicle_id, label, expansion, manual)

    raw, search_params = await client.fetch_listings(
        vehicle.year, vehicle.make, vehicle.model, vehicle.mileage or 0,
        expansion=expansion, year_range=year_range,
    )
    if not raw:
        logger.warning("No market listings found for vehicle %s (%s)", vehicle_id, label)
        return {
            "success": True,
            "no_results": True,
            "vehicle": vehicle_summary(vehicle),
            "message": "No comparable market listings found",
        }

    unique, duplicates = engine.deduplicate_listings(raw)
    own_vins = get_own_vins(db)
    market_listings = engine.exclude_own_inventory(unique, own_vins)

    if engine.needs_expansion(len(market_listings), expansion, manual):
        logger.info("Vehicle %s: only %d market listings at expansion %s, widening search",
                    vehicle_id, len(market_listings), expansion)
        return {
            "success": False,
            "needs_expansion": True,
            "results_count": len(market_listings),
            "next_expansion": expansion + engine.EXPANSION_STEP,
        }

    stats = engine.price_stats(market_listings)
    prices = engine.market_prices(market_listings)
    metrics = engine.compute_metrics(float(vehicle.price), stats, prices, vehicle.date_added)
    platform_rows = engine.extract_platform_data(market_listings, own_vins)

    snapshot = save_snapshot(
        db, vehicle.id, search_params, market_listings,
        total_listings=len(raw),
        unique_listings=len(unique),
        stats=stats,
    )
    metrics_row = save_metrics(db, snapshot.id, vehicle.id, metrics)
    if platform_rows:
        upsert_platform_tracking(db, platform_rows)
    if stats["median"] is not None:
        update_price_history(db, vehicle.id, stats["median"], stats["min"], stats["max"])
    db.commit()

    logger.info("Market analysis complete for vehicle %s: %d listings, position=%s",
                vehicle_id, len(market_listings), metrics["competitive_position"])

    return {
        "success": True,
        "vehicle": vehicle_summary(vehicle),
        "snapshot": snapshot_dict(snapshot),
        "metrics": metrics_dict(metrics_row),
        "price_stats": stats,
        "market_listings": len(market_listings),
        "duplicates": len(duplicates),
        "platform_data": len(platform_rows),
    }


async def analyze_all_vehicles(
    db: Session,
    client: Optional[AutoDevClient] = None,
    delay: Optional[float] = None,
) -> List[Dict[str, Any]]:
    """Analyze every available vehicle, widening the search when results are thin."""
    delay = MARKET_ANALYSIS_DELAY_SECONDS if delay is None else delay
    client = client or get_client()

    vehicles = db.query(Inventory).filter(
        Inventory.status == InventoryStatus.available,
    ).order_by(Inventory.id).all()
    vehicle_ids = [v.id for v in vehicles]
    logger.info("Starting batch market analysis for %d vehicles", len(vehicle_ids))

    results = []
    for i, vehicle_id in enumerate(vehicle_ids):
        try:
            result = await analyze_vehicle(db, vehicle_id, client=client)
            attempts = 0
            while result.get("needs_expansion") and attempts < MAX_EXPANSION_RETRIES:
                attempts += 1
                result = await analyze_vehicle(db, vehicle_id, expansion=result["next_expansion"], client=client)
            results.append({"vehicle_id": vehicle_id, **result})
        except Exception as exc:
            logger.exception("Market analysis failed for vehicle %s", vehicle_id)
            db.rollback()
            results.append({"vehicle_id": vehicle_id, "success": False, "error": str(exc)})

        if delay and i < len(vehicle_ids) - 1:
            await asyncio.sleep(delay)

    succeeded = sum(1 for r in results if r.get("success"))
    logger.info("Batch market analysis finished: %d/%d succeeded", succeeded, len(results))
    return results


# ---------------------------------------------------------------------------
# READ MODELS
# ---------------------------------------------------------------------------
def get_overview(db: Session) -> Dict[str, Any]:
    vehicles = db.query(Inventory).filter(
        Inventory.status == InventoryStatus.available,
    ).order_by(Inventory.date_added.desc()).all()

    rows = []
    for v in vehicles:
        snap = latest_snapshot(db, v.id)
        rows.append({
            "vehicle": vehicle_summary(v),
            "snapshot": snapshot_dict(snap) if snap else None,
            "metrics": metrics_dict(snap.metrics) if snap else None,
        })

    analyzed = [r for r in rows if r["snapshot"]]
    positions = [r["metrics"]["competitive_position"] for r in analyzed if r["metrics"]]
    snapshot_dates = [r["snapshot"]["snapshot_date"] for r in analyzed]

    summary = {
        "total_vehicles": len(rows),
        "analyzed_vehicles": len(analyzed),
        "competitive": positions.count("competitive"),
        "above_market": positions.count("above_market"),
        "below_market": positions.count("below_market"),
        "average_position": engine.safe_mean(
            r["metrics"]["percentile_rank"] for r in analyzed if r["metrics"]
        ),
        "last_updated": max(snapshot_dates) if snapshot_dates else None,
    }
    return {"vehicles": rows, "summary": summary}


def get_vehicle_detail(db: Session, vehicle_id: int) -> Dict[str, Any]:
    vehicle = db.query(Inventory).filter(Inventory.id == vehicle_id).first()
    if not vehicle:
        raise LookupError(f"Vehicle {vehicle_id} not found")

    snap = latest_snapshot(db, vehicle_id)
    since = date.today() - timedelta(days=DETAIL_HISTORY_DAYS)
    history = db.query(MarketPriceHistory).filter(
        MarketPriceHistory.vehicle_id == vehicle_id,
        MarketPriceHistory.date >= since,
    ).order_by(MarketPriceHistory.date.asc()).all()
    platforms = db.query(MarketPlatformTracking).filter(
        MarketPlatformTracking.vin == vehicle.vin.upper(),
    ).order_by(MarketPlatformTracking.last_seen.desc()).all()
    alerts = db.query(MarketAlert).filter(
        MarketAlert.vehicle_id == vehicle_id,
    ).order_by(MarketAlert.created_at.desc(), MarketAlert.id.desc()).limit(DETAIL_ALERT_LIMIT).all()

    return {
        "vehicle": vehicle_summary(vehicle),
        "snapshot": snapshot_dict(snap, include_listings=True) if snap else None,
        "metrics": metrics_dict(snap.metrics) if snap else None,
        "price_history": [history_dict(h) for h in history],
        "platform_tracking": [platform_dict(p) for p in platforms],
        "alerts": [alert_dict(a) for a in alerts],
    }


# ---------------------------------------------------------------------------
# MAINTENANCE
# ---------------------------------------------------------------------------
def cleanup_old_snapshots(db: Session, retention_days: int) -> int:
    cutoff = datetime.utcnow() - timedelta(days=retention_days)
    old = db.query(MarketSnapshot).filter(MarketSnapshot.snapshot_date < cutoff).all()
    if not old:
        return 0

    ids = [s.id for s in old]
    db.query(MarketAlert).filter(MarketAlert.snapshot_id.in_(ids)).update(
        {MarketAlert.snapshot_id: None}, synchronize_session=False
    )
    for s in old:
        db.delete(s)
    db.commit()
    logger.info("Deleted %d market snapshots older than %d days", len(ids), retention_days)
    return len(ids)


# ---------------------------------------------------------------------------
# VIN EVALUATION (prospective purchases, cached 7 days)
# ---------------------------------------------------------------------------
def get_cached_evaluation(db: Session, vin: str) -> Optional[VinEvaluationCache]:
    cutoff = datetime.utcnow() - timedelta(days=VIN_CACHE_TTL_DAYS)
    return db.query(VinEvaluationCache).filter(
        VinEvaluationCache.vin == vin.upper(),
        VinEvaluationCache.created_at > cutoff,
    ).order_by(VinEvaluationCache.created_at.desc()).first()


def _evaluation_dict(row: VinEvaluationCache, from_cache: bool) -> Dict[str, Any]:
    return {
        "from_cache": from_cache,
        "cache_age": row.created_at if from_cache else None,
        "vin": row.vin,
        "year": row.year,
        "make": row.make,
        "model": row.model,
        "trim": row.trim,
        "mileage": row.mileage,
        "market_data": {
            "median_price": row.median_price,
            "min_price": row.min_price,
            "max_price": row.max_price,
            "average_price": row.average_price,
            "total_listings": row.total_listings,
            "unique_listings": row.unique_listings,
            "sample_listings": row.sample_listings or [],
        },
    }


async def evaluate_vin(
    db: Session,
    vin: str,
    year: int,
    make: str,
    model: str,
    mileage: int,
    trim: Optional[str] = None,
    force_refresh: bool = False,
    client: Optional[AutoDevClient] = None,
) -> Dict[str, Any]:
    vin = vin.upper()

    if not force_refresh:
        cached = get_cached_evaluation(db, vin)
        if cached:
            logger.info("VIN evaluation for %s served from cache", vin)
            return _evaluation_dict(cached, from_cache=True)
    else:
        deleted = db.query(VinEvaluationCache).filter(VinEvaluationCache.vin == vin).delete()
        db.commit()
        logger.info("VIN evaluation force refresh for %s, dropped %d cache rows", vin, deleted)

    client = client or get_client()
    raw, search_params = await client.fetch_listings(year, make, model, mileage)
    unique, _ = engine.deduplicate_listings(raw)
    market_listings = engine.exclude_own_inventory(unique, get_own_vins(db))
    stats = engine.price_stats(market_listings)

    row = VinEvaluationCache(
        vin=vin,
        year=year,
        make=make,
        model=model,
        trim=trim,
        mileage=mileage,
        median_price=stats["median"],
        min_price=stats["min"],
        max_price=stats["max"],
        average_price=stats["average"],
        total_listings=len(raw),
        unique_listings=len(market_listings),
        search_params=search_params,
        sample_listings=engine.sample_listings(market_listings),
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info("VIN evaluation for %s cached: %d market listings", vin, len(market_listings))
    return _evaluation_dict(row, from_cache=False)
