# backend/history.py — Market History Rollups

from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Dict, Any, List

from sqlalchemy.orm import Session

from models import Inventory, InventoryStatus, MarketSnapshot, MarketMetrics
import engine

POSITIONS = ("competitive", "above_market", "below_market")


def _snapshot_rows(db: Session, since: datetime, until: datetime = None):
    q = db.query(MarketSnapshot, MarketMetrics).outerjoin(
        MarketMetrics, MarketMetrics.snapshot_id == MarketSnapshot.id,
    ).filter(MarketSnapshot.snapshot_date >= since)
    if until is not None:
        q = q.filter(MarketSnapshot.snapshot_date < until)
    return q.all()


def aggregate(db: Session, days: int = 30) -> List[Dict[str, Any]]:
    """Per-day rollup of every snapshot taken in the window."""
    since = datetime.utcnow() - timedelta(days=days)
    rows = _snapshot_rows(db, since)

    by_day: "OrderedDict[Any, list]" = OrderedDict()
    for snap, metrics in sorted(rows, key=lambda r: r[0].snapshot_date):
        by_day.setdefault(snap.snapshot_date.date(), []).append((snap, metrics))

    out = []
    for day, items in by_day.items():
        metrics = [m for _, m in items if m is not None]
        positions = [m.competitive_position for m in metrics]
        out.append({
            "date": day,
            "vehicles_analyzed": len({s.vehicle_id for s, _ in items}),
            "avg_market_median": engine.safe_mean(s.median_price for s, _ in items),
            "avg_price_delta_percent": engine.safe_mean(m.price_delta_percent for m in metrics),
            "avg_percentile_rank": engine.safe_mean(m.percentile_rank for m in metrics),
            "competitive_count": positions.count("competitive"),
            "above_market_count": positions.count("above_market"),
            "below_market_count": positions.count("below_market"),
        })
    return out


def _window(db: Session, since: datetime, until: datetime = None) -> Dict[str, Any]:
    rows = _snapshot_rows(db, since, until)
    return {
        "avg_median": engine.safe_mean(s.median_price for s, _ in rows),
        "avg_rank": engine.safe_mean(m.percentile_rank for _, m in rows if m is not None),
        "count": len(rows),
    }


def trends(db: Session) -> Dict[str, Any]:
    """This week vs. last week."""
    now = datetime.utcnow()
    current = _window(db, now - timedelta(days=7))
    previous = _window(db, now - timedelta(days=14), now - timedelta(days=7))

    median_change = None
    if current["avg_median"] is not None and previous["avg_median"] is not None:
        median_change = round(current["avg_median"] - previous["avg_median"], 2)
    rank_change = None
    if current["avg_rank"] is not None and previous["avg_rank"] is not None:
        rank_change = round(current["avg_rank"] - previous["avg_rank"], 2)

    return {
        "current_avg_median": current["avg_median"],
        "previous_avg_median": previous["avg_median"],
        "median_change": median_change,
        "median_change_percent": engine.percent_change(previous["avg_median"], current["avg_median"]),
        "current_avg_rank": current["avg_rank"],
        "previous_avg_rank": previous["avg_rank"],
        "rank_change": rank_change,
        "current_count": current["count"],
        "previous_count": previous["count"],
    }


def sold_analysis(db: Session, months: int = 6) -> Dict[str, Any]:
    """How sold vehicles sat against the market at their last analysis."""
    since = datetime.utcnow() - timedelta(days=months * 30)
    sold = db.query(Inventory).filter(
        Inventory.status == InventoryStatus.sold,
        Inventory.sold_date >= since,
    ).order_by(Inventory.sold_date.desc()).all()

    vehicles = []
    for v in sold:
        last = db.query(MarketMetrics).filter(
            MarketMetrics.vehicle_id == v.id,
        ).order_by(MarketMetrics.created_at.desc(), MarketMetrics.id.desc()).first()
        vehicles.append({
            "vehicle_id": v.id,
            "year": v.year,
            "make": v.make,
            "model": v.model,
            "sale_price": v.price,
            "sold_date": v.sold_date,
            "days_to_sell": engine.days_between(v.date_added, v.sold_date),
            "days_in_market": last.days_in_market if last else None,
            "competitive_position": last.competitive_position if last else None,
            "percentile_rank": last.percentile_rank if last else None,
            "price_delta_percent": last.price_delta_percent if last else None,
        })

    positions = [v["competitive_position"] for v in vehicles]
    summary = {
        "total_sold": len(vehicles),
        "avg_days_to_sell": engine.safe_mean(v["days_to_sell"] for v in vehicles),
        "avg_days_in_market": engine.safe_mean(v["days_in_market"] for v in vehicles),
        "avg_price_delta_percent": engine.safe_mean(v["price_delta_percent"] for v in vehicles),
        "avg_percentile_rank": engine.safe_mean(v["percentile_rank"] for v in vehicles),
    }
    for p in POSITIONS:
        summary[f"sold_{p}"] = positions.count(p)

    return {"summary": summary, "vehicles": vehicles}
