# backend/alerts.py — Market Alerts
# Detection rules run against a vehicle's latest snapshot, plus
# listing/dismiss/resolve and the dashboard widget.

import logging
from datetime import datetime
from typing import List, Optional, Dict, Any, Iterable

from sqlalchemy.orm import Session

from models import (
    Inventory, InventoryStatus, MarketAlert, MarketPriceHistory, AlertSeverity,
    MARKET_PRICE_ALERTS_ENABLED,
)
import engine
import market

logger = logging.getLogger(__name__)

PRICE_POSITION_PCT = 10.0
MEDIAN_CHANGE_PCT = 5.0
MEDIAN_CHANGE_CRITICAL_PCT = 10.0
INVENTORY_CHANGE_PCT = 20.0
COMPETITOR_CHEAPER_PCT = 15.0
COMPETITOR_CHEAPER_CRITICAL_PCT = 25.0
WIDGET_ALERT_LIMIT = 5


def _label(v: Inventory) -> str:
    return f"{v.year} {v.make} {v.model}"


# ---------------------------------------------------------------------------
# RULES (each returns an unsaved alert dict or None)
# ---------------------------------------------------------------------------
def check_price_vs_median(vehicle: Inventory, snapshot, metrics) -> Optional[Dict[str, Any]]:
    if metrics is None or metrics.price_delta_percent is None:
        return None
    pct = metrics.price_delta_percent
    data = {
        "our_price": vehicle.price,
        "market_median": snapshot.median_price,
        "price_delta": metrics.price_delta,
        "price_delta_percent": pct,
    }
    if pct > PRICE_POSITION_PCT:
        return {
            "snapshot_id": snapshot.id,
            "alert_type": "price_above_market",
            "severity": AlertSeverity.warning,
            "title": f"Price {pct:.1f}% Above Market",
            "message": (
                f"Your {_label(vehicle)} is priced ${metrics.price_delta:,.2f} ({pct:.1f}%) "
                f"above the market median of ${snapshot.median_price:,.2f}."
            ),
            "alert_data": data,
        }
    if pct < -PRICE_POSITION_PCT:
        return {
            "snapshot_id": snapshot.id,
            "alert_type": "price_below_market",
            "severity": AlertSeverity.info,
            "title": f"Price {abs(pct):.1f}% Below Market",
            "message": (
                f"Your {_label(vehicle)} is priced ${abs(metrics.price_delta):,.2f} ({abs(pct):.1f}%) "
                f"below the market median."
            ),
            "alert_data": data,
        }
    return None


def check_median_change(db: Session, vehicle_id: int) -> Optional[Dict[str, Any]]:
    """1-week change wins over 2-week; each window fires once per history row."""
    record = db.query(MarketPriceHistory).filter(
        MarketPriceHistory.vehicle_id == vehicle_id,
    ).order_by(MarketPriceHistory.date.desc()).first()
    if record is None or not record.median_price:
        return None

    windows = [
        ("1week", record.change_1week, "alert_sent_1week", "1 Week", "the last week"),
        ("2week", record.change_2week, "alert_sent_2week", "2 Weeks", "the last two weeks"),
    ]
    for period, change, flag, title_span, message_span in windows:
        if change is None or getattr(record, flag):
            continue
        pct = change / record.median_price * 100
        if abs(pct) < MEDIAN_CHANGE_PCT:
            continue

        setattr(record, flag, True)
        direction = "Increased" if pct > 0 else "Decreased"
        return {
            "snapshot_id": None,
            "alert_type": f"market_median_change_{period}",
            "severity": AlertSeverity.critical if abs(pct) >= MEDIAN_CHANGE_CRITICAL_PCT else AlertSeverity.warning,
            "title": f"Market Median {direction} {abs(pct):.1f}% ({title_span})",
            "message": (
                f"Market median price has {direction.lower()} by ${abs(change):,.2f} "
                f"({abs(pct):.1f}%) over {message_span}."
            ),
            "alert_data": {
                "current_median": record.median_price,
                "change": change,
                "percent_change": round(pct, 2),
                "period": period,
            },
        }
    return None


def check_inventory_change(db: Session, vehicle: Inventory, snapshot) -> Optional[Dict[str, Any]]:
    previous = market.latest_snapshot(db, vehicle.id, offset=1)
    if previous is None or not previous.unique_listings:
        return None

    prev_count = previous.unique_listings
    cur_count = snapshot.unique_listings or 0
    pct = (cur_count - prev_count) / prev_count * 100
    if abs(pct) < INVENTORY_CHANGE_PCT:
        return None

    surge = pct > 0
    return {
        "snapshot_id": snapshot.id,
        "alert_type": "inventory_surge" if surge else "inventory_decline",
        "severity": AlertSeverity.info,
        "title": f"Market Inventory {'Surge' if surge else 'Decline'}: {abs(pct):.1f}%",
        "message": (
            f"Market inventory for {_label(vehicle)} has {'increased' if surge else 'decreased'} "
            f"by {abs(pct):.1f}% (from {prev_count} to {cur_count} listings)."
        ),
        "alert_data": {
            "previous_count": prev_count,
            "current_count": cur_count,
            "change": cur_count - prev_count,
            "percent_change": round(pct, 2),
        },
    }


def check_competitor_pricing(vehicle: Inventory, snapshot) -> Optional[Dict[str, Any]]:
    our_price = float(vehicle.price or 0)
    if our_price <= 0:
        return None

    cheap = []
    for listing in snapshot.listings_data or []:
        price = engine.listing_price(listing)
        if not price:
            continue
        if (our_price - price) / our_price * 100 >= COMPETITOR_CHEAPER_PCT:
            cheap.append((price, listing))
    if not cheap:
        return None

    cheapest_price, cheapest = min(cheap, key=lambda pair: pair[0])
    diff = our_price - cheapest_price
    pct = diff / our_price * 100
    retail = engine.listing_retail(cheapest)
    info = cheapest.get("vehicle") or {}
    dealer = retail.get("dealerName") or "Unknown"

    return {
        "snapshot_id": snapshot.id,
        "alert_type": "competitor_pricing",
        "severity": AlertSeverity.critical if pct >= COMPETITOR_CHEAPER_CRITICAL_PCT else AlertSeverity.warning,
        "title": f"Competitor {pct:.1f}% Cheaper",
        "message": (
            f"A {info.get('year')} {info.get('make')} {info.get('model')} is listed for "
            f"${cheapest_price:,.2f}, which is ${diff:,.2f} ({pct:.1f}%) cheaper than yours. "
            f"Dealer: {dealer}."
        ),
        "alert_data": {
            "our_price": our_price,
            "competitor_price": cheapest_price,
            "price_difference": round(diff, 2),
            "percent_cheaper": round(pct, 2),
            "cheaper_listings_count": len(cheap),
            "competitor_dealer": retail.get("dealerName"),
            "competitor_city": retail.get("city"),
            "competitor_state": retail.get("state"),
            "competitor_vin": engine.listing_vin(cheapest),
            "listing_url": retail.get("vdpUrl") or retail.get("vdp"),
        },
    }


# ---------------------------------------------------------------------------
# DETECTION
# ---------------------------------------------------------------------------
def detect_alerts(db: Session, vehicle_id: int, price_alerts: Optional[bool] = None) -> List[MarketAlert]:
    """Run every rule against the latest snapshot and persist what fires."""
    price_alerts = MARKET_PRICE_ALERTS_ENABLED if price_alerts is None else price_alerts

    vehicle = db.query(Inventory).filter(Inventory.id == vehicle_id).first()
    if not vehicle:
        raise LookupError(f"Vehicle {vehicle_id} not found")
    snapshot = market.latest_snapshot(db, vehicle_id)
    if snapshot is None:
        return []

    candidates = []
    if price_alerts:
        candidates.append(check_price_vs_median(vehicle, snapshot, snapshot.metrics))
    candidates.append(check_median_change(db, vehicle_id))
    candidates.append(check_inventory_change(db, vehicle, snapshot))
    candidates.append(check_competitor_pricing(vehicle, snapshot))

    saved = []
    for c in candidates:
        if c is None:
            continue
        alert = MarketAlert(vehicle_id=vehicle_id, **c)
        db.add(alert)
        saved.append(alert)
    db.commit()

    if saved:
        logger.info("Vehicle %s raised %d alerts: %s", vehicle_id, len(saved),
                    ", ".join(a.alert_type for a in saved))
    return saved


def detect_all_alerts(db: Session, vehicle_ids: Optional[Iterable[int]] = None) -> List[MarketAlert]:
    if vehicle_ids is None:
        vehicle_ids = [row[0] for row in db.query(Inventory.id).filter(
            Inventory.status == InventoryStatus.available,
        ).order_by(Inventory.id).all()]

    out = []
    for vehicle_id in vehicle_ids:
        try:
            out.extend(detect_alerts(db, vehicle_id))
        except Exception:
            logger.exception("Alert detection failed for vehicle %s", vehicle_id)
            db.rollback()
    return out


# ---------------------------------------------------------------------------
# QUERIES + ACTIONS
# ---------------------------------------------------------------------------
def get_recent_alerts(
    db: Session,
    severity: Optional[str] = None,
    limit: int = 50,
    vehicle_id: Optional[int] = None,
    include_dismissed: bool = False,
) -> List[MarketAlert]:
    q = db.query(MarketAlert)
    if severity:
        q = q.filter(MarketAlert.severity == AlertSeverity(severity))
    if vehicle_id is not None:
        q = q.filter(MarketAlert.vehicle_id == vehicle_id)
    if not include_dismissed:
        q = q.filter(MarketAlert.dismissed.is_(False))
    return q.order_by(MarketAlert.created_at.desc(), MarketAlert.id.desc()).limit(limit).all()


def dismiss_alert(db: Session, alert_id: int) -> Optional[MarketAlert]:
    alert = db.query(MarketAlert).filter(MarketAlert.id == alert_id).first()
    if alert is None:
        return None
    alert.dismissed = True
    alert.dismissed_at = datetime.utcnow()
    db.commit()
    db.refresh(alert)
    return alert


def dismiss_alerts(db: Session, alert_ids: List[int]) -> int:
    if not alert_ids:
        return 0
    count = db.query(MarketAlert).filter(
        MarketAlert.id.in_(alert_ids),
        MarketAlert.dismissed.is_(False),
    ).update({MarketAlert.dismissed: True, MarketAlert.dismissed_at: datetime.utcnow()},
             synchronize_session=False)
    db.commit()
    return count


def resolve_alert(db: Session, alert_id: int) -> Optional[MarketAlert]:
    alert = db.query(MarketAlert).filter(MarketAlert.id == alert_id).first()
    if alert is None:
        return None
    alert.resolved = True
    alert.resolved_at = datetime.utcnow()
    db.commit()
    db.refresh(alert)
    return alert


def get_dashboard_widget(db: Session) -> Dict[str, Any]:
    summary = market.get_overview(db)["summary"]
    recent = get_recent_alerts(db, limit=WIDGET_ALERT_LIMIT)
    return {
        "summary": summary,
        "trend": engine.market_trend(summary["average_position"]),
        "recent_alerts": [market.alert_dict(a) for a in recent],
        "critical_count": sum(1 for a in recent if a.severity == AlertSeverity.critical),
        "warning_count": sum(1 for a in recent if a.severity == AlertSeverity.warning),
    }
