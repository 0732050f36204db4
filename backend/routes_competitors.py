# backend/routes_competitors.py — Competitor Tracking Routes

import logging
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from models import get_db, User, Competitor, PlatformType
from schemas import (
    CompetitorCreate, CompetitorUpdate, ValidateUrlRequest, CompetitorMetricsOut, MessageResponse,
)
from deps import get_current_user, require_manager
from scraper import ScraperError
import competitors
import scraper

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/competitors", tags=["competitors"])

INVENTORY_STATUSES = ("active", "sold", "removed", "all")


def _get_competitor_or_404(competitor_id: str, db: Session) -> Competitor:
    c = db.query(Competitor).filter(Competitor.id == competitor_id).first()
    if not c:
        raise HTTPException(404, "Competitor not found.")
    return c


@router.get("")
def list_competitors(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return {"competitors": competitors.list_competitors(db)}


@router.post("/validate")
async def validate_url(payload: ValidateUrlRequest, user: User = Depends(require_manager)):
    return await scraper.validate_url(payload.url)


@router.get("/{competitor_id}")
def get_competitor(competitor_id: str, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    c = _get_competitor_or_404(competitor_id, db)
    return {**competitors.competitor_dict(c), "stats": competitors.competitor_stats(db, c.id)}


@router.post("", status_code=201)
def create_competitor(payload: CompetitorCreate, db: Session = Depends(get_db), user: User = Depends(require_manager)):
    data = payload.model_dump()
    if data.get("platform_type"):
        data["platform_type"] = PlatformType(data["platform_type"].value)
    data["scraper_config"] = data.get("scraper_config") or {}
    c = Competitor(**data)
    db.add(c)
    db.commit()
    db.refresh(c)
    logger.info("Competitor %s (%s) added by %s", c.name, c.id, user.email)
    return competitors.competitor_dict(c)


@router.put("/{competitor_id}")
def update_competitor(
    competitor_id: str,
    payload: CompetitorUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_manager),
):
    c = _get_competitor_or_404(competitor_id, db)
    update_data = payload.model_dump(exclude_unset=True)
    if update_data.get("platform_type"):
        update_data["platform_type"] = PlatformType(update_data["platform_type"].value)
    for key, val in update_data.items():
        setattr(c, key, val)
    c.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(c)
    return competitors.competitor_dict(c)


@router.delete("/{competitor_id}", response_model=MessageResponse)
def delete_competitor(competitor_id: str, db: Session = Depends(get_db), user: User = Depends(require_manager)):
    c = _get_competitor_or_404(competitor_id, db)
    db.delete(c)
    db.commit()
    logger.info("Competitor %s deleted by %s", competitor_id, user.email)
    return {"message": "Competitor deleted.", "detail": {"id": competitor_id}}


# ---------------------------------------------------------------------------
# SCRAPING
# ---------------------------------------------------------------------------
@router.post("/{competitor_id}/scrape")
async def scrape(competitor_id: str, db: Session = Depends(get_db), user: User = Depends(require_manager)):
    _get_competitor_or_404(competitor_id, db)
    try:
        return await scraper.scrape_competitor(db, competitor_id)
    except ScraperError as exc:
        raise HTTPException(502, {"message": str(exc), "error_type": exc.error_type})


# ---------------------------------------------------------------------------
# INVENTORY + SALES
# ---------------------------------------------------------------------------
@router.get("/{competitor_id}/inventory")
def inventory(
    competitor_id: str,
    status: str = Query("active"),
    page: int = Query(1, ge=1),
    limit: int = Query(25, ge=1, le=competitors.MAX_PAGE_SIZE),
    year: Optional[int] = Query(None),
    make: Optional[str] = Query(None),
    model: Optional[str] = Query(None),
    sort_by: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    _get_competitor_or_404(competitor_id, db)
    if status not in INVENTORY_STATUSES:
        raise HTTPException(400, f"Invalid status '{status}'.")
    if sort_by and sort_by not in competitors.SORTS:
        raise HTTPException(400, f"Invalid sort '{sort_by}'.")
    return competitors.query_inventory(db, competitor_id, status, page, limit, year, make, model, sort_by)


@router.get("/{competitor_id}/inventory/filters")
def inventory_filters(
    competitor_id: str,
    status: str = Query("active"),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    _get_competitor_or_404(competitor_id, db)
    if status not in INVENTORY_STATUSES[:-1]:
        raise HTTPException(400, f"Invalid status '{status}'.")
    return competitors.inventory_filters(db, competitor_id, status)


@router.get("/{competitor_id}/sales")
def sales(
    competitor_id: str,
    month: Optional[int] = Query(None, ge=1, le=12),
    year: Optional[int] = Query(None, ge=2000, le=2100),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    _get_competitor_or_404(competitor_id, db)
    now = datetime.utcnow()
    return competitors.sales(db, competitor_id, month or now.month, year or now.year)


@router.get("/{competitor_id}/sales/summary")
def sales_summary(
    competitor_id: str,
    months: int = Query(12, ge=1, le=36),
    make: Optional[str] = Query(None),
    model: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    _get_competitor_or_404(competitor_id, db)
    return competitors.sales_summary(db, competitor_id, months, make, model)


@router.get("/{competitor_id}/metrics", response_model=List[CompetitorMetricsOut])
def metrics(
    competitor_id: str,
    days: int = Query(30, ge=1, le=365),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    _get_competitor_or_404(competitor_id, db)
    return competitors.metrics_history(db, competitor_id, days)
