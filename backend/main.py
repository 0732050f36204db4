# backend/main.py — FastAPI App + Inventory, Submission, User & VIN Routes

import logging
import re
from datetime import datetime
from typing import Optional, List

import httpx
from fastapi import FastAPI, Depends, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import func
from sqlalchemy.orm import Session

from models import (
    init_db, get_db, SessionLocal, ALLOWED_ORIGINS, NHTSA_API_URL, ADMIN_EMAIL,
    LOG_LEVEL, JOBS_ENABLED,
    User, UserRole, Inventory, InventoryStatus, InventoryPriceEvent,
    PendingSubmission, SubmissionStatus,
)
from schemas import (
    UserCreate, UserRoleUpdate, UserOut,
    InventoryCreate, InventoryUpdate, InventoryOut, InventoryPage, InventoryStats,
    InventorySortEnum, PriceEventOut,
    SubmissionCreate, SubmissionApprove, SubmissionReject, SubmissionOut,
    SubmissionPage, SubmissionApproved,
    VinDecodeRequest, MessageResponse,
)
from deps import get_current_user, require_admin, require_manager
from jobs import job_manager
from routes_market import router as market_router, history_router, system_router, vin_router
from routes_competitors import router as competitors_router

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

VIN_RE = re.compile(r"^[A-HJ-NPR-Z0-9]{17}$")
MAX_PAGE_SIZE = 100

# ---------------------------------------------------------------------------
# APP INIT
# ---------------------------------------------------------------------------
app = FastAPI(title="LotDesk", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(market_router)
app.include_router(history_router)
app.include_router(system_router)
app.include_router(vin_router)
app.include_router(competitors_router)


def seed_admin(db: Session) -> Optional[User]:
    """Create the bootstrap admin on an empty users table."""
    if db.query(User).first():
        return None
    admin = User(email=ADMIN_EMAIL.lower(), name="Administrator", role=UserRole.admin)
    db.add(admin)
    db.commit()
    db.refresh(admin)
    logger.info("Seeded admin user %s", admin.email)
    return admin


@app.on_event("startup")
def startup():
    init_db()
    db = SessionLocal()
    try:
        seed_admin(db)
    finally:
        db.close()
    if JOBS_ENABLED:
        job_manager.start_all()


@app.on_event("shutdown")
def shutdown():
    job_manager.stop_all()


def _paginate(total: int, page: int, limit: int) -> dict:
    return {"total": total, "page": page, "limit": limit, "pages": (total + limit - 1) // limit}


# ---------------------------------------------------------------------------
# HEALTH
# ---------------------------------------------------------------------------
@app.get("/api/health")
def health():
    return {"status": "ok", "app": "lotdesk", "version": "1.0.0", "timestamp": datetime.utcnow()}


# ---------------------------------------------------------------------------
# USER ROUTES
# ---------------------------------------------------------------------------
def _get_user_or_404(user_id: int, db: Session) -> User:
    u = db.query(User).filter(User.id == user_id).first()
    if not u:
        raise HTTPException(404, "User not found.")
    return u


@app.get("/api/users/me", response_model=UserOut)
def me(user: User = Depends(get_current_user)):
    return user


@app.get("/api/users", response_model=List[UserOut])
def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    return db.query(User).order_by(User.created_at.asc(), User.id.asc()).offset((page - 1) * limit).limit(limit).all()


@app.post("/api/users", response_model=UserOut, status_code=201)
def create_user(
    payload: UserCreate,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    email = payload.email.strip().lower()
    if db.query(User).filter(User.email == email).first():
        raise HTTPException(400, f"User with email {email} already exists.")
    u = User(email=email, name=payload.name, role=UserRole(payload.role.value))
    db.add(u)
    db.commit()
    db.refresh(u)
    logger.info("User %s created by %s with role %s", u.email, admin.email, u.role.value)
    return u


@app.get("/api/users/{user_id}", response_model=UserOut)
def get_user(user_id: int, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    return _get_user_or_404(user_id, db)


@app.put("/api/users/{user_id}/role", response_model=UserOut)
def update_user_role(
    user_id: int,
    payload: UserRoleUpdate,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    if payload.role not in [r.value for r in UserRole]:
        raise HTTPException(400, f"Invalid role '{payload.role}'.")
    u = _get_user_or_404(user_id, db)
    if u.id == admin.id:
        raise HTTPException(400, "You cannot change your own role.")
    u.role = UserRole(payload.role)
    db.commit()
    db.refresh(u)
    return u


@app.post("/api/users/{user_id}/deactivate", response_model=UserOut)
def deactivate_user(user_id: int, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    u = _get_user_or_404(user_id, db)
    if u.id == admin.id:
        raise HTTPException(400, "You cannot deactivate yourself.")
    u.is_active = False
    db.commit()
    db.refresh(u)
    return u


@app.post("/api/users/{user_id}/activate", response_model=UserOut)
def activate_user(user_id: int, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    u = _get_user_or_404(user_id, db)
    u.is_active = True
    db.commit()
    db.refresh(u)
    return u


@app.delete("/api/users/{user_id}", response_model=MessageResponse)
def delete_user(user_id: int, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    u = _get_user_or_404(user_id, db)
    if u.id == admin.id:
        raise HTTPException(400, "You cannot delete yourself.")
    db.delete(u)
    db.commit()
    return {"message": "User deleted.", "detail": {"id": user_id}}


# ---------------------------------------------------------------------------
# VIN DECODE
# ---------------------------------------------------------------------------
def _leading_int(value) -> Optional[int]:
    """NHTSA returns strings like "4" or "2/4"; take the first number."""
    match = re.match(r"\s*(\d+)", str(value or ""))
    if not match:
        return None
    return int(match.group(1)) or None


async def decode_vin(vin: str) -> dict:
    """Call NHTSA vPIC API to decode VIN."""
    url = f"{NHTSA_API_URL}/DecodeVinValues/{vin}?format=json"
    try:
        async with httpx.AsyncClient(timeout=10) as client:
            resp = await client.get(url)
            resp.raise_for_status()
            data = resp.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("VIN decode failed for %s: %s", vin, exc)
        return {}

    results = (data.get("Results") or [{}])[0]
    return {
        "vin": vin,
        "year": _leading_int(results.get("ModelYear")),
        "make": results.get("Make") or None,
        "model": results.get("Model") or None,
        "trim": results.get("Trim") or None,
        "body_type": results.get("BodyClass") or None,
        "engine": " ".join(filter(None, [
            results.get("EngineConfiguration"),
            results.get("DisplacementL") and f"{results.get('DisplacementL')}L",
            results.get("EngineCylinders") and f"{results.get('EngineCylinders')} cyl",
        ])) or None,
        "fuel_type": results.get("FuelTypePrimary") or None,
        "drivetrain": results.get("DriveType") or None,
        "doors": _leading_int(results.get("Doors")),
    }


async def _decode_or_error(vin: str) -> dict:
    vin = vin.strip().upper()
    if not VIN_RE.match(vin):
        raise HTTPException(400, "VIN must be 17 characters (no I, O or Q).")
    decoded = await decode_vin(vin)
    if not decoded or not decoded.get("make"):
        raise HTTPException(502, "VIN decode service unavailable or VIN not recognised.")
    return decoded


@app.post("/api/vin/decode")
async def decode_vin_post(payload: VinDecodeRequest):
    return await _decode_or_error(payload.vin)


@app.get("/api/vin/decode/{vin}")
async def decode_vin_get(vin: str):
    return await _decode_or_error(vin)


# ---------------------------------------------------------------------------
# INVENTORY ROUTES
# ---------------------------------------------------------------------------
INVENTORY_SORTS = {
    InventorySortEnum.newest: (Inventory.date_added.desc(),),
    InventorySortEnum.oldest: (Inventory.date_added.asc(),),
    InventorySortEnum.price_asc: (Inventory.price.asc(),),
    InventorySortEnum.price_desc: (Inventory.price.desc(),),
    InventorySortEnum.mileage_asc: (Inventory.mileage.asc(),),
    InventorySortEnum.year_desc: (Inventory.year.desc(),),
}


def _get_vehicle_or_404(vehicle_id: int, db: Session) -> Inventory:
    v = db.query(Inventory).filter(Inventory.id == vehicle_id).first()
    if not v:
        raise HTTPException(404, "Vehicle not found.")
    return v


def _check_unique(db: Session, vin: Optional[str], stock_number: Optional[str], exclude_id: Optional[int] = None):
    if vin:
        q = db.query(Inventory).filter(Inventory.vin == vin)
        if exclude_id:
            q = q.filter(Inventory.id != exclude_id)
        if q.first():
            raise HTTPException(400, f"Vehicle with VIN {vin} already exists.")
    if stock_number:
        q = db.query(Inventory).filter(Inventory.stock_number == stock_number)
        if exclude_id:
            q = q.filter(Inventory.id != exclude_id)
        if q.first():
            raise HTTPException(400, f"Stock number {stock_number} already in use.")


def _log_event(db: Session, v: Inventory, event_type: str, old_price, reason: str, user: Optional[User]):
    db.add(InventoryPriceEvent(
        vehicle_id=v.id,
        event_type=event_type,
        old_price=old_price,
        new_price=v.price,
        reason=reason,
        triggered_by=user.email if user else "system",
    ))


@app.get("/api/inventory", response_model=InventoryPage)
def list_inventory(
    status: str = Query("available"),
    featured: Optional[bool] = Query(None),
    make: Optional[str] = Query(None),
    model: Optional[str] = Query(None),
    year_min: Optional[int] = Query(None),
    year_max: Optional[int] = Query(None),
    price_min: Optional[float] = Query(None),
    price_max: Optional[float] = Query(None),
    sort: InventorySortEnum = Query(InventorySortEnum.newest),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    q = db.query(Inventory)
    if status != "all":
        if status not in [s.value for s in InventoryStatus]:
            raise HTTPException(400, f"Invalid status '{status}'.")
        q = q.filter(Inventory.status == InventoryStatus(status))
    if featured is not None:
        q = q.filter(Inventory.featured.is_(featured))
    if make:
        q = q.filter(Inventory.make.ilike(f"%{make}%"))
    if model:
        q = q.filter(Inventory.model.ilike(f"%{model}%"))
    if year_min is not None:
        q = q.filter(Inventory.year >= year_min)
    if year_max is not None:
        q = q.filter(Inventory.year <= year_max)
    if price_min is not None:
        q = q.filter(Inventory.price >= price_min)
    if price_max is not None:
        q = q.filter(Inventory.price <= price_max)

    total = q.count()
    vehicles = q.order_by(*INVENTORY_SORTS[sort], Inventory.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return {"vehicles": vehicles, "pagination": _paginate(total, page, limit)}


@app.get("/api/inventory/stats", response_model=InventoryStats)
def inventory_stats(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    counts = dict(db.query(Inventory.status, func.count(Inventory.id)).group_by(Inventory.status).all())
    avg_price, avg_mileage = db.query(func.avg(Inventory.price), func.avg(Inventory.mileage)).filter(
        Inventory.status == InventoryStatus.available,
    ).one()
    return {
        "total": sum(counts.values()),
        "available": counts.get(InventoryStatus.available, 0),
        "sold": counts.get(InventoryStatus.sold, 0),
        "pending": counts.get(InventoryStatus.pending, 0),
        "featured": db.query(func.count(Inventory.id)).filter(Inventory.featured.is_(True)).scalar(),
        "avg_price": round(avg_price, 2) if avg_price is not None else None,
        "avg_mileage": round(avg_mileage) if avg_mileage is not None else None,
    }


@app.get("/api/inventory/{vehicle_id}", response_model=InventoryOut)
def get_inventory(vehicle_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return _get_vehicle_or_404(vehicle_id, db)


@app.post("/api/inventory", response_model=InventoryOut, status_code=201)
def create_inventory(
    payload: InventoryCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_manager),
):
    data = payload.model_dump(exclude_unset=True)
    data["vin"] = payload.vin.strip().upper()
    data["status"] = InventoryStatus(payload.status.value)
    _check_unique(db, data["vin"], data.get("stock_number"))

    v = Inventory(**data, source="manual", created_by=user.id, updated_by=user.id)
    db.add(v)
    db.commit()
    db.refresh(v)
    logger.info("Vehicle %s (%s) added by %s", v.id, v.vin, user.email)
    return v


@app.put("/api/inventory/{vehicle_id}", response_model=InventoryOut)
def update_inventory(
    vehicle_id: int,
    payload: InventoryUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_manager),
):
    v = _get_vehicle_or_404(vehicle_id, db)
    old_price = v.price
    old_status = v.status

    update_data = payload.model_dump(exclude_unset=True)
    if update_data.get("vin"):
        update_data["vin"] = update_data["vin"].strip().upper()
    if update_data.get("status") is not None:
        update_data["status"] = InventoryStatus(update_data["status"].value)
    _check_unique(db, update_data.get("vin"), update_data.get("stock_number"), exclude_id=v.id)

    for key, val in update_data.items():
        setattr(v, key, val)
    v.updated_by = user.id
    v.updated_at = datetime.utcnow()
    if v.status == InventoryStatus.sold and old_status != InventoryStatus.sold and not v.sold_date:
        v.sold_date = datetime.utcnow()

    # Log price changes
    if payload.price is not None and payload.price != old_price:
        _log_event(db, v, "price_update", old_price, f"Price changed from {old_price} to {v.price}.", user)

    # Log status changes
    if payload.status is not None and v.status != old_status:
        _log_event(db, v, "status_change", old_price,
                   f"Status changed from {old_status.value} to {v.status.value}.", user)

    db.commit()
    db.refresh(v)
    return v


@app.post("/api/inventory/{vehicle_id}/mark-sold", response_model=InventoryOut)
def mark_sold(vehicle_id: int, db: Session = Depends(get_db), user: User = Depends(require_manager)):
    v = _get_vehicle_or_404(vehicle_id, db)
    if v.status == InventoryStatus.sold:
        raise HTTPException(400, "Vehicle is already sold.")
    old_status = v.status
    v.status = InventoryStatus.sold
    v.sold_date = datetime.utcnow()
    v.updated_by = user.id
    _log_event(db, v, "marked_sold", v.price, f"Marked sold (was {old_status.value}).", user)
    db.commit()
    db.refresh(v)
    return v


@app.post("/api/inventory/{vehicle_id}/toggle-featured", response_model=InventoryOut)
def toggle_featured(vehicle_id: int, db: Session = Depends(get_db), user: User = Depends(require_manager)):
    v = _get_vehicle_or_404(vehicle_id, db)
    v.featured = not v.featured
    v.updated_by = user.id
    db.commit()
    db.refresh(v)
    return v


@app.get("/api/inventory/{vehicle_id}/price-events", response_model=List[PriceEventOut])
def price_events(vehicle_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    _get_vehicle_or_404(vehicle_id, db)
    return db.query(InventoryPriceEvent).filter(
        InventoryPriceEvent.vehicle_id == vehicle_id,
    ).order_by(InventoryPriceEvent.created_at.desc(), InventoryPriceEvent.id.desc()).all()


@app.delete("/api/inventory/{vehicle_id}", response_model=MessageResponse)
def delete_inventory(vehicle_id: int, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    v = _get_vehicle_or_404(vehicle_id, db)
    db.delete(v)
    db.commit()
    logger.info("Vehicle %s deleted by %s", vehicle_id, admin.email)
    return {"message": "Vehicle deleted.", "detail": {"id": vehicle_id}}


# ---------------------------------------------------------------------------
# CONSIGNMENT SUBMISSION ROUTES
# ---------------------------------------------------------------------------
def _get_submission_or_404(submission_id: str, db: Session) -> PendingSubmission:
    s = db.query(PendingSubmission).filter(PendingSubmission.id == submission_id).first()
    if not s:
        raise HTTPException(404, "Submission not found.")
    return s


@app.post("/api/submissions", response_model=SubmissionOut, status_code=201)
def create_submission(payload: SubmissionCreate, db: Session = Depends(get_db)):
    data = payload.model_dump()
    data["vin"] = payload.vin.strip().upper()
    data["customer_email"] = payload.customer_email.strip().lower()
    s = PendingSubmission(**data)
    db.add(s)
    db.commit()
    db.refresh(s)
    logger.info("Consignment submission %s received for %s %s %s", s.id, s.year, s.make, s.model)
    return s


@app.get("/api/submissions", response_model=SubmissionPage)
def list_submissions(
    status: str = Query("pending"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
    db: Session = Depends(get_db),
    user: User = Depends(require_manager),
):
    q = db.query(PendingSubmission)
    if status != "all":
        if status not in [s.value for s in SubmissionStatus]:
            raise HTTPException(400, f"Invalid status '{status}'.")
        q = q.filter(PendingSubmission.status == SubmissionStatus(status))
    total = q.count()
    rows = q.order_by(PendingSubmission.submitted_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return {"submissions": rows, "pagination": _paginate(total, page, limit)}


@app.get("/api/submissions/{submission_id}", response_model=SubmissionOut)
def get_submission(submission_id: str, db: Session = Depends(get_db), user: User = Depends(require_manager)):
    return _get_submission_or_404(submission_id, db)


@app.post("/api/submissions/{submission_id}/approve", response_model=SubmissionApproved)
def approve_submission(
    submission_id: str,
    payload: SubmissionApprove,
    db: Session = Depends(get_db),
    user: User = Depends(require_manager),
):
    s = _get_submission_or_404(submission_id, db)
    if s.status != SubmissionStatus.pending:
        raise HTTPException(400, "Submission has already been reviewed")
    if db.query(Inventory).filter(Inventory.vin == s.vin).first():
        raise HTTPException(400, f"Vehicle with VIN {s.vin} is already in inventory.")
    _check_unique(db, None, payload.stock_number)

    now = datetime.utcnow()
    v = Inventory(
        status=InventoryStatus.available,
        year=s.year,
        make=s.make,
        model=s.model,
        trim=s.trim,
        vin=s.vin,
        stock_number=payload.stock_number,
        price=payload.price,
        mileage=s.mileage,
        exterior_color=s.exterior_color,
        interior_color=s.interior_color,
        transmission=s.transmission,
        images=list(s.images or []),
        description=payload.internal_notes,
        source="submission",
        source_submission_id=s.id,
        created_by=user.id,
        updated_by=user.id,
        date_added=now,
    )
    db.add(v)
    s.status = SubmissionStatus.approved
    s.reviewed_at = now
    s.reviewed_by = user.id
    db.flush()
    _log_event(db, v, "submission_approved", None, f"Approved from consignment submission {s.id}.", user)
    db.commit()
    db.refresh(v)
    db.refresh(s)
    logger.info("Submission %s approved by %s as vehicle %s", s.id, user.email, v.id)
    return {"submission": s, "vehicle": v}


@app.post("/api/submissions/{submission_id}/reject", response_model=SubmissionOut)
def reject_submission(
    submission_id: str,
    payload: SubmissionReject,
    db: Session = Depends(get_db),
    user: User = Depends(require_manager),
):
    s = _get_submission_or_404(submission_id, db)
    if s.status != SubmissionStatus.pending:
        raise HTTPException(400, "Submission has already been reviewed")
    s.status = SubmissionStatus.rejected
    s.rejection_reason = payload.rejection_reason
    s.reviewed_at = datetime.utcnow()
    s.reviewed_by = user.id
    db.commit()
    db.refresh(s)
    return s


@app.delete("/api/submissions/{submission_id}", response_model=MessageResponse)
def delete_submission(submission_id: str, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    s = _get_submission_or_404(submission_id, db)
    db.delete(s)
    db.commit()
    return {"message": "Submission deleted.", "detail": {"id": submission_id}}
