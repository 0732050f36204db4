# backend/schemas.py — All Pydantic Schemas

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Any, Dict
from datetime import datetime
from enum import Enum


# ---------------------------------------------------------------------------
# ENUMS (mirror SQLAlchemy enums for Pydantic)
# ---------------------------------------------------------------------------
class InventoryStatusEnum(str, Enum):
    available = "available"
    sold = "sold"
    pending = "pending"
    hold = "hold"


class SubmissionStatusEnum(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class UserRoleEnum(str, Enum):
    admin = "admin"
    manager = "manager"
    viewer = "viewer"


class PlatformTypeEnum(str, Enum):
    dealercenter = "dealercenter"
    dealersync = "dealersync"
    custom = "custom"


class JobStatusEnum(str, Enum):
    running = "running"
    success = "success"
    failed = "failed"
    partial = "partial"


class JobTriggerEnum(str, Enum):
    scheduled = "scheduled"
    manual = "manual"
    api = "api"


class InventorySortEnum(str, Enum):
    newest = "newest"
    oldest = "oldest"
    price_asc = "price_asc"
    price_desc = "price_desc"
    mileage_asc = "mileage_asc"
    year_desc = "year_desc"


# ---------------------------------------------------------------------------
# USER
# ---------------------------------------------------------------------------
class UserCreate(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    name: str = Field(..., min_length=1, max_length=255)
    role: UserRoleEnum = UserRoleEnum.viewer


class UserRoleUpdate(BaseModel):
    role: str


class UserOut(BaseModel):
    id: int
    email: str
    name: str
    role: UserRoleEnum
    is_active: bool
    last_login_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


# ---------------------------------------------------------------------------
# INVENTORY
# ---------------------------------------------------------------------------
def _blank_to_none(v):
    if isinstance(v, str) and not v.strip():
        return None
    return v


def _not_null(v):
    # Update payloads may omit a field but not null one that the table requires
    if v is None:
        raise ValueError("may not be null")
    return v


class InventoryBase(BaseModel):
    trim: Optional[str] = None
    stock_number: Optional[str] = None
    cost: Optional[float] = None
    msrp: Optional[float] = None
    exterior_color: Optional[str] = None
    interior_color: Optional[str] = None
    transmission: Optional[str] = None
    engine: Optional[str] = None
    fuel_type: Optional[str] = None
    drivetrain: Optional[str] = None
    body_type: Optional[str] = None
    doors: Optional[int] = None
    title_status: Optional[str] = None
    mpg_city: Optional[int] = None
    mpg_highway: Optional[int] = None
    horsepower: Optional[int] = None
    features: Optional[List[str]] = None
    images: Optional[List[str]] = None
    primary_image_url: Optional[str] = None
    previous_owners: Optional[int] = None
    accident_history: Optional[str] = None
    service_records: Optional[str] = None
    carfax_available: Optional[bool] = None
    carfax_url: Optional[str] = None
    warranty_description: Optional[str] = None
    description: Optional[str] = None
    marketing_title: Optional[str] = None

    @field_validator("stock_number", mode="before")
    @classmethod
    def blank_stock_is_none(cls, v):
        return _blank_to_none(v)


class InventoryCreate(InventoryBase):
    year: int = Field(..., ge=1900, le=2100)
    make: str = Field(..., min_length=1, max_length=100)
    model: str = Field(..., min_length=1, max_length=100)
    vin: str = Field(..., min_length=17, max_length=17)
    price: float = Field(..., ge=0)
    mileage: int = Field(0, ge=0)
    status: InventoryStatusEnum = InventoryStatusEnum.available
    featured: bool = False


class InventoryUpdate(InventoryBase):
    year: Optional[int] = Field(None, ge=1900, le=2100)
    make: Optional[str] = None
    model: Optional[str] = None
    vin: Optional[str] = Field(None, min_length=17, max_length=17)
    price: Optional[float] = Field(None, ge=0)
    mileage: Optional[int] = Field(None, ge=0)
    status: Optional[InventoryStatusEnum] = None
    featured: Optional[bool] = None

    @field_validator("year", "make", "model", "vin", "price", "mileage", "status", "featured")
    @classmethod
    def required_not_null(cls, v):
        return _not_null(v)


class InventoryOut(BaseModel):
    id: int
    status: InventoryStatusEnum
    featured: bool
    year: int
    make: str
    model: str
    trim: Optional[str]
    vin: str
    stock_number: Optional[str]
    price: float
    cost: Optional[float]
    msrp: Optional[float]
    mileage: int
    exterior_color: Optional[str]
    interior_color: Optional[str]
    transmission: Optional[str]
    engine: Optional[str]
    fuel_type: Optional[str]
    drivetrain: Optional[str]
    body_type: Optional[str]
    doors: Optional[int]
    title_status: Optional[str]
    mpg_city: Optional[int]
    mpg_highway: Optional[int]
    horsepower: Optional[int]
    features: Optional[List[Any]]
    images: Optional[List[Any]]
    primary_image_url: Optional[str]
    previous_owners: Optional[int]
    accident_history: Optional[str]
    service_records: Optional[str]
    carfax_available: Optional[bool]
    carfax_url: Optional[str]
    warranty_description: Optional[str]
    description: Optional[str]
    marketing_title: Optional[str]
    source: Optional[str]
    source_submission_id: Optional[str]
    created_by: Optional[int]
    updated_by: Optional[int]
    date_added: Optional[datetime]
    sold_date: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class Pagination(BaseModel):
    total: int
    page: int
    limit: int
    pages: int


class InventoryPage(BaseModel):
    vehicles: List[InventoryOut]
    pagination: Pagination


class InventoryStats(BaseModel):
    total: int
    available: int
    sold: int
    pending: int
    featured: int
    avg_price: Optional[float]
    avg_mileage: Optional[int]


class PriceEventOut(BaseModel):
    id: int
    vehicle_id: int
    event_type: str
    old_price: Optional[float]
    new_price: Optional[float]
    reason: Optional[str]
    triggered_by: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


# ---------------------------------------------------------------------------
# CONSIGNMENT SUBMISSIONS
# ---------------------------------------------------------------------------
class SubmissionCreate(BaseModel):
    customer_name: str = Field(..., min_length=1, max_length=255)
    customer_email: str = Field(..., min_length=3, max_length=255)
    customer_phone: Optional[str] = None
    year: int = Field(..., ge=1900)
    make: str = Field(..., min_length=1, max_length=100)
    model: str = Field(..., min_length=1, max_length=100)
    trim: Optional[str] = None
    vin: str = Field(..., min_length=17, max_length=17)
    mileage: int = Field(..., ge=0)
    exterior_color: Optional[str] = None
    interior_color: Optional[str] = None
    transmission: Optional[str] = None
    asking_price: Optional[float] = Field(None, ge=0)
    condition_rating: Optional[int] = Field(None, ge=1, le=5)
    notes: Optional[str] = None
    images: List[str] = []

    @field_validator("year")
    @classmethod
    def year_not_future(cls, v: int) -> int:
        if v > datetime.utcnow().year + 1:
            raise ValueError("year cannot be later than next model year")
        return v


class SubmissionApprove(BaseModel):
    price: float = Field(..., gt=0)
    stock_number: Optional[str] = None
    internal_notes: Optional[str] = None

    @field_validator("stock_number", mode="before")
    @classmethod
    def blank_stock_is_none(cls, v):
        return _blank_to_none(v)


class SubmissionReject(BaseModel):
    rejection_reason: str = Field(..., min_length=1)


class SubmissionOut(BaseModel):
    id: str
    status: SubmissionStatusEnum
    submitted_at: Optional[datetime]
    reviewed_at: Optional[datetime]
    reviewed_by: Optional[int]
    rejection_reason: Optional[str]
    customer_name: str
    customer_email: str
    customer_phone: Optional[str]
    year: int
    make: str
    model: str
    trim: Optional[str]
    vin: str
    mileage: int
    exterior_color: Optional[str]
    interior_color: Optional[str]
    transmission: Optional[str]
    asking_price: Optional[float]
    condition_rating: Optional[int]
    notes: Optional[str]
    images: Optional[List[Any]]

    class Config:
        from_attributes = True


class SubmissionPage(BaseModel):
    submissions: List[SubmissionOut]
    pagination: Pagination


class SubmissionApproved(BaseModel):
    submission: SubmissionOut
    vehicle: InventoryOut


# ---------------------------------------------------------------------------
# VIN
# ---------------------------------------------------------------------------
class VinDecodeRequest(BaseModel):
    vin: str


class VinEvaluateRequest(BaseModel):
    vin: str = Field(..., min_length=17, max_length=17)
    year: int = Field(..., ge=1900, le=2100)
    make: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    trim: Optional[str] = None
    mileage: int = Field(..., ge=0)
    force_refresh: bool = False


# ---------------------------------------------------------------------------
# MARKET RESEARCH
# ---------------------------------------------------------------------------
class AnalyzeRequest(BaseModel):
    expansion: int = Field(0, ge=0)
    year_range: Optional[str] = None


class AlertDismissMany(BaseModel):
    alert_ids: List[int] = Field(..., min_length=1)


class JobExecutionOut(BaseModel):
    id: int
    job_name: str
    status: JobStatusEnum
    started_at: datetime
    completed_at: Optional[datetime]
    duration_ms: Optional[int]
    result_data: Optional[Dict[str, Any]]
    error_message: Optional[str]
    triggered_by: JobTriggerEnum

    class Config:
        from_attributes = True


# ---------------------------------------------------------------------------
# COMPETITORS
# ---------------------------------------------------------------------------
class CompetitorCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    website_url: str = Field(..., min_length=1)
    inventory_url: str = Field(..., min_length=1)
    platform_type: Optional[PlatformTypeEnum] = None
    scraper_config: Optional[Dict[str, Any]] = None
    use_playwright: bool = False
    active: bool = True


class CompetitorUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    website_url: Optional[str] = None
    inventory_url: Optional[str] = None
    platform_type: Optional[PlatformTypeEnum] = None
    scraper_config: Optional[Dict[str, Any]] = None
    use_playwright: Optional[bool] = None
    active: Optional[bool] = None

    @field_validator("name", "website_url", "inventory_url", "use_playwright", "active")
    @classmethod
    def required_not_null(cls, v):
        return _not_null(v)


class ValidateUrlRequest(BaseModel):
    url: str = Field(..., min_length=1)


class CompetitorMetricsOut(BaseModel):
    id: int
    competitor_id: str
    date: Any
    total_inventory: Optional[int]
    avg_days_on_market: Optional[float]
    monthly_sales: Optional[int]
    avg_sale_price: Optional[float]
    avg_price_drop: Optional[float]

    class Config:
        from_attributes = True


# ---------------------------------------------------------------------------
# GENERIC RESPONSES
# ---------------------------------------------------------------------------
class MessageResponse(BaseModel):
    message: str
    detail: Optional[Any] = None
