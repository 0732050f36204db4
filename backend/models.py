# backend/models.py — Config + Database + All Models

import os
import uuid
from datetime import datetime, date
from sqlalchemy import (
    create_engine, Column, Integer, String, Float, Text, Boolean,
    Date, DateTime, ForeignKey, JSON, UniqueConstraint, Index, Enum as SAEnum
)
from sqlalchemy.orm import declarative_base, sessionmaker, relationship
from dotenv import load_dotenv
import enum

load_dotenv()

# ---------------------------------------------------------------------------
# CONFIG
# ---------------------------------------------------------------------------
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./dev.db")

# Render Postgres URLs start with postgres:// but SQLAlchemy needs postgresql://
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)


def _env_flag(name: str, default: str = "true") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


NHTSA_API_URL = os.getenv("NHTSA_API_URL", "https://vpic.nhtsa.dot.gov/api/vehicles")
ALLOWED_ORIGINS = [
    o.strip() for o in os.getenv(
        "ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000"
    ).split(",") if o.strip()
]
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@localhost")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
JOBS_ENABLED = _env_flag("JOBS_ENABLED")

# Auto.dev market listings
AUTODEV_API_URL = os.getenv("AUTODEV_API_URL", "https://api.auto.dev")
AUTODEV_API_KEY = os.getenv("AUTODEV_API_KEY", "")
MARKET_RESEARCH_ZIP_CODE = os.getenv("MARKET_RESEARCH_ZIP_CODE", "95814")
MARKET_RESEARCH_RADIUS = int(os.getenv("MARKET_RESEARCH_RADIUS", "150"))

# Market research jobs
MARKET_RESEARCH_ENABLED = _env_flag("MARKET_RESEARCH_ENABLED")
MARKET_RESEARCH_SCHEDULE = os.getenv("MARKET_RESEARCH_SCHEDULE", "0 0 */3 * *")
MARKET_RESEARCH_TIMEZONE = os.getenv("MARKET_RESEARCH_TIMEZONE", "America/Los_Angeles")
MARKET_SNAPSHOT_RETENTION_DAYS = int(os.getenv("MARKET_SNAPSHOT_RETENTION_DAYS", "180"))
MARKET_ANALYSIS_DELAY_SECONDS = float(os.getenv("MARKET_ANALYSIS_DELAY_SECONDS", "1.0"))
MARKET_PRICE_ALERTS_ENABLED = _env_flag("MARKET_PRICE_ALERTS_ENABLED", "false")

# Competitor scraping
COMPETITOR_SCRAPER_ENABLED = _env_flag("COMPETITOR_SCRAPER_ENABLED")
COMPETITOR_SCRAPER_SCHEDULE = os.getenv("COMPETITOR_SCRAPER_SCHEDULE", "0 2 * * *")

# Storage monitoring (MB)
STORAGE_LIMIT_MB = float(os.getenv("STORAGE_LIMIT_MB", "1024"))
STORAGE_WARNING_MB = float(os.getenv("STORAGE_WARNING_MB", "800"))
STORAGE_CRITICAL_MB = float(os.getenv("STORAGE_CRITICAL_MB", "950"))

SMTP_HOST = os.getenv("SMTP_HOST", "")
ALERT_EMAIL_TO = os.getenv("ALERT_EMAIL_TO", "")

# ---------------------------------------------------------------------------
# DATABASE ENGINE + SESSION
# ---------------------------------------------------------------------------
connect_args = {}
if "sqlite" in DATABASE_URL:
    connect_args = {"check_same_thread": False}

engine = create_engine(DATABASE_URL, connect_args=connect_args, echo=False)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """FastAPI dependency — yields a DB session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _uuid() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# ENUMS
# ---------------------------------------------------------------------------
class InventoryStatus(str, enum.Enum):
    available = "available"
    sold = "sold"
    pending = "pending"
    hold = "hold"


class SubmissionStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class UserRole(str, enum.Enum):
    admin = "admin"
    manager = "manager"
    viewer = "viewer"


class MarketPosition(str, enum.Enum):
    below_market = "below_market"
    competitive = "competitive"
    above_market = "above_market"


class AlertSeverity(str, enum.Enum):
    info = "info"
    warning = "warning"
    critical = "critical"


class JobStatus(str, enum.Enum):
    running = "running"
    success = "success"
    failed = "failed"
    partial = "partial"


class JobTrigger(str, enum.Enum):
    scheduled = "scheduled"
    manual = "manual"
    api = "api"


class PlatformType(str, enum.Enum):
    dealercenter = "dealercenter"
    dealersync = "dealersync"
    custom = "custom"


class CompetitorVehicleStatus(str, enum.Enum):
    active = "active"
    sold = "sold"
    removed = "removed"


# ---------------------------------------------------------------------------
# MODELS — staff + inventory
# ---------------------------------------------------------------------------

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False)
    name = Column(String(255), nullable=False)
    role = Column(SAEnum(UserRole), default=UserRole.viewer, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    last_login_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Inventory(Base):
    __tablename__ = "inventory"

    id = Column(Integer, primary_key=True, index=True)
    status = Column(SAEnum(InventoryStatus), default=InventoryStatus.available, nullable=False, index=True)
    featured = Column(Boolean, default=False)

    # Identity
    year = Column(Integer, nullable=False)
    make = Column(String(100), nullable=False)
    model = Column(String(100), nullable=False)
    trim = Column(String(100))
    vin = Column(String(17), unique=True, nullable=False, index=True)
    stock_number = Column(String(50), unique=True, nullable=True)

    # Pricing
    price = Column(Float, nullable=False)
    cost = Column(Float, nullable=True)
    msrp = Column(Float, nullable=True)

    # Specs
    mileage = Column(Integer, nullable=False, default=0)
    exterior_color = Column(String(50))
    interior_color = Column(String(50))
    transmission = Column(String(50))
    engine = Column(String(100))
    fuel_type = Column(String(50))
    drivetrain = Column(String(50))
    body_type = Column(String(100))
    doors = Column(Integer)
    title_status = Column(String(50), default="Clean")
    mpg_city = Column(Integer)
    mpg_highway = Column(Integer)
    horsepower = Column(Integer)
    features = Column(JSON, default=list)
    images = Column(JSON, default=list)
    primary_image_url = Column(Text)

    # History
    previous_owners = Column(Integer)
    accident_history = Column(Text)
    service_records = Column(Text)
    carfax_available = Column(Boolean, default=False)
    carfax_url = Column(Text)
    warranty_description = Column(Text)

    # Marketing
    description = Column(Text)
    marketing_title = Column(String(255))

    # Provenance
    source = Column(String(50), default="manual")
    source_submission_id = Column(String(36), ForeignKey("pending_submissions.id"), nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    updated_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    date_added = Column(DateTime, default=datetime.utcnow)
    sold_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    price_events = relationship("InventoryPriceEvent", back_populates="vehicle", cascade="all, delete-orphan")
    snapshots = relationship("MarketSnapshot", back_populates="vehicle", cascade="all, delete-orphan")


class InventoryPriceEvent(Base):
    __tablename__ = "inventory_price_events"

    id = Column(Integer, primary_key=True, index=True)
    vehicle_id = Column(Integer, ForeignKey("inventory.id", ondelete="CASCADE"), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)  # price_update, status_change, marked_sold, submission_approved
    old_price = Column(Float, nullable=True)
    new_price = Column(Float, nullable=True)
    reason = Column(Text)
    triggered_by = Column(String(255), default="system")
    created_at = Column(DateTime, default=datetime.utcnow)

    vehicle = relationship("Inventory", back_populates="price_events")


class PendingSubmission(Base):
    __tablename__ = "pending_submissions"

    id = Column(String(36), primary_key=True, default=_uuid)
    status = Column(SAEnum(SubmissionStatus), default=SubmissionStatus.pending, nullable=False, index=True)
    submitted_at = Column(DateTime, default=datetime.utcnow)
    reviewed_at = Column(DateTime, nullable=True)
    reviewed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    rejection_reason = Column(Text)

    customer_name = Column(String(255), nullable=False)
    customer_email = Column(String(255), nullable=False)
    customer_phone = Column(String(50))

    year = Column(Integer, nullable=False)
    make = Column(String(100), nullable=False)
    model = Column(String(100), nullable=False)
    trim = Column(String(100))
    vin = Column(String(17), nullable=False)
    mileage = Column(Integer, nullable=False)
    exterior_color = Column(String(50))
    interior_color = Column(String(50))
    transmission = Column(String(50))
    asking_price = Column(Float)
    condition_rating = Column(Integer)
    notes = Column(Text)
    images = Column(JSON, default=list)

    created_at = Column(DateTime, default=datetime.utcnow)


# ---------------------------------------------------------------------------
# MODELS — market research
# ---------------------------------------------------------------------------

class MarketSnapshot(Base):
    __tablename__ = "market_snapshots"
    __table_args__ = (Index("ix_market_snapshots_vehicle_date", "vehicle_id", "snapshot_date"),)

    id = Column(Integer, primary_key=True, index=True)
    vehicle_id = Column(Integer, ForeignKey("inventory.id", ondelete="CASCADE"), nullable=False, index=True)
    search_params = Column(JSON, nullable=False, default=dict)
    listings_data = Column(JSON, nullable=False, default=list)
    total_listings = Column(Integer, nullable=False, default=0)
    unique_listings = Column(Integer, nullable=False, default=0)
    median_price = Column(Float, nullable=True)
    average_price = Column(Float, nullable=True)
    min_price = Column(Float, nullable=True)
    max_price = Column(Float, nullable=True)
    snapshot_date = Column(DateTime, default=datetime.utcnow, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    vehicle = relationship("Inventory", back_populates="snapshots")
    metrics = relationship("MarketMetrics", back_populates="snapshot", uselist=False, cascade="all, delete-orphan")


class MarketMetrics(Base):
    __tablename__ = "market_metrics"

    id = Column(Integer, primary_key=True, index=True)
    snapshot_id = Column(Integer, ForeignKey("market_snapshots.id", ondelete="CASCADE"), nullable=False, index=True)
    vehicle_id = Column(Integer, ForeignKey("inventory.id", ondelete="CASCADE"), nullable=False, index=True)
    our_price = Column(Float, nullable=False)
    price_delta = Column(Float, nullable=True)
    price_delta_percent = Column(Float, nullable=True)
    percentile_rank = Column(Float, nullable=True)
    cheaper_count = Column(Integer, nullable=True)
    more_expensive_count = Column(Integer, nullable=True)
    competitive_position = Column(String(50), nullable=True, index=True)
    days_in_market = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    snapshot = relationship("MarketSnapshot", back_populates="metrics")


class MarketPlatformTracking(Base):
    __tablename__ = "market_platform_tracking"
    __table_args__ = (UniqueConstraint("vin", "platform", name="unique_vin_platform"),)

    id = Column(Integer, primary_key=True, index=True)
    vin = Column(String(17), nullable=False, index=True)
    platform = Column(String(100), nullable=False, index=True)
    is_own_vehicle = Column(Boolean, default=False)
    price = Column(Float, nullable=True)
    dealer_name = Column(String(255))
    listing_url = Column(Text)
    first_seen = Column(DateTime, default=datetime.utcnow)
    last_seen = Column(DateTime, default=datetime.utcnow)
    times_seen = Column(Integer, default=1)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class MarketPriceHistory(Base):
    __tablename__ = "market_price_history"
    __table_args__ = (UniqueConstraint("vehicle_id", "date", name="unique_vehicle_date"),)

    id = Column(Integer, primary_key=True, index=True)
    vehicle_id = Column(Integer, ForeignKey("inventory.id", ondelete="CASCADE"), nullable=False, index=True)
    date = Column(Date, nullable=False, default=date.today, index=True)
    median_price = Column(Float, nullable=True)
    min_price = Column(Float, nullable=True)
    max_price = Column(Float, nullable=True)
    change_1week = Column(Float, nullable=True)
    change_2week = Column(Float, nullable=True)
    change_1month = Column(Float, nullable=True)
    alert_sent_1week = Column(Boolean, default=False)
    alert_sent_2week = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class MarketAlert(Base):
    __tablename__ = "market_alerts"

    id = Column(Integer, primary_key=True, index=True)
    vehicle_id = Column(Integer, ForeignKey("inventory.id", ondelete="CASCADE"), nullable=False, index=True)
    snapshot_id = Column(Integer, ForeignKey("market_snapshots.id", ondelete="SET NULL"), nullable=True)
    alert_type = Column(String(100), nullable=False, index=True)
    severity = Column(SAEnum(AlertSeverity), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    message = Column(Text)
    alert_data = Column(JSON, default=dict)
    emailed = Column(Boolean, default=False)
    emailed_at = Column(DateTime, nullable=True)
    resolved = Column(Boolean, default=False)
    resolved_at = Column(DateTime, nullable=True)
    dismissed = Column(Boolean, default=False)
    dismissed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)


class VinEvaluationCache(Base):
    __tablename__ = "vin_evaluation_cache"

    id = Column(Integer, primary_key=True, index=True)
    vin = Column(String(17), nullable=False, index=True)
    year = Column(Integer, nullable=False)
    make = Column(String(100), nullable=False)
    model = Column(String(100), nullable=False)
    trim = Column(String(100))
    mileage = Column(Integer, nullable=False)
    median_price = Column(Float)
    min_price = Column(Float)
    max_price = Column(Float)
    average_price = Column(Float)
    total_listings = Column(Integer, default=0)
    unique_listings = Column(Integer, default=0)
    search_params = Column(JSON, default=dict)
    sample_listings = Column(JSON, default=list)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class SystemMetric(Base):
    __tablename__ = "system_metrics"

    id = Column(Integer, primary_key=True, index=True)
    metric_type = Column(String(100), nullable=False, index=True)
    metric_name = Column(String(255), nullable=False, index=True)
    metric_value = Column(Float)
    metric_unit = Column(String(50))
    metric_data = Column(JSON, default=dict)
    recorded_at = Column(DateTime, default=datetime.utcnow, index=True)


class JobExecution(Base):
    __tablename__ = "job_execution_history"

    id = Column(Integer, primary_key=True, index=True)
    job_name = Column(String(100), nullable=False, index=True)
    status = Column(SAEnum(JobStatus), nullable=False, default=JobStatus.running)
    started_at = Column(DateTime, default=datetime.utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    result_data = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    triggered_by = Column(SAEnum(JobTrigger), default=JobTrigger.scheduled)


# ---------------------------------------------------------------------------
# MODELS — competitor tracking
# ---------------------------------------------------------------------------

class Competitor(Base):
    __tablename__ = "competitors"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    website_url = Column(Text, nullable=False)
    inventory_url = Column(Text, nullable=False)
    platform_type = Column(SAEnum(PlatformType), nullable=True)
    scraper_config = Column(JSON, default=dict)
    use_playwright = Column(Boolean, default=False)
    active = Column(Boolean, default=True, index=True)
    last_scraped_at = Column(DateTime, nullable=True)
    last_successful_scrape_at = Column(DateTime, nullable=True)
    scrape_error = Column(Text, nullable=True)
    scrape_error_type = Column(String(50), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    inventory = relationship("CompetitorInventory", back_populates="competitor", cascade="all, delete-orphan")
    metrics = relationship("CompetitorMetrics", back_populates="competitor", cascade="all, delete-orphan")


class CompetitorInventory(Base):
    __tablename__ = "competitor_inventory"
    __table_args__ = (Index("ix_competitor_inventory_competitor_status", "competitor_id", "status"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    competitor_id = Column(String(36), ForeignKey("competitors.id", ondelete="CASCADE"), nullable=False, index=True)
    vin = Column(String(17), nullable=True, index=True)
    stock_number = Column(String(50), nullable=True)
    has_vin = Column(Boolean, default=False)
    is_duplicate_vin = Column(Boolean, default=False)
    duplicate_warning = Column(Text, nullable=True)

    year = Column(Integer)
    make = Column(String(100))
    model = Column(String(100))
    trim = Column(String(100))
    mileage = Column(Integer)
    exterior_color = Column(String(50))
    listing_url = Column(Text)

    current_price = Column(Float)
    initial_price = Column(Float)
    status = Column(SAEnum(CompetitorVehicleStatus), default=CompetitorVehicleStatus.active, nullable=False)
    first_seen_at = Column(DateTime, default=datetime.utcnow)
    last_seen_at = Column(DateTime, default=datetime.utcnow)
    sold_at = Column(DateTime, nullable=True)
    days_on_market = Column(Integer, default=0)
    completeness = Column(Integer, default=0)
    data_warnings = Column(JSON, default=list)
    last_updated_at = Column(DateTime, default=datetime.utcnow)

    competitor = relationship("Competitor", back_populates="inventory")
    price_history = relationship("CompetitorPriceHistory", back_populates="inventory_item", cascade="all, delete-orphan")


class CompetitorPriceHistory(Base):
    __tablename__ = "competitor_price_history"

    id = Column(Integer, primary_key=True, index=True)
    competitor_inventory_id = Column(
        String(36), ForeignKey("competitor_inventory.id", ondelete="CASCADE"), nullable=False, index=True
    )
    price = Column(Float, nullable=False)
    mileage = Column(Integer, nullable=True)
    recorded_at = Column(DateTime, default=datetime.utcnow)

    inventory_item = relationship("CompetitorInventory", back_populates="price_history")


class CompetitorMetrics(Base):
    __tablename__ = "competitor_metrics"
    __table_args__ = (UniqueConstraint("competitor_id", "date", name="unique_competitor_date"),)

    id = Column(Integer, primary_key=True, index=True)
    competitor_id = Column(String(36), ForeignKey("competitors.id", ondelete="CASCADE"), nullable=False, index=True)
    date = Column(Date, nullable=False, default=date.today)
    total_inventory = Column(Integer, default=0)
    avg_days_on_market = Column(Float, nullable=True)
    monthly_sales = Column(Integer, default=0)
    avg_sale_price = Column(Float, nullable=True)
    avg_price_drop = Column(Float, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    competitor = relationship("Competitor", back_populates="metrics")


# ---------------------------------------------------------------------------
# INIT
# ---------------------------------------------------------------------------
def init_db():
    Base.metadata.create_all(bind=engine)
