# backend/scraper.py — Competitor Inventory Scraper
# Fetches a competitor's inventory page, parses vehicles per platform
# (DealerCenter, DealerSync, generic), and reconciles them with what we
# already track: new listings, price changes, and listings that vanished (sold).

import logging
import re
from collections import Counter
from datetime import datetime
from typing import List, Optional, Dict, Any

import httpx
from bs4 import BeautifulSoup
from sqlalchemy.orm import Session

from models import (
    Competitor, CompetitorInventory, CompetitorPriceHistory,
    CompetitorVehicleStatus, PlatformType,
)
import engine
import competitors

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30.0
PREVIEW_LIMIT = 5

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}

VIN_RE = re.compile(r"\b([A-HJ-NPR-Z0-9]{17})\b")
STOCK_TEXT_RE = re.compile(r"(?:Stock|Stk)[\s#:]*([A-Z0-9-]+)", re.IGNORECASE)
STOCK_URL_RE = re.compile(r"/inventory/[^/]+/[^/]+/([^/?]+)")
TITLE_RE = re.compile(r"(\d{4})\s+([A-Za-z-]+)\s+([A-Za-z0-9\s-]+)")
MILEAGE_RE = re.compile(r"(\d{1,3}(?:,\d{3})*)\s*(?:mi|miles)\b", re.IGNORECASE)
PRICE_RE = re.compile(r"\$(\d{1,3}(?:,\d{3})+)")

DWS_CARD = ".list-group, .col-md-4, [class*='container']"
DWS_VALUE = ".dws-vehicle-listing-item-field-value"


class ScraperError(Exception):
    """Scrape failure tagged with a machine-readable type."""

    def __init__(self, message: str, error_type: str = "UNKNOWN_ERROR"):
        super().__init__(message)
        self.error_type = error_type


# ---------------------------------------------------------------------------
# FETCH
# ---------------------------------------------------------------------------
async def fetch_html(url: str) -> str:
    try:
        async with httpx.AsyncClient(
            timeout=REQUEST_TIMEOUT, headers=BROWSER_HEADERS, follow_redirects=True,
        ) as client:
            resp = await client.get(url)
    except httpx.TransportError as exc:
        raise ScraperError(f"Connection failed: {exc}", "CONNECTION_ERROR") from exc

    if resp.status_code == 403:
        raise ScraperError("Site blocked the request (HTTP 403)", "BLOCKED_403")
    if resp.status_code >= 400:
        raise ScraperError(f"Site returned HTTP {resp.status_code}", "HTTP_ERROR")
    return resp.text


def detect_platform(html: str) -> str:
    soup = BeautifulSoup(html, "lxml")
    lowered = html.lower()
    if soup.select_one('[class*="dws-"]') is not None or "dealercenter" in lowered:
        return PlatformType.dealercenter.value
    if soup.select_one('[class*="ds-"]') is not None or "dealersync" in lowered:
        return PlatformType.dealersync.value
    return PlatformType.custom.value


# ---------------------------------------------------------------------------
# PARSE HELPERS
# ---------------------------------------------------------------------------
def _text(node) -> str:
    return node.get_text(" ", strip=True) if node is not None else ""


def _parse_price(raw: Optional[str]) -> Optional[float]:
    if not raw:
        return None
    cleaned = re.sub(r"[^\d.]", "", raw)
    if not cleaned:
        return None
    try:
        price = float(cleaned)
    except ValueError:
        return None
    return price if price > 0 else None


def _parse_int(raw: Optional[str]) -> Optional[int]:
    if not raw:
        return None
    digits = re.sub(r"[^\d]", "", raw)
    return int(digits) if digits else None


def _parse_title(title: str):
    match = TITLE_RE.search(title or "")
    if not match:
        return None, None, None
    return int(match.group(1)), match.group(2), match.group(3).strip()


def _vehicle(vin, stock_number, year, make, model, trim, mileage, price, exterior_color=None, listing_url=None):
    return {
        "vin": vin.upper() if vin else None,
        "stock_number": stock_number or None,
        "year": year,
        "make": make,
        "model": model,
        "trim": trim or None,
        "mileage": mileage,
        "price": price,
        "exterior_color": exterior_color or None,
        "listing_url": listing_url,
    }


# ---------------------------------------------------------------------------
# PLATFORM PARSERS
# ---------------------------------------------------------------------------
def _dealercenter_elements(soup: BeautifulSoup) -> list:
    elements = soup.select(".dws-vehicle-listing-item-info.dws-listing-item")
    if elements:
        return elements

    # Fallback: one container per vehicle detail link
    seen, containers = set(), []
    for link in soup.select('a[href*="/inventory/view/"]'):
        container = link.find_parent(["div", "li", "article"]) or link
        if id(container) not in seen:
            seen.add(id(container))
            containers.append(container)
    return containers


def parse_dealercenter(soup: BeautifulSoup) -> List[Dict[str, Any]]:
    vehicles = []
    for elem in _dealercenter_elements(soup):
        text = _text(elem)

        vin_node = elem.select_one("[data-vin]")
        vin = vin_node.get("data-vin") if vin_node is not None else None
        if not vin:
            vin = _text(elem.select_one(f".dws-vehicle-field-vin {DWS_VALUE}"))
        if not vin:
            match = VIN_RE.search(text)
            vin = match.group(1) if match else None

        stock = _text(elem.select_one(f".dws-vehicle-field-stock-number {DWS_VALUE}"))
        if not stock:
            stock = _text(elem.select_one(f"[class*='stock'] {DWS_VALUE}"))
        link = elem.select_one('a[href*="/inventory/"]')
        href = link.get("href") if link is not None else None
        if not stock and href:
            match = STOCK_URL_RE.search(href)
            stock = match.group(1) if match else ""
        if not stock:
            match = STOCK_TEXT_RE.search(text)
            stock = match.group(1) if match else ""

        card = elem.css.closest(DWS_CARD) or elem
        title = _text(card.select_one(".dws-listing-title a"))
        if not title:
            title = _text(card.select_one(".dws-listing-title, .dws-vehicle-title, h2, h3, h4, .title, [class*='title']"))
        year, make, model = _parse_title(title)

        trim = _text(elem.select_one(f".dws-vehicle-field-trim {DWS_VALUE}"))
        mileage_text = _text(elem.select_one(f".dws-vehicle-field-mileage {DWS_VALUE}"))
        if not mileage_text:
            match = MILEAGE_RE.search(text)
            mileage_text = match.group(1) if match else ""

        price_text = _text(card.select_one(".dws-vehicle-price-value"))
        if not price_text:
            node = card.select_one("[data-sales-price]")
            price_text = node.get("data-sales-price") if node is not None else ""
        if not price_text:
            price_text = _text(card.select_one(".dws-listing-price, .price"))
        if not price_text:
            match = PRICE_RE.search(_text(card))
            price_text = match.group(0) if match else ""
        price = _parse_price(price_text)

        color = _text(elem.select_one(f".dws-vehicle-field-exterior-color {DWS_VALUE}"))

        if (vin or stock) and price:
            vehicles.append(_vehicle(vin, stock, year, make, model, trim, _parse_int(mileage_text), price, color, href))

    logger.info("DealerCenter parser found %d vehicles", len(vehicles))
    return vehicles


def parse_dealersync(soup: BeautifulSoup) -> List[Dict[str, Any]]:
    vehicles = []
    for elem in soup.select(".ds-vehicle-list-item, .ds-car-griditem"):
        vin = elem.get("data-vin")
        stock = elem.get("data-stock-no")

        title = _text(elem.select_one(".ds-listview-vehicle-title, .ds-vehicle-title"))
        year, make, model = _parse_title(title.split("w/")[0])

        trim = _text(elem.select_one("h5, .ds-listview-subtitle"))
        if not trim and "w/" in title:
            trim = "w/" + title.split("w/", 1)[1]

        mileage = _parse_int(_text(elem.select_one(".ds-listview-item-featured-content-tag, [class*='mileage']")))
        price = _parse_price(_text(elem.select_one(".ds-listview-price-value, .ds-price")))
        link = elem.select_one("a[href]")

        if (vin or stock) and price:
            vehicles.append(_vehicle(vin, stock, year, make, model, trim, mileage, price,
                                     listing_url=link.get("href") if link is not None else None))

    logger.info("DealerSync parser found %d vehicles", len(vehicles))
    return vehicles


GENERIC_SELECTORS = [
    ".vehicle-item", ".car-item", ".listing-item", ".inventory-item",
    "[class*='vehicle']", "[class*='inventory']",
]


def parse_generic(soup: BeautifulSoup) -> List[Dict[str, Any]]:
    """First selector that yields vehicles wins."""
    for selector in GENERIC_SELECTORS:
        items = soup.select(selector)
        if not items:
            continue

        vehicles = []
        for elem in items:
            vin_node = elem.select_one("[data-vin]")
            vin = vin_node.get("data-vin") if vin_node is not None else _text(elem.select_one("[class*='vin']"))
            if vin and not VIN_RE.fullmatch(vin.upper()):
                match = VIN_RE.search(vin.upper())
                vin = match.group(1) if match else None
            stock = _text(elem.select_one("[class*='stock']"))
            price = _parse_price(_text(elem.select_one("[class*='price']")))
            year, make, model = _parse_title(_text(elem.select_one("h1, h2, h3, h4, .title, [class*='title']")))

            if (vin or stock) and price and year:
                vehicles.append(_vehicle(vin, stock, year, make, model, None, None, price))

        if vehicles:
            logger.info("Generic parser found %d vehicles with selector %s", len(vehicles), selector)
            return vehicles

    logger.info("Generic parser found no vehicles")
    return []


PARSERS = {
    PlatformType.dealercenter.value: parse_dealercenter,
    PlatformType.dealersync.value: parse_dealersync,
    PlatformType.custom.value: parse_generic,
}


def parse_inventory(html: str, platform: str) -> List[Dict[str, Any]]:
    parser = PARSERS.get(platform)
    if parser is None:
        raise ScraperError(f"No parser available for platform: {platform}", "UNSUPPORTED_PLATFORM")
    return parser(BeautifulSoup(html, "lxml"))


# ---------------------------------------------------------------------------
# RECONCILE
# ---------------------------------------------------------------------------
def _identifier(vin: Optional[str], stock_number: Optional[str]) -> Optional[str]:
    return (vin or "").upper() or stock_number or None


def _find_existing(db: Session, competitor_id: str, scraped: Dict[str, Any]) -> Optional[CompetitorInventory]:
    q = db.query(CompetitorInventory).filter(CompetitorInventory.competitor_id == competitor_id)
    if scraped.get("vin"):
        row = q.filter(CompetitorInventory.vin == scraped["vin"]).first()
        if row:
            return row
    if scraped.get("stock_number"):
        return q.filter(CompetitorInventory.stock_number == scraped["stock_number"]).first()
    return None


def process_scraped_inventory(
    db: Session,
    competitor: Competitor,
    vehicles: List[Dict[str, Any]],
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    now = now or datetime.utcnow()
    stats = {"added": 0, "updated": 0, "sold": 0, "errors": 0}

    vin_counts = Counter(v["vin"] for v in vehicles if v.get("vin"))
    scraped: Dict[str, Dict[str, Any]] = {}
    for v in vehicles:
        key = _identifier(v.get("vin"), v.get("stock_number"))
        if key and key not in scraped:
            scraped[key] = v
    seen_vins = {v["vin"].upper() for v in scraped.values() if v.get("vin")}
    seen_stocks = {v["stock_number"] for v in scraped.values() if v.get("stock_number")}

    # Anything active we no longer see has sold
    active = db.query(CompetitorInventory).filter(
        CompetitorInventory.competitor_id == competitor.id,
        CompetitorInventory.status == CompetitorVehicleStatus.active,
    ).all()
    for row in active:
        if (row.vin or "").upper() in seen_vins or (row.stock_number and row.stock_number in seen_stocks):
            continue
        row.status = CompetitorVehicleStatus.sold
        row.sold_at = now
        row.days_on_market = engine.days_between(row.first_seen_at, now)
        row.last_updated_at = now
        if row.current_price is not None:
            db.add(CompetitorPriceHistory(
                competitor_inventory_id=row.id, price=row.current_price, mileage=row.mileage, recorded_at=now,
            ))
        stats["sold"] += 1
    db.flush()

    for item in scraped.values():
        try:
            duplicate = bool(item.get("vin")) and vin_counts[item["vin"]] > 1
            existing = _find_existing(db, competitor.id, item)
            if existing:
                price_changed = existing.current_price is not None and item["price"] != existing.current_price
                existing.current_price = item["price"]
                if not existing.vin and item.get("vin"):
                    existing.vin = item["vin"]
                    existing.has_vin = True
                if item.get("mileage") is not None:
                    existing.mileage = item["mileage"]
                existing.last_seen_at = now
                existing.last_updated_at = now
                existing.status = CompetitorVehicleStatus.active
                existing.sold_at = None
                existing.days_on_market = engine.days_between(existing.first_seen_at, now)
                if price_changed:
                    db.add(CompetitorPriceHistory(
                        competitor_inventory_id=existing.id, price=item["price"],
                        mileage=item.get("mileage"), recorded_at=now,
                    ))
                stats["updated"] += 1
            else:
                row = CompetitorInventory(
                    competitor_id=competitor.id,
                    vin=item.get("vin"),
                    stock_number=item.get("stock_number"),
                    has_vin=bool(item.get("vin")),
                    is_duplicate_vin=duplicate,
                    duplicate_warning=(
                        f"VIN {item['vin']} appeared {vin_counts[item['vin']]} times in one scrape"
                        if duplicate else None
                    ),
                    year=item.get("year"),
                    make=item.get("make"),
                    model=item.get("model"),
                    trim=item.get("trim"),
                    mileage=item.get("mileage"),
                    exterior_color=item.get("exterior_color"),
                    listing_url=item.get("listing_url"),
                    current_price=item["price"],
                    initial_price=item["price"],
                    status=CompetitorVehicleStatus.active,
                    first_seen_at=now,
                    last_seen_at=now,
                    last_updated_at=now,
                    days_on_market=0,
                    completeness=engine.completeness_score(item),
                    data_warnings=engine.data_warnings(item),
                )
                db.add(row)
                db.flush()
                db.add(CompetitorPriceHistory(
                    competitor_inventory_id=row.id, price=item["price"],
                    mileage=item.get("mileage"), recorded_at=now,
                ))
                stats["added"] += 1
        except (KeyError, TypeError, ValueError):
            logger.exception("Failed to process scraped vehicle %s for %s",
                             _identifier(item.get("vin"), item.get("stock_number")), competitor.name)
            stats["errors"] += 1

    db.commit()
    logger.info("Processed scrape for %s: %s", competitor.name, stats)
    return stats


# ---------------------------------------------------------------------------
# ORCHESTRATION
# ---------------------------------------------------------------------------
async def scrape_competitor(db: Session, competitor_id: str) -> Dict[str, Any]:
    competitor = db.query(Competitor).filter(Competitor.id == competitor_id).first()
    if not competitor:
        raise LookupError(f"Competitor {competitor_id} not found")

    now = datetime.utcnow()
    logger.info("Scraping competitor %s (%s)", competitor.name, competitor.inventory_url)
    try:
        html = await fetch_html(competitor.inventory_url)
        platform = competitor.platform_type.value if competitor.platform_type else detect_platform(html)
        vehicles = parse_inventory(html, platform)
        validation = engine.validate_scrape(vehicles)
        if not validation["valid"]:
            raise ScraperError(
                "; ".join(validation["errors"]) + " (page may require JavaScript rendering)",
                "NO_VEHICLES_FOUND",
            )
        for warning in validation["warnings"]:
            logger.warning("Scrape of %s: %s", competitor.name, warning)

        stats = process_scraped_inventory(db, competitor, vehicles, now)
        competitors.record_daily_metrics(db, competitor.id, now)
    except Exception as exc:
        db.rollback()
        error = exc if isinstance(exc, ScraperError) else ScraperError(str(exc), "UNKNOWN_ERROR")
        competitor.last_scraped_at = now
        competitor.scrape_error = str(error)
        competitor.scrape_error_type = error.error_type
        db.commit()
        logger.warning("Scrape of %s failed [%s]: %s", competitor.name, error.error_type, error)
        if error is exc:
            raise
        raise error from exc

    if competitor.platform_type is None:
        competitor.platform_type = PlatformType(platform)
    competitor.last_scraped_at = now
    competitor.last_successful_scrape_at = now
    competitor.scrape_error = None
    competitor.scrape_error_type = None
    db.commit()

    return {
        "success": True,
        "competitor_id": competitor.id,
        "platform": platform,
        "vehicles_found": len(vehicles),
        "warnings": validation["warnings"],
        **stats,
    }


async def validate_url(url: str) -> Dict[str, Any]:
    """Dry run against a URL before saving a competitor."""
    try:
        html = await fetch_html(url)
    except ScraperError as exc:
        if exc.error_type == "BLOCKED_403":
            return {
                "success": True,
                "requires_playwright": True,
                "platform": None,
                "vehicles_found": 0,
                "preview": [],
                "message": "Site blocks simple requests; a headless browser is required.",
            }
        return {"success": False, "error": str(exc), "error_type": exc.error_type}

    platform = detect_platform(html)
    vehicles = parse_inventory(html, platform)
    validation = engine.validate_scrape(vehicles)
    return {
        "success": validation["valid"],
        "requires_playwright": not vehicles,
        "platform": platform,
        "vehicles_found": len(vehicles),
        "preview": vehicles[:PREVIEW_LIMIT],
        "errors": validation["errors"],
        "warnings": validation["warnings"],
    }
