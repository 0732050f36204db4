# backend/engine.py — Market Math
# All pure computation: search ranges, listing dedupe, price stats,
# percentile/position classification, platform parsing, trend helpers,
# competitor scrape completeness + validation.

import re
from datetime import date, datetime
from typing import List, Optional, Dict, Any, Tuple, Iterable
from urllib.parse import urlparse


# ---------------------------------------------------------------------------
# CONSTANTS & DEFAULTS
# ---------------------------------------------------------------------------
DEFAULT_SEARCH_LIMIT = 100
COMPETITIVE_BAND_PCT = 10.0  # +/- percent around the median counted as competitive

MIN_MARKET_RESULTS = 10
MAX_EXPANSION = 50000
EXPANSION_STEP = 10000
MIN_MILEAGE_FLOOR = 500

SAMPLE_LISTING_LIMIT = 50

# Listing host -> display platform name
PLATFORM_NAMES = {
    "carsforsale.com": "CarsForSale.com",
    "cars.com": "Cars.com",
    "autotrader.com": "AutoTrader",
    "cargurus.com": "CarGurus",
    "truecar.com": "TrueCar",
    "edmunds.com": "Edmunds",
    "carmax.com": "CarMax",
    "carvana.com": "Carvana",
    "vroom.com": "Vroom",
    "facebook.com": "Facebook Marketplace",
    "craigslist.org": "Craigslist",
}

# Fields scored for competitor listing completeness
COMPLETENESS_FIELDS = ["vin", "stock_number", "year", "make", "model", "price", "mileage", "trim"]

_YEAR_RANGE_RE = re.compile(r"^\s*(?:±|\+/?-)?\s*(\d{1,2})\s*$")


# ---------------------------------------------------------------------------
# HELPER: Listing accessors (Auto.dev listing shape)
# ---------------------------------------------------------------------------
def listing_vin(listing: Dict[str, Any]) -> Optional[str]:
    return ((listing.get("vehicle") or {}).get("vin")) or None


def listing_retail(listing: Dict[str, Any]) -> Dict[str, Any]:
    return listing.get("retailListing") or {}


def listing_price(listing: Dict[str, Any]) -> Optional[float]:
    price = listing_retail(listing).get("price")
    if price in (None, ""):
        return None
    try:
        return float(price)
    except (TypeError, ValueError):
        return None


def _parse_listed_date(value: Any) -> datetime:
    if not value:
        return datetime.min
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        return datetime.min


# ---------------------------------------------------------------------------
# 1) SEARCH PARAMETERS
# ---------------------------------------------------------------------------
def mileage_range(mileage: int, expansion: int = 0) -> Dict[str, int]:
    """Mileage window around a vehicle; wider for higher-mileage cars."""
    mileage = int(mileage or 0)
    if mileage <= 50000:
        spread = 10000
    elif mileage <= 100000:
        spread = 20000
    else:
        spread = 30000
    spread += int(expansion or 0)

    return {
        "min": max(MIN_MILEAGE_FLOOR, mileage - spread),
        "max": mileage + spread,
    }


def parse_year_range(year_range: Optional[str]) -> Optional[int]:
    """'±2', '+-2' or '2' -> 2. None/blank -> None."""
    if year_range is None or not str(year_range).strip():
        return None
    match = _YEAR_RANGE_RE.match(str(year_range))
    if not match:
        raise ValueError(f"Invalid year range '{year_range}'. Use a value like ±1, ±2 or ±3.")
    return int(match.group(1))


def build_search_params(
    year: int,
    make: str,
    model: str,
    mileage: int,
    zip_code: str,
    radius: int,
    expansion: int = 0,
    year_range: Optional[str] = None,
) -> Dict[str, Any]:
    params: Dict[str, Any] = {
        "vehicle.make": make,
        "vehicle.model": model,
        "zip": zip_code,
        "distance": radius,
        "limit": DEFAULT_SEARCH_LIMIT,
        "page": 1,
    }

    span = parse_year_range(year_range)
    if span:
        params["vehicle.year"] = f"{year - span}-{year + span}"
    else:
        params["vehicle.year"] = year

    rng = mileage_range(mileage, expansion)
    params["retailListing.mileage"] = f"{rng['min']}-{rng['max']}"
    return params


# ---------------------------------------------------------------------------
# 2) LISTING CLEANUP
# ---------------------------------------------------------------------------
def deduplicate_listings(
    listings: Iterable[Dict[str, Any]],
) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """
    Collapse listings that share a VIN (the same car on several sites).
    Keeps the cheapest; on a price tie keeps the most recently listed.
    Listings without a VIN are dropped.
    """
    by_vin: Dict[str, Dict[str, Any]] = {}
    duplicates: List[Dict[str, Any]] = []

    for listing in listings:
        vin = listing_vin(listing)
        if not vin:
            continue

        existing = by_vin.get(vin)
        if existing is None:
            by_vin[vin] = listing
            continue

        existing_price = listing_price(existing) or float("inf")
        current_price = listing_price(listing) or float("inf")

        if current_price < existing_price:
            duplicates.append(existing)
            by_vin[vin] = listing
        elif current_price == existing_price:
            existing_date = _parse_listed_date(listing_retail(existing).get("listedDate"))
            current_date = _parse_listed_date(listing_retail(listing).get("listedDate"))
            if current_date > existing_date:
                duplicates.append(existing)
                by_vin[vin] = listing
            else:
                duplicates.append(listing)
        else:
            duplicates.append(listing)

    return list(by_vin.values()), duplicates


def exclude_own_inventory(listings: Iterable[Dict[str, Any]], own_vins: Iterable[str]) -> List[Dict[str, Any]]:
    own = {v.upper() for v in own_vins if v}
    return [l for l in listings if (listing_vin(l) or "").upper() not in own]


def market_prices(listings: Iterable[Dict[str, Any]]) -> List[float]:
    return [p for p in (listing_price(l) for l in listings) if p and p > 0]


# ---------------------------------------------------------------------------
# 3) PRICE STATISTICS
# ---------------------------------------------------------------------------
def price_stats(listings: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    prices = sorted(market_prices(listings))
    if not prices:
        return {"median": None, "average": None, "min": None, "max": None, "count": 0}

    # Upper-middle element on even counts, matching stored history.
    median = prices[len(prices) // 2]
    return {
        "median": round(median, 2),
        "average": round(sum(prices) / len(prices), 2),
        "min": round(prices[0], 2),
        "max": round(prices[-1], 2),
        "count": len(prices),
    }


def percentile_rank(our_price: float, prices: List[float]) -> Optional[float]:
    """Share of the market priced below us, 0-100."""
    if not prices:
        return None
    below = sum(1 for p in prices if p < our_price)
    return round(below / len(prices) * 100, 2)


def competitive_position(delta_pct: Optional[float]) -> Optional[str]:
    if delta_pct is None:
        return None
    if delta_pct > COMPETITIVE_BAND_PCT:
        return "above_market"
    if delta_pct < -COMPETITIVE_BAND_PCT:
        return "below_market"
    return "competitive"


def days_between(start: Optional[Any], end: Optional[Any] = None) -> Optional[int]:
    if start is None:
        return None
    end = end or datetime.utcnow()
    if isinstance(start, datetime) and not isinstance(end, datetime):
        end = datetime.combine(end, datetime.min.time())
    if isinstance(end, datetime) and not isinstance(start, datetime):
        start = datetime.combine(start, datetime.min.time())
    return max(0, (end - start).days)


def compute_metrics(
    our_price: float,
    stats: Dict[str, Any],
    prices: List[float],
    date_added: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    median = stats.get("median")
    price_delta = None
    price_delta_percent = None
    if median:
        price_delta = round(our_price - median, 2)
        price_delta_percent = round(price_delta / median * 100, 2)

    return {
        "our_price": our_price,
        "price_delta": price_delta,
        "price_delta_percent": price_delta_percent,
        "percentile_rank": percentile_rank(our_price, prices),
        "cheaper_count": sum(1 for p in prices if p < our_price),
        "more_expensive_count": sum(1 for p in prices if p > our_price),
        "competitive_position": competitive_position(price_delta_percent),
        "days_in_market": days_between(date_added, now),
    }


def needs_expansion(result_count: int, expansion: int, manual: bool) -> bool:
    return result_count < MIN_MARKET_RESULTS and expansion < MAX_EXPANSION and not manual


# ---------------------------------------------------------------------------
# 4) PLATFORMS
# ---------------------------------------------------------------------------
def parse_platform(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    try:
        host = urlparse(url).hostname
    except ValueError:
        return None
    if not host:
        return None
    host = host.lower()
    if host.startswith("www."):
        host = host[4:]

    for domain, name in PLATFORM_NAMES.items():
        if host == domain or host.endswith("." + domain):
            return name
    return host


def extract_platform_data(listings: Iterable[Dict[str, Any]], own_vins: Iterable[str]) -> List[Dict[str, Any]]:
    own = {v.upper() for v in own_vins if v}
    rows = []
    for listing in listings:
        vin = listing_vin(listing)
        retail = listing_retail(listing)
        url = retail.get("vdpUrl") or retail.get("vdp")
        if not vin or not url:
            continue
        platform = parse_platform(url)
        if not platform:
            continue
        rows.append({
            "vin": vin.upper(),
            "platform": platform,
            "is_own_vehicle": vin.upper() in own,
            "price": listing_price(listing),
            "dealer_name": retail.get("dealerName"),
            "listing_url": url,
        })
    return rows


def sample_listings(listings: List[Dict[str, Any]], limit: int = SAMPLE_LISTING_LIMIT) -> List[Dict[str, Any]]:
    out = []
    for listing in listings[:limit]:
        vin = listing_vin(listing)
        retail = listing_retail(listing)
        vehicle = listing.get("vehicle") or {}
        location = None
        if retail.get("city") and retail.get("state"):
            location = f"{retail['city']}, {retail['state']}"
        out.append({
            "vin_last4": vin[-4:] if vin else None,
            "price": listing_price(listing),
            "mileage": retail.get("miles") or vehicle.get("mileage"),
            "trim": vehicle.get("trim"),
            "location": location,
            "url": retail.get("vdp") or retail.get("vdpUrl"),
        })
    return out


# ---------------------------------------------------------------------------
# 5) TREND HELPERS
# ---------------------------------------------------------------------------
def percent_change(old: Optional[float], new: Optional[float]) -> Optional[float]:
    if old in (None, 0) or new is None:
        return None
    return round((new - old) / old * 100, 2)


def safe_mean(values: Iterable[Optional[float]], digits: int = 2) -> Optional[float]:
    vals = [v for v in values if v is not None]
    if not vals:
        return None
    return round(sum(vals) / len(vals), digits)


def market_trend(avg_percentile: Optional[float]) -> str:
    """Low average rank means we sit under the market."""
    if avg_percentile is None:
        return "stable"
    if avg_percentile < 40:
        return "up"
    if avg_percentile > 60:
        return "down"
    return "stable"


def price_bucket(price: Optional[float]) -> Optional[str]:
    if price is None:
        return None
    if price <= 10000:
        return "under_10k"
    if price <= 20000:
        return "10k_20k"
    if price <= 30000:
        return "20k_30k"
    return "over_30k"


def price_buckets(prices: Iterable[Optional[float]]) -> Dict[str, int]:
    buckets = {"under_10k": 0, "10k_20k": 0, "20k_30k": 0, "over_30k": 0}
    for p in prices:
        key = price_bucket(p)
        if key:
            buckets[key] += 1
    return buckets


# ---------------------------------------------------------------------------
# 6) COMPETITOR SCRAPE QUALITY
# ---------------------------------------------------------------------------
def completeness_score(vehicle: Dict[str, Any]) -> int:
    filled = sum(1 for f in COMPLETENESS_FIELDS if vehicle.get(f) not in (None, ""))
    return round(filled / len(COMPLETENESS_FIELDS) * 100)


def data_warnings(vehicle: Dict[str, Any]) -> List[str]:
    warnings = []
    if not vehicle.get("mileage"):
        warnings.append("Missing mileage")
    if not vehicle.get("year"):
        warnings.append("Missing year")
    if not vehicle.get("make"):
        warnings.append("Missing make")
    return warnings


def validate_scrape(vehicles: List[Dict[str, Any]]) -> Dict[str, Any]:
    errors: List[str] = []
    warnings: List[str] = []

    if not vehicles:
        return {"valid": False, "errors": ["No vehicles found"], "warnings": []}

    total = len(vehicles)
    with_id = sum(1 for v in vehicles if v.get("vin") or v.get("stock_number"))
    with_price = sum(1 for v in vehicles if v.get("price"))

    if with_id == 0:
        errors.append("No vehicles have a VIN or stock number")
    elif with_id / total < 0.5:
        warnings.append(f"Only {with_id}/{total} vehicles have a VIN or stock number")

    if with_price == 0:
        errors.append("No vehicles have a price")
    elif with_price / total < 0.8:
        warnings.append(f"Only {with_price}/{total} vehicles have a price")

    return {"valid": not errors, "errors": errors, "warnings": warnings}


def month_bounds(year: int, month: int) -> Tuple[datetime, datetime]:
    start = datetime(year, month, 1)
    if month == 12:
        end = datetime(year + 1, 1, 1)
    else:
        end = datetime(year, month + 1, 1)
    return start, end


def month_label(d: date) -> str:
    return d.strftime("%b %Y")
