# backend/autodev.py — Auto.dev market listings client

import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from models import (
    AUTODEV_API_URL, AUTODEV_API_KEY,
    MARKET_RESEARCH_ZIP_CODE, MARKET_RESEARCH_RADIUS,
)
import engine

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30.0


class AutoDevClientError(RuntimeError):
    """Raised for Auto.dev request/config errors with structured metadata."""

    def __init__(
        self,
        message: str,
        *,
        code: str,
        status: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status = status
        self.details = details or {}


class AutoDevClient:
    """Async client for the Auto.dev listings endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        zip_code: Optional[str] = None,
        radius: Optional[int] = None,
        timeout: float = REQUEST_TIMEOUT,
    ) -> None:
        self.api_key = (api_key if api_key is not None else AUTODEV_API_KEY).strip()
        self.base_url = (base_url or AUTODEV_API_URL).rstrip("/")
        self.zip_code = zip_code or MARKET_RESEARCH_ZIP_CODE
        self.radius = radius or MARKET_RESEARCH_RADIUS
        self.timeout = timeout

    def build_search_params(
        self,
        year: int,
        make: str,
        model: str,
        mileage: int,
        expansion: int = 0,
        year_range: Optional[str] = None,
    ) -> Dict[str, Any]:
        return engine.build_search_params(
            year=year,
            make=make,
            model=model,
            mileage=mileage,
            zip_code=self.zip_code,
            radius=self.radius,
            expansion=expansion,
            year_range=year_range,
        )

    async def search(self, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        if not self.api_key:
            raise AutoDevClientError("AUTODEV_API_KEY is not configured.", code="MISSING_API_KEY")

        url = f"{self.base_url}/listings"
        headers = {"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(url, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise AutoDevClientError(
                f"Auto.dev request failed: {exc}", code="REQUEST_FAILED", details={"url": url}
            ) from exc

        if resp.status_code >= 400:
            message = f"Auto.dev request failed with HTTP {resp.status_code}."
            try:
                body = resp.json()
                if isinstance(body, dict):
                    message = str(body.get("error") or body.get("message") or message)
            except ValueError:
                body = {"raw": resp.text}
            raise AutoDevClientError(
                message, code="HTTP_ERROR", status=resp.status_code, details={"body": body}
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise AutoDevClientError(
                "Auto.dev returned a non-JSON response.", code="INVALID_RESPONSE", status=resp.status_code
            ) from exc

        listings = data.get("data") if isinstance(data, dict) else None
        return listings if isinstance(listings, list) else []

    async def fetch_listings(
        self,
        year: int,
        make: str,
        model: str,
        mileage: int,
        expansion: int = 0,
        year_range: Optional[str] = None,
    ) -> Tuple[List[Dict[str, Any]], Dict[str, Any]]:
        params = self.build_search_params(year, make, model, mileage, expansion, year_range)
        logger.info(
            "Fetching Auto.dev listings for %s %s %s (mileage %s, expansion %s)",
            year, make, model, params["retailListing.mileage"], expansion,
        )
        listings = await self.search(params)
        logger.info("Auto.dev returned %d listings for %s %s %s", len(listings), year, make, model)
        return listings, params


def get_client() -> AutoDevClient:
    return AutoDevClient()
