"""API tests for competitor management, scraping and reporting routes."""

from __future__ import annotations

from datetime import datetime
from unittest.mock import AsyncMock

import pytest

import scraper
from scraper import ScraperError
from models import Competitor, CompetitorInventory, CompetitorMetrics, CompetitorVehicleStatus

from test_scraper import DEALERSYNC_HTML


@pytest.fixture()
def competitor(client, manager_headers):
    r = client.post("/api/competitors", json={
        "name": "Valley Motors",
        "website_url": "https://valley.example.com",
        "inventory_url": "https://valley.example.com/inventory",
    }, headers=manager_headers)
    assert r.status_code == 201
    return r.json()


class TestCrud:
    def test_create_defaults(self, competitor):
        assert competitor["platform_type"] is None
        assert competitor["scraper_config"] == {}
        assert competitor["active"] is True

    def test_viewer_cannot_create(self, client, viewer_headers):
        r = client.post("/api/competitors", json={"name": "X", "website_url": "a", "inventory_url": "b"},
                        headers=viewer_headers)
        assert r.status_code == 403

    def test_list_and_get(self, client, competitor, viewer_headers):
        listed = client.get("/api/competitors", headers=viewer_headers).json()["competitors"]
        assert [c["name"] for c in listed] == ["Valley Motors"]
        assert listed[0]["stats"]["total_inventory"] == 0

        one = client.get(f"/api/competitors/{competitor['id']}", headers=viewer_headers).json()
        assert one["stats"]["monthly_sales"] == 0
        assert client.get("/api/competitors/missing", headers=viewer_headers).status_code == 404

    def test_update(self, client, competitor, manager_headers):
        r = client.put(f"/api/competitors/{competitor['id']}",
                       json={"platform_type": "dealersync", "active": False}, headers=manager_headers)
        assert r.json()["platform_type"] == "dealersync"
        assert r.json()["active"] is False

        bad = client.put(f"/api/competitors/{competitor['id']}", json={"platform_type": "wix"}, headers=manager_headers)
        assert bad.status_code == 422

    def test_update_rejects_null_name(self, client, competitor, manager_headers):
        r = client.put(f"/api/competitors/{competitor['id']}", json={"name": None}, headers=manager_headers)
        assert r.status_code == 422
        one = client.get(f"/api/competitors/{competitor['id']}", headers=manager_headers).json()
        assert one["name"] == "Valley Motors"

    def test_delete_cascades(self, client, db, competitor, manager_headers):
        db.add(CompetitorInventory(competitor_id=competitor["id"], vin="4T1B11HK5KU123456", current_price=1.0))
        db.commit()
        assert client.delete(f"/api/competitors/{competitor['id']}", headers=manager_headers).status_code == 200
        db.expire_all()
        assert db.query(Competitor).count() == 0
        assert db.query(CompetitorInventory).count() == 0


class TestScrape:
    def test_scrape(self, client, competitor, manager_headers, monkeypatch):
        monkeypatch.setattr(scraper, "fetch_html", AsyncMock(return_value=DEALERSYNC_HTML))
        r = client.post(f"/api/competitors/{competitor['id']}/scrape", headers=manager_headers)
        assert r.status_code == 200
        assert r.json()["added"] == 1

        inv = client.get(f"/api/competitors/{competitor['id']}/inventory", headers=manager_headers).json()
        assert inv["vehicles"][0]["vin"] == "2HGFC2F59JH000002"

    def test_scrape_failure_detail(self, client, competitor, manager_headers, monkeypatch):
        monkeypatch.setattr(scraper, "fetch_html", AsyncMock(side_effect=ScraperError("blocked", "BLOCKED_403")))
        r = client.post(f"/api/competitors/{competitor['id']}/scrape", headers=manager_headers)
        assert r.status_code == 502
        assert r.json()["detail"] == {"message": "blocked", "error_type": "BLOCKED_403"}

    def test_validate(self, client, manager_headers, monkeypatch):
        monkeypatch.setattr(scraper, "fetch_html", AsyncMock(return_value=DEALERSYNC_HTML))
        r = client.post("/api/competitors/validate", json={"url": "https://x.example.com"}, headers=manager_headers)
        assert r.json()["platform"] == "dealersync"
        assert r.json()["vehicles_found"] == 1


class TestReporting:
    @pytest.fixture()
    def stocked(self, db, competitor):
        now = datetime.utcnow()
        db.add_all([
            CompetitorInventory(competitor_id=competitor["id"], vin="4T1B11HK5KU123456", year=2019, make="Toyota",
                                model="Camry", current_price=21000.0, initial_price=22000.0),
            CompetitorInventory(competitor_id=competitor["id"], stock_number="Z1", year=2018, make="Honda",
                                model="Civic", current_price=15000.0, initial_price=15000.0,
                                status=CompetitorVehicleStatus.sold, sold_at=now, days_on_market=12),
        ])
        db.add(CompetitorMetrics(competitor_id=competitor["id"], date=now.date(), total_inventory=1))
        db.commit()
        return competitor

    def test_inventory_validation(self, client, stocked, viewer_headers):
        base = f"/api/competitors/{stocked['id']}/inventory"
        assert client.get(f"{base}?status=gone", headers=viewer_headers).status_code == 400
        assert client.get(f"{base}?sort_by=random", headers=viewer_headers).status_code == 400
        assert client.get(f"{base}?status=all", headers=viewer_headers).json()["pagination"]["total"] == 2

    def test_filters(self, client, stocked, viewer_headers):
        body = client.get(f"/api/competitors/{stocked['id']}/inventory/filters?status=sold", headers=viewer_headers).json()
        assert body["makes"] == [{"value": "Honda", "count": 1}]

    def test_sales(self, client, stocked, viewer_headers):
        body = client.get(f"/api/competitors/{stocked['id']}/sales", headers=viewer_headers).json()
        assert body["count"] == 1
        assert body["avg_days_on_market"] == 12.0

        summary = client.get(f"/api/competitors/{stocked['id']}/sales/summary?months=2", headers=viewer_headers).json()
        assert len(summary["months"]) == 2
        assert summary["total_sold"] == 1

    def test_metrics(self, client, stocked, viewer_headers):
        rows = client.get(f"/api/competitors/{stocked['id']}/metrics", headers=viewer_headers).json()
        assert len(rows) == 1
        assert rows[0]["total_inventory"] == 1
