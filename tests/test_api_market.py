"""API tests for market research, alerts, jobs, history, system and VIN evaluation routes."""

from __future__ import annotations

import pytest

import market
from autodev import AutoDevClientError
from jobs import job_manager
from models import AlertSeverity, JobExecution, JobStatus, JobTrigger, MarketAlert, MarketSnapshot


@pytest.fixture()
def autodev(monkeypatch, fake_client):
    monkeypatch.setattr(market, "get_client", lambda: fake_client)
    return fake_client


@pytest.fixture()
def alert(db, make_vehicle):
    def _make(severity=AlertSeverity.warning):
        row = MarketAlert(vehicle_id=make_vehicle().id, alert_type="competitor_pricing",
                          severity=severity, title="Cheaper listing nearby")
        db.add(row)
        db.commit()
        db.refresh(row)
        return row

    return _make


class TestAnalyze:
    def test_manual_analysis_with_alerts(self, client, manager_headers, make_vehicle, autodev, make_listing):
        v = make_vehicle(price=20000.0)
        autodev.fetch_listings.return_value = ([make_listing("2T1BURHE0KC000001", 15000)], {})

        r = client.post(f"/api/market-research/vehicle/{v.id}/analyze", headers=manager_headers)

        assert r.status_code == 200
        body = r.json()
        assert body["success"] is True
        assert [a["alert_type"] for a in body["alerts"]] == ["competitor_pricing"]
        assert autodev.fetch_listings.await_args.kwargs["expansion"] == 0

    def test_body_passes_expansion_and_year_range(self, client, manager_headers, make_vehicle, autodev):
        v = make_vehicle()
        r = client.post(f"/api/market-research/vehicle/{v.id}/analyze",
                        json={"expansion": 20000, "year_range": "±1"}, headers=manager_headers)
        assert r.json()["no_results"] is True
        kwargs = autodev.fetch_listings.await_args.kwargs
        assert kwargs["expansion"] == 20000
        assert kwargs["year_range"] == "±1"

    def test_bad_year_range(self, client, manager_headers, make_vehicle, autodev):
        v = make_vehicle()
        autodev.fetch_listings.side_effect = ValueError("Invalid year range")
        r = client.post(f"/api/market-research/vehicle/{v.id}/analyze",
                        json={"year_range": "soon"}, headers=manager_headers)
        assert r.status_code == 400

    @pytest.mark.parametrize("code,status", [("MISSING_API_KEY", 400), ("HTTP_ERROR", 502)])
    def test_upstream_errors(self, client, manager_headers, make_vehicle, autodev, code, status):
        v = make_vehicle()
        autodev.fetch_listings.side_effect = AutoDevClientError("nope", code=code, status=500)
        r = client.post(f"/api/market-research/vehicle/{v.id}/analyze", headers=manager_headers)
        assert r.status_code == status

    def test_guards(self, client, viewer_headers, manager_headers, autodev):
        assert client.post("/api/market-research/vehicle/1/analyze", headers=viewer_headers).status_code == 403
        assert client.post("/api/market-research/vehicle/999/analyze", headers=manager_headers).status_code == 404

    def test_detail_and_overview(self, client, viewer_headers, make_vehicle, db):
        v = make_vehicle()
        db.add(MarketSnapshot(vehicle_id=v.id, median_price=21000.0))
        db.commit()

        detail = client.get(f"/api/market-research/vehicle/{v.id}", headers=viewer_headers).json()
        assert detail["snapshot"]["median_price"] == 21000.0
        assert client.get("/api/market-research/vehicle/999", headers=viewer_headers).status_code == 404

        overview = client.get("/api/market-research/overview", headers=viewer_headers).json()
        assert overview["summary"]["total_vehicles"] == 1

    def test_dashboard_widget(self, client, viewer_headers):
        body = client.get("/api/market-research/dashboard-widget", headers=viewer_headers).json()
        assert body["critical_count"] == 0


class TestAnalyzeAll:
    def test_queues_background_job(self, client, manager_headers, monkeypatch):
        calls = []

        async def fake_run(name, triggered_by="manual"):
            calls.append((name, triggered_by))
            return {"success": True}

        monkeypatch.setattr(job_manager, "run_job", fake_run)
        r = client.post("/api/market-research/analyze-all", headers=manager_headers)
        assert r.status_code == 202
        assert calls == [("market_research", "api")]

    def test_conflict_when_running(self, client, manager_headers, monkeypatch):
        monkeypatch.setitem(job_manager.state["market_research"], "is_running", True)
        assert client.post("/api/market-research/analyze-all", headers=manager_headers).status_code == 409


class TestAlerts:
    def test_list_and_filter(self, client, viewer_headers, alert):
        alert(AlertSeverity.critical)
        alert(AlertSeverity.info)
        body = client.get("/api/market-research/alerts", headers=viewer_headers).json()
        assert body["count"] == 2
        body = client.get("/api/market-research/alerts?severity=critical", headers=viewer_headers).json()
        assert [a["severity"] for a in body["alerts"]] == ["critical"]
        assert client.get("/api/market-research/alerts?severity=loud", headers=viewer_headers).status_code == 400

    def test_dismiss(self, client, viewer_headers, alert):
        a, b = alert(), alert()
        r = client.post(f"/api/market-research/alerts/{a.id}/dismiss", headers=viewer_headers)
        assert r.json()["dismissed"] is True
        r = client.post("/api/market-research/alerts/dismiss", json={"alert_ids": [a.id, b.id]}, headers=viewer_headers)
        assert r.json() == {"dismissed": 1}
        assert client.post("/api/market-research/alerts/999/dismiss", headers=viewer_headers).status_code == 404
        r = client.post("/api/market-research/alerts/dismiss", json={"alert_ids": []}, headers=viewer_headers)
        assert r.status_code == 422

    def test_resolve_needs_manager(self, client, viewer_headers, manager_headers, alert):
        a = alert()
        assert client.post(f"/api/market-research/alerts/{a.id}/resolve", headers=viewer_headers).status_code == 403
        assert client.post(f"/api/market-research/alerts/{a.id}/resolve", headers=manager_headers).json()["resolved"] is True


class TestJobs:
    def test_status_lists_registered_jobs(self, client, viewer_headers):
        body = client.get("/api/market-research/jobs/status", headers=viewer_headers).json()
        assert set(body) == {"market_research", "market_cleanup", "storage_monitoring", "competitor_scraper"}
        assert body["market_cleanup"]["schedule"] == "0 3 * * sun"

    def test_run_unknown(self, client, manager_headers):
        assert client.post("/api/market-research/jobs/bogus/run", headers=manager_headers).status_code == 404

    def test_run_manual(self, client, manager_headers, monkeypatch):
        async def fake_run(name, triggered_by="manual"):
            return {"success": True, "status": "success", "name": name, "triggered_by": triggered_by}

        monkeypatch.setattr(job_manager, "run_job", fake_run)
        body = client.post("/api/market-research/jobs/market_cleanup/run", headers=manager_headers).json()
        assert body["name"] == "market_cleanup"
        assert body["triggered_by"] == "manual"

    def test_history(self, client, db, viewer_headers):
        db.add(JobExecution(job_name="market_cleanup", status=JobStatus.success, triggered_by=JobTrigger.manual,
                            result_data={"deleted_snapshots": 0}))
        db.add(JobExecution(job_name="storage_monitoring", status=JobStatus.failed, error_message="boom"))
        db.commit()
        rows = client.get("/api/market-research/jobs/history?job_name=market_cleanup", headers=viewer_headers).json()
        assert len(rows) == 1
        assert rows[0]["triggered_by"] == "manual"
        assert len(client.get("/api/market-research/jobs/history", headers=viewer_headers).json()) == 2


class TestHistoryAndSystem:
    def test_history_endpoints(self, client, viewer_headers):
        assert client.get("/api/market-history/aggregate?days=7", headers=viewer_headers).json() == {"days": 7, "data": []}
        assert client.get("/api/market-history/trends", headers=viewer_headers).json()["current_count"] == 0
        assert client.get("/api/market-history/sold-analysis", headers=viewer_headers).json()["summary"]["total_sold"] == 0

    def test_storage_and_health(self, client, viewer_headers):
        storage = client.get("/api/market-system/storage", headers=viewer_headers).json()
        assert storage["status"] == "ok"
        health = client.get("/api/market-system/health", headers=viewer_headers).json()
        assert health["checks"]["database"] is True
        assert "market_research" in health["jobs"]

    def test_cleanup_admin_only(self, client, manager_headers, admin_headers):
        assert client.post("/api/market-system/cleanup", headers=manager_headers).status_code == 403
        r = client.post("/api/market-system/cleanup?retention_days=30", headers=admin_headers)
        assert r.json() == {"deleted_snapshots": 0, "retention_days": 30}


class TestVinEvaluation:
    def test_evaluate_then_cache(self, client, viewer_headers, autodev, market_listings):
        autodev.fetch_listings.return_value = (market_listings, {})
        payload = {"vin": "jtdkb20u093456789", "year": 2019, "make": "Toyota", "model": "Prius", "mileage": 40000}

        first = client.post("/api/vin-evaluation/evaluate", json=payload, headers=viewer_headers).json()
        assert first["from_cache"] is False
        second = client.post("/api/vin-evaluation/evaluate", json=payload, headers=viewer_headers).json()
        assert second["from_cache"] is True

        cache = client.get("/api/vin-evaluation/cache/jtdkb20u093456789", headers=viewer_headers).json()
        assert cache["vin"] == "JTDKB20U093456789"
        assert cache["cached"] is True

    def test_cache_miss(self, client, viewer_headers):
        body = client.get("/api/vin-evaluation/cache/JTDKB20U093456789", headers=viewer_headers).json()
        assert body == {"vin": "JTDKB20U093456789", "cached": False, "cache_age": None}

    def test_missing_key(self, client, viewer_headers, autodev):
        autodev.fetch_listings.side_effect = AutoDevClientError("AUTODEV_API_KEY is not configured.",
                                                                code="MISSING_API_KEY")
        payload = {"vin": "JTDKB20U093456789", "year": 2019, "make": "Toyota", "model": "Prius", "mileage": 1}
        assert client.post("/api/vin-evaluation/evaluate", json=payload, headers=viewer_headers).status_code == 400
