"""Tests for the job manager, execution history and the batch jobs."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

import jobs
import scraper
from scraper import ScraperError
from models import Competitor, JobExecution, JobStatus, JobTrigger


@pytest.fixture()
def manager(session_factory):
    return jobs.JobManager(session_factory)


class TestExecutionHistory:
    def test_start_and_finish(self, db):
        row = jobs.start_execution(db, "market_cleanup", "manual")
        assert row.status == JobStatus.running
        assert row.triggered_by == JobTrigger.manual

        jobs.finish_execution(db, row, JobStatus.success, {"deleted_snapshots": 3})
        assert row.completed_at is not None
        assert row.duration_ms >= 0
        assert jobs.latest_execution(db, "market_cleanup").result_data == {"deleted_snapshots": 3}

    def test_history_filter_and_limit(self, db):
        for name in ("a", "b", "a"):
            jobs.start_execution(db, name)
        assert len(jobs.execution_history(db)) == 3
        assert len(jobs.execution_history(db, "a")) == 2
        assert len(jobs.execution_history(db, limit=1)) == 1

    @pytest.mark.parametrize("total,failed,status", [
        (0, 0, JobStatus.success), (3, 0, JobStatus.success), (3, 1, JobStatus.partial), (3, 3, JobStatus.failed),
    ])
    def test_batch_status(self, total, failed, status):
        assert jobs.batch_status(total, failed) == status


class TestJobManager:
    async def test_run_records_success(self, manager, db):
        manager.register("demo", AsyncMock(return_value={"processed": 4}), "0 3 * * *")

        result = await manager.run_job("demo")

        assert result == {"success": True, "status": "success", "processed": 4}
        assert manager.state["demo"]["is_running"] is False
        assert manager.state["demo"]["last_run"] is not None
        row = db.query(JobExecution).one()
        assert row.status == JobStatus.success
        assert row.result_data == {"processed": 4}

    async def test_partial_status_passes_through(self, manager, db):
        manager.register("demo", AsyncMock(return_value={"status": JobStatus.partial, "failed": 1}), "0 3 * * *")
        result = await manager.run_job("demo", "api")
        assert result["status"] == "partial"
        row = db.query(JobExecution).one()
        assert row.status == JobStatus.partial
        assert row.triggered_by == JobTrigger.api

    async def test_failure_is_recorded(self, manager, db):
        manager.register("demo", AsyncMock(side_effect=RuntimeError("boom")), "0 3 * * *")
        result = await manager.run_job("demo")
        assert result == {"success": False, "error": "boom"}
        row = db.query(JobExecution).one()
        assert row.status == JobStatus.failed
        assert row.error_message == "boom"
        assert manager.state["demo"]["is_running"] is False

    async def test_refuses_overlapping_run(self, manager, db):
        func = AsyncMock(return_value={})
        manager.register("demo", func, "0 3 * * *")
        manager.state["demo"]["is_running"] = True

        result = await manager.run_job("demo")

        assert result == {"success": False, "message": "Job already running"}
        func.assert_not_awaited()
        assert db.query(JobExecution).count() == 0

    async def test_unknown_job(self, manager):
        with pytest.raises(KeyError):
            await manager.run_job("nope")

    def test_status_without_scheduler(self, manager):
        manager.register("demo", AsyncMock(), "0 3 * * *", enabled=False)
        status = manager.get_status()
        assert status["demo"]["enabled"] is False
        assert status["demo"]["schedule"] == "0 3 * * *"
        assert status["demo"]["next_run"] is None
        assert status["demo"]["is_running"] is False

    def test_default_registry(self, session_factory):
        manager = jobs.build_job_manager(session_factory)
        assert set(manager.jobs) == {"market_research", "market_cleanup", "storage_monitoring", "competitor_scraper"}
        assert manager.jobs["market_cleanup"].schedule == "0 3 * * sun"


class TestBatchJobs:
    async def test_market_research_counts(self, db, monkeypatch):
        monkeypatch.setattr(jobs.market, "analyze_all_vehicles", AsyncMock(return_value=[
            {"vehicle_id": 1, "success": True},
            {"vehicle_id": 2, "success": True, "no_results": True},
            {"vehicle_id": 3, "success": False, "error": "x"},
        ]))
        detected = []
        monkeypatch.setattr(jobs.alerts, "detect_all_alerts", lambda db, ids: detected.extend(ids) or ["a", "b"])

        result = await jobs.market_research_job(db)

        assert detected == [1]
        assert result == {
            "status": JobStatus.partial, "vehicles": 3, "successful": 2,
            "failed": 1, "no_results": 1, "alerts": 2,
        }

    async def test_competitor_scraper_collects_failures(self, db, monkeypatch):
        db.add_all([
            Competitor(name="Bravo Autos", website_url="https://b.example.com", inventory_url="https://b.example.com/i"),
            Competitor(name="Alpha Cars", website_url="https://a.example.com", inventory_url="https://a.example.com/i"),
            Competitor(name="Zulu Motors", website_url="https://z.example.com", inventory_url="https://z.example.com/i",
                       active=False),
        ])
        db.commit()
        seen = []

        async def fake_scrape(session, competitor_id):
            name = session.get(Competitor, competitor_id).name
            seen.append(name)
            if name == "Bravo Autos":
                raise ScraperError("blocked", "BLOCKED_403")
            return {"added": 2, "updated": 1, "sold": 1, "errors": 0}

        monkeypatch.setattr(scraper, "scrape_competitor", fake_scrape)

        result = await jobs.competitor_scraper_job(db)

        assert seen == ["Alpha Cars", "Bravo Autos"]
        assert result["status"] == JobStatus.partial
        assert result["succeeded"] == 1
        assert result["added"] == 2 and result["sold"] == 1
        assert result["failures"][0]["error_type"] == "BLOCKED_403"

    async def test_cleanup_job(self, db):
        result = await jobs.market_cleanup_job(db)
        assert result["deleted_snapshots"] == 0
