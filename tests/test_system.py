"""Tests for storage monitoring and the health check."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

import system
from models import MarketSnapshot, SystemMetric


class TestStorage:
    def test_sqlite_size_from_pragmas(self, db):
        assert system.database_size_bytes(db) > 0

    @pytest.mark.parametrize("size_mb,status", [(10, "ok"), (800, "warning"), (949.9, "warning"), (950, "critical")])
    def test_status_thresholds(self, size_mb, status):
        assert system.storage_status(size_mb) == status

    def test_usage_report(self, db, make_vehicle):
        v = make_vehicle()
        oldest = datetime.utcnow() - timedelta(days=9)
        db.add_all([
            MarketSnapshot(vehicle_id=v.id, snapshot_date=oldest),
            MarketSnapshot(vehicle_id=v.id),
        ])
        db.commit()

        usage = system.storage_usage(db)
        assert usage["status"] == "ok"
        assert usage["snapshot_count"] == 2
        assert usage["table_rows"]["market_snapshots"] == 2
        assert usage["table_rows"]["competitor_inventory"] == 0
        assert usage["oldest_snapshot"] == oldest
        assert usage["max_limit_mb"] == system.STORAGE_LIMIT_MB
        assert usage["remaining_mb"] < system.STORAGE_LIMIT_MB

    def test_record_metric(self, db):
        row = system.record_storage_metric(db)
        assert row.metric_type == "storage"
        assert row.metric_unit == "MB"
        assert row.metric_data["status"] == "ok"
        assert db.query(SystemMetric).count() == 1

    def test_record_metric_logs_critical(self, db, monkeypatch, caplog):
        monkeypatch.setattr(system, "STORAGE_WARNING_MB", 0.0)
        monkeypatch.setattr(system, "STORAGE_CRITICAL_MB", 0.0)
        with caplog.at_level("ERROR", logger="system"):
            row = system.record_storage_metric(db)
        assert row.metric_data["status"] == "critical"
        assert "storage critical" in caplog.text


class TestHealth:
    def test_degraded_without_integrations(self, db, monkeypatch):
        monkeypatch.setattr(system, "AUTODEV_API_KEY", "")
        result = system.health(db, {"market_research": {"is_running": False}})
        assert result["status"] == "degraded"
        assert result["healthy"] is False
        assert result["checks"]["database"] is True
        assert result["checks"]["autodev_api"] is False
        assert result["storage_status"] == "ok"
        assert result["jobs"] == {"market_research": {"is_running": False}}

    def test_healthy_when_everything_configured(self, db, monkeypatch):
        monkeypatch.setattr(system, "AUTODEV_API_KEY", "key")
        monkeypatch.setattr(system, "SMTP_HOST", "smtp.example.com")
        monkeypatch.setattr(system, "ALERT_EMAIL_TO", "ops@example.com")
        result = system.health(db)
        assert result["status"] == "healthy"
        assert all(result["checks"].values())
