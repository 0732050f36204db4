"""Tests for the pure market math in engine.py."""

from __future__ import annotations

from datetime import date, datetime

import pytest

import engine


class TestSearchParams:
    def test_mileage_spread_by_band(self):
        assert engine.mileage_range(30000) == {"min": 20000, "max": 40000}
        assert engine.mileage_range(80000) == {"min": 60000, "max": 100000}
        assert engine.mileage_range(150000) == {"min": 120000, "max": 180000}

    def test_mileage_floor_and_expansion(self):
        assert engine.mileage_range(2000)["min"] == engine.MIN_MILEAGE_FLOOR
        assert engine.mileage_range(30000, expansion=10000) == {"min": 10000, "max": 50000}

    @pytest.mark.parametrize("raw,expected", [("±2", 2), ("+-1", 1), ("3", 3), (None, None), ("  ", None)])
    def test_parse_year_range(self, raw, expected):
        assert engine.parse_year_range(raw) == expected

    def test_parse_year_range_rejects_garbage(self):
        with pytest.raises(ValueError):
            engine.parse_year_range("two years")

    def test_build_search_params(self):
        params = engine.build_search_params(2020, "Honda", "Accord", 30000, "95814", 150)
        assert params["vehicle.year"] == 2020
        assert params["vehicle.make"] == "Honda"
        assert params["retailListing.mileage"] == "20000-40000"
        assert params["zip"] == "95814"
        assert params["distance"] == 150
        assert params["limit"] == engine.DEFAULT_SEARCH_LIMIT

    def test_build_search_params_year_span(self):
        params = engine.build_search_params(2020, "Honda", "Accord", 30000, "95814", 150, year_range="±2")
        assert params["vehicle.year"] == "2018-2022"


class TestListingCleanup:
    def test_dedupe_keeps_cheapest(self, make_listing):
        listings = [
            make_listing("VIN00000000000001", 21000),
            make_listing("VIN00000000000001", 20000),
            make_listing("VIN00000000000002", 25000),
        ]
        unique, dupes = engine.deduplicate_listings(listings)
        assert len(unique) == 2
        assert len(dupes) == 1
        kept = [l for l in unique if engine.listing_vin(l) == "VIN00000000000001"][0]
        assert engine.listing_price(kept) == 20000

    def test_dedupe_tie_keeps_most_recent(self, make_listing):
        older = make_listing("VIN00000000000001", 20000, dealer="Old", listed="2024-01-01T00:00:00Z")
        newer = make_listing("VIN00000000000001", 20000, dealer="New", listed="2024-03-01T00:00:00Z")
        unique, dupes = engine.deduplicate_listings([older, newer])
        assert engine.listing_retail(unique[0])["dealerName"] == "New"
        assert dupes == [older]

    def test_dedupe_drops_listings_without_vin(self, make_listing):
        no_vin = make_listing(None, 20000)
        unique, dupes = engine.deduplicate_listings([no_vin])
        assert unique == [] and dupes == []

    def test_exclude_own_inventory_case_insensitive(self, make_listing):
        listings = [make_listing("vin00000000000001", 1), make_listing("VIN00000000000002", 2)]
        out = engine.exclude_own_inventory(listings, ["VIN00000000000001"])
        assert [engine.listing_vin(l) for l in out] == ["VIN00000000000002"]

    def test_market_prices_skips_blank_and_zero(self, make_listing):
        listings = [make_listing("A" * 17, 0), make_listing("B" * 17, ""), make_listing("C" * 17, "19500")]
        assert engine.market_prices(listings) == [19500.0]


class TestPriceStats:
    def test_upper_middle_median_on_even_count(self, make_listing):
        listings = [make_listing(f"VIN0000000000000{i}", p) for i, p in enumerate([10, 20, 30, 40])]
        stats = engine.price_stats(listings)
        assert stats["median"] == 30
        assert stats["average"] == 25
        assert stats["min"] == 10 and stats["max"] == 40
        assert stats["count"] == 4

    def test_empty_stats(self):
        assert engine.price_stats([]) == {"median": None, "average": None, "min": None, "max": None, "count": 0}

    def test_percentile_rank(self):
        assert engine.percentile_rank(25, [10, 20, 30, 40]) == 50.0
        assert engine.percentile_rank(5, [10, 20]) == 0.0
        assert engine.percentile_rank(5, []) is None

    @pytest.mark.parametrize("pct,position", [
        (10.0, "competitive"), (-10.0, "competitive"), (10.01, "above_market"),
        (-10.01, "below_market"), (None, None),
    ])
    def test_competitive_position_band(self, pct, position):
        assert engine.competitive_position(pct) == position

    def test_compute_metrics(self):
        stats = {"median": 20000.0}
        now = datetime(2024, 5, 11)
        m = engine.compute_metrics(23000.0, stats, [18000, 20000, 22000, 24000], datetime(2024, 5, 1), now)
        assert m["price_delta"] == 3000.0
        assert m["price_delta_percent"] == 15.0
        assert m["competitive_position"] == "above_market"
        assert m["percentile_rank"] == 75.0
        assert m["cheaper_count"] == 3
        assert m["more_expensive_count"] == 1
        assert m["days_in_market"] == 10

    def test_compute_metrics_without_median(self):
        m = engine.compute_metrics(23000.0, {"median": None}, [])
        assert m["price_delta"] is None
        assert m["competitive_position"] is None

    def test_needs_expansion(self):
        assert engine.needs_expansion(5, 0, manual=False) is True
        assert engine.needs_expansion(5, 0, manual=True) is False
        assert engine.needs_expansion(10, 0, manual=False) is False
        assert engine.needs_expansion(5, engine.MAX_EXPANSION, manual=False) is False

    def test_days_between_mixes_date_and_datetime(self):
        assert engine.days_between(date(2024, 1, 1), datetime(2024, 1, 31, 12)) == 30
        assert engine.days_between(None) is None


class TestPlatforms:
    @pytest.mark.parametrize("url,name", [
        ("https://www.cars.com/vehicledetail/x/", "Cars.com"),
        ("https://www.autotrader.com/cars-for-sale/x", "AutoTrader"),
        ("https://shop.valleymotors.com/used/x", "shop.valleymotors.com"),
        ("", None),
    ])
    def test_parse_platform(self, url, name):
        assert engine.parse_platform(url) == name

    def test_extract_platform_data_flags_own(self, make_listing):
        rows = engine.extract_platform_data(
            [make_listing("VIN00000000000001", 20000), make_listing("VIN00000000000002", 21000)],
            ["vin00000000000002"],
        )
        assert [r["is_own_vehicle"] for r in rows] == [False, True]
        assert rows[0]["platform"] == "Cars.com"

    def test_sample_listings_masks_vin(self, make_listing):
        sample = engine.sample_listings([make_listing("VIN00000000000123", 20000)])
        assert sample[0]["vin_last4"] == "0123"
        assert sample[0]["location"] == "Sacramento, CA"


class TestTrendsAndBuckets:
    def test_percent_change(self):
        assert engine.percent_change(100, 110) == 10.0
        assert engine.percent_change(0, 110) is None
        assert engine.percent_change(None, 110) is None

    def test_safe_mean(self):
        assert engine.safe_mean([1, None, 2]) == 1.5
        assert engine.safe_mean([]) is None

    @pytest.mark.parametrize("avg,trend", [(None, "stable"), (30, "up"), (50, "stable"), (70, "down")])
    def test_market_trend(self, avg, trend):
        assert engine.market_trend(avg) == trend

    def test_price_buckets_inclusive_edges(self):
        assert engine.price_buckets([10000, 10001, 20000, 30000, 30001, None]) == {
            "under_10k": 1, "10k_20k": 2, "20k_30k": 1, "over_30k": 1,
        }


class TestScrapeQuality:
    def test_completeness_score(self):
        full = {f: "x" for f in engine.COMPLETENESS_FIELDS}
        assert engine.completeness_score(full) == 100
        assert engine.completeness_score({"vin": "x", "price": 1}) == 25

    def test_data_warnings(self):
        assert engine.data_warnings({}) == ["Missing mileage", "Missing year", "Missing make"]
        assert engine.data_warnings({"mileage": 1, "year": 2020, "make": "Ford"}) == []

    def test_validate_scrape_errors_and_warnings(self):
        assert engine.validate_scrape([])["errors"] == ["No vehicles found"]
        no_ids = engine.validate_scrape([{"price": 1}])
        assert not no_ids["valid"]
        assert "No vehicles have a VIN or stock number" in no_ids["errors"]

        mixed = engine.validate_scrape([
            {"vin": "A", "price": 1}, {"price": 2}, {"price": 3}, {"stock_number": "S", "price": 4},
        ])
        assert mixed["valid"]
        assert len(mixed["warnings"]) == 0

        sparse = engine.validate_scrape([{"vin": "A", "price": 1}, {}, {}])
        assert sparse["valid"]
        assert len(sparse["warnings"]) == 2

    def test_month_bounds_rollover(self):
        assert engine.month_bounds(2024, 12) == (datetime(2024, 12, 1), datetime(2025, 1, 1))
        assert engine.month_label(date(2024, 3, 1)) == "Mar 2024"
