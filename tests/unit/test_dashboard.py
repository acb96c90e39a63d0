"""Unit tests for the calibration dashboard."""

import json
import tempfile
from datetime import timedelta
from pathlib import Path

import pytest

from tradecal.calibration import compute_dashboard, parse_filter_tokens
from tradecal.reporting import write_dashboard_report


class TestFilters:
    """Tests for filter token parsing and application."""

    def test_parse_tokens(self):
        filters = parse_filter_tokens(["sf", "Dynasty", "scoringType=ppr", "bogus", ""])
        assert filters == {"format": "sf", "mode": "dynasty", "scoring": "ppr"}

    def test_segment_filter(self, make_rows, as_of):
        dashboard = compute_dashboard(make_rows(n=200), filters={"segment": "DYN_SF"}, as_of=as_of)
        assert dashboard["summary_cards"]["offer_count"] == 100
        assert [row["segment"] for row in dashboard["segments"]] == ["DYN_SF"]

    def test_token_filters_match_segment_fields(self, make_rows, as_of):
        filters = parse_filter_tokens(["1qb", "redraft"])
        dashboard = compute_dashboard(make_rows(n=200), filters=filters, as_of=as_of)
        assert dashboard["summary_cards"]["offer_count"] == 100
        assert dashboard["segments"][0]["segment"] == "RED_1QB"

    def test_unknown_attribute_matches_nothing(self, make_rows, as_of):
        dashboard = compute_dashboard(make_rows(n=50), filters={"venue": "home"}, as_of=as_of)
        cards = dashboard["summary_cards"]
        assert cards["offer_count"] == 0
        assert cards["ece"] is None
        assert cards["mean_predicted"] is None
        assert all(bucket["count"] == 0 for bucket in dashboard["buckets"])


class TestBuckets:
    """Tests for reliability buckets and headline cards."""

    def test_sparse_buckets_are_flagged_not_dropped(self, make_rows, as_of):
        dashboard = compute_dashboard(make_rows(n=15), as_of=as_of)
        buckets = dashboard["buckets"]
        assert len(buckets) == 10
        assert sum(bucket["count"] for bucket in buckets) == 15
        assert all(bucket["low_confidence"] for bucket in buckets)

    def test_window_excludes_old_rows(self, make_rows, as_of):
        rows = make_rows(n=200, spacing_hours=24)
        dashboard = compute_dashboard(rows, window_days=30, as_of=as_of)
        assert dashboard["summary_cards"]["offer_count"] == 31
        assert dashboard["window_days"] == 30

    def test_unresolved_rows_count_as_offers_only(self, make_rows, as_of):
        dashboard = compute_dashboard(make_rows(n=200, resolved_share=0.5), as_of=as_of)
        cards = dashboard["summary_cards"]
        assert cards["offer_count"] == 200
        assert 0 < cards["resolved_count"] < 200
        assert dashboard["metrics"]["samples"] == cards["resolved_count"]

    def test_auc_needs_both_classes(self, make_rows, as_of):
        assert compute_dashboard(make_rows(n=20), as_of=as_of)["summary_cards"]["auc"] is None
        cards = compute_dashboard(make_rows(n=400), as_of=as_of)["summary_cards"]
        assert cards["auc"] is not None
        assert cards["auc"] > 0.5

    def test_calibrated_rows_have_good_status(self, make_rows, as_of):
        rows = make_rows(n=2000)
        cards = compute_dashboard(rows, window_days=90, as_of=as_of)["summary_cards"]
        assert cards["resolved_count"] == 2000
        assert cards["ece"] < 0.08
        assert cards["ece_status"] == "good"
        assert cards["worst_segment"] in ("DYN_SF", "RED_1QB")

    def test_top_k_and_lift(self, make_rows, as_of):
        dashboard = compute_dashboard(make_rows(n=400), as_of=as_of)
        assert set(dashboard["top_k"]) == {"top_5pct", "top_10pct", "top_20pct"}
        assert len(dashboard["lift"]) == 10
        assert dashboard["lift"][0]["mean_predicted"] >= dashboard["lift"][-1]["mean_predicted"]


class TestDrillDown:
    """Tests for slicing and breakdown tables."""

    def test_breakdown_by_attribute(self, make_rows, as_of):
        dashboard = compute_dashboard(make_rows(n=200), drill_down=("scoring", None), as_of=as_of)
        breakdown = {row["scoring"]: row for row in dashboard["breakdown"]}
        assert set(breakdown) == {"half_ppr", "ppr"}
        assert breakdown["ppr"]["offer_count"] == 100
        assert dashboard["summary_cards"]["offer_count"] == 200

    def test_slice_by_attribute(self, make_rows, as_of):
        dashboard = compute_dashboard(make_rows(n=200), drill_down=("scoring", "PPR"), as_of=as_of)
        assert dashboard["summary_cards"]["offer_count"] == 100
        assert dashboard["breakdown"] == []


def test_write_dashboard_report(make_rows, as_of):
    dashboard = compute_dashboard(make_rows(n=100), as_of=as_of)
    with tempfile.TemporaryDirectory() as tmpdir:
        paths = write_dashboard_report(dashboard, Path(tmpdir) / "out")

        summary = json.loads(Path(paths["summary"]).read_text())
        assert summary["summary_cards"]["offer_count"] == 100
        bucket_lines = Path(paths["buckets_csv"]).read_text().strip().splitlines()
        assert len(bucket_lines) == 11
        assert bucket_lines[0].startswith("lower,upper,count")
        assert Path(paths["segments_csv"]).exists()


def test_inclusive_window_edges(make_rows, as_of):
    rows = make_rows(n=3)
    rows[2]["offered_at"] = as_of - timedelta(days=30)
    rows[1]["offered_at"] = as_of + timedelta(seconds=1)
    dashboard = compute_dashboard(rows, window_days=30, as_of=as_of)
    assert dashboard["summary_cards"]["offer_count"] == 2
