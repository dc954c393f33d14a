"""Tests for cadence/policies/optimizer.py"""
from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from cadence.core.types import EngagementHeatmap, TimeWindow
from cadence.policies.optimizer import DEFAULT_OPTIMAL_HOUR, DeliveryOptimizer, hour_boundaries

DAY = datetime(2024, 1, 15)


def at(hour: int, minute: int = 0) -> datetime:
    return DAY + timedelta(hours=hour, minutes=minute)


@pytest.fixture
def optimizer():
    return DeliveryOptimizer()


# ── pick_best ────────────────────────────────────────────────────────────────

class TestPickBest:
    def test_highest_score_wins(self, optimizer):
        heatmap = EngagementHeatmap.from_mapping({9: 0.3, 14: 0.9, 16: 0.5})
        assert optimizer.pick_best(TimeWindow(at(8), at(17)), heatmap) == at(14)

    def test_ties_go_to_earliest(self, optimizer):
        heatmap = EngagementHeatmap.from_mapping({11: 0.7, 15: 0.7})
        assert optimizer.pick_best(TimeWindow(at(8), at(17)), heatmap) == at(11)

    def test_no_data_returns_earliest(self, optimizer):
        window = TimeWindow(at(8, 20), at(17))
        assert optimizer.pick_best(window, EngagementHeatmap()) == at(8, 20)

    def test_no_boundary_in_window_returns_earliest(self, optimizer):
        heatmap = EngagementHeatmap.from_mapping({9: 1.0})
        window = TimeWindow(at(9, 10), at(9, 50))
        assert optimizer.pick_best(window, heatmap) == at(9, 10)

    def test_zero_scores_in_window_pick_first_boundary(self, optimizer):
        heatmap = EngagementHeatmap.from_mapping({20: 1.0})
        assert optimizer.pick_best(TimeWindow(at(8, 30), at(12)), heatmap) == at(9)
        assert optimizer.pick_best(TimeWindow(at(10, 30), at(12)), heatmap) == at(11)

    def test_boundaries_are_inclusive(self, optimizer):
        heatmap = EngagementHeatmap.from_mapping({17: 0.9})
        assert optimizer.pick_best(TimeWindow(at(8), at(17)), heatmap) == at(17)

    def test_window_across_midnight(self, optimizer):
        heatmap = EngagementHeatmap.from_mapping({1: 0.8, 22: 0.5})
        window = TimeWindow(at(21, 30), at(26))
        assert optimizer.pick_best(window, heatmap) == at(25)

    @pytest.mark.parametrize("start,end", [(0, 23), (3, 9), (7, 31), (10, 10)])
    def test_matches_brute_force(self, optimizer, start, end):
        heatmap = EngagementHeatmap.from_mapping({h: ((h * 7) % 10) / 10 for h in range(24)})
        window = TimeWindow(at(start), at(end))
        chosen = optimizer.pick_best(window, heatmap)
        candidates = hour_boundaries(window)
        best = max(heatmap[c.hour] for c in candidates)
        assert heatmap[chosen.hour] == best
        assert chosen == min(c for c in candidates if heatmap[c.hour] == best)


def test_hour_boundaries():
    assert hour_boundaries(TimeWindow(at(8, 30), at(11))) == [at(9), at(10), at(11)]


# ── Supplementary helpers ────────────────────────────────────────────────────

class TestHelpers:
    def test_optimal_hour_default(self, optimizer):
        assert optimizer.optimal_hour(EngagementHeatmap()) == DEFAULT_OPTIMAL_HOUR

    def test_optimal_hour(self, optimizer):
        heatmap = EngagementHeatmap.from_mapping({7: 0.6, 19: 0.6, 12: 0.2})
        assert optimizer.optimal_hour(heatmap) == 7

    def test_next_optimal(self, optimizer):
        heatmap = EngagementHeatmap.from_mapping({10: 0.9})
        assert optimizer.next_optimal(at(9), heatmap) == at(10)
        assert optimizer.next_optimal(at(10), heatmap) == at(34)

    def test_retry_within(self, optimizer):
        heatmap = EngagementHeatmap.from_mapping({14: 0.9})
        prefer = optimizer.retry_within(TimeWindow(at(9), at(17)), heatmap)
        assert prefer(at(10, 30)) == at(14)
        assert prefer(at(15)) == at(15)
        assert prefer(at(18)) == at(18)

    def test_recommendations(self, optimizer):
        heatmap = EngagementHeatmap.from_mapping({h: 0.5 for h in range(8, 22)} | {12: 0.9})
        recs = optimizer.recommendations(heatmap)
        assert recs[0].kind == "optimal_time"
        assert recs[0].hours == (12,)
        assert recs[1].kind == "avoid_times"
        assert 3 in recs[1].hours and 12 not in recs[1].hours
        assert "12:00" in recs[0].description

    def test_recommendations_without_data(self, optimizer):
        recs = optimizer.recommendations(EngagementHeatmap())
        assert [r.kind for r in recs] == ["optimal_time"]
