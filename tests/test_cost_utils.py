from __future__ import annotations

import json

import pytest

from pitchdeck.cost_utils import CostTracker
from pitchdeck.errors import CostLimitError


def test_limit_raised_on_the_crossing_call():
    tracker = CostTracker(max_cost=1.0, rates={"p": {"m": (0.1, 0.2)}})
    for _ in range(3):
        assert tracker.add_usage("p", "m", 1000, 1000) == pytest.approx(0.3)

    with pytest.raises(CostLimitError) as ei:
        tracker.add_usage("p", "m", 1000, 1000)

    assert len(tracker.calls) == 4
    assert tracker.total_cost == pytest.approx(1.2)
    assert ei.value.total_cost == pytest.approx(1.2)
    assert tracker.breakdown == {"p": pytest.approx(1.2)}


def test_known_and_default_rates():
    tracker = CostTracker()
    assert tracker.add_usage("anthropic", "claude-sonnet-4-20250514", 1000, 1000) == pytest.approx(0.018)
    assert tracker.add_usage("acme", "unknown-model", 1000, 1000) == pytest.approx(0.04)


def test_summary_and_save(tmp_path):
    tracker = CostTracker(max_cost=10.0)
    tracker.add_usage("openai", "gpt-4o", 2000, 1000)
    tracker.add_usage("google", "gemini-2.0-flash", 1000, 1000)

    s = tracker.summary()
    assert s["call_count"] == 2
    assert s["total_cost"] == pytest.approx(0.025 + 0.000375)
    assert s["average_cost_per_call"] == pytest.approx(s["total_cost"] / 2)
    assert set(s["breakdown"]) == {"openai", "google"}

    path = tracker.save(tmp_path / "cost-report.json")
    data = json.loads(path.read_text(encoding="utf-8"))
    assert [c["provider"] for c in data["calls"]] == ["openai", "google"]
    assert data["calls"][0]["input_tokens"] == 2000


def test_empty_summary():
    assert CostTracker().summary()["average_cost_per_call"] == 0.0
