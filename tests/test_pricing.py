from __future__ import annotations

from datetime import datetime, timezone

import pytest

from cc_overlay.models import CostBreakdown, ModelPricing, Provider, UsageRecord
from cc_overlay.pricing import CostCalculator, calculator_for

pytestmark = pytest.mark.unit

TS = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _record(model="claude-sonnet-4-5", input_tokens=0, output_tokens=0, write=0, read=0):
    return UsageRecord("s", model, input_tokens, output_tokens, write, read, TS)


def test_million_input_hundred_thousand_output_costs_four_fifty():
    calculator = CostCalculator([], ModelPricing(input=3.0, output=15.0))
    cost = calculator.cost_for(_record(input_tokens=1_000_000, output_tokens=100_000))
    assert cost.input_cost == pytest.approx(3.00)
    assert cost.output_cost == pytest.approx(1.50)
    assert cost.total == pytest.approx(4.50)


def test_prefix_match_is_first_match_not_longest():
    general = ModelPricing(input=1.0, output=1.0)
    specific = ModelPricing(input=9.0, output=9.0)
    calculator = CostCalculator([("gpt", general), ("gpt-4o", specific)], ModelPricing(0.0, 0.0))
    assert calculator.price_for("gpt-4o-2024") is general


def test_claude_table_and_default():
    claude = calculator_for(Provider.CLAUDE)
    assert claude.price_for("claude-opus-4-1-20250805").input == 15.0
    assert claude.price_for("claude-3-5-haiku-20241022").output == 4.0
    assert claude.price_for("unknown") == claude.price_for("claude-sonnet-4-20250514")


def test_openai_ordering_prefers_specific_entries_listed_first():
    openai = calculator_for(Provider.CODEX)
    assert openai.price_for("gpt-4.1-mini").input == 0.40
    assert openai.price_for("gpt-4.1").input == 2.0
    assert openai.price_for("o3-mini").cache_read == 0.0
    assert openai.price_for("gpt-5-codex").input == 1.10


def test_gemini_lookup_is_case_insensitive():
    gemini = calculator_for(Provider.GEMINI)
    assert gemini.price_for("Gemini-2.5-Flash").input == 0.30
    assert gemini.price_for("something-else").output == 10.0


def test_cost_is_additive_across_partitions():
    calculator = calculator_for(Provider.CLAUDE)
    records = [
        _record("claude-opus-4", 1200, 340, 5000, 100_000),
        _record("claude-sonnet-4", 10, 20, 30, 40),
        _record("claude-3-5-haiku", 999, 1, 0, 12),
        _record("mystery", 5, 5, 5, 5),
    ]
    whole = calculator.total_cost(records)
    split = calculator.total_cost(records[:2]) + calculator.total_cost(records[2:])
    assert whole.total == pytest.approx(split.total)
    assert whole.cache_read_cost == pytest.approx(split.cache_read_cost)
    assert calculator.total_cost([]) == CostBreakdown.zero()
