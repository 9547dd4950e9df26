from __future__ import annotations

from typing import Iterable, List, Tuple

from .models import CostBreakdown, ModelPricing, Provider, TokenUsage, UsageRecord

PER_MILLION = 1_000_000

PriceTable = List[Tuple[str, ModelPricing]]

CLAUDE_SONNET = ModelPricing(input=3.0, output=15.0, cache_write=3.75, cache_read=0.30)
CLAUDE_PRICES: PriceTable = [
    ("claude-opus-4", ModelPricing(input=15.0, output=75.0, cache_write=18.75, cache_read=1.50)),
    ("claude-sonnet-4", CLAUDE_SONNET),
    ("claude-3-5-haiku", ModelPricing(input=0.80, output=4.0, cache_write=1.0, cache_read=0.08)),
]

O4_MINI = ModelPricing(input=1.10, output=4.40, cache_write=0.0, cache_read=0.275)
OPENAI_PRICES: PriceTable = [
    ("o4-mini", O4_MINI),
    ("o3-mini", ModelPricing(input=1.10, output=4.40)),
    ("o3", ModelPricing(input=2.0, output=8.0, cache_read=0.50)),
    ("gpt-4.1-nano", ModelPricing(input=0.10, output=0.40, cache_read=0.025)),
    ("gpt-4.1-mini", ModelPricing(input=0.40, output=1.60, cache_read=0.10)),
    ("gpt-4.1", ModelPricing(input=2.0, output=8.0, cache_read=0.50)),
    ("gpt-4o-mini", ModelPricing(input=0.15, output=0.60, cache_read=0.075)),
    ("gpt-4o", ModelPricing(input=2.50, output=10.0, cache_read=1.25)),
]

GEMINI_25_PRO = ModelPricing(input=1.25, output=10.0)
GEMINI_PRICES: PriceTable = [
    ("gemini-3-pro", ModelPricing(input=2.0, output=12.0)),
    ("gemini-3-flash", ModelPricing(input=0.50, output=3.0)),
    ("gemini-2.5-pro", GEMINI_25_PRO),
    ("gemini-2.5-flash", ModelPricing(input=0.30, output=2.50)),
    ("gemini-2.0-flash", ModelPricing(input=0.10, output=0.40)),
    ("gemini-1.5-pro", ModelPricing(input=1.25, output=5.0, cache_read=0.3125)),
    ("gemini-1.5-flash", ModelPricing(input=0.075, output=0.30, cache_read=0.01875)),
]


class CostCalculator:
    """Prefix-ordered price lookup. The first matching prefix wins, not the longest."""

    def __init__(self, table: PriceTable, default: ModelPricing, lowercase: bool = False) -> None:
        self.table = list(table)
        self.default = default
        self.lowercase = lowercase

    def price_for(self, model: str) -> ModelPricing:
        name = model if isinstance(model, str) else ""
        if self.lowercase:
            name = name.lower()
        for prefix, pricing in self.table:
            if name.startswith(prefix):
                return pricing
        return self.default

    def cost_for_usage(self, model: str, usage: TokenUsage) -> CostBreakdown:
        pricing = self.price_for(model)
        return CostBreakdown(
            input_cost=usage.input_tokens / PER_MILLION * pricing.input,
            output_cost=usage.output_tokens / PER_MILLION * pricing.output,
            cache_write_cost=usage.cache_creation_tokens / PER_MILLION * pricing.cache_write,
            cache_read_cost=usage.cache_read_tokens / PER_MILLION * pricing.cache_read,
        )

    def cost_for(self, record: UsageRecord) -> CostBreakdown:
        return self.cost_for_usage(record.model, TokenUsage.from_record(record))

    def total_cost(self, records: Iterable[UsageRecord]) -> CostBreakdown:
        total = CostBreakdown.zero()
        for record in records:
            total = total + self.cost_for(record)
        return total


CALCULATORS = {
    Provider.CLAUDE: CostCalculator(CLAUDE_PRICES, CLAUDE_SONNET),
    Provider.CODEX: CostCalculator(OPENAI_PRICES, O4_MINI),
    Provider.GEMINI: CostCalculator(GEMINI_PRICES, GEMINI_25_PRO, lowercase=True),
}


def calculator_for(provider: Provider) -> CostCalculator:
    return CALCULATORS[provider]


__all__ = [
    "CALCULATORS",
    "CLAUDE_PRICES",
    "CostCalculator",
    "GEMINI_PRICES",
    "OPENAI_PRICES",
    "PriceTable",
    "calculator_for",
]
