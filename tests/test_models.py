from __future__ import annotations

from datetime import datetime, timezone

import pytest

from cc_overlay.models import (
    AggregatedUsage,
    CostBreakdown,
    EnterpriseQuota,
    OAuthCredential,
    PlanTier,
    Provider,
    ProviderUsageData,
    RateLimitStatus,
    SpendingLimit,
    TokenUsage,
    UsageBucket,
)

pytestmark = pytest.mark.unit


@pytest.mark.parametrize(
    "usage",
    [
        TokenUsage(),
        TokenUsage(1, 0, 0, 0),
        TokenUsage(1000, 200, 30, 4000),
        TokenUsage(7, 11, 13, 17),
        TokenUsage(1_000_000, 100_000, 50_000, 2_000_000),
    ],
)
def test_weighted_cost_formula(usage):
    expected = (
        usage.input_tokens
        + 5 * usage.output_tokens
        + 1.25 * usage.cache_creation_tokens
        + 0.1 * usage.cache_read_tokens
    )
    assert usage.weighted_cost == pytest.approx(expected)
    assert usage.total == (
        usage.input_tokens
        + usage.output_tokens
        + usage.cache_creation_tokens
        + usage.cache_read_tokens
    )


def test_token_usage_rejects_negative_counts():
    with pytest.raises(ValueError):
        TokenUsage(input_tokens=-1)


def test_cost_breakdown_addition_and_zero_identity():
    a = CostBreakdown(1.0, 2.0, 3.0, 4.0)
    b = CostBreakdown(0.5, 0.25, 0.125, 0.0625)
    assert a + CostBreakdown.zero() == a
    assert a + b == b + a
    assert ((a + b) + a).total == pytest.approx((a + (b + a)).total)
    assert (a + b).total == pytest.approx(a.total + b.total)


def test_plan_tier_limits():
    assert PlanTier.PRO.weighted_limit() == 5_000_000
    assert PlanTier.MAX5.weighted_limit() == 25_000_000
    assert PlanTier.MAX20.weighted_limit() == 100_000_000
    assert PlanTier.CUSTOM.weighted_limit(12_345) == 12_345
    assert PlanTier.CUSTOM.weighted_limit(None) == 5_000_000


def test_half_of_window_limit_is_fifty_percent():
    usage = AggregatedUsage(window_usage=TokenUsage(input_tokens=2_500_000))
    assert usage.usage_percentage(5_000_000) == 50.0
    assert usage.remaining_cost(5_000_000) == 2_500_000


def test_usage_percentage_is_capped():
    usage = AggregatedUsage(window_usage=TokenUsage(output_tokens=2_000_000))
    assert usage.usage_percentage(5_000_000) == 100.0
    assert usage.remaining_cost(5_000_000) == 0.0


def test_governing_bucket_is_highest_utilization():
    status = RateLimitStatus(
        buckets=(UsageBucket("5h", 20.0), UsageBucket("7d", 64.0), UsageBucket("7d Sonnet", 10.0))
    )
    assert status.governing.label == "7d"
    assert RateLimitStatus().governing is None


def test_bucket_warning_threshold():
    assert UsageBucket("5h", 70.0).is_warning
    assert not UsageBucket("5h", 69.9).is_warning


def test_spending_limit_and_enterprise_quota():
    individual = SpendingLimit(cap_dollars=100.0, used_dollars=25.0)
    org = SpendingLimit(cap_dollars=1000.0, used_dollars=2000.0)
    assert individual.utilization == 25.0
    assert org.utilization == 100.0
    assert SpendingLimit(cap_dollars=0.0, used_dollars=5.0).utilization == 0.0
    quota = EnterpriseQuota(individual_limit=individual, organization_limit=org)
    assert quota.governing_limit is org


def test_credential_expiry_margin():
    now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    soon = OAuthCredential(access_token="a", expires_at=datetime(2026, 1, 1, 12, 0, 30, tzinfo=timezone.utc))
    later = OAuthCredential(access_token="a", expires_at=datetime(2026, 1, 1, 13, 0, tzinfo=timezone.utc))
    assert soon.expires_within(60, now)
    assert not later.expires_within(60, now)
    assert OAuthCredential(access_token="opaque", refresh_token="r").expires_within(60, now)
    assert not OAuthCredential(access_token="opaque").expires_within(60, now)


def test_empty_usage_labels():
    assert ProviderUsageData.empty(Provider.CLAUDE).primary_window_label == "5h"
    assert ProviderUsageData.empty(Provider.GEMINI).primary_window_label == "Daily"
    assert ProviderUsageData.empty(Provider.CODEX).remaining_percentage == 100.0
