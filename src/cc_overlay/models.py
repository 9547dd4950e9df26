from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional, Tuple

from .utils import jwt_expiry

WARNING_UTILIZATION = 70.0

INPUT_WEIGHT = 1.0
OUTPUT_WEIGHT = 5.0
CACHE_CREATION_WEIGHT = 1.25
CACHE_READ_WEIGHT = 0.1


class Provider(str, Enum):
    CLAUDE = "claude"
    CODEX = "codex"
    GEMINI = "gemini"

    @property
    def display_name(self) -> str:
        return {
            Provider.CLAUDE: "Claude Code",
            Provider.CODEX: "Codex",
            Provider.GEMINI: "Gemini",
        }[self]


class AuthMode(str, Enum):
    API_KEY = "api_key"
    OAUTH = "oauth"
    NONE = "none"


class PlanTier(str, Enum):
    PRO = "pro"
    MAX5 = "max5"
    MAX20 = "max20"
    CUSTOM = "custom"

    def weighted_limit(self, custom_limit: Optional[int] = None) -> int:
        if self is PlanTier.CUSTOM:
            return custom_limit if custom_limit and custom_limit > 0 else 5_000_000
        return {
            PlanTier.PRO: 5_000_000,
            PlanTier.MAX5: 25_000_000,
            PlanTier.MAX20: 100_000_000,
        }[self]


class GeminiTier(str, Enum):
    CODE_ASSIST_FREE = "codeAssistFree"
    CODE_ASSIST_PRO = "codeAssistPro"
    CODE_ASSIST_ENTERPRISE = "codeAssistEnterprise"
    CODE_ASSIST_UNKNOWN = "codeAssistUnknown"
    API_FREE = "apiFree"
    API_PAID_TIER1 = "apiPaidTier1"
    API_PAID_TIER2 = "apiPaidTier2"

    @property
    def limits(self) -> Tuple[int, int]:
        """(requests per minute, requests per day)"""
        return _GEMINI_LIMITS[self]

    @property
    def display_name(self) -> str:
        return _GEMINI_NAMES[self]


_GEMINI_LIMITS = {
    GeminiTier.CODE_ASSIST_FREE: (60, 1000),
    GeminiTier.CODE_ASSIST_PRO: (120, 1500),
    GeminiTier.CODE_ASSIST_ENTERPRISE: (120, 2000),
    GeminiTier.CODE_ASSIST_UNKNOWN: (60, 1000),
    GeminiTier.API_FREE: (5, 100),
    GeminiTier.API_PAID_TIER1: (150, 1000),
    GeminiTier.API_PAID_TIER2: (1000, 10000),
}

_GEMINI_NAMES = {
    GeminiTier.CODE_ASSIST_FREE: "Free",
    GeminiTier.CODE_ASSIST_PRO: "Pro",
    GeminiTier.CODE_ASSIST_ENTERPRISE: "Enterprise",
    GeminiTier.CODE_ASSIST_UNKNOWN: "Google Account",
    GeminiTier.API_FREE: "API Free",
    GeminiTier.API_PAID_TIER1: "API Paid",
    GeminiTier.API_PAID_TIER2: "API Tier 2",
}


@dataclass(frozen=True)
class UsageRecord:
    session_id: str
    model: str
    input_tokens: int
    output_tokens: int
    cache_creation_tokens: int
    cache_read_tokens: int
    timestamp: datetime


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    def __post_init__(self) -> None:
        if min(
            self.input_tokens,
            self.output_tokens,
            self.cache_creation_tokens,
            self.cache_read_tokens,
        ) < 0:
            raise ValueError("token counts must be non-negative")

    @classmethod
    def from_record(cls, record: UsageRecord) -> "TokenUsage":
        return cls(
            input_tokens=record.input_tokens,
            output_tokens=record.output_tokens,
            cache_creation_tokens=record.cache_creation_tokens,
            cache_read_tokens=record.cache_read_tokens,
        )

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cache_creation_tokens=self.cache_creation_tokens + other.cache_creation_tokens,
            cache_read_tokens=self.cache_read_tokens + other.cache_read_tokens,
        )

    @property
    def total(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_tokens
            + self.cache_read_tokens
        )

    @property
    def weighted_cost(self) -> float:
        return (
            self.input_tokens * INPUT_WEIGHT
            + self.output_tokens * OUTPUT_WEIGHT
            + self.cache_creation_tokens * CACHE_CREATION_WEIGHT
            + self.cache_read_tokens * CACHE_READ_WEIGHT
        )


@dataclass(frozen=True)
class CostBreakdown:
    input_cost: float = 0.0
    output_cost: float = 0.0
    cache_write_cost: float = 0.0
    cache_read_cost: float = 0.0

    @classmethod
    def zero(cls) -> "CostBreakdown":
        return cls()

    def __add__(self, other: "CostBreakdown") -> "CostBreakdown":
        return CostBreakdown(
            input_cost=self.input_cost + other.input_cost,
            output_cost=self.output_cost + other.output_cost,
            cache_write_cost=self.cache_write_cost + other.cache_write_cost,
            cache_read_cost=self.cache_read_cost + other.cache_read_cost,
        )

    @property
    def total(self) -> float:
        return self.input_cost + self.output_cost + self.cache_write_cost + self.cache_read_cost


@dataclass(frozen=True)
class ModelPricing:
    """Dollar rates per million tokens."""

    input: float
    output: float
    cache_write: float = 0.0
    cache_read: float = 0.0


@dataclass(frozen=True)
class SessionUsage:
    session_id: str
    model: str
    usage: TokenUsage
    message_count: int
    first_timestamp: datetime
    last_timestamp: datetime


@dataclass(frozen=True)
class AggregatedUsage:
    current_session: Optional[SessionUsage] = None
    window_usage: TokenUsage = field(default_factory=TokenUsage)
    daily_usage: TokenUsage = field(default_factory=TokenUsage)
    sessions: Tuple[SessionUsage, ...] = ()
    window_cost: CostBreakdown = field(default_factory=CostBreakdown)
    daily_cost: CostBreakdown = field(default_factory=CostBreakdown)

    def usage_percentage(self, weighted_limit: float) -> float:
        if weighted_limit <= 0:
            return 0.0
        return min(self.window_usage.weighted_cost / weighted_limit * 100.0, 100.0)

    def remaining_cost(self, weighted_limit: float) -> float:
        return max(weighted_limit - self.window_usage.weighted_cost, 0.0)


@dataclass(frozen=True)
class UsageBucket:
    label: str
    utilization: float = 0.0
    resets_at: Optional[datetime] = None

    @property
    def is_warning(self) -> bool:
        return self.utilization >= WARNING_UTILIZATION


@dataclass(frozen=True)
class SpendingLimit:
    cap_dollars: float
    used_dollars: float
    period: Optional[str] = None
    resets_at: Optional[datetime] = None

    @property
    def utilization(self) -> float:
        if self.cap_dollars <= 0:
            return 0.0
        return min(self.used_dollars / self.cap_dollars * 100.0, 100.0)


@dataclass(frozen=True)
class EnterpriseQuota:
    organization_name: Optional[str] = None
    seat_tier: str = "unknown"
    organization_limit: Optional[SpendingLimit] = None
    seat_tier_limit: Optional[SpendingLimit] = None
    individual_limit: Optional[SpendingLimit] = None

    @property
    def governing_limit(self) -> Optional[SpendingLimit]:
        limits = [
            limit
            for limit in (self.individual_limit, self.seat_tier_limit, self.organization_limit)
            if limit is not None
        ]
        if not limits:
            return None
        return max(limits, key=lambda limit: limit.utilization)


@dataclass(frozen=True)
class CreditsInfo:
    has_credits: bool = False
    unlimited: bool = False
    balance: Optional[str] = None


@dataclass(frozen=True)
class RateLimitStatus:
    buckets: Tuple[UsageBucket, ...] = ()
    plan_name: Optional[str] = None
    extra_usage_enabled: bool = False
    enterprise_quota: Optional[EnterpriseQuota] = None
    credits: Optional[CreditsInfo] = None
    additional_buckets: Tuple[UsageBucket, ...] = ()

    @property
    def governing(self) -> Optional[UsageBucket]:
        """Bucket with the highest utilization; earlier buckets win ties."""
        best: Optional[UsageBucket] = None
        for bucket in self.buckets:
            if best is None or bucket.utilization > best.utilization:
                best = bucket
        return best


@dataclass
class OAuthCredential:
    access_token: str = field(repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    expires_at: Optional[datetime] = None
    account_id: Optional[str] = None
    id_token: Optional[str] = field(default=None, repr=False)
    subscription_type: Optional[str] = None
    rate_limit_tier: Optional[str] = None

    def expiry(self) -> Optional[datetime]:
        return self.expires_at or jwt_expiry(self.access_token)

    def expires_within(self, margin_seconds: float, now: Optional[datetime] = None) -> bool:
        expiry = self.expiry()
        if expiry is None:
            return self.refresh_token is not None
        now = now or datetime.now(timezone.utc)
        return expiry - now <= timedelta(seconds=margin_seconds)


@dataclass
class ProviderDetection:
    provider: Provider
    binary_path: Optional[str] = None
    config_path: Optional[str] = None
    auth_mode: AuthMode = AuthMode.NONE
    model: Optional[str] = None
    api_key: Optional[str] = field(default=None, repr=False)
    credential: Optional[OAuthCredential] = None
    plan: Optional[str] = None
    account_email: Optional[str] = None
    credential_source: Optional[str] = None

    @property
    def is_available(self) -> bool:
        return self.auth_mode is not AuthMode.NONE


@dataclass(frozen=True)
class SessionIndexEntry:
    session_id: str
    full_path: Optional[str] = None
    file_mtime: Optional[float] = None
    first_prompt: Optional[str] = None
    message_count: Optional[int] = None
    created: Optional[datetime] = None
    modified: Optional[datetime] = None
    git_branch: Optional[str] = None
    project_path: Optional[str] = None
    is_sidechain: bool = False


@dataclass(frozen=True)
class AppIdentity:
    name: str
    pid: int
    bundle_id: Optional[str] = None
    is_dev_tool: bool = False


@dataclass(frozen=True)
class ActiveSession:
    pid: int
    ppid: Optional[int]
    started_at: Optional[datetime]
    session_id: str
    model: Optional[str] = None
    permission_mode: Optional[str] = None
    project_path: Optional[str] = None
    git_branch: Optional[str] = None
    message_count: Optional[int] = None
    first_prompt: Optional[str] = None
    is_correlated: bool = False
    parent_app: Optional[AppIdentity] = None

    @property
    def project_name(self) -> Optional[str]:
        if not self.project_path:
            return None
        return self.project_path.rstrip("/").rsplit("/", 1)[-1] or None


@dataclass(frozen=True)
class CostSummary:
    window_cost: float
    window_label: str
    daily_cost: float
    daily_label: str = "Today"
    breakdown: CostBreakdown = field(default_factory=CostBreakdown)


@dataclass(frozen=True)
class TokenBreakdown:
    title: str
    usage: TokenUsage


@dataclass
class ProviderUsageData:
    provider: Provider
    is_available: bool = False
    used_percentage: float = 0.0
    primary_window_label: str = "5h"
    resets_at: Optional[datetime] = None
    buckets: List[UsageBucket] = field(default_factory=list)
    plan_name: Optional[str] = None
    estimated_cost: Optional[CostSummary] = None
    token_breakdown: Optional[TokenBreakdown] = None
    enterprise_quota: Optional[EnterpriseQuota] = None
    credits_info: Optional[CreditsInfo] = None
    detailed_rate_windows: List[UsageBucket] = field(default_factory=list)
    error: Optional[str] = None
    last_refresh: Optional[datetime] = None
    is_loading: bool = False
    last_activity_at: Optional[datetime] = None

    @property
    def remaining_percentage(self) -> float:
        return max(100.0 - self.used_percentage, 0.0)

    @classmethod
    def empty(cls, provider: Provider) -> "ProviderUsageData":
        label = "5h" if provider is Provider.CLAUDE else "Daily"
        return cls(provider=provider, primary_window_label=label)


__all__ = [
    "ActiveSession",
    "AggregatedUsage",
    "AppIdentity",
    "AuthMode",
    "CostBreakdown",
    "CostSummary",
    "CreditsInfo",
    "EnterpriseQuota",
    "GeminiTier",
    "ModelPricing",
    "OAuthCredential",
    "PlanTier",
    "Provider",
    "ProviderDetection",
    "ProviderUsageData",
    "RateLimitStatus",
    "SessionIndexEntry",
    "SessionUsage",
    "SpendingLimit",
    "TokenBreakdown",
    "TokenUsage",
    "UsageBucket",
    "UsageRecord",
    "WARNING_UTILIZATION",
]
