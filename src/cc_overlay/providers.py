from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol, Tuple

from .aggregator import WINDOW, aggregate
from .clients import (
    CLAUDE_ENDPOINT,
    CODEX_ENDPOINT,
    BillingSnapshot,
    OpenAIBillingClient,
    RateLimitClient,
    SessionGetter,
)
from .config import MonitorConfig
from .credentials import CredentialStore
from .detectors import ClaudeDetector, CodexDetector, GeminiDetector
from .errors import MonitorError
from .http import get_http_session
from .logs import get_logger
from .models import (
    AggregatedUsage,
    AuthMode,
    CostSummary,
    GeminiTier,
    Provider,
    ProviderDetection,
    ProviderUsageData,
    RateLimitStatus,
    TokenBreakdown,
    UsageBucket,
    UsageRecord,
)
from .paths import discover_claude_paths
from .pricing import calculator_for
from .usage_tracker import LogSource, UsageTracker, claude_sources, codex_sources, gemini_sources

logger = get_logger("providers")


class ProviderService(Protocol):
    provider: Provider
    state: ProviderState

    def detect(self) -> ProviderDetection:
        ...

    def refresh_local(self, now: datetime) -> None:
        ...

    def log_sources(self) -> List[LogSource]:
        ...

    async def fetch_usage(self) -> None:
        ...

    def usage_data(self) -> ProviderUsageData:
        ...


@dataclass
class ProviderState:
    """Mutable per-provider bookkeeping shared by the service implementations."""

    provider: Provider
    detection: Optional[ProviderDetection] = None
    aggregated: Optional[AggregatedUsage] = None
    window_start: Optional[datetime] = None
    error: Optional[str] = None
    error_at: Optional[datetime] = None
    last_refresh: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    is_loading: bool = False
    _last_signature: Optional[Tuple[float, int]] = field(default=None, repr=False)

    @property
    def is_available(self) -> bool:
        return self.detection is not None and self.detection.is_available

    def track_activity(self, used_percentage: float, window_tokens: int, now: datetime) -> None:
        signature = (round(used_percentage, 4), window_tokens)
        previous = self._last_signature
        if previous is not None and (signature[0] > previous[0] or signature[1] > previous[1]):
            self.last_activity_at = now
        self._last_signature = signature

    def run_local(self, records: List[UsageRecord], now: datetime, provider: Provider) -> None:
        self.aggregated = aggregate(records, now, calculator_for(provider))
        cutoff = now - WINDOW
        window_times = [r.timestamp for r in records if cutoff <= r.timestamp <= now]
        self.window_start = min(window_times) if window_times else None
        self.last_refresh = now

    def base_data(self) -> ProviderUsageData:
        data = ProviderUsageData.empty(self.provider)
        data.is_available = self.is_available
        data.error = self.error
        data.last_refresh = self.last_refresh
        data.is_loading = self.is_loading
        data.last_activity_at = self.last_activity_at
        if self.detection is not None:
            data.plan_name = _display_plan(self.detection.plan)
        aggregated = self.aggregated
        if aggregated is not None:
            data.estimated_cost = CostSummary(
                window_cost=aggregated.window_cost.total,
                window_label="5h",
                daily_cost=aggregated.daily_cost.total,
                daily_label="Today",
                breakdown=aggregated.window_cost,
            )
            data.token_breakdown = TokenBreakdown(title="5h window", usage=aggregated.window_usage)
        return data

    def apply_remote(self, data: ProviderUsageData, status: RateLimitStatus) -> None:
        governing = status.governing
        if governing is not None:
            data.used_percentage = governing.utilization
            data.primary_window_label = governing.label
            data.resets_at = governing.resets_at
        data.buckets = list(status.buckets)
        data.detailed_rate_windows = list(status.buckets) + list(status.additional_buckets)
        data.enterprise_quota = status.enterprise_quota
        data.credits_info = status.credits
        if status.plan_name:
            data.plan_name = status.plan_name


def _display_plan(plan: Optional[str]) -> Optional[str]:
    if not plan:
        return None
    return plan.replace("_", " ").capitalize()


def _window_tokens(state: ProviderState) -> int:
    return state.aggregated.window_usage.total if state.aggregated else 0


async def _guarded_fetch(state: ProviderState, fetch: Callable) -> Optional[object]:
    """Run one remote fetch, keeping the previous result when it fails."""
    state.is_loading = True
    try:
        result = await fetch()
    except MonitorError as exc:
        state.error = exc.message
        state.error_at = datetime.now(timezone.utc)
        logger.info("%s fetch failed: %s", state.provider.value, exc.message)
        return None
    finally:
        state.is_loading = False
    state.error = None
    state.error_at = None
    state.last_refresh = datetime.now(timezone.utc)
    return result


# ----------------------------------------------------------------------
# Claude Code
# ----------------------------------------------------------------------

class ClaudeService:
    provider = Provider.CLAUDE

    def __init__(
        self,
        config: MonitorConfig,
        store: Optional[CredentialStore] = None,
        session_getter: SessionGetter = get_http_session,
    ):
        self.config = config
        self.detector = ClaudeDetector(config, store)
        self.session_getter = session_getter
        self.state = ProviderState(self.provider)
        self.client: Optional[RateLimitClient] = None
        self.remote: Optional[RateLimitStatus] = None

    def detect(self) -> ProviderDetection:
        detection = self.detector.detect()
        self.state.detection = detection
        if detection.auth_mode is AuthMode.OAUTH and detection.credential is not None:
            source = self.detector.credentials()
            self.client = RateLimitClient(
                CLAUDE_ENDPOINT,
                detection.credential,
                session_getter=self.session_getter,
                persist=source.save,
                reload=source.load,
                refresh_margin_seconds=self.config.token_refresh_margin_seconds,
                backoff_seconds=self.config.transient_backoff_seconds,
            )
        else:
            self.client = None
        return detection

    def log_sources(self) -> List[LogSource]:
        return claude_sources(discover_claude_paths(self.config.claude_paths))

    def refresh_local(self, now: datetime) -> None:
        tracker = UsageTracker(self.log_sources(), self.config.log_staleness_hours)
        self.state.run_local(tracker.collect(now.timestamp()), now, self.provider)
        data = self.usage_data()
        self.state.track_activity(data.used_percentage, _window_tokens(self.state), now)

    async def fetch_usage(self) -> None:
        if self.client is None:
            return
        status = await _guarded_fetch(self.state, self.client.fetch_usage)
        if status is not None:
            self.remote = status
            self.state.track_activity(
                self.usage_data().used_percentage,
                _window_tokens(self.state),
                datetime.now(timezone.utc),
            )

    def usage_data(self) -> ProviderUsageData:
        data = self.state.base_data()
        detection = self.state.detection
        if detection is not None and detection.credential is not None:
            data.plan_name = _display_plan(detection.credential.subscription_type) or data.plan_name
        if self.remote is not None:
            self.state.apply_remote(data, self.remote)
            return data
        aggregated = self.state.aggregated
        if aggregated is not None:
            data.used_percentage = aggregated.usage_percentage(self.config.weighted_limit)
            if self.state.window_start is not None:
                data.resets_at = self.state.window_start + WINDOW
            data.buckets = [UsageBucket("5h", data.used_percentage, data.resets_at)]
        return data


# ----------------------------------------------------------------------
# Codex
# ----------------------------------------------------------------------

class CodexService:
    provider = Provider.CODEX

    def __init__(
        self,
        config: MonitorConfig,
        store: Optional[CredentialStore] = None,
        session_getter: SessionGetter = get_http_session,
    ):
        self.config = config
        self.detector = CodexDetector(config, store)
        self.session_getter = session_getter
        self.state = ProviderState(self.provider)
        self.client: Optional[RateLimitClient] = None
        self.billing_client: Optional[OpenAIBillingClient] = None
        self.remote: Optional[RateLimitStatus] = None
        self.billing: Optional[BillingSnapshot] = None

    def detect(self) -> ProviderDetection:
        detection = self.detector.detect()
        self.state.detection = detection
        self.client = None
        self.billing_client = None
        if detection.auth_mode is AuthMode.OAUTH and detection.credential is not None:
            self.client = RateLimitClient(
                CODEX_ENDPOINT,
                detection.credential,
                session_getter=self.session_getter,
                persist=self.detector.auth_file().save,
                refresh_margin_seconds=self.config.token_refresh_margin_seconds,
                backoff_seconds=self.config.transient_backoff_seconds,
            )
        elif detection.auth_mode is AuthMode.API_KEY and detection.api_key:
            self.billing_client = OpenAIBillingClient(detection.api_key, self.session_getter)
        return detection

    def log_sources(self) -> List[LogSource]:
        return codex_sources(self.detector.home)

    def refresh_local(self, now: datetime) -> None:
        tracker = UsageTracker(self.log_sources(), self.config.log_staleness_hours)
        self.state.run_local(tracker.collect(now.timestamp()), now, self.provider)
        self.state.track_activity(self.usage_data().used_percentage, _window_tokens(self.state), now)

    async def fetch_usage(self) -> None:
        if self.client is not None:
            status = await _guarded_fetch(self.state, self.client.fetch_usage)
            if status is not None:
                self.remote = status
        elif self.billing_client is not None:
            billing = await _guarded_fetch(self.state, self.billing_client.fetch_usage)
            if billing is not None:
                self.billing = billing
        else:
            return
        self.state.track_activity(
            self.usage_data().used_percentage,
            _window_tokens(self.state),
            datetime.now(timezone.utc),
        )

    def usage_data(self) -> ProviderUsageData:
        data = self.state.base_data()
        data.primary_window_label = "5h"
        if self.remote is not None:
            self.state.apply_remote(data, self.remote)
        elif self.billing is not None:
            billing = self.billing
            label = "Credits" if billing.uses_credits else "Monthly"
            data.used_percentage = billing.utilization
            data.primary_window_label = label
            data.resets_at = billing.period_end
            data.buckets = [UsageBucket(label, billing.utilization, billing.period_end)]
            data.plan_name = billing.plan_title or data.plan_name
            data.estimated_cost = CostSummary(
                window_cost=billing.daily_spend,
                window_label="today",
                daily_cost=billing.monthly_spend,
                daily_label="Monthly",
            )
        return data


# ----------------------------------------------------------------------
# Gemini
# ----------------------------------------------------------------------

class GeminiService:
    """Gemini has no quota endpoint; request counts from local telemetry are compared to tier limits."""

    provider = Provider.GEMINI

    def __init__(
        self,
        config: MonitorConfig,
        store: Optional[CredentialStore] = None,
        session_getter: Optional[SessionGetter] = None,
    ):
        self.config = config
        self.detector = GeminiDetector(config, store)
        self.state = ProviderState(self.provider)
        self.requests_per_minute = 0
        self.requests_per_day = 0
        self._now: Optional[datetime] = None

    @property
    def tier(self) -> GeminiTier:
        plan = self.state.detection.plan if self.state.detection else None
        try:
            return GeminiTier(plan)
        except ValueError:
            return GeminiTier.CODE_ASSIST_UNKNOWN

    def detect(self) -> ProviderDetection:
        detection = self.detector.detect()
        self.state.detection = detection
        return detection

    def log_sources(self) -> List[LogSource]:
        return gemini_sources(self.detector.home)

    def refresh_local(self, now: datetime) -> None:
        tracker = UsageTracker(self.log_sources(), self.config.log_staleness_hours)
        records = tracker.collect(now.timestamp())
        self.state.run_local(records, now, self.provider)
        self.requests_per_minute = sum(1 for r in records if now - timedelta(seconds=60) < r.timestamp <= now)
        self.requests_per_day = sum(1 for r in records if now - timedelta(days=1) < r.timestamp <= now)
        self._now = now
        self.state.track_activity(self.usage_data().used_percentage, _window_tokens(self.state), now)

    async def fetch_usage(self) -> None:
        return None

    def usage_data(self) -> ProviderUsageData:
        data = self.state.base_data()
        data.plan_name = self.tier.display_name
        if self._now is None:
            return data
        rpm_limit, rpd_limit = self.tier.limits
        local_now = self._now.astimezone()
        next_midnight = (local_now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
        daily = UsageBucket("Daily", min(self.requests_per_day / rpd_limit * 100.0, 100.0), next_midnight)
        per_minute = UsageBucket(
            "Per Min",
            min(self.requests_per_minute / rpm_limit * 100.0, 100.0),
            self._now + timedelta(seconds=60),
        )
        data.used_percentage = daily.utilization
        data.primary_window_label = daily.label
        data.resets_at = daily.resets_at
        data.buckets = [daily, per_minute]
        data.detailed_rate_windows = [daily, per_minute]
        return data


SERVICES = {
    Provider.CLAUDE: ClaudeService,
    Provider.CODEX: CodexService,
    Provider.GEMINI: GeminiService,
}


def build_service(
    provider: Provider,
    config: MonitorConfig,
    store: Optional[CredentialStore] = None,
    session_getter: SessionGetter = get_http_session,
) -> ProviderService:
    return SERVICES[provider](config, store, session_getter=session_getter)


__all__ = [
    "ClaudeService",
    "CodexService",
    "GeminiService",
    "ProviderService",
    "ProviderState",
    "SERVICES",
    "build_service",
]
