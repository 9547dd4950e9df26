from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp

from .errors import (
    AuthExpiredError,
    CredentialError,
    RefreshError,
    TokenRevokedError,
    TransientError,
    UsageFetchError,
)
from .http import get_http_session
from .logs import get_logger
from .models import (
    CreditsInfo,
    EnterpriseQuota,
    OAuthCredential,
    Provider,
    RateLimitStatus,
    SpendingLimit,
    UsageBucket,
)
from .utils import parse_epoch, parse_timestamp, safe_float

logger = get_logger("clients")

TRANSIENT_STATUSES = frozenset({429, 500, 502, 503})
AUTH_STATUSES = frozenset({401, 403})
REVOKED_STATUSES = frozenset({400, 401})

SessionGetter = Callable[[], Any]
PersistCallback = Callable[[OAuthCredential], None]
ReloadCallback = Callable[[], Optional[OAuthCredential]]


@dataclass(frozen=True)
class UsageEndpoint:
    provider: Provider
    usage_url: str
    token_url: str
    client_id: str
    parse: Callable[[Dict[str, Any]], RateLimitStatus]
    remediation: str
    scope: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    account_header: Optional[str] = None


def _bucket(label: str, raw: Any) -> UsageBucket:
    raw = raw if isinstance(raw, dict) else {}
    return UsageBucket(
        label=label,
        utilization=min(max(safe_float(raw.get("utilization")), 0.0), 100.0),
        resets_at=parse_timestamp(raw.get("resets_at")),
    )


def _spending_limit(raw: Any) -> Optional[SpendingLimit]:
    if not isinstance(raw, dict):
        return None
    return SpendingLimit(
        cap_dollars=safe_float(raw.get("cap_dollars")),
        used_dollars=safe_float(raw.get("used_dollars")),
        period=raw.get("period") if isinstance(raw.get("period"), str) else None,
        resets_at=parse_timestamp(raw.get("resets_at")),
    )


def _enterprise_quota(raw: Any) -> Optional[EnterpriseQuota]:
    if not isinstance(raw, dict):
        return None
    seat_tier = raw.get("seat_tier")
    return EnterpriseQuota(
        organization_name=raw.get("organization_name"),
        seat_tier=seat_tier if seat_tier in ("standard", "premium") else "unknown",
        organization_limit=_spending_limit(raw.get("organization_limit")),
        seat_tier_limit=_spending_limit(raw.get("seat_tier_limit")),
        individual_limit=_spending_limit(raw.get("individual_limit")),
    )


def parse_claude_usage(payload: Dict[str, Any]) -> RateLimitStatus:
    buckets = [_bucket("5h", payload.get("five_hour")), _bucket("7d", payload.get("seven_day"))]
    for key, label in (("seven_day_sonnet", "7d Sonnet"), ("seven_day_opus", "7d Opus")):
        if isinstance(payload.get(key), dict):
            buckets.append(_bucket(label, payload[key]))
    extra = payload.get("extra_usage")
    return RateLimitStatus(
        buckets=tuple(buckets),
        extra_usage_enabled=bool(extra.get("is_enabled")) if isinstance(extra, dict) else False,
        enterprise_quota=_enterprise_quota(payload.get("enterprise")),
    )


def _window_label(seconds: int, secondary: bool) -> str:
    if secondary:
        if seconds <= 0:
            return "7d"
        days = seconds // 86400
        return f"{days}d" if days > 0 else f"{seconds // 3600}h"
    if seconds <= 0:
        return "5h"
    hours = seconds // 3600
    return f"{hours}h" if hours > 0 else f"{seconds // 60}m"


def _codex_window(raw: Any, secondary: bool, label_prefix: str = "") -> Optional[UsageBucket]:
    if not isinstance(raw, dict):
        return None
    seconds = int(safe_float(raw.get("limit_window_seconds")))
    resets_at = parse_epoch(raw.get("reset_at"))
    if resets_at is None and raw.get("reset_after_seconds") is not None:
        resets_at = datetime.now(timezone.utc) + timedelta(
            seconds=safe_float(raw.get("reset_after_seconds"))
        )
    return UsageBucket(
        label=f"{label_prefix}{_window_label(seconds, secondary)}",
        utilization=min(max(safe_float(raw.get("used_percent")), 0.0), 100.0),
        resets_at=resets_at,
    )


def parse_codex_usage(payload: Dict[str, Any]) -> RateLimitStatus:
    rate_limit = payload.get("rate_limit") if isinstance(payload.get("rate_limit"), dict) else {}
    buckets = [
        bucket
        for bucket in (
            _codex_window(rate_limit.get("primary_window"), secondary=False),
            _codex_window(rate_limit.get("secondary_window"), secondary=True),
        )
        if bucket is not None
    ]

    additional: List[UsageBucket] = []
    for item in payload.get("additional_rate_limits") or []:
        if not isinstance(item, dict):
            continue
        name = item.get("limit_name") or item.get("metered_feature") or "Additional"
        inner = item.get("rate_limit") if isinstance(item.get("rate_limit"), dict) else {}
        bucket = _codex_window(inner.get("primary_window"), secondary=False, label_prefix=f"{name} ")
        if bucket is not None:
            additional.append(bucket)

    credits_raw = payload.get("credits")
    credits = None
    if isinstance(credits_raw, dict):
        balance = credits_raw.get("balance")
        credits = CreditsInfo(
            has_credits=bool(credits_raw.get("has_credits")),
            unlimited=bool(credits_raw.get("unlimited")),
            balance=str(balance) if balance is not None else None,
        )

    plan_type = payload.get("plan_type")
    plan_name = str(plan_type).capitalize() if plan_type else None
    if plan_name and credits and credits.has_credits:
        if credits.unlimited:
            plan_name += " (Unlimited)"
        elif credits.balance:
            plan_name += f" (${credits.balance})"

    return RateLimitStatus(
        buckets=tuple(buckets),
        plan_name=plan_name,
        extra_usage_enabled=bool(payload.get("extra_usage_enabled")),
        credits=credits,
        additional_buckets=tuple(additional),
    )


CLAUDE_ENDPOINT = UsageEndpoint(
    provider=Provider.CLAUDE,
    usage_url="https://api.anthropic.com/api/oauth/usage",
    token_url="https://console.anthropic.com/v1/oauth/token",
    client_id="9d1c250a-e61b-44d9-88ed-5944d1962f5e",
    parse=parse_claude_usage,
    remediation="Run 'claude' and sign in again to re-authenticate.",
    headers={"anthropic-beta": "oauth-2025-04-20"},
)

CODEX_ENDPOINT = UsageEndpoint(
    provider=Provider.CODEX,
    usage_url="https://chatgpt.com/backend-api/wham/usage",
    token_url="https://auth.openai.com/oauth/token",
    client_id="app_EMoamEEZ73f0CkXaXp7hrann",
    parse=parse_codex_usage,
    remediation="Run 'codex --login' to re-authenticate.",
    scope="openid profile email offline_access",
    account_header="chatgpt-account-id",
)


class RateLimitClient:
    """Polls one provider's quota endpoint and owns that provider's OAuth credential.

    Refreshes are serialized: callers that hit an expired token while a refresh
    is running wait for it and reuse its result instead of refreshing again.
    """

    def __init__(
        self,
        endpoint: UsageEndpoint,
        credential: OAuthCredential,
        session_getter: SessionGetter = get_http_session,
        persist: Optional[PersistCallback] = None,
        reload: Optional[ReloadCallback] = None,
        refresh_margin_seconds: float = 60.0,
        backoff_seconds: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.endpoint = endpoint
        self.credential = credential
        self._session_getter = session_getter
        self._persist = persist
        self._reload = reload
        self.refresh_margin_seconds = refresh_margin_seconds
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._refresh_task: Optional[asyncio.Task] = None
        self.revoked: Optional[TokenRevokedError] = None
        self.refresh_count = 0

    async def fetch_usage(self) -> RateLimitStatus:
        if self.revoked is not None:
            raise self.revoked
        await self._ensure_fresh()

        refreshed = False
        backed_off = False
        while True:
            token = self.credential.access_token
            try:
                payload = await self._get_usage(token)
            except AuthExpiredError:
                if refreshed:
                    raise
                refreshed = True
                await self.refresh(stale_token=token)
                continue
            except TransientError as exc:
                if backed_off:
                    raise
                backed_off = True
                logger.debug(
                    "%s usage transient failure (%s), retrying in %.1fs",
                    self.endpoint.provider.value,
                    exc.message,
                    self.backoff_seconds,
                )
                await self._sleep(self.backoff_seconds)
                continue
            return self.endpoint.parse(payload)

    async def refresh(self, stale_token: Optional[str] = None) -> OAuthCredential:
        """Rotate the access token; concurrent callers share one in-flight refresh.

        The POST and the persist run in a task owned by the client and shielded
        from the caller, so a cancelled fetch cannot drop a rotated refresh token.
        """
        if self.revoked is not None:
            raise self.revoked
        task = self._refresh_task
        if task is None or task.done():
            if stale_token is not None and self.credential.access_token != stale_token:
                return self.credential
            if self._adopt_reloaded():
                return self.credential
            refresh_token = self.credential.refresh_token
            if not refresh_token:
                raise RefreshError(f"{self.endpoint.provider.display_name} has no refresh token")
            task = asyncio.create_task(
                self._run_refresh(refresh_token),
                name=f"refresh-{self.endpoint.provider.value}",
            )
            task.add_done_callback(_retrieve_exception)
            self._refresh_task = task
        return await asyncio.shield(task)

    async def _run_refresh(self, refresh_token: str) -> OAuthCredential:
        data = await self._post_refresh(refresh_token)
        access_token = data.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise RefreshError("token endpoint returned no access token")
        expires_in = data.get("expires_in")
        self.credential = replace(
            self.credential,
            access_token=access_token,
            refresh_token=data.get("refresh_token") or refresh_token,
            id_token=data.get("id_token") or self.credential.id_token,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=safe_float(expires_in))
            if isinstance(expires_in, (int, float)) and not isinstance(expires_in, bool)
            else None,
        )
        self.refresh_count += 1
        logger.info("%s access token refreshed", self.endpoint.provider.display_name)
        self._save()
        return self.credential

    async def _ensure_fresh(self) -> None:
        if not self.credential.expires_within(self.refresh_margin_seconds):
            return
        try:
            await self.refresh(stale_token=self.credential.access_token)
        except RefreshError as exc:
            logger.debug("proactive refresh failed, using current token: %s", exc.message)

    def _adopt_reloaded(self) -> bool:
        """Pick up a token the CLI itself refreshed since we loaded ours."""
        if self._reload is None:
            return False
        try:
            fresh = self._reload()
        except (CredentialError, OSError) as exc:
            logger.debug("credential reload failed: %s", exc)
            return False
        if (
            fresh is None
            or fresh.access_token == self.credential.access_token
            or fresh.expires_within(self.refresh_margin_seconds)
        ):
            return False
        self.credential = fresh
        return True

    def _save(self) -> None:
        if self._persist is None:
            return
        try:
            self._persist(self.credential)
        except (CredentialError, OSError) as exc:
            logger.warning(
                "could not persist refreshed %s token: %s", self.endpoint.provider.value, exc
            )

    def _headers(self, token: str) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        headers.update(self.endpoint.headers)
        if self.endpoint.account_header and self.credential.account_id:
            headers[self.endpoint.account_header] = self.credential.account_id
        return headers

    async def _get_usage(self, token: str) -> Dict[str, Any]:
        session = self._session_getter()
        try:
            async with session.request(
                "GET", self.endpoint.usage_url, headers=self._headers(token)
            ) as response:
                if response.status != 200:
                    raise _status_error(response.status, await response.text())
                try:
                    payload = await response.json(content_type=None)
                except (aiohttp.ContentTypeError, json.JSONDecodeError, ValueError) as exc:
                    raise UsageFetchError(200, "Invalid usage response") from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransientError(f"Usage endpoint unreachable: {exc}") from exc
        return payload if isinstance(payload, dict) else {}

    async def _post_refresh(self, refresh_token: str) -> Dict[str, Any]:
        body = {
            "client_id": self.endpoint.client_id,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        if self.endpoint.scope:
            body["scope"] = self.endpoint.scope
        session = self._session_getter()
        try:
            async with session.request(
                "POST",
                self.endpoint.token_url,
                json=body,
                headers={"Content-Type": "application/json", "Accept": "application/json"},
            ) as response:
                if response.status in REVOKED_STATUSES:
                    self.revoked = TokenRevokedError(
                        self.endpoint.provider.display_name, self.endpoint.remediation
                    )
                    logger.warning("%s", self.revoked.message)
                    raise self.revoked
                if response.status != 200:
                    raise RefreshError(
                        f"Token refresh failed (HTTP {response.status})", response.status
                    )
                try:
                    data = await response.json(content_type=None)
                except (aiohttp.ContentTypeError, json.JSONDecodeError, ValueError) as exc:
                    raise RefreshError("Invalid token refresh response") from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise RefreshError(f"Token endpoint unreachable: {exc}") from exc
        return data if isinstance(data, dict) else {}


def _retrieve_exception(task: asyncio.Task) -> None:
    # Mark the outcome as seen when every awaiting caller was cancelled.
    if not task.cancelled():
        task.exception()


def _status_error(status: int, body: str):
    if status in AUTH_STATUSES:
        return AuthExpiredError(status)
    if status in TRANSIENT_STATUSES:
        return TransientError(f"API error (HTTP {status})", status)
    logger.debug("usage endpoint returned %s: %s", status, body[:200])
    return UsageFetchError(status, f"API error (HTTP {status})")


# ----------------------------------------------------------------------
# OpenAI API-key billing
# ----------------------------------------------------------------------

OPENAI_API_BASE = "https://api.openai.com"


@dataclass(frozen=True)
class BillingSnapshot:
    plan_title: Optional[str] = None
    hard_limit_usd: float = 0.0
    soft_limit_usd: float = 0.0
    total_granted: float = 0.0
    total_used: float = 0.0
    total_available: float = 0.0
    monthly_spend: float = 0.0
    daily_spend: float = 0.0
    period_end: Optional[datetime] = None

    @property
    def utilization(self) -> float:
        if self.total_granted > 0:
            return min(self.total_used / self.total_granted * 100.0, 100.0)
        if self.hard_limit_usd > 0:
            return min(self.monthly_spend / self.hard_limit_usd * 100.0, 100.0)
        return 0.0

    @property
    def uses_credits(self) -> bool:
        return self.total_granted > 0


class OpenAIBillingClient:
    def __init__(
        self,
        api_key: str,
        session_getter: SessionGetter = get_http_session,
        base_url: str = OPENAI_API_BASE,
    ):
        self._api_key = api_key
        self._session_getter = session_getter
        self.base_url = base_url.rstrip("/")

    async def fetch_usage(self, now: Optional[datetime] = None) -> BillingSnapshot:
        now = (now or datetime.now(timezone.utc)).astimezone()
        month_start = now.date().replace(day=1)
        subscription = await self._get("/v1/dashboard/billing/subscription")
        grants = await self._get("/v1/dashboard/billing/credit_grants")
        usage = await self._get(
            "/v1/dashboard/billing/usage"
            f"?start_date={month_start.isoformat()}&end_date={now.date().isoformat()}"
        )

        plan = subscription.get("plan") if isinstance(subscription.get("plan"), dict) else {}
        daily_cents = 0.0
        daily_costs = usage.get("daily_costs")
        if isinstance(daily_costs, list) and daily_costs and isinstance(daily_costs[-1], dict):
            for item in daily_costs[-1].get("line_items") or []:
                if isinstance(item, dict):
                    daily_cents += safe_float(item.get("cost"))

        return BillingSnapshot(
            plan_title=plan.get("title"),
            hard_limit_usd=safe_float(subscription.get("hard_limit_usd")),
            soft_limit_usd=safe_float(subscription.get("soft_limit_usd")),
            total_granted=safe_float(grants.get("total_granted")),
            total_used=safe_float(grants.get("total_used")),
            total_available=safe_float(grants.get("total_available")),
            monthly_spend=safe_float(usage.get("total_usage")) / 100.0,
            daily_spend=daily_cents / 100.0,
            period_end=_next_month_start(month_start, now),
        )

    async def _get(self, path: str) -> Dict[str, Any]:
        session = self._session_getter()
        try:
            async with session.request(
                "GET",
                f"{self.base_url}{path}",
                headers={"Authorization": f"Bearer {self._api_key}"},
            ) as response:
                if response.status != 200:
                    raise _status_error(response.status, await response.text())
                try:
                    payload = await response.json(content_type=None)
                except (aiohttp.ContentTypeError, json.JSONDecodeError, ValueError) as exc:
                    raise UsageFetchError(200, "Invalid billing response") from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransientError(f"Billing endpoint unreachable: {exc}") from exc
        return payload if isinstance(payload, dict) else {}


def _next_month_start(month_start: date, now: datetime) -> datetime:
    year, month = (month_start.year + 1, 1) if month_start.month == 12 else (month_start.year, month_start.month + 1)
    return datetime(year, month, 1, tzinfo=now.tzinfo)


__all__ = [
    "BillingSnapshot",
    "CLAUDE_ENDPOINT",
    "CODEX_ENDPOINT",
    "OpenAIBillingClient",
    "RateLimitClient",
    "UsageEndpoint",
    "parse_claude_usage",
    "parse_codex_usage",
]
