from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from cc_overlay.clients import CLAUDE_ENDPOINT, OPENAI_API_BASE
from cc_overlay.config import MonitorConfig
from cc_overlay.models import Provider
from cc_overlay.providers import ClaudeService, CodexService, GeminiService, ProviderState

from stubs import StubResponse, StubSession

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("OPENAI_API_KEY", "GEMINI_API_KEY", "ANTHROPIC_API_KEY", "CLAUDE_CONFIG_DIR"):
        monkeypatch.delenv(name, raising=False)


def _iso(dt):
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _claude_home(tmp_path, now, credentials=None):
    project = tmp_path / "projects" / "-Users-me-app"
    project.mkdir(parents=True)
    entry = {
        "type": "assistant",
        "sessionId": "s1",
        "timestamp": _iso(now - timedelta(hours=1)),
        "message": {"model": "claude-sonnet-4", "usage": {"input_tokens": 1_000_000}},
    }
    (project / "s1.jsonl").write_text(json.dumps(entry) + "\n", encoding="utf-8")
    if credentials is not None:
        (tmp_path / ".credentials.json").write_text(json.dumps(credentials))
    return tmp_path


def test_activity_tracked_only_on_increase():
    state = ProviderState(Provider.CLAUDE)
    now = datetime(2026, 5, 10, tzinfo=timezone.utc)
    state.track_activity(10.0, 100, now)
    assert state.last_activity_at is None
    state.track_activity(10.0, 100, now + timedelta(minutes=1))
    assert state.last_activity_at is None
    state.track_activity(10.0, 150, now + timedelta(minutes=2))
    assert state.last_activity_at == now + timedelta(minutes=2)
    state.track_activity(5.0, 10, now + timedelta(minutes=3))
    assert state.last_activity_at == now + timedelta(minutes=2)


def test_claude_local_estimate_without_oauth(tmp_path):
    now = datetime.now(timezone.utc)
    service = ClaudeService(MonitorConfig(claude_paths=[_claude_home(tmp_path, now)]))

    assert service.detect().is_available is False
    service.refresh_local(now)
    data = service.usage_data()

    assert data.used_percentage == pytest.approx(20.0)
    assert data.primary_window_label == "5h"
    assert data.resets_at == now - timedelta(hours=1) + timedelta(hours=5)
    assert [bucket.label for bucket in data.buckets] == ["5h"]
    assert data.estimated_cost.window_cost == pytest.approx(3.0)
    assert data.token_breakdown.usage.input_tokens == 1_000_000


@pytest.mark.asyncio
async def test_claude_remote_figures_win_and_survive_failures(tmp_path):
    now = datetime.now(timezone.utc)
    home = _claude_home(
        tmp_path,
        now,
        credentials={
            "claudeAiOauth": {
                "accessToken": "tok",
                "refreshToken": "ref",
                "expiresAt": int((now + timedelta(hours=2)).timestamp() * 1000),
                "subscriptionType": "max",
            }
        },
    )
    session = StubSession(
        {
            ("GET", CLAUDE_ENDPOINT.usage_url): [
                StubResponse(200, {"five_hour": {"utilization": 12}, "seven_day": {"utilization": 64}}),
                StubResponse(500),
            ]
        }
    )
    config = MonitorConfig(claude_paths=[home], transient_backoff_seconds=0)
    service = ClaudeService(config, session_getter=lambda: session)
    service.detect()
    service.refresh_local(now)

    await service.fetch_usage()
    data = service.usage_data()
    assert data.used_percentage == 64
    assert data.primary_window_label == "7d"
    assert data.plan_name == "Max"
    assert data.error is None

    await service.fetch_usage()
    data = service.usage_data()
    assert data.used_percentage == 64
    assert data.error == "API error (HTTP 500)"


@pytest.mark.asyncio
async def test_codex_api_key_mode_uses_billing(tmp_path, monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    session = StubSession(
        {
            ("GET", f"{OPENAI_API_BASE}/v1/dashboard/billing/subscription"): [
                StubResponse(200, {"plan": {"title": "Pay-as-you-go"}, "hard_limit_usd": 100.0})
            ],
            ("GET", f"{OPENAI_API_BASE}/v1/dashboard/billing/credit_grants"): [StubResponse(200, {})],
            ("GET", f"{OPENAI_API_BASE}/v1/dashboard/billing/usage"): [
                StubResponse(200, {"total_usage": 2500.0, "daily_costs": [{"line_items": [{"cost": 75.0}]}]})
            ],
        }
    )
    service = CodexService(MonitorConfig(codex_home=tmp_path), session_getter=lambda: session)
    service.detect()

    await service.fetch_usage()
    data = service.usage_data()

    assert data.used_percentage == pytest.approx(25.0)
    assert data.primary_window_label == "Monthly"
    assert data.plan_name == "Pay-as-you-go"
    assert data.estimated_cost.window_cost == pytest.approx(0.75)
    assert data.estimated_cost.daily_cost == pytest.approx(25.0)


def test_gemini_request_buckets(tmp_path):
    now = datetime.now(timezone.utc)
    (tmp_path / "google_accounts.json").write_text(json.dumps({"active": "me@gmail.com"}))
    lines = [
        {"name": "gemini_cli.api_call", "timestamp": _iso(now - timedelta(seconds=10))},
        {"name": "gemini_cli.api_call", "timestamp": _iso(now - timedelta(seconds=20))},
        {"name": "gemini_cli.api_call", "timestamp": _iso(now - timedelta(hours=2))},
    ]
    (tmp_path / "telemetry.log").write_text("\n".join(json.dumps(line) for line in lines))
    service = GeminiService(MonitorConfig(gemini_home=tmp_path))
    service.detect()

    service.refresh_local(now)
    data = service.usage_data()

    assert service.requests_per_minute == 2
    assert service.requests_per_day == 3
    assert [bucket.label for bucket in data.buckets] == ["Daily", "Per Min"]
    assert data.primary_window_label == "Daily"
    assert data.used_percentage == pytest.approx(0.3)
    assert data.buckets[1].utilization == pytest.approx(2 / 60 * 100)
    assert data.resets_at > now
