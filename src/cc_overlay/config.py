from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import PlanTier, Provider

CONFIG_DIR = Path(
    os.getenv("CC_OVERLAY_CONFIG_DIR", Path.home() / ".config" / "cc_overlay")
)
CONFIG_PATH = Path(os.getenv("CC_OVERLAY_CONFIG", CONFIG_DIR / "config.json"))

DEFAULT_CONFIG = {
    "refresh_interval": 60.0,
    "session_scan_interval": 5.0,
    "log_staleness_hours": 24.0,
    "session_match_window_seconds": 120.0,
    "activity_window_seconds": 300.0,
    "token_refresh_margin_seconds": 60.0,
    "transient_backoff_seconds": 2.0,
    "request_timeout": 15.0,
    "watch_debounce_seconds": 2.0,
    "plan_tier": PlanTier.PRO.value,
    "custom_weighted_limit": None,
    "claude_enabled": True,
    "codex_enabled": True,
    "gemini_enabled": True,
    "enable_process_monitor": True,
    "cost_alert_enabled": True,
    "alert_warning_threshold": 70.0,
    "alert_critical_threshold": 90.0,
    "claude_paths": [],
    "codex_home": None,
    "gemini_home": None,
}


@dataclass
class MonitorConfig:
    refresh_interval: float = DEFAULT_CONFIG["refresh_interval"]
    session_scan_interval: float = DEFAULT_CONFIG["session_scan_interval"]
    log_staleness_hours: float = DEFAULT_CONFIG["log_staleness_hours"]
    session_match_window_seconds: float = DEFAULT_CONFIG["session_match_window_seconds"]
    activity_window_seconds: float = DEFAULT_CONFIG["activity_window_seconds"]
    token_refresh_margin_seconds: float = DEFAULT_CONFIG["token_refresh_margin_seconds"]
    transient_backoff_seconds: float = DEFAULT_CONFIG["transient_backoff_seconds"]
    request_timeout: float = DEFAULT_CONFIG["request_timeout"]
    watch_debounce_seconds: float = DEFAULT_CONFIG["watch_debounce_seconds"]
    plan_tier: PlanTier = PlanTier.PRO
    custom_weighted_limit: Optional[int] = None
    claude_enabled: bool = True
    codex_enabled: bool = True
    gemini_enabled: bool = True
    enable_process_monitor: bool = True
    cost_alert_enabled: bool = True
    alert_warning_threshold: float = DEFAULT_CONFIG["alert_warning_threshold"]
    alert_critical_threshold: float = DEFAULT_CONFIG["alert_critical_threshold"]
    claude_paths: List[Path] = field(default_factory=list)
    codex_home: Optional[Path] = None
    gemini_home: Optional[Path] = None

    def __post_init__(self) -> None:
        self.alert_warning_threshold = _clamp(self.alert_warning_threshold, 1.0, 99.0)
        self.alert_critical_threshold = _clamp(self.alert_critical_threshold, 1.0, 100.0)

    @property
    def weighted_limit(self) -> int:
        return self.plan_tier.weighted_limit(self.custom_weighted_limit)

    def is_enabled(self, provider: Provider) -> bool:
        return {
            Provider.CLAUDE: self.claude_enabled,
            Provider.CODEX: self.codex_enabled,
            Provider.GEMINI: self.gemini_enabled,
        }[provider]

    def set_enabled(self, provider: Provider, enabled: bool) -> None:
        setattr(self, f"{provider.value}_enabled", bool(enabled))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MonitorConfig":
        def number(key: str) -> float:
            try:
                return float(data.get(key, DEFAULT_CONFIG[key]))
            except (TypeError, ValueError):
                return float(DEFAULT_CONFIG[key])

        def flag(key: str) -> bool:
            return bool(data.get(key, DEFAULT_CONFIG[key]))

        try:
            plan_tier = PlanTier(data.get("plan_tier", DEFAULT_CONFIG["plan_tier"]))
        except ValueError:
            plan_tier = PlanTier.PRO
        custom_limit = data.get("custom_weighted_limit")
        raw_paths = data.get("claude_paths") or []

        return cls(
            refresh_interval=number("refresh_interval"),
            session_scan_interval=number("session_scan_interval"),
            log_staleness_hours=number("log_staleness_hours"),
            session_match_window_seconds=number("session_match_window_seconds"),
            activity_window_seconds=number("activity_window_seconds"),
            token_refresh_margin_seconds=number("token_refresh_margin_seconds"),
            transient_backoff_seconds=number("transient_backoff_seconds"),
            request_timeout=number("request_timeout"),
            watch_debounce_seconds=number("watch_debounce_seconds"),
            plan_tier=plan_tier,
            custom_weighted_limit=int(custom_limit) if isinstance(custom_limit, (int, float)) else None,
            claude_enabled=flag("claude_enabled"),
            codex_enabled=flag("codex_enabled"),
            gemini_enabled=flag("gemini_enabled"),
            enable_process_monitor=flag("enable_process_monitor"),
            cost_alert_enabled=flag("cost_alert_enabled"),
            alert_warning_threshold=number("alert_warning_threshold"),
            alert_critical_threshold=number("alert_critical_threshold"),
            claude_paths=[Path(p).expanduser() for p in raw_paths if isinstance(p, str)],
            codex_home=_optional_path(data.get("codex_home")),
            gemini_home=_optional_path(data.get("gemini_home")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "refresh_interval": self.refresh_interval,
            "session_scan_interval": self.session_scan_interval,
            "log_staleness_hours": self.log_staleness_hours,
            "session_match_window_seconds": self.session_match_window_seconds,
            "activity_window_seconds": self.activity_window_seconds,
            "token_refresh_margin_seconds": self.token_refresh_margin_seconds,
            "transient_backoff_seconds": self.transient_backoff_seconds,
            "request_timeout": self.request_timeout,
            "watch_debounce_seconds": self.watch_debounce_seconds,
            "plan_tier": self.plan_tier.value,
            "custom_weighted_limit": self.custom_weighted_limit,
            "claude_enabled": self.claude_enabled,
            "codex_enabled": self.codex_enabled,
            "gemini_enabled": self.gemini_enabled,
            "enable_process_monitor": self.enable_process_monitor,
            "cost_alert_enabled": self.cost_alert_enabled,
            "alert_warning_threshold": self.alert_warning_threshold,
            "alert_critical_threshold": self.alert_critical_threshold,
            "claude_paths": [str(path) for path in self.claude_paths],
            "codex_home": str(self.codex_home) if self.codex_home else None,
            "gemini_home": str(self.gemini_home) if self.gemini_home else None,
        }


def ensure_config_dir(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def load_config(path: Optional[Path] = None) -> MonitorConfig:
    path = path or CONFIG_PATH
    data: Dict[str, Any] = {}
    if path.exists():
        try:
            with path.open("r", encoding="utf-8") as handle:
                loaded = json.load(handle)
            if isinstance(loaded, dict):
                data = loaded
        except (json.JSONDecodeError, OSError):
            data = {}
    return MonitorConfig.from_dict(data)


def save_config(config: MonitorConfig, path: Optional[Path] = None) -> None:
    path = path or CONFIG_PATH
    ensure_config_dir(path)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(config.to_dict(), handle, indent=2, sort_keys=True)


def _clamp(value: float, low: float, high: float) -> float:
    return min(max(float(value), low), high)


def _optional_path(value: Any) -> Optional[Path]:
    if isinstance(value, str) and value.strip():
        return Path(value).expanduser()
    return None


__all__ = ["CONFIG_DIR", "CONFIG_PATH", "MonitorConfig", "load_config", "save_config"]
