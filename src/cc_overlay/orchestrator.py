from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .alerts import CostAlert, CostAlertTracker
from .clients import SessionGetter
from .config import MonitorConfig
from .credentials import CredentialStore
from .http import get_http_session
from .logs import get_logger
from .models import ActiveSession, Provider, ProviderUsageData
from .paths import discover_claude_paths
from .providers import ProviderService, build_service
from .scheduler import PeriodicTask
from .sessions import SessionCorrelator
from .watcher import LogWatcher, WatchTarget

logger = get_logger("monitor")

ServiceFactory = Callable[..., ProviderService]


@dataclass(frozen=True)
class MonitorSnapshot:
    providers: Dict[Provider, ProviderUsageData]
    critical_provider: Optional[Provider]
    recently_active: Tuple[Provider, ...]
    active_sessions: Tuple[ActiveSession, ...]
    error: Optional[str]
    alerts: Tuple[CostAlert, ...]
    taken_at: datetime


Subscriber = Callable[[MonitorSnapshot], None]


def find_critical_provider(usages: Iterable[ProviderUsageData]) -> Optional[Provider]:
    """The available provider with the least headroom left."""
    critical: Optional[ProviderUsageData] = None
    for usage in usages:
        if not usage.is_available:
            continue
        if critical is None or usage.remaining_percentage < critical.remaining_percentage:
            critical = usage
    return critical.provider if critical else None


def find_recently_active(
    usages: Iterable[ProviderUsageData], now: datetime, window_seconds: float
) -> List[Provider]:
    cutoff = now - timedelta(seconds=window_seconds)
    active = [
        usage
        for usage in usages
        if usage.is_available and usage.last_activity_at is not None and usage.last_activity_at >= cutoff
    ]
    active.sort(key=lambda usage: usage.used_percentage, reverse=True)
    return [usage.provider for usage in active]


class UsageMonitor:
    """Owns one pipeline per enabled provider and publishes merged snapshots.

    Local log aggregation runs inline with each refresh tick; remote fetches run
    as one task per provider, and a new tick cancels the previous tick's task.
    """

    def __init__(
        self,
        config: MonitorConfig,
        store: Optional[CredentialStore] = None,
        session_getter: SessionGetter = get_http_session,
        service_factory: ServiceFactory = build_service,
        correlator: Optional[SessionCorrelator] = None,
    ):
        self.config = config
        self.store = store
        self.session_getter = session_getter
        self.service_factory = service_factory
        self.services: Dict[Provider, ProviderService] = {}
        self.active_sessions: List[ActiveSession] = []
        self.correlator = correlator or SessionCorrelator.for_claude_paths(
            lambda: discover_claude_paths(config.claude_paths),
            match_window_seconds=config.session_match_window_seconds,
        )
        self.alert_tracker = CostAlertTracker(
            config.alert_warning_threshold, config.alert_critical_threshold
        )
        self._fetch_tasks: Dict[Provider, asyncio.Task] = {}
        self._subscribers: List[Subscriber] = []
        self._last_active: Tuple[Provider, ...] = ()
        self._refresh_lock = asyncio.Lock()
        self._refresh_timer = PeriodicTask("usage-refresh", config.refresh_interval, self.refresh)
        self._scan_timer = PeriodicTask("session-scan", config.session_scan_interval, self.scan_sessions)
        self._watcher = self._build_watcher()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        await self._refresh_timer.start()
        if self.config.enable_process_monitor:
            await self._scan_timer.start()
        await self._watcher.start()

    async def stop(self) -> None:
        await self._refresh_timer.stop()
        await self._scan_timer.stop()
        await self._watcher.stop()
        for task in self._fetch_tasks.values():
            task.cancel()
        self._fetch_tasks.clear()

    async def set_refresh_interval(self, seconds: float) -> None:
        self.config.refresh_interval = seconds
        await self._refresh_timer.restart(seconds)
        await self._watcher.stop()
        self._watcher = self._build_watcher()
        await self._watcher.start()

    def set_provider_enabled(self, provider: Provider, enabled: bool) -> None:
        self.config.set_enabled(provider, enabled)
        if not enabled:
            self._drop(provider)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------
    async def refresh(self) -> None:
        async with self._refresh_lock:
            await self._detect_missing()
            self._refresh_local()
        self._publish()
        for provider, service in list(self.services.items()):
            previous = self._fetch_tasks.pop(provider, None)
            if previous is not None and not previous.done():
                previous.cancel()
            self._fetch_tasks[provider] = asyncio.create_task(
                self._fetch(service), name=f"fetch-{provider.value}"
            )

    async def refresh_local(self) -> None:
        """Re-read local logs only; used when the log directories change."""
        async with self._refresh_lock:
            self._refresh_local()
        self._publish()

    def _refresh_local(self) -> None:
        now = datetime.now(timezone.utc)
        for provider, service in list(self.services.items()):
            try:
                service.refresh_local(now)
            except Exception:
                logger.exception("%s local usage failed", provider.value)

    async def wait_for_fetches(self) -> None:
        tasks = [task for task in self._fetch_tasks.values() if not task.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def scan_sessions(self) -> None:
        if not self.config.enable_process_monitor:
            self.active_sessions = []
        else:
            self.active_sessions = await asyncio.to_thread(self.correlator.scan)
        self._publish()

    async def _fetch(self, service: ProviderService) -> None:
        await service.fetch_usage()
        self._publish()

    async def _detect_missing(self) -> None:
        for provider in Provider:
            if not self.config.is_enabled(provider):
                self._drop(provider)
                continue
            if provider in self.services:
                continue
            service = self.service_factory(
                provider, self.config, self.store, session_getter=self.session_getter
            )
            detection = await asyncio.to_thread(service.detect)
            if detection.is_available:
                logger.info(
                    "%s detected (%s)", provider.display_name, detection.auth_mode.value
                )
                self.services[provider] = service

    def _drop(self, provider: Provider) -> None:
        if self.services.pop(provider, None) is not None:
            logger.info("%s disabled", provider.display_name)
        task = self._fetch_tasks.pop(provider, None)
        if task is not None and not task.done():
            task.cancel()
        self.alert_tracker.reset(provider)

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------
    def usage_data(self) -> Dict[Provider, ProviderUsageData]:
        data: Dict[Provider, ProviderUsageData] = {}
        for provider in Provider:
            if not self.config.is_enabled(provider):
                continue
            service = self.services.get(provider)
            data[provider] = service.usage_data() if service else ProviderUsageData.empty(provider)
        return data

    def recently_active(self, usages: Iterable[ProviderUsageData], now: datetime) -> Tuple[Provider, ...]:
        current = find_recently_active(usages, now, self.config.activity_window_seconds)
        if current:
            self._last_active = tuple(current)
            return self._last_active
        return tuple(p for p in self._last_active if p in self.services)

    def surfaced_error(self) -> Optional[str]:
        latest = None
        for service in self.services.values():
            state = service.state
            if state.error and state.error_at and (latest is None or state.error_at > latest.error_at):
                latest = state
        return latest.error if latest else None

    def snapshot(self, now: Optional[datetime] = None, alerts: Tuple[CostAlert, ...] = ()) -> MonitorSnapshot:
        now = now or datetime.now(timezone.utc)
        data = self.usage_data()
        return MonitorSnapshot(
            providers=data,
            critical_provider=find_critical_provider(data.values()),
            recently_active=self.recently_active(data.values(), now),
            active_sessions=tuple(self.active_sessions),
            error=self.surfaced_error(),
            alerts=alerts,
            taken_at=now,
        )

    def _publish(self) -> MonitorSnapshot:
        alerts: Tuple[CostAlert, ...] = ()
        if self.config.cost_alert_enabled:
            alerts = tuple(self.alert_tracker.evaluate(self.usage_data().values()))
        snapshot = self.snapshot(alerts=alerts)
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("snapshot subscriber failed")
        return snapshot

    # ------------------------------------------------------------------
    # Log watching
    # ------------------------------------------------------------------
    def _build_watcher(self) -> LogWatcher:
        return LogWatcher(
            self._watch_targets,
            self.refresh_local,
            debounce_seconds=self.config.watch_debounce_seconds,
        )

    def _watch_targets(self) -> List[WatchTarget]:
        targets: List[WatchTarget] = []
        for service in list(self.services.values()):
            targets.extend((source.root, source.pattern) for source in service.log_sources())
        return targets


__all__ = [
    "MonitorSnapshot",
    "UsageMonitor",
    "find_critical_provider",
    "find_recently_active",
]
