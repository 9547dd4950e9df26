from __future__ import annotations

import argparse
import asyncio
import contextlib
from typing import List, Optional

from .config import load_config
from .credentials import default_store
from .http import close_http_session, init_http_session
from .logs import logger
from .models import ProviderUsageData
from .orchestrator import MonitorSnapshot, UsageMonitor
from .utils import format_currency, format_percent, format_relative, format_tokens


def format_provider_line(usage: ProviderUsageData) -> str:
    name = usage.provider.display_name
    if not usage.is_available:
        return f"{name}: not detected"
    parts = [f"{name}: {format_percent(usage.used_percentage)} used ({usage.primary_window_label})"]
    if usage.resets_at:
        parts.append(f"resets {format_relative(usage.resets_at)}")
    if usage.plan_name:
        parts.append(usage.plan_name)
    if usage.token_breakdown:
        parts.append(f"{format_tokens(usage.token_breakdown.usage.total)} tokens")
    if usage.estimated_cost:
        parts.append(
            f"{format_currency(usage.estimated_cost.window_cost)} {usage.estimated_cost.window_label}"
        )
    if usage.error:
        parts.append(f"error: {usage.error}")
    return " | ".join(parts)


def format_snapshot(snapshot: MonitorSnapshot) -> List[str]:
    lines = [format_provider_line(usage) for usage in snapshot.providers.values()]
    if snapshot.critical_provider:
        lines.append(f"critical: {snapshot.critical_provider.display_name}")
    for session in snapshot.active_sessions:
        where = session.project_name or "unknown project"
        app = f" in {session.parent_app.name}" if session.parent_app else ""
        lines.append(f"session {session.session_id} (pid {session.pid}) {where}{app}")
    return lines


def log_snapshot(snapshot: MonitorSnapshot) -> None:
    for line in format_snapshot(snapshot):
        logger.info("%s", line)
    for alert in snapshot.alerts:
        logger.warning("alert: %s", alert.message)


async def run(once: bool = False, interval: Optional[float] = None) -> None:
    config = load_config()
    if interval:
        config.refresh_interval = interval
    await init_http_session(config.request_timeout)
    monitor = UsageMonitor(config, store=default_store())
    try:
        if once:
            await monitor.refresh()
            await monitor.scan_sessions()
            await monitor.wait_for_fetches()
            log_snapshot(monitor.snapshot())
            return
        last_lines: List[str] = []

        def on_snapshot(snapshot: MonitorSnapshot) -> None:
            lines = format_snapshot(snapshot)
            if lines != last_lines or snapshot.alerts:
                last_lines[:] = lines
                log_snapshot(snapshot)

        monitor.subscribe(on_snapshot)
        await monitor.start()
        await asyncio.Event().wait()
    finally:
        await monitor.stop()
        await close_http_session()


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="cc-overlay", description="Track AI CLI subscription usage.")
    parser.add_argument("--once", action="store_true", help="refresh once, print, and exit")
    parser.add_argument("--interval", type=float, default=None, help="refresh interval in seconds")
    args = parser.parse_args(argv)
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(run(once=args.once, interval=args.interval))


__all__ = ["format_provider_line", "format_snapshot", "main", "run"]


if __name__ == "__main__":
    main()
