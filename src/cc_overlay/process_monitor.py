from __future__ import annotations

import plistlib
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import psutil

from .logs import get_logger
from .models import AppIdentity

logger = get_logger("processes")

APP_BUNDLE_MARKER = ".app/Contents/MacOS/"

DEV_TOOL_BUNDLE_IDS = frozenset(
    {
        "com.apple.Terminal",
        "com.googlecode.iterm2",
        "dev.warp.Warp-Stable",
        "net.kovidgoyal.kitty",
        "com.mitchellh.ghostty",
        "io.alacritty",
        "com.microsoft.VSCode",
        "com.microsoft.VSCodeInsiders",
        "com.todesktop.230313mzl4w4u92",
        "com.apple.dt.Xcode",
        "com.sublimetext.4",
        "com.sublimetext.3",
        "com.anthropic.claudefordesktop",
        "com.conductor.app",
    }
)
DEV_TOOL_BUNDLE_PREFIXES = ("com.jetbrains.",)

# Terminal emulators that run outside an .app bundle (Linux, Homebrew casks launched directly).
KNOWN_GUI_PROCESSES = {
    "kitty": "net.kovidgoyal.kitty",
    "alacritty": "io.alacritty",
    "ghostty": "com.mitchellh.ghostty",
    "iTerm2": "com.googlecode.iterm2",
    "Terminal": "com.apple.Terminal",
}


@dataclass(frozen=True)
class ProcessRecord:
    pid: int
    ppid: Optional[int]
    started_at: Optional[datetime]
    command: str
    name: str = ""
    exe: Optional[str] = None


def is_dev_tool(bundle_id: Optional[str]) -> bool:
    if not bundle_id:
        return False
    return bundle_id in DEV_TOOL_BUNDLE_IDS or bundle_id.startswith(DEV_TOOL_BUNDLE_PREFIXES)


def is_cli_command(command: str, binary: str = "claude") -> bool:
    """Raw command-line match: the binary path with or without arguments, never a grep for it."""
    if "grep" in command:
        return False
    return (
        command == binary
        or command.startswith(f"{binary} ")
        or f"/{binary} " in command
        or command.endswith(f"/{binary}")
    )


def extract_flag(command: str, flag: str) -> Optional[str]:
    tokens = command.split()
    for index, token in enumerate(tokens):
        if token != flag:
            continue
        if index + 1 >= len(tokens):
            return None
        value = tokens[index + 1]
        return None if value.startswith("-") else value
    return None


class ProcessMonitor:
    def __init__(self) -> None:
        self._bundle_cache: Dict[str, Optional[str]] = {}

    def snapshot(self) -> List[ProcessRecord]:
        """Every visible process in one pass; an unreadable process table yields []."""
        records: List[ProcessRecord] = []
        try:
            iterator = psutil.process_iter(["pid", "ppid", "create_time", "cmdline", "name", "exe"])
            for proc in iterator:
                try:
                    info = proc.info
                    cmdline = info.get("cmdline") or []
                    created = info.get("create_time")
                    records.append(
                        ProcessRecord(
                            pid=info.get("pid", proc.pid),
                            ppid=info.get("ppid"),
                            started_at=datetime.fromtimestamp(created, tz=timezone.utc)
                            if created
                            else None,
                            command=" ".join(cmdline) or (info.get("name") or ""),
                            name=info.get("name") or "",
                            exe=info.get("exe"),
                        )
                    )
                except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                    continue
        except (psutil.Error, OSError) as exc:
            logger.debug("process enumeration failed: %s", exc)
            return []
        return records

    def gui_apps(self, records: List[ProcessRecord]) -> Dict[int, AppIdentity]:
        apps: Dict[int, AppIdentity] = {}
        for record in records:
            identity = self._identify_app(record)
            if identity is not None:
                apps[record.pid] = identity
        return apps

    def _identify_app(self, record: ProcessRecord) -> Optional[AppIdentity]:
        path = record.exe or record.command.split(" ", 1)[0]
        if APP_BUNDLE_MARKER in path:
            bundle_root = path.split(APP_BUNDLE_MARKER, 1)[0] + ".app"
            bundle_id = self._bundle_id(bundle_root)
            return AppIdentity(
                name=Path(bundle_root).stem,
                pid=record.pid,
                bundle_id=bundle_id,
                is_dev_tool=is_dev_tool(bundle_id),
            )
        bundle_id = KNOWN_GUI_PROCESSES.get(record.name)
        if bundle_id:
            return AppIdentity(name=record.name, pid=record.pid, bundle_id=bundle_id, is_dev_tool=True)
        return None

    def _bundle_id(self, bundle_root: str) -> Optional[str]:
        if bundle_root in self._bundle_cache:
            return self._bundle_cache[bundle_root]
        bundle_id: Optional[str] = None
        try:
            with open(Path(bundle_root) / "Contents" / "Info.plist", "rb") as handle:
                info = plistlib.load(handle)
            value = info.get("CFBundleIdentifier") if isinstance(info, dict) else None
            bundle_id = value if isinstance(value, str) else None
        except (OSError, plistlib.InvalidFileException, ValueError):
            bundle_id = None
        self._bundle_cache[bundle_root] = bundle_id
        return bundle_id


def find_parent_app(
    pid: int,
    parents: Dict[int, Optional[int]],
    apps: Dict[int, AppIdentity],
) -> Optional[AppIdentity]:
    """Walk up the parent chain to the nearest GUI application, stopping on a revisit."""
    visited = set()
    current = parents.get(pid)
    while current is not None and current not in visited:
        if current in apps:
            return apps[current]
        visited.add(current)
        current = parents.get(current)
    return None


__all__ = [
    "DEV_TOOL_BUNDLE_IDS",
    "ProcessMonitor",
    "ProcessRecord",
    "extract_flag",
    "find_parent_app",
    "is_cli_command",
    "is_dev_tool",
]
