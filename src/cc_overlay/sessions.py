from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .logs import get_logger
from .models import ActiveSession, SessionIndexEntry
from .paths import SESSION_INDEX_FILENAME, claude_project_dirs
from .process_monitor import (
    ProcessMonitor,
    ProcessRecord,
    extract_flag,
    find_parent_app,
    is_cli_command,
)
from .utils import parse_timestamp, safe_int

logger = get_logger("sessions")


@dataclass(frozen=True)
class IndexedSession:
    entry: SessionIndexEntry
    project_dir: Path


def _parse_index_entry(raw: object, original_path: Optional[str]) -> Optional[SessionIndexEntry]:
    if not isinstance(raw, dict):
        return None
    session_id = raw.get("sessionId")
    if not isinstance(session_id, str) or not session_id:
        return None
    message_count = raw.get("messageCount")
    mtime = raw.get("fileMtime")
    project_path = raw.get("projectPath")
    return SessionIndexEntry(
        session_id=session_id,
        full_path=raw.get("fullPath") if isinstance(raw.get("fullPath"), str) else None,
        file_mtime=float(mtime) if isinstance(mtime, (int, float)) else None,
        first_prompt=raw.get("firstPrompt") if isinstance(raw.get("firstPrompt"), str) else None,
        message_count=safe_int(message_count) if message_count is not None else None,
        created=parse_timestamp(raw.get("created")),
        modified=parse_timestamp(raw.get("modified")),
        git_branch=raw.get("gitBranch") if isinstance(raw.get("gitBranch"), str) else None,
        project_path=project_path if isinstance(project_path, str) else original_path,
        is_sidechain=bool(raw.get("isSidechain", False)),
    )


def load_session_index(project_dir: Path) -> List[SessionIndexEntry]:
    """Entries from one project's index; malformed entries are dropped individually."""
    path = project_dir / SESSION_INDEX_FILENAME
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
    except FileNotFoundError:
        return []
    except (OSError, json.JSONDecodeError, UnicodeDecodeError) as exc:
        logger.debug("skipping session index %s: %s", path, exc)
        return []
    if not isinstance(data, dict) or not isinstance(data.get("entries"), list):
        return []
    original_path = data.get("originalPath") if isinstance(data.get("originalPath"), str) else None
    entries = []
    for raw in data["entries"]:
        entry = _parse_index_entry(raw, original_path)
        if entry is not None:
            entries.append(entry)
    return entries


def build_session_map(project_dirs: List[Path]) -> Dict[str, IndexedSession]:
    sessions: Dict[str, IndexedSession] = {}
    for project_dir in project_dirs:
        for entry in load_session_index(project_dir):
            sessions[entry.session_id] = IndexedSession(entry=entry, project_dir=project_dir)
    return sessions


def match_by_start_time(
    started_at: Optional[datetime],
    sessions: Dict[str, IndexedSession],
    window_seconds: float,
) -> Optional[IndexedSession]:
    """Index entry whose creation time is nearest the process start, if within the window."""
    if started_at is None:
        return None
    best: Optional[IndexedSession] = None
    best_delta: Optional[float] = None
    for candidate in sessions.values():
        created = candidate.entry.created
        if created is None:
            continue
        delta = abs((created - started_at).total_seconds())
        if delta > window_seconds:
            continue
        if best_delta is None or delta < best_delta:
            best, best_delta = candidate, delta
    return best


class SessionCorrelator:
    """Matches live CLI processes to the session logs they write.

    Every scan starts from scratch: the process table, the GUI-app table and
    the session index map are rebuilt, and a fresh list is returned.
    """

    def __init__(
        self,
        project_dirs: Callable[[], List[Path]],
        monitor: Optional[ProcessMonitor] = None,
        match_window_seconds: float = 120.0,
        binary: str = "claude",
    ):
        self._project_dirs = project_dirs
        self.monitor = monitor or ProcessMonitor()
        self.match_window_seconds = match_window_seconds
        self.binary = binary

    @classmethod
    def for_claude_paths(cls, claude_paths: Callable[[], List[Path]], **kwargs) -> "SessionCorrelator":
        return cls(lambda: claude_project_dirs(claude_paths()), **kwargs)

    def scan(self) -> List[ActiveSession]:
        records = self.monitor.snapshot()
        if not records:
            return []
        cli_processes = [r for r in records if is_cli_command(r.command, self.binary)]
        if not cli_processes:
            return []

        parents = {r.pid: r.ppid for r in records}
        apps = self.monitor.gui_apps(records)
        try:
            session_map = build_session_map(self._project_dirs())
        except OSError as exc:
            logger.debug("session index unavailable: %s", exc)
            session_map = {}

        active = [self._correlate(r, session_map, parents, apps) for r in cli_processes]
        active.sort(key=lambda s: (s.started_at.timestamp() if s.started_at else float("inf"), s.pid))
        return active

    def _correlate(self, record: ProcessRecord, session_map, parents, apps) -> ActiveSession:
        resume_id = extract_flag(record.command, "--resume")
        if resume_id is not None:
            matched = session_map.get(resume_id)
        else:
            matched = match_by_start_time(record.started_at, session_map, self.match_window_seconds)

        entry = matched.entry if matched else None
        if resume_id is not None:
            session_id = resume_id
        elif entry is not None:
            session_id = entry.session_id
        else:
            session_id = f"pid-{record.pid}"

        return ActiveSession(
            pid=record.pid,
            ppid=record.ppid,
            started_at=record.started_at,
            session_id=session_id,
            model=extract_flag(record.command, "--model"),
            permission_mode=extract_flag(record.command, "--permission-mode"),
            project_path=entry.project_path if entry else None,
            git_branch=entry.git_branch if entry else None,
            message_count=entry.message_count if entry else None,
            first_prompt=entry.first_prompt if entry else None,
            is_correlated=entry is not None,
            parent_app=find_parent_app(record.pid, parents, apps),
        )


__all__ = [
    "IndexedSession",
    "SessionCorrelator",
    "build_session_map",
    "load_session_index",
    "match_by_start_time",
]
