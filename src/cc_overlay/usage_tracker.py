from __future__ import annotations

import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

from .logs import get_logger
from .models import UsageRecord
from .paths import PROJECTS_SUBDIR
from .utils import parse_epoch, parse_timestamp, safe_int

logger = get_logger("usage")

UNKNOWN_MODEL = "unknown"

FileParser = Callable[[Path], List[UsageRecord]]

GEMINI_CALL_MARKERS = ("generate", "api_call", "request", "llm")


@dataclass
class LogSource:
    """A set of log files sharing one parser."""

    root: Path
    pattern: str
    parse_file: FileParser


class UsageTracker:
    """Collects usage records from local logs, skipping files untouched within the staleness window."""

    def __init__(self, sources: List[LogSource], staleness_hours: float = 24.0):
        self.sources = sources
        self.staleness_hours = staleness_hours

    def collect(self, now: Optional[float] = None) -> List[UsageRecord]:
        now = time.time() if now is None else now
        cutoff = now - self.staleness_hours * 3600
        records: List[UsageRecord] = []
        scanned = 0
        for source in self.sources:
            for path in _iter_fresh_files(source.root, source.pattern, cutoff):
                scanned += 1
                try:
                    records.extend(source.parse_file(path))
                except (ValueError, TypeError, AttributeError, OverflowError) as exc:
                    logger.debug("skipping unparseable %s: %s", path, exc)
        logger.debug("collected %s records from %s files", len(records), scanned)
        return records


def claude_sources(claude_paths: List[Path]) -> List[LogSource]:
    return [
        LogSource(root=base / PROJECTS_SUBDIR, pattern="*/*.jsonl", parse_file=parse_claude_file)
        for base in claude_paths
    ]


def codex_sources(codex_home: Path) -> List[LogSource]:
    return [LogSource(root=codex_home / "sessions", pattern="**/*.jsonl", parse_file=parse_codex_file)]


def gemini_sources(gemini_home: Path) -> List[LogSource]:
    return [
        LogSource(root=gemini_home, pattern="telemetry.log", parse_file=parse_gemini_telemetry),
        LogSource(root=gemini_home / "tmp", pattern="*/chats/*.json", parse_file=parse_gemini_chat),
    ]


def _iter_fresh_files(root: Path, pattern: str, cutoff: float) -> Iterator[Path]:
    try:
        candidates = list(root.glob(pattern))
    except OSError:
        return
    for path in candidates:
        try:
            if path.stat().st_mtime < cutoff:
                continue
        except OSError:
            continue
        yield path


def _iter_json_lines(path: Path) -> Iterator[Dict[str, Any]]:
    try:
        with path.open("r", encoding="utf-8", errors="replace") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(data, dict):
                    yield data
    except OSError as exc:
        logger.debug("cannot read %s: %s", path, exc)


# ----------------------------------------------------------------------
# Claude Code
# ----------------------------------------------------------------------

def parse_claude_entry(data: Dict[str, Any], fallback_session_id: str) -> Optional[UsageRecord]:
    if data.get("type") != "assistant":
        return None
    message = data.get("message")
    if not isinstance(message, dict):
        return None
    usage = message.get("usage")
    if not isinstance(usage, dict):
        return None
    timestamp = parse_timestamp(data.get("timestamp"))
    if timestamp is None:
        return None
    session_id = data.get("sessionId")
    model = message.get("model")
    return UsageRecord(
        session_id=session_id if isinstance(session_id, str) and session_id else fallback_session_id,
        model=model if isinstance(model, str) and model else UNKNOWN_MODEL,
        input_tokens=safe_int(usage.get("input_tokens")),
        output_tokens=safe_int(usage.get("output_tokens")),
        cache_creation_tokens=safe_int(usage.get("cache_creation_input_tokens")),
        cache_read_tokens=safe_int(usage.get("cache_read_input_tokens")),
        timestamp=timestamp,
    )


def parse_claude_file(path: Path) -> List[UsageRecord]:
    records: List[UsageRecord] = []
    for data in _iter_json_lines(path):
        record = parse_claude_entry(data, path.stem)
        if record is not None:
            records.append(record)
    return records


# ----------------------------------------------------------------------
# Codex
# ----------------------------------------------------------------------

def parse_codex_file(path: Path) -> List[UsageRecord]:
    records: List[UsageRecord] = []
    session_id = path.stem
    model = UNKNOWN_MODEL
    for data in _iter_json_lines(path):
        payload = data.get("payload")
        if not isinstance(payload, dict):
            continue
        kind = data.get("type")
        if kind == "session_meta" and payload.get("id"):
            session_id = str(payload["id"])
        elif kind == "turn_context" and payload.get("model"):
            model = str(payload["model"])
        elif kind == "event_msg" and payload.get("type") == "token_count":
            info = payload.get("info")
            last = info.get("last_token_usage") if isinstance(info, dict) else None
            timestamp = parse_timestamp(data.get("timestamp"))
            if not isinstance(last, dict) or timestamp is None:
                continue
            input_tokens = safe_int(last.get("input_tokens"))
            cached = min(safe_int(last.get("cached_input_tokens")), input_tokens)
            records.append(
                UsageRecord(
                    session_id=session_id,
                    model=model,
                    input_tokens=input_tokens - cached,
                    output_tokens=safe_int(last.get("output_tokens")),
                    cache_creation_tokens=0,
                    cache_read_tokens=cached,
                    timestamp=timestamp,
                )
            )
    return records


# ----------------------------------------------------------------------
# Gemini
# ----------------------------------------------------------------------

def parse_gemini_telemetry(path: Path) -> List[UsageRecord]:
    """One record per API-call span in the CLI's local telemetry log."""
    records: List[UsageRecord] = []
    for data in _iter_json_lines(path):
        if not _is_gemini_call(data):
            continue
        timestamp = _telemetry_timestamp(data)
        if timestamp is None:
            continue
        attrs = data.get("attributes")
        attrs = attrs if isinstance(attrs, dict) else {}
        records.append(
            UsageRecord(
                session_id=str(attrs.get("session.id") or path.stem),
                model=str(attrs.get("gen_ai.request.model") or UNKNOWN_MODEL),
                input_tokens=safe_int(attrs.get("gen_ai.usage.input_tokens")),
                output_tokens=safe_int(attrs.get("gen_ai.usage.output_tokens")),
                cache_creation_tokens=0,
                cache_read_tokens=0,
                timestamp=timestamp,
            )
        )
    return records


def parse_gemini_chat(path: Path) -> List[UsageRecord]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, json.JSONDecodeError, UnicodeDecodeError):
        return []
    if not isinstance(data, dict):
        return []
    messages = data.get("messages")
    if not isinstance(messages, list):
        return []

    session_id = str(data.get("sessionId") or path.stem)
    default_model = data.get("model") or UNKNOWN_MODEL
    records: List[UsageRecord] = []
    for message in messages:
        if not isinstance(message, dict) or message.get("role") not in ("model", "assistant"):
            continue
        timestamp = parse_timestamp(message.get("timestamp"))
        if timestamp is None:
            continue
        usage = message.get("usage")
        usage = usage if isinstance(usage, dict) else {}
        records.append(
            UsageRecord(
                session_id=session_id,
                model=str(message.get("model") or default_model),
                input_tokens=safe_int(usage.get("prompt_tokens", usage.get("input_tokens"))),
                output_tokens=safe_int(usage.get("completion_tokens", usage.get("output_tokens"))),
                cache_creation_tokens=0,
                cache_read_tokens=0,
                timestamp=timestamp,
            )
        )
    return records


def _is_gemini_call(data: Dict[str, Any]) -> bool:
    name = data.get("name")
    if isinstance(name, str) and any(marker in name for marker in GEMINI_CALL_MARKERS):
        return True
    resource = data.get("resource")
    if isinstance(resource, dict):
        attrs = resource.get("attributes")
        if isinstance(attrs, dict):
            service = attrs.get("service.name")
            return isinstance(service, str) and "gemini" in service
    return False


def _telemetry_timestamp(data: Dict[str, Any]):
    if isinstance(data.get("timestamp"), str):
        return parse_timestamp(data["timestamp"])
    if data.get("startTimeUnixNano") is not None:
        return parse_epoch(data["startTimeUnixNano"])
    if isinstance(data.get("time"), str):
        return parse_timestamp(data["time"])
    return None


__all__ = [
    "LogSource",
    "UNKNOWN_MODEL",
    "UsageTracker",
    "claude_sources",
    "codex_sources",
    "gemini_sources",
    "parse_claude_entry",
    "parse_claude_file",
    "parse_codex_file",
    "parse_gemini_chat",
    "parse_gemini_telemetry",
]
