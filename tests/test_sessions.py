from __future__ import annotations

import json
import plistlib
from datetime import datetime, timedelta, timezone

import pytest

from cc_overlay.models import AppIdentity
from cc_overlay.process_monitor import (
    ProcessMonitor,
    ProcessRecord,
    extract_flag,
    find_parent_app,
    is_cli_command,
    is_dev_tool,
)
from cc_overlay.sessions import (
    SessionCorrelator,
    build_session_map,
    load_session_index,
    match_by_start_time,
)

pytestmark = pytest.mark.unit

START = datetime(2026, 5, 10, 8, 0, tzinfo=timezone.utc)
TERMINAL = AppIdentity(name="Terminal", pid=10, bundle_id="com.apple.Terminal", is_dev_tool=True)


class StubMonitor:
    def __init__(self, records, apps=None):
        self.records = records
        self.apps = apps or {}

    def snapshot(self):
        return list(self.records)

    def gui_apps(self, records):
        return dict(self.apps)


def _write_index(project_dir, entries, original_path="/Users/me/work/app"):
    project_dir.mkdir(parents=True, exist_ok=True)
    (project_dir / "sessions-index.json").write_text(
        json.dumps({"version": 1, "originalPath": original_path, "entries": entries})
    )


def _entry(session_id, created, **extra):
    data = {
        "sessionId": session_id,
        "created": created.isoformat().replace("+00:00", "Z"),
        "messageCount": 4,
        "firstPrompt": "fix the build",
        "gitBranch": "main",
    }
    data.update(extra)
    return data


def test_extract_flag():
    command = "/usr/local/bin/claude --resume abc-123 --model opus --permission-mode default"
    assert extract_flag(command, "--resume") == "abc-123"
    assert extract_flag(command, "--model") == "opus"
    assert extract_flag(command, "--permission-mode") == "default"
    assert extract_flag("claude --resume --model opus", "--resume") is None
    assert extract_flag("claude --resume", "--resume") is None
    assert extract_flag("claude", "--model") is None


def test_is_cli_command():
    assert is_cli_command("claude")
    assert is_cli_command("claude --model opus")
    assert is_cli_command("/opt/homebrew/bin/claude")
    assert is_cli_command("node /Users/me/.npm-global/bin/claude --resume x")
    assert not is_cli_command("grep claude")
    assert not is_cli_command("/Applications/Claude.app/Contents/MacOS/Claude")
    assert not is_cli_command("claude-helper")


def test_dev_tool_whitelist():
    assert is_dev_tool("com.googlecode.iterm2")
    assert is_dev_tool("com.jetbrains.pycharm")
    assert not is_dev_tool("com.apple.Safari")
    assert not is_dev_tool(None)


def test_find_parent_app_walks_chain_and_stops_on_cycle():
    apps = {10: TERMINAL}
    assert find_parent_app(300, {300: 200, 200: 10, 10: 1}, apps) == TERMINAL
    assert find_parent_app(300, {300: 200, 200: 300}, apps) is None
    assert find_parent_app(300, {}, apps) is None


def test_gui_app_identified_from_bundle(tmp_path):
    bundle = tmp_path / "Ghostty.app"
    (bundle / "Contents" / "MacOS").mkdir(parents=True)
    with open(bundle / "Contents" / "Info.plist", "wb") as handle:
        plistlib.dump({"CFBundleIdentifier": "com.mitchellh.ghostty"}, handle)
    record = ProcessRecord(
        pid=10, ppid=1, started_at=None, command=f"{bundle}/Contents/MacOS/ghostty", name="ghostty"
    )
    unrelated = ProcessRecord(pid=11, ppid=1, started_at=None, command="/usr/bin/python3", name="python3")

    apps = ProcessMonitor().gui_apps([record, unrelated])

    assert list(apps) == [10]
    assert apps[10].name == "Ghostty"
    assert apps[10].is_dev_tool is True


def test_index_loading_skips_malformed_entries(tmp_path):
    project = tmp_path / "-Users-me-work-app"
    _write_index(project, [_entry("good", START), {"sessionId": 5}, "junk", {"firstPrompt": "x"}])
    entries = load_session_index(project)
    assert [entry.session_id for entry in entries] == ["good"]
    assert entries[0].project_path == "/Users/me/work/app"

    (project / "sessions-index.json").write_text("{not json")
    assert load_session_index(project) == []


def test_match_by_start_time_picks_nearest_within_window(tmp_path):
    project = tmp_path / "proj"
    _write_index(
        project,
        [
            _entry("far", START + timedelta(seconds=119)),
            _entry("near", START - timedelta(seconds=30)),
            _entry("outside", START + timedelta(seconds=121)),
        ],
    )
    correlator = SessionCorrelator(lambda: [project], monitor=StubMonitor([]))

    session_map = build_session_map([project])
    assert match_by_start_time(START, session_map, 120).entry.session_id == "near"
    assert match_by_start_time(START + timedelta(hours=1), session_map, 120) is None
    assert match_by_start_time(None, session_map, 120) is None
    assert correlator.scan() == []


def test_scan_correlates_processes(tmp_path):
    project = tmp_path / "proj"
    _write_index(
        project,
        [
            _entry("temporal", START + timedelta(seconds=45), gitBranch="feature/x"),
            _entry("resumed", START - timedelta(days=2), projectPath="/Users/me/other"),
        ],
    )
    records = [
        ProcessRecord(pid=10, ppid=1, started_at=None, command="/Applications/Terminal.app/Contents/MacOS/Terminal"),
        ProcessRecord(pid=20, ppid=10, started_at=START - timedelta(minutes=5), command="-zsh"),
        ProcessRecord(
            pid=30,
            ppid=20,
            started_at=START,
            command="node /usr/local/bin/claude --model sonnet --permission-mode plan",
        ),
        ProcessRecord(
            pid=31,
            ppid=20,
            started_at=START + timedelta(minutes=1),
            command="claude --resume resumed",
        ),
        ProcessRecord(pid=32, ppid=1, started_at=START + timedelta(hours=3), command="claude"),
        ProcessRecord(pid=33, ppid=1, started_at=START, command="grep claude"),
    ]
    correlator = SessionCorrelator(lambda: [project], monitor=StubMonitor(records, {10: TERMINAL}))

    sessions = correlator.scan()

    assert [s.pid for s in sessions] == [30, 31, 32]
    temporal, resumed, orphan = sessions

    assert temporal.session_id == "temporal"
    assert temporal.is_correlated is True
    assert temporal.model == "sonnet"
    assert temporal.permission_mode == "plan"
    assert temporal.git_branch == "feature/x"
    assert temporal.project_name == "app"
    assert temporal.parent_app == TERMINAL

    assert resumed.session_id == "resumed"
    assert resumed.project_path == "/Users/me/other"
    assert resumed.message_count == 4

    assert orphan.session_id == "pid-32"
    assert orphan.is_correlated is False
    assert orphan.parent_app is None


def test_resume_of_unknown_session_keeps_its_id(tmp_path):
    records = [ProcessRecord(pid=40, ppid=1, started_at=START, command="claude --resume missing-id")]
    correlator = SessionCorrelator(lambda: [tmp_path / "none"], monitor=StubMonitor(records))

    (session,) = correlator.scan()

    assert session.session_id == "missing-id"
    assert session.is_correlated is False


def test_scan_with_unreadable_process_table_is_empty(tmp_path):
    assert SessionCorrelator(lambda: [tmp_path], monitor=StubMonitor([])).scan() == []
