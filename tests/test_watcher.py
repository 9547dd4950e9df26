from __future__ import annotations

import pytest

from cc_overlay.watcher import LogWatcher, directory_signature

pytestmark = pytest.mark.unit


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_signature_counts_matching_files(tmp_path):
    (tmp_path / "a").mkdir()
    (tmp_path / "a" / "one.jsonl").write_text("12345")
    (tmp_path / "a" / "ignored.txt").write_text("x")
    count, newest, size = directory_signature([(tmp_path, "*/*.jsonl"), (tmp_path / "missing", "*.jsonl")])
    assert count == 1
    assert size == 5
    assert newest > 0


@pytest.mark.asyncio
async def test_burst_of_writes_fires_once_after_quiet_period(tmp_path):
    fired = []

    async def on_change():
        fired.append(clock.now)

    clock = FakeClock()
    watcher = LogWatcher(
        lambda: [(tmp_path, "*.jsonl")], on_change, debounce_seconds=2.0, clock=clock
    )

    assert await watcher.poll() is False

    clock.now = 1.0
    (tmp_path / "a.jsonl").write_text("{}\n")
    assert await watcher.poll() is False

    clock.now = 2.0
    (tmp_path / "b.jsonl").write_text("{}\n")
    assert await watcher.poll() is False

    clock.now = 3.5
    assert await watcher.poll() is False

    clock.now = 4.0
    assert await watcher.poll() is True
    assert fired == [4.0]

    clock.now = 10.0
    assert await watcher.poll() is False
    assert fired == [4.0]


@pytest.mark.asyncio
async def test_first_observation_is_not_a_change(tmp_path):
    (tmp_path / "a.jsonl").write_text("{}\n")
    clock = FakeClock()

    async def on_change():
        raise AssertionError("should not fire")

    watcher = LogWatcher(lambda: [(tmp_path, "*.jsonl")], on_change, debounce_seconds=0.0, clock=clock)
    assert await watcher.poll() is False
    clock.now = 5.0
    assert await watcher.poll() is False
