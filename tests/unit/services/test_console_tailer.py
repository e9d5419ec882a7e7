"""Unit tests for the console tailer ring buffer."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

from petrel.launchers.base import LaunchSpec
from petrel.services.console import ConsoleTailer
from tests.fakes import FakeLauncher


async def _settle() -> None:
    for _ in range(20):
        await asyncio.sleep(0)


async def _started(launcher: FakeLauncher, instance_name: str) -> None:
    await launcher.start(
        LaunchSpec(instance_name=instance_name, image_path="/dev/null", cpuid=0, memory_mb=1)
    )


class TestConsoleTailerBuffer:
    def test_capacity_drops_oldest(self):
        tailer = ConsoleTailer(capacity=3)
        for i in range(5):
            tailer.append("web-1", f"line {i}")

        assert [entry.line for entry in tailer.read("web-1")] == ["line 2", "line 3", "line 4"]

    def test_read_unknown_workload_is_empty(self):
        assert list(ConsoleTailer().read("nope")) == []

    def test_since_and_limit(self):
        tailer = ConsoleTailer()
        base = datetime(2026, 1, 1, 12, 0, 0)
        for i in range(4):
            tailer.append("web-1", f"line {i}", timestamp=base + timedelta(seconds=i))

        newer = tailer.read("web-1", since=base + timedelta(seconds=1))
        assert [entry.line for entry in newer] == ["line 2", "line 3"]

        assert [entry.line for entry in tailer.read("web-1", limit=1)] == ["line 3"]
        assert list(tailer.read("web-1", limit=0)) == []

    def test_read_returns_a_snapshot(self):
        tailer = ConsoleTailer()
        tailer.append("web-1", "first")
        lines = tailer.read("web-1")

        tailer.append("web-1", "second")

        assert [entry.line for entry in lines] == ["first"]
        assert len(list(tailer.read("web-1"))) == 2

    def test_to_dict(self):
        tailer = ConsoleTailer()
        tailer.append("web-1", "boot", timestamp=datetime(2026, 1, 1))

        entry = next(tailer.read("web-1"))

        assert entry.to_dict() == {"timestamp": "2026-01-01T00:00:00", "line": "boot"}


class TestConsoleTailerPump:
    async def test_attach_pumps_launcher_output(self):
        launcher = FakeLauncher()
        tailer = ConsoleTailer()
        await _started(launcher, "web-1@1")

        await tailer.attach("web-1", launcher, "web-1@1")
        launcher.emit("web-1@1", "hello")
        await _settle()

        assert tailer.is_attached("web-1")
        assert [entry.line for entry in tailer.read("web-1")] == ["hello"]
        await tailer.shutdown()
        assert not tailer.is_attached("web-1")

    async def test_reattach_keeps_history(self):
        launcher = FakeLauncher()
        tailer = ConsoleTailer()
        await _started(launcher, "web-1@1")
        await _started(launcher, "web-1@2")

        await tailer.attach("web-1", launcher, "web-1@1")
        launcher.emit("web-1@1", "from v1")
        await _settle()
        await tailer.attach("web-1", launcher, "web-1@2")
        launcher.emit("web-1@2", "from v2")
        await _settle()

        assert [entry.line for entry in tailer.read("web-1")] == ["from v1", "from v2"]
        await tailer.shutdown()

    async def test_pump_ends_when_instance_exits(self):
        launcher = FakeLauncher()
        tailer = ConsoleTailer()
        await _started(launcher, "web-1@1")

        await tailer.attach("web-1", launcher, "web-1@1")
        launcher.emit("web-1@1", "bye")
        launcher.exit_instance("web-1@1", exit_code=1)
        await _settle()

        assert not tailer.is_attached("web-1")
        assert [entry.line for entry in tailer.read("web-1")] == ["bye"]

    async def test_detach_forgets_buffer(self):
        launcher = FakeLauncher()
        tailer = ConsoleTailer()
        await _started(launcher, "web-1@1")
        await tailer.attach("web-1", launcher, "web-1@1")
        tailer.append("web-1", "line")

        await tailer.detach("web-1")

        assert list(tailer.read("web-1")) == []
        assert not tailer.is_attached("web-1")
