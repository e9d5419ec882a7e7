"""Console tailer - bounded per-workload console history.

Each running workload has one ring buffer of timestamped lines, filled by
a single pump task that reads the launcher's console stream. Readers take
a snapshot; they never block on new output and never mutate the buffer.

Re-attaching a workload (after an update, rollback or restart) replaces
the pump but keeps the buffer, so a client sees one continuous console.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from petrel.config import get_settings
from petrel.utils.datetime import utcnow

if TYPE_CHECKING:
    from petrel.launchers.base import Launcher

logger = structlog.get_logger()


@dataclass(frozen=True)
class ConsoleLine:
    timestamp: datetime
    line: str

    def to_dict(self) -> dict:
        return {"timestamp": self.timestamp.isoformat(), "line": self.line}


class ConsoleTailer:
    """Ring buffers and pump tasks for workload consoles."""

    def __init__(self, capacity: int = 1000) -> None:
        self._capacity = capacity
        self._buffers: dict[str, deque[ConsoleLine]] = {}
        self._pumps: dict[str, asyncio.Task] = {}
        self._log = logger.bind(service="console")

    @property
    def capacity(self) -> int:
        return self._capacity

    def is_attached(self, workload_name: str) -> bool:
        pump = self._pumps.get(workload_name)
        return pump is not None and not pump.done()

    def _buffer(self, workload_name: str) -> deque[ConsoleLine]:
        buffer = self._buffers.get(workload_name)
        if buffer is None:
            buffer = deque(maxlen=self._capacity)
            self._buffers[workload_name] = buffer
        return buffer

    def append(self, workload_name: str, line: str, timestamp: datetime | None = None) -> None:
        """Record one line (the pump is the only writer in production)."""
        self._buffer(workload_name).append(ConsoleLine(timestamp=timestamp or utcnow(), line=line))

    async def attach(self, workload_name: str, launcher: "Launcher", instance_name: str) -> None:
        """Start pumping ``instance_name``'s console into ``workload_name``'s buffer."""
        await self._stop_pump(workload_name)
        self._buffer(workload_name)
        self._pumps[workload_name] = asyncio.create_task(
            self._pump(workload_name, launcher, instance_name),
            name=f"console:{workload_name}",
        )
        self._log.info("console.attach", workload=workload_name, instance=instance_name)

    async def _pump(self, workload_name: str, launcher: "Launcher", instance_name: str) -> None:
        try:
            async for line in launcher.console(instance_name):
                self.append(workload_name, line)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log.warning(
                "console.pump.failed",
                workload=workload_name,
                instance=instance_name,
                error=str(e),
            )
        else:
            self._log.debug("console.pump.eof", workload=workload_name, instance=instance_name)

    async def _stop_pump(self, workload_name: str) -> None:
        pump = self._pumps.pop(workload_name, None)
        if pump is None:
            return
        pump.cancel()
        try:
            await pump
        except asyncio.CancelledError:
            pass

    async def detach(self, workload_name: str) -> None:
        """Stop the pump and forget the buffer of a destroyed workload."""
        await self._stop_pump(workload_name)
        self._buffers.pop(workload_name, None)
        self._log.info("console.detach", workload=workload_name)

    def read(
        self,
        workload_name: str,
        *,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> Iterator[ConsoleLine]:
        """Fresh iterator over a snapshot of the buffer.

        Args:
            since: Only lines strictly newer than this timestamp
            limit: Only the newest ``limit`` lines
        """
        snapshot = list(self._buffers.get(workload_name, ()))
        if since is not None:
            snapshot = [entry for entry in snapshot if entry.timestamp > since]
        if limit is not None:
            snapshot = snapshot[-limit:] if limit > 0 else []
        return iter(snapshot)

    async def shutdown(self) -> None:
        """Stop every pump (buffers are dropped with the process)."""
        for workload_name in list(self._pumps):
            await self._stop_pump(workload_name)
        self._log.info("console.shutdown")


_tailer: ConsoleTailer | None = None


def get_console_tailer() -> ConsoleTailer:
    """Get the process-wide console tailer."""
    global _tailer
    if _tailer is None:
        _tailer = ConsoleTailer(capacity=get_settings().console.capacity)
    return _tailer


def reset_console_tailer() -> None:
    """Forget the process-wide tailer (tests, shutdown)."""
    global _tailer
    _tailer = None
