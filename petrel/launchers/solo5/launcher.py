"""solo5 tender launcher.

Runs each instance as a tender child process (``solo5-hvt`` style CLI):

    [taskset -c <cpuid>] solo5-hvt --mem=<MB>
        --net:<name>=<host device> --net-mac:<name>=<mac>
        --block:<name>=<volume path> --block-sector-size:<name>=<bytes>
        <image> <arguments...>

Host devices are passed through as given; creating tap devices and
attaching them to bridges happens outside Petrel.
"""

from __future__ import annotations

import asyncio
import signal
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

import structlog

from petrel.config import Solo5Config
from petrel.launchers.base import (
    InstanceInfo,
    InstanceStatus,
    LaunchSpec,
    Launcher,
    LauncherError,
)

logger = structlog.get_logger()

# Lines buffered per instance while nobody consumes its console
_PENDING_LINES = 1000

# Longest console line yielded in one piece
_MAX_LINE_BYTES = 64 * 1024


@dataclass
class _Instance:
    spec: LaunchSpec
    process: asyncio.subprocess.Process
    lines: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=_PENDING_LINES))
    reader: asyncio.Task | None = None
    closed: bool = False


async def _console_lines(stream: asyncio.StreamReader) -> AsyncIterator[str]:
    """Decode tender output into lines.

    A line longer than the stream limit is yielded in limit-sized pieces
    instead of failing the read.
    """
    split = False
    while True:
        try:
            raw = await stream.readuntil(b"\n")
        except asyncio.IncompleteReadError as e:
            if e.partial:
                yield e.partial.decode("utf-8", errors="replace").rstrip("\r")
            return
        except asyncio.LimitOverrunError as e:
            piece = await stream.read(min(e.consumed, _MAX_LINE_BYTES))
            split = True
            yield piece.decode("utf-8", errors="replace")
            continue

        # Newline right after a split piece closes that line
        if split and raw in (b"\n", b"\r\n"):
            split = False
            continue
        split = False
        yield raw.decode("utf-8", errors="replace").rstrip("\r\n")


class Solo5Launcher(Launcher):
    """Launcher driving solo5 tender processes on the local host."""

    type = "solo5"

    def __init__(self, config: Solo5Config | None = None) -> None:
        self._config = config or Solo5Config()
        self._instances: dict[str, _Instance] = {}
        self._log = logger.bind(launcher="solo5")

    def build_command(self, spec: LaunchSpec) -> list[str]:
        """Build the tender argv for ``spec``."""
        argv = [part.format(cpuid=spec.cpuid) for part in self._config.cpu_pin_command]
        argv.append(self._config.tender)
        argv.append(f"--mem={spec.memory_mb}")
        for net in spec.nets:
            argv.append(f"--net:{net.name}={net.bridge}")
            argv.append(f"--net-mac:{net.name}={net.mac}")
        for block in spec.blocks:
            argv.append(f"--block:{block.name}={block.path}")
            argv.append(f"--block-sector-size:{block.name}={block.sector_size}")
        argv.append(str(spec.image_path))
        argv.extend(spec.arguments)
        return argv

    async def start(self, spec: LaunchSpec) -> InstanceInfo:
        existing = self._instances.get(spec.instance_name)
        if existing is not None and existing.process.returncode is None:
            raise LauncherError(
                f"Instance already running: {spec.instance_name}",
                instance_name=spec.instance_name,
            )

        argv = self.build_command(spec)
        self._log.info("launcher.start", instance=spec.instance_name, argv=argv)

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError as e:
            raise LauncherError(
                f"Tender not found: {argv[0]}",
                instance_name=spec.instance_name,
            ) from e
        except OSError as e:
            raise LauncherError(
                f"Failed to spawn tender: {e}",
                instance_name=spec.instance_name,
            ) from e

        instance = _Instance(spec=spec, process=process)
        instance.reader = asyncio.create_task(self._read_output(instance))
        self._instances[spec.instance_name] = instance

        # A tender that dies right away (bad image, missing device) is a failed launch
        try:
            await asyncio.wait_for(
                asyncio.shield(process.wait()),
                timeout=self._config.startup_grace_seconds,
            )
        except asyncio.TimeoutError:
            return InstanceInfo(
                instance_name=spec.instance_name,
                status=InstanceStatus.RUNNING,
                pid=process.pid,
            )

        self._instances.pop(spec.instance_name, None)
        raise LauncherError(
            f"Tender exited during startup with code {process.returncode}",
            instance_name=spec.instance_name,
        )

    async def _read_output(self, instance: _Instance) -> None:
        stream = instance.process.stdout
        try:
            if stream is not None:
                async for line in _console_lines(stream):
                    if instance.lines.full():
                        instance.lines.get_nowait()
                    instance.lines.put_nowait(line)
        finally:
            instance.closed = True
            if instance.lines.full():
                instance.lines.get_nowait()
            # End-of-stream marker
            instance.lines.put_nowait(None)

    async def stop(self, instance_name: str) -> None:
        instance = self._instances.pop(instance_name, None)
        if instance is None:
            return

        process = instance.process
        if process.returncode is None:
            self._log.info("launcher.stop", instance=instance_name, pid=process.pid)
            try:
                process.send_signal(signal.SIGTERM)
                try:
                    await asyncio.wait_for(process.wait(), timeout=self._config.stop_timeout_seconds)
                except asyncio.TimeoutError:
                    self._log.warning("launcher.stop.kill", instance=instance_name, pid=process.pid)
                    process.kill()
                    await process.wait()
            except ProcessLookupError:
                pass
            except OSError as e:
                raise LauncherError(
                    f"Failed to stop instance: {e}",
                    instance_name=instance_name,
                ) from e

        if instance.reader is not None:
            try:
                await instance.reader
            except Exception as e:
                self._log.warning("launcher.console.reader_failed", instance=instance_name, error=str(e))

    async def status(self, instance_name: str) -> InstanceInfo:
        instance = self._instances.get(instance_name)
        if instance is None:
            return InstanceInfo(instance_name=instance_name, status=InstanceStatus.NOT_FOUND)

        returncode = instance.process.returncode
        if returncode is None:
            return InstanceInfo(
                instance_name=instance_name,
                status=InstanceStatus.RUNNING,
                pid=instance.process.pid,
            )
        return InstanceInfo(
            instance_name=instance_name,
            status=InstanceStatus.EXITED,
            pid=instance.process.pid,
            exit_code=returncode,
        )

    async def console(self, instance_name: str) -> AsyncIterator[str]:
        instance = self._instances.get(instance_name)
        if instance is None:
            return
        while True:
            line = await instance.lines.get()
            if line is None:
                return
            yield line

    async def close(self) -> None:
        """Stop every instance this launcher started."""
        for instance_name in list(self._instances):
            try:
                await self.stop(instance_name)
            except LauncherError as e:
                self._log.warning("launcher.close.stop_failed", instance=instance_name, error=str(e))
