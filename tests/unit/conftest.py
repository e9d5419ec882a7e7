"""Shared fixtures for unit tests.

Every test gets its own file-backed SQLite database under tmp_path (so
concurrency tests can open several sessions), fresh lock maps and a
settings object patched into every module that reads configuration.
"""

from __future__ import annotations

from contextlib import ExitStack
from pathlib import Path
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

import petrel.models  # noqa: F401
from petrel.concurrency.locks import reset_locks
from petrel.config import Settings
from petrel.managers.quota import QuotaLedger
from petrel.managers.volume import VolumeManager
from petrel.managers.workload import WorkloadManager
from petrel.services.console import ConsoleTailer, reset_console_tailer
from petrel.storage.blocks import BlockStore
from petrel.storage.images import ImageStore
from tests.fakes import FakeHealthChecker, FakeLauncher

_SETTINGS_CONSUMERS = [
    "petrel.api.dependencies",
    "petrel.api.v1.policies",
    "petrel.api.v1.volumes",
    "petrel.db.session",
    "petrel.managers.quota.ledger",
    "petrel.managers.volume.volume",
    "petrel.managers.workload.workload",
    "petrel.services.console.tailer",
    "petrel.services.supervisor.lifecycle",
    "petrel.services.supervisor.tasks.stale_update_job",
    "petrel.services.tokens.service",
]


def make_settings(tmp_path: Path, **overrides) -> Settings:
    """Test settings: fast timeouts, storage under tmp_path."""
    values = {
        "database": {"url": f"sqlite+aiosqlite:///{tmp_path / 'petrel.db'}"},
        "images": {"root_path": str(tmp_path / "images")},
        "volumes": {"root_path": str(tmp_path / "volumes"), "chunk_size": 4096},
        "launcher": {"launch_timeout_seconds": 0.2},
        "update": {
            "health_timeout_seconds": 0.5,
            "probe_interval_seconds": 0.01,
            "stale_job_seconds": 60,
        },
        "quota": {
            "default_policy": {
                "max_workloads": 10,
                "max_memory": 4096,
                "max_storage": 4096,
                "allowed_cpuids": [0, 1],
                "allowed_bridges": ["service", "br0"],
            }
        },
        "console": {"capacity": 100},
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(autouse=True)
def _fresh_process_state():
    """Locks and the console tailer are process-wide; tests start clean."""
    reset_locks()
    reset_console_tailer()
    yield
    reset_locks()
    reset_console_tailer()


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def patched_settings(test_settings: Settings):
    """Patch get_settings wherever it was imported."""
    with ExitStack() as stack:
        for module in _SETTINGS_CONSUMERS:
            stack.enter_context(patch(f"{module}.get_settings", return_value=test_settings))
        yield test_settings


@pytest.fixture
async def session_factory(test_settings: Settings):
    """File-backed SQLite database and its session factory."""
    engine = create_async_engine(test_settings.database.url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    factory = sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    yield factory

    await engine.dispose()


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def fake_health() -> FakeHealthChecker:
    return FakeHealthChecker()


@pytest.fixture
async def console_tailer():
    tailer = ConsoleTailer(capacity=100)
    yield tailer
    await tailer.shutdown()


@pytest.fixture
def image_store(test_settings: Settings) -> ImageStore:
    return ImageStore(test_settings.images.root_path)


@pytest.fixture
def block_store(test_settings: Settings) -> BlockStore:
    return BlockStore(test_settings.volumes.root_path, chunk_size=test_settings.volumes.chunk_size)


@pytest.fixture
def make_workload_manager(
    patched_settings: Settings,
    fake_launcher: FakeLauncher,
    fake_health: FakeHealthChecker,
    console_tailer: ConsoleTailer,
    image_store: ImageStore,
    block_store: BlockStore,
):
    """Build WorkloadManagers sharing launcher, stores and tailer."""

    def _make(session: AsyncSession) -> WorkloadManager:
        return WorkloadManager(
            fake_launcher,
            session,
            images=image_store,
            blocks=block_store,
            health_checker=fake_health,
            console=console_tailer,
        )

    return _make


@pytest.fixture
def workload_manager(make_workload_manager, db_session: AsyncSession) -> WorkloadManager:
    return make_workload_manager(db_session)


@pytest.fixture
def volume_manager(
    patched_settings: Settings,
    db_session: AsyncSession,
    block_store: BlockStore,
) -> VolumeManager:
    return VolumeManager(db_session, blocks=block_store)


@pytest.fixture
def quota_ledger(patched_settings: Settings, db_session: AsyncSession) -> QuotaLedger:
    return QuotaLedger(db_session)
