"""Unit tests for QuotaLedger.

Tests policy fallback, reserve/release arithmetic and membership checks
using a file-backed SQLite database.
"""

from __future__ import annotations

import asyncio

import pytest

from petrel.errors import QuotaExceededError
from petrel.managers.quota import QuotaDelta, QuotaLedger
from petrel.models.workload import WorkloadVersion


def _version(memory_mb: int, storage_mb: int = 0) -> WorkloadVersion:
    return WorkloadVersion(cpuid=0, memory_mb=memory_mb, storage_mb=storage_mb, digest="d")


class TestQuotaDelta:
    def test_for_version(self):
        delta = QuotaDelta.for_version(_version(256, 10))

        assert delta == QuotaDelta(workloads=1, memory_mb=256, storage_mb=10)

    def test_between_splits_into_positive_and_negative(self):
        delta = QuotaDelta.between(_version(256, 50), _version(512, 10))

        assert delta.positive() == QuotaDelta(memory_mb=256)
        assert delta.negative() == QuotaDelta(storage_mb=40)

    def test_is_zero(self):
        assert QuotaDelta().is_zero()
        assert not QuotaDelta(workloads=1).is_zero()


class TestQuotaLedgerPolicy:
    async def test_default_policy_from_settings(self, quota_ledger: QuotaLedger):
        policy = await quota_ledger.get_policy("alice")

        assert policy.tenant_id == "alice"
        assert policy.max_workloads == 10
        assert policy.allowed_cpuids == [0, 1]

    async def test_set_policy_replaces(self, quota_ledger: QuotaLedger):
        await quota_ledger.set_policy(
            "alice",
            max_workloads=1,
            max_memory_mb=512,
            max_storage_mb=0,
            allowed_cpuids=[0],
            allowed_bridges=[],
        )
        policy = await quota_ledger.set_policy(
            "alice",
            max_workloads=3,
            max_memory_mb=1024,
            max_storage_mb=100,
            allowed_cpuids=[2, 1, 2],
            allowed_bridges=["br0"],
        )

        assert policy.max_workloads == 3
        assert policy.allowed_cpuids == [1, 2]
        fetched = await quota_ledger.get_policy("alice")
        assert fetched.max_memory_mb == 1024
        assert fetched.allowed_bridges == ["br0"]

    async def test_usage_defaults_to_zero(self, quota_ledger: QuotaLedger):
        usage = await quota_ledger.usage("nobody")

        assert (usage.workloads, usage.memory_mb, usage.storage_mb) == (0, 0, 0)


class TestQuotaLedgerReserve:
    @pytest.fixture
    async def tight_ledger(self, quota_ledger: QuotaLedger) -> QuotaLedger:
        await quota_ledger.set_policy(
            "alice",
            max_workloads=2,
            max_memory_mb=512,
            max_storage_mb=100,
            allowed_cpuids=[0],
            allowed_bridges=["service"],
        )
        return quota_ledger

    async def test_reserve_accumulates(self, tight_ledger: QuotaLedger):
        await tight_ledger.reserve("alice", QuotaDelta(workloads=1, memory_mb=256))
        usage = await tight_ledger.reserve("alice", QuotaDelta(workloads=1, memory_mb=256))

        assert usage.workloads == 2
        assert usage.memory_mb == 512

    async def test_reserve_over_limit_mutates_nothing(self, tight_ledger: QuotaLedger):
        await tight_ledger.reserve("alice", QuotaDelta(workloads=1, memory_mb=400))

        with pytest.raises(QuotaExceededError) as exc_info:
            await tight_ledger.reserve("alice", QuotaDelta(workloads=1, memory_mb=200))

        assert exc_info.value.details == {
            "resource": "memory",
            "limit": 512,
            "used": 400,
            "requested": 200,
        }
        usage = await tight_ledger.usage("alice")
        assert usage.workloads == 1
        assert usage.memory_mb == 400

    async def test_disallowed_cpuid(self, tight_ledger: QuotaLedger):
        with pytest.raises(QuotaExceededError) as exc_info:
            await tight_ledger.reserve("alice", QuotaDelta(workloads=1, memory_mb=1), cpuid=3)

        assert exc_info.value.details["resource"] == "cpuid"
        assert (await tight_ledger.usage("alice")).workloads == 0

    async def test_disallowed_bridge(self, tight_ledger: QuotaLedger):
        with pytest.raises(QuotaExceededError) as exc_info:
            await tight_ledger.reserve(
                "alice",
                QuotaDelta(workloads=1, memory_mb=1),
                cpuid=0,
                bridges=["service", "public"],
            )

        assert exc_info.value.details["resource"] == "bridge"
        assert exc_info.value.details["requested"] == "public"

    async def test_shrinking_delta_is_not_checked(self, tight_ledger: QuotaLedger):
        """Only growing resources are compared against the policy."""
        await tight_ledger.reserve("alice", QuotaDelta(workloads=2, memory_mb=512))

        usage = await tight_ledger.reserve("alice", QuotaDelta(memory_mb=-100))

        assert usage.memory_mb == 512

    async def test_tightened_policy_blocks_only_new_reservations(self, tight_ledger: QuotaLedger):
        await tight_ledger.reserve("alice", QuotaDelta(workloads=2, memory_mb=512))
        await tight_ledger.set_policy(
            "alice",
            max_workloads=1,
            max_memory_mb=128,
            max_storage_mb=0,
            allowed_cpuids=[0],
            allowed_bridges=[],
        )

        usage = await tight_ledger.usage("alice")
        assert usage.workloads == 2
        with pytest.raises(QuotaExceededError):
            await tight_ledger.reserve("alice", QuotaDelta(workloads=1, memory_mb=1))

    async def test_concurrent_reservations_respect_limit(self, session_factory, patched_settings):
        """Two sessions racing for the last slot: exactly one wins."""
        async with session_factory() as setup:
            await QuotaLedger(setup).set_policy(
                "alice",
                max_workloads=1,
                max_memory_mb=512,
                max_storage_mb=0,
                allowed_cpuids=[0],
                allowed_bridges=[],
            )

        async def attempt():
            async with session_factory() as session:
                return await QuotaLedger(session).reserve(
                    "alice", QuotaDelta(workloads=1, memory_mb=256), cpuid=0
                )

        results = await asyncio.gather(attempt(), attempt(), return_exceptions=True)

        errors = [r for r in results if isinstance(r, QuotaExceededError)]
        assert len(errors) == 1
        async with session_factory() as check:
            usage = await QuotaLedger(check).usage("alice")
        assert usage.workloads == 1
        assert usage.memory_mb == 256


class TestQuotaLedgerRelease:
    async def test_release_clamps_at_zero(self, quota_ledger: QuotaLedger):
        await quota_ledger.reserve("alice", QuotaDelta(workloads=1, memory_mb=100))

        usage = await quota_ledger.release("alice", QuotaDelta(workloads=5, memory_mb=500))

        assert usage.workloads == 0
        assert usage.memory_mb == 0

    async def test_release_ignores_negative_parts(self, quota_ledger: QuotaLedger):
        await quota_ledger.reserve("alice", QuotaDelta(workloads=1, memory_mb=100))

        usage = await quota_ledger.release("alice", QuotaDelta(memory_mb=-50))

        assert usage.memory_mb == 100
