"""WorkloadManager - deployment / update state machine.

Turns deploy, update, rollback, restart and destroy requests into launcher
actions and registry transitions. Every transition on a workload name runs
under that name's lock; volume locks (sorted) and the tenant's quota lock
are taken after it, never before.

Failure contract: a transition either completes or leaves registry, quota
and image store as they were before it started.
"""

from __future__ import annotations

import asyncio
import random
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from petrel.concurrency.locks import cleanup_workload_lock, get_workload_lock, volume_locks
from petrel.config import get_settings
from petrel.errors import (
    DuplicateNameError,
    LaunchFailedError,
    LaunchTimeoutError,
    NoRollbackAvailableError,
    PetrelError,
    UpdateInProgressError,
    UpdateInvalidatedError,
    ValidationError,
)
from petrel.launchers.base import (
    BlockBinding,
    InstanceStatus,
    LaunchSpec,
    LauncherError,
    NetBinding,
)
from petrel.managers.quota import QuotaDelta, QuotaLedger
from petrel.managers.registry import WorkloadRegistry
from petrel.managers.volume import VolumeManager
from petrel.models.workload import (
    FailBehaviour,
    Liveliness,
    NetworkInterface,
    UpdateJob,
    Workload,
    WorkloadStatus,
    WorkloadVersion,
    instance_name_for,
)
from petrel.services.console import ConsoleLine, ConsoleTailer, get_console_tailer
from petrel.services.liveliness import HealthChecker
from petrel.storage.blocks import BlockStore
from petrel.storage.images import ImageStore
from petrel.utils.datetime import utcnow
from petrel.validators.names import validate_name
from petrel.validators.workload import (
    WorkloadConfig,
    parse_arguments,
    parse_liveliness,
    parse_workload_config,
)

if TYPE_CHECKING:
    from datetime import datetime

    from petrel.launchers.base import Launcher

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class WorkloadListItem:
    workload: Workload
    update_in_progress: bool


def random_mac() -> str:
    """Random locally administered unicast MAC address."""
    octets = [random.randint(0, 255) for _ in range(6)]
    octets[0] = (octets[0] & 0xFC) | 0x02
    return ":".join(f"{octet:02x}" for octet in octets)


class WorkloadManager:
    """Manages workload lifecycle."""

    def __init__(
        self,
        launcher: "Launcher",
        db_session: AsyncSession,
        *,
        images: ImageStore | None = None,
        blocks: BlockStore | None = None,
        health_checker: HealthChecker | None = None,
        console: ConsoleTailer | None = None,
    ) -> None:
        self._launcher = launcher
        self._db = db_session
        self._log = logger.bind(manager="workload")
        self._settings = get_settings()

        self._images = images or ImageStore(self._settings.images.root_path)
        self._health = health_checker or HealthChecker(
            probe_interval=self._settings.update.probe_interval_seconds,
            request_timeout=self._settings.update.probe_request_timeout_seconds,
        )
        self._console = console or get_console_tailer()

        # Sub-managers
        self._registry = WorkloadRegistry(db_session)
        self._quota = QuotaLedger(db_session)
        self._volume_mgr = VolumeManager(db_session, blocks=blocks)

    @property
    def launcher(self) -> "Launcher":
        return self._launcher

    # ------------------------------------------------------------------
    # Launcher helpers
    # ------------------------------------------------------------------

    def _launch_spec(self, version: WorkloadVersion) -> LaunchSpec:
        blocks = self._volume_mgr.blocks
        return LaunchSpec(
            instance_name=version.instance_name,
            image_path=self._images.path(version.digest),
            cpuid=version.cpuid,
            memory_mb=version.memory_mb,
            arguments=list(version.arguments),
            nets=[
                NetBinding(name=iface.name, bridge=iface.host_device, mac=iface.mac)
                for iface in version.network_interfaces
            ],
            blocks=[
                BlockBinding(
                    name=device.name,
                    path=blocks.path(device.host_device),
                    sector_size=device.sector_size,
                )
                for device in version.block_devices
            ],
        )

    async def _start(self, version: WorkloadVersion) -> None:
        """Start ``version`` within the launch timeout.

        Raises:
            LaunchFailedError: The launcher reported a failure
            LaunchTimeoutError: No confirmation in time (instance is stopped)
        """
        timeout = self._settings.launcher.launch_timeout_seconds
        try:
            await asyncio.wait_for(self._launcher.start(self._launch_spec(version)), timeout=timeout)
        except LauncherError as e:
            raise LaunchFailedError(
                message=f"Launch failed: {e}",
                details={"instance": version.instance_name},
            ) from e
        except asyncio.TimeoutError as e:
            await self._stop_quietly(version.instance_name)
            raise LaunchTimeoutError(
                message=f"Launch not confirmed within {timeout}s",
                details={"instance": version.instance_name, "timeout": timeout},
            ) from e

    async def _stop(self, instance_name: str | None) -> None:
        """Stop an instance within the launch timeout.

        Raises:
            LaunchFailedError: The launcher could not stop the instance
            LaunchTimeoutError: The stop did not finish in time
        """
        if instance_name is None:
            return
        timeout = self._settings.launcher.launch_timeout_seconds
        try:
            await asyncio.wait_for(self._launcher.stop(instance_name), timeout=timeout)
        except LauncherError as e:
            raise LaunchFailedError(
                message=f"Stop failed: {e}",
                details={"instance": instance_name},
            ) from e
        except asyncio.TimeoutError as e:
            raise LaunchTimeoutError(
                message=f"Stop not confirmed within {timeout}s",
                details={"instance": instance_name, "timeout": timeout},
            ) from e

    async def _stop_quietly(self, instance_name: str | None) -> None:
        """Best-effort stop used on cleanup paths."""
        try:
            await self._stop(instance_name)
        except PetrelError as e:
            self._log.warning("workload.stop_failed", instance=instance_name, error=e.message)

    async def _drop_images(self, *digests: str | None) -> None:
        """Delete images that no version references any more."""
        for digest in {d for d in digests if d}:
            if not await self._registry.digest_in_use(digest):
                await self._images.delete(digest)

    # ------------------------------------------------------------------
    # Version construction
    # ------------------------------------------------------------------

    async def _checked_volumes(self, owner: str, names: set[str]) -> int:
        """Storage footprint of ``names``; they must exist and belong to ``owner``."""
        volumes = await self._volume_mgr.get_many(owner, names)
        return sum(volume.size_mb for volume in volumes.values())

    @staticmethod
    def _assign_macs(
        config: WorkloadConfig,
        previous: WorkloadVersion | None,
    ) -> list[NetworkInterface]:
        # Interfaces that keep their name and bridge keep their MAC
        known = {}
        if previous is not None:
            known = {(i.name, i.host_device): i.mac for i in previous.network_interfaces}
        return [
            NetworkInterface(
                name=iface.name,
                host_device=iface.host_device,
                mac=known.get((iface.name, iface.host_device)) or random_mac(),
            )
            for iface in config.network_interfaces
        ]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, owner: str, name: str) -> WorkloadListItem:
        """Get one workload of ``owner``.

        Raises:
            NotFoundError: If the workload does not exist or is not visible
        """
        workload = await self._registry.require(name, owner)
        return WorkloadListItem(
            workload=workload,
            update_in_progress=await self._registry.get_job(name) is not None,
        )

    async def list(self, owner: str) -> list[WorkloadListItem]:
        """List the workloads of ``owner`` ordered by name."""
        workloads = await self._registry.list(owner)
        in_progress = await self._registry.open_job_names(w.name for w in workloads)
        return [
            WorkloadListItem(workload=w, update_in_progress=w.name in in_progress)
            for w in workloads
        ]

    async def console(
        self,
        owner: str,
        name: str,
        *,
        since: "datetime | None" = None,
        limit: int | None = None,
    ) -> list[ConsoleLine]:
        """Snapshot of the workload's console buffer."""
        await self._registry.require(name, owner)
        return list(self._console.read(name, since=since, limit=limit))

    # ------------------------------------------------------------------
    # Deploy
    # ------------------------------------------------------------------

    async def deploy(
        self,
        owner: str,
        name: str,
        config: Any,
        binary: bytes,
    ) -> Workload:
        """Deploy a new workload.

        Args:
            owner: Tenant deploying the workload
            name: Workload name
            config: Raw configuration document (see parse_workload_config)
            binary: Unikernel image

        Raises:
            ValidationError: Bad name, configuration or empty binary
            DuplicateNameError: The name is taken
            NotFoundError: A referenced volume is missing or foreign
            QuotaExceededError: The tenant's policy does not allow it
            LaunchFailedError: The launcher failed to start it
            LaunchTimeoutError: The launcher did not confirm in time
        """
        validate_name(name)
        parsed = parse_workload_config(config)
        if not binary:
            raise ValidationError(
                message="binary is required",
                details={"field": "binary", "reason": "empty"},
            )

        lock = await get_workload_lock(name)
        async with lock:
            if await self._registry.exists(name):
                raise DuplicateNameError(
                    message=f"Workload already exists: {name}",
                    details={"workload": name},
                )

            async with volume_locks(parsed.volume_names()):
                storage_mb = await self._checked_volumes(owner, parsed.volume_names())
                version = WorkloadVersion(
                    revision=1,
                    cpuid=parsed.cpuid,
                    memory_mb=parsed.memory_mb,
                    storage_mb=storage_mb,
                    fail_behaviour=parsed.fail_behaviour,
                    arguments=parsed.arguments,
                    network_interfaces=self._assign_macs(parsed, None),
                    block_devices=parsed.block_device_models(),
                    digest=ImageStore.digest_of(binary),
                    instance_name=instance_name_for(name, 1),
                )
                delta = QuotaDelta.for_version(version)

                self._log.info(
                    "workload.deploy",
                    workload=name,
                    owner=owner,
                    cpuid=version.cpuid,
                    memory_mb=version.memory_mb,
                    storage_mb=version.storage_mb,
                    digest=version.digest,
                )

                await self._quota.reserve(
                    owner,
                    delta,
                    cpuid=version.cpuid,
                    bridges=version.bridges(),
                )

                try:
                    await self._images.put(binary)
                    await self._start(version)
                except Exception as e:
                    self._log.warning("workload.deploy.failed", workload=name, error=str(e))
                    await self._quota.release(owner, delta)
                    await self._drop_images(version.digest)
                    raise

                workload = Workload(
                    name=name,
                    owner=owner,
                    status=WorkloadStatus.RUNNING,
                    cpuid=version.cpuid,
                    memory_mb=version.memory_mb,
                    digest=version.digest,
                    started_at=utcnow(),
                )
                workload.apply_version(version)
                self._db.add(workload)
                await self._registry.sync_attachments(name, [version])
                try:
                    await self._db.commit()
                except Exception:
                    await self._db.rollback()
                    await self._stop_quietly(version.instance_name)
                    await self._quota.release(owner, delta)
                    await self._drop_images(version.digest)
                    raise
                await self._db.refresh(workload)

            await self._console.attach(name, self._launcher, version.instance_name)
        return workload

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    async def update(
        self,
        owner: str,
        name: str,
        *,
        config: Any = None,
        arguments: Any = None,
        liveliness: Any = None,
        binary: bytes | None = None,
    ) -> Workload:
        """Replace the running version with a health-confirmed candidate.

        Args:
            config: New configuration document (None keeps the running one)
            arguments: New argument list (None keeps the configured ones)
            liveliness: ``{"enabled", "http", "dns"}`` document (None keeps
                the running version's probes)
            binary: New unikernel image (None keeps the running image)

        Raises:
            ValidationError: Bad liveliness, configuration or empty binary
            NotFoundError: Workload or a referenced volume missing
            UpdateInProgressError: Another update of this workload is open
            QuotaExceededError: The candidate does not fit the policy
            LaunchFailedError: The candidate failed to start
            LaunchTimeoutError: The candidate did not start or become healthy in time
            UpdateInvalidatedError: A rollback or destroy cancelled the update
        """
        # Every shape check happens before any state change
        new_liveliness: Liveliness | None = None
        if liveliness is not None:
            new_liveliness = parse_liveliness(liveliness)
        parsed_config = parse_workload_config(config) if config is not None else None
        new_arguments = parse_arguments(arguments) if arguments is not None else None
        if binary is not None and not binary:
            raise ValidationError(
                message="binary must not be empty",
                details={"field": "binary", "reason": "empty"},
            )

        lock = await get_workload_lock(name)
        async with lock:
            job, previous, candidate = await self._stage_update(
                owner,
                name,
                parsed_config=parsed_config,
                new_arguments=new_arguments,
                liveliness_given=liveliness is not None,
                new_liveliness=new_liveliness,
                binary=binary,
            )
        job_id = job.id

        try:
            await self._start(candidate)
            healthy = await self._health.confirm(
                candidate.liveliness,
                timeout=self._settings.update.health_timeout_seconds,
            )
            if not healthy:
                await self._stop_quietly(candidate.instance_name)
                raise LaunchTimeoutError(
                    message="Update candidate did not become healthy",
                    details={
                        "workload": name,
                        "instance": candidate.instance_name,
                        "timeout": self._settings.update.health_timeout_seconds,
                    },
                )
        except Exception as e:
            self._log.warning("workload.update.failed", workload=name, job_id=job_id, error=str(e))
            async with lock:
                await self._discard_job(name, job_id=job_id, reason="candidate_failed")
            raise

        async with lock:
            return await self._finalize_update(owner, name, job_id, previous, candidate)

    async def _stage_update(
        self,
        owner: str,
        name: str,
        *,
        parsed_config: WorkloadConfig | None,
        new_arguments: list[str] | None,
        liveliness_given: bool,
        new_liveliness: Liveliness | None,
        binary: bytes | None,
    ) -> tuple[UpdateJob, WorkloadVersion, WorkloadVersion]:
        """Create the update job and reserve the candidate's quota (lock held)."""
        workload = await self._registry.require(name, owner)
        if await self._registry.get_job(name) is not None:
            raise UpdateInProgressError(
                message=f"An update of {name} is already in progress",
                details={"workload": name},
            )

        previous = workload.current_version()
        retained = workload.retained_version
        revision = max(previous.revision, retained.revision if retained else 0) + 1

        fields: dict[str, Any] = {
            "revision": revision,
            "instance_name": instance_name_for(name, revision),
        }
        if parsed_config is not None:
            fields.update(
                cpuid=parsed_config.cpuid,
                memory_mb=parsed_config.memory_mb,
                fail_behaviour=parsed_config.fail_behaviour,
                arguments=parsed_config.arguments,
                network_interfaces=self._assign_macs(parsed_config, previous),
                block_devices=parsed_config.block_device_models(),
            )
        if new_arguments is not None:
            fields["arguments"] = new_arguments
        if liveliness_given:
            fields["liveliness"] = new_liveliness
        if binary is not None:
            fields["digest"] = ImageStore.digest_of(binary)
        candidate = previous.model_copy(update=fields)

        async with volume_locks(candidate.volume_names()):
            if parsed_config is not None:
                storage_mb = await self._checked_volumes(owner, candidate.volume_names())
                candidate = candidate.model_copy(update={"storage_mb": storage_mb})

            delta = QuotaDelta.between(previous, candidate)
            grow = delta.positive()

            self._log.info(
                "workload.update",
                workload=name,
                owner=owner,
                revision=revision,
                digest=candidate.digest,
                memory_delta=delta.memory_mb,
                storage_delta=delta.storage_mb,
            )

            await self._quota.reserve(
                owner,
                delta,
                cpuid=candidate.cpuid,
                bridges=candidate.bridges(),
            )

            job = UpdateJob(
                id=f"upd-{uuid.uuid4().hex[:12]}",
                workload_name=name,
                owner=owner,
                previous=previous.model_dump(mode="json"),
                candidate=candidate.model_dump(mode="json"),
                reserved_memory_mb=grow.memory_mb,
                reserved_storage_mb=grow.storage_mb,
            )
            try:
                if binary is not None:
                    await self._images.put(binary)
                self._db.add(job)
                await self._registry.sync_attachments(name, [previous, retained, candidate])
                await self._db.commit()
            except Exception:
                await self._db.rollback()
                await self._quota.release(owner, grow)
                if binary is not None:
                    await self._drop_images(candidate.digest)
                raise

        return job, previous, candidate

    async def _finalize_update(
        self,
        owner: str,
        name: str,
        job_id: str,
        previous: WorkloadVersion,
        candidate: WorkloadVersion,
    ) -> Workload:
        """Swap the confirmed candidate in (lock held)."""
        job = await self._registry.get_job(name)
        if job is None or job.id != job_id:
            # Rollback or destroy discarded the job while the candidate started
            await self._stop_quietly(candidate.instance_name)
            await self._drop_images(candidate.digest)
            raise UpdateInvalidatedError(
                message=f"Update of {name} was invalidated",
                details={"workload": name, "job_id": job_id},
            )

        workload = await self._registry.require(name, owner)
        try:
            await self._stop(previous.instance_name)
        except PetrelError as e:
            self._log.error(
                "workload.update.stop_previous_failed",
                workload=name,
                instance=previous.instance_name,
                error=e.message,
            )

        discarded = workload.retained_version
        retained = previous.model_copy(update={"instance_name": None})

        workload.apply_version(candidate)
        workload.retained = retained.model_dump(mode="json")
        workload.status = WorkloadStatus.RUNNING
        workload.started_at = utcnow()
        await self._db.delete(job)
        await self._registry.sync_attachments(name, [candidate, retained])
        await self._db.commit()
        await self._db.refresh(workload)

        await self._quota.release(owner, QuotaDelta.between(previous, candidate).negative())
        if discarded is not None:
            await self._drop_images(discarded.digest)

        self._log.info(
            "workload.update.complete",
            workload=name,
            revision=candidate.revision,
            digest=candidate.digest,
        )
        await self._console.attach(name, self._launcher, candidate.instance_name)
        return workload

    async def _discard_job(
        self,
        name: str,
        *,
        job_id: str | None = None,
        reason: str,
    ) -> bool:
        """Stop the open job's candidate, release its reservation, delete it.

        Args:
            job_id: Only discard if the open job still has this id

        Returns:
            Whether a job was discarded
        """
        job = await self._registry.get_job(name)
        if job is None or (job_id is not None and job.id != job_id):
            return False

        candidate = job.candidate_version
        await self._stop_quietly(candidate.instance_name)

        workload = await self._registry.get(name)
        await self._db.delete(job)
        if workload is not None:
            await self._registry.sync_attachments(
                name, [workload.current_version(), workload.retained_version]
            )
        else:
            await self._registry.clear_attachments(name)
        await self._db.commit()

        await self._quota.release(
            job.owner,
            QuotaDelta(memory_mb=job.reserved_memory_mb, storage_mb=job.reserved_storage_mb),
        )
        await self._drop_images(candidate.digest)

        self._log.info("workload.update.discarded", workload=name, job_id=job.id, reason=reason)
        return True

    async def abandon_update(self, name: str, *, job_id: str | None = None) -> bool:
        """Discard a stale update job (supervisor entry point)."""
        lock = await get_workload_lock(name)
        async with lock:
            return await self._discard_job(name, job_id=job_id, reason="stale")

    # ------------------------------------------------------------------
    # Rollback / Restart / Destroy
    # ------------------------------------------------------------------

    async def rollback(self, owner: str, name: str) -> Workload:
        """Make the retained version running again.

        Raises:
            NotFoundError: Workload missing
            NoRollbackAvailableError: No retained version
            QuotaExceededError: The retained version no longer fits the policy
            LaunchFailedError: The retained version failed to start (no change)
            LaunchTimeoutError: The retained version did not start in time (no change)
        """
        lock = await get_workload_lock(name)
        async with lock:
            workload = await self._registry.require(name, owner)
            retained = workload.retained_version
            if retained is None:
                raise NoRollbackAvailableError(
                    message=f"No rollback available for {name}",
                    details={"workload": name},
                )

            await self._discard_job(name, reason="rollback")
            workload = await self._registry.require(name, owner)

            current = workload.current_version()
            target = retained.model_copy(
                update={"instance_name": instance_name_for(name, retained.revision)}
            )
            delta = QuotaDelta.between(current, target)

            self._log.info(
                "workload.rollback",
                workload=name,
                from_revision=current.revision,
                to_revision=target.revision,
            )

            await self._quota.reserve(owner, delta)
            try:
                await self._start(target)
            except PetrelError:
                await self._quota.release(owner, delta.positive())
                raise

            try:
                await self._stop(current.instance_name)
            except PetrelError as e:
                self._log.error(
                    "workload.rollback.stop_current_failed",
                    workload=name,
                    instance=current.instance_name,
                    error=e.message,
                )

            workload.apply_version(target)
            workload.retained = None
            workload.status = WorkloadStatus.RUNNING
            workload.started_at = utcnow()
            await self._registry.sync_attachments(name, [target])
            await self._db.commit()
            await self._db.refresh(workload)

            await self._quota.release(owner, delta.negative())
            await self._drop_images(current.digest)

            await self._console.attach(name, self._launcher, target.instance_name)
        return workload

    async def restart(self, owner: str, name: str) -> Workload:
        """Stop and relaunch the running version. Quota is not touched.

        Raises:
            NotFoundError: Workload missing
            LaunchFailedError: Stop or relaunch failed (relaunch failure
                records the workload as failed)
        """
        lock = await get_workload_lock(name)
        async with lock:
            workload = await self._registry.require(name, owner)
            return await self._restart_locked(workload)

    async def _restart_locked(self, workload: Workload) -> Workload:
        name = workload.name
        version = workload.current_version()
        self._log.info("workload.restart", workload=name, instance=version.instance_name)

        await self._stop(version.instance_name)
        try:
            await self._start(version)
        except PetrelError as e:
            workload.status = WorkloadStatus.FAILED
            workload.updated_at = utcnow()
            await self._db.commit()
            raise LaunchFailedError(
                message=f"Restart of {name} failed: {e.message}",
                details={"workload": name, "instance": version.instance_name},
            ) from e

        workload.status = WorkloadStatus.RUNNING
        workload.started_at = utcnow()
        workload.updated_at = utcnow()
        await self._db.commit()
        await self._db.refresh(workload)

        await self._console.attach(name, self._launcher, version.instance_name)
        return workload

    async def reconcile_exited(self, owner: str, name: str, instance_name: str) -> bool:
        """Apply the fail behaviour of a workload whose instance went away.

        ``instance_name`` is the instance observed as gone. Nothing happens
        when the workload has moved on to another instance, is no longer
        recorded running, or the instance is running again by the time the
        lock is held.

        Returns:
            Whether the workload was restarted or recorded as exited

        Raises:
            LaunchFailedError: The restart failed
        """
        lock = await get_workload_lock(name)
        async with lock:
            workload = await self._registry.get(name, owner)
            if (
                workload is None
                or workload.status != WorkloadStatus.RUNNING
                or workload.instance_name != instance_name
            ):
                return False
            info = await self._launcher.status(instance_name)
            if info.status == InstanceStatus.RUNNING:
                return False

            if workload.fail_behaviour == FailBehaviour.RESTART:
                await self._restart_locked(workload)
            else:
                workload.status = WorkloadStatus.EXITED
                workload.updated_at = utcnow()
                await self._db.commit()

        self._log.info(
            "workload.exited",
            workload=name,
            instance=instance_name,
            exit_code=info.exit_code,
            fail_behaviour=workload.fail_behaviour.value,
        )
        return True

    async def destroy(self, owner: str, name: str) -> None:
        """Destroy a workload. Its volumes survive.

        Raises:
            NotFoundError: Workload missing
            LaunchFailedError: The running instance could not be stopped
                (the workload is left as it was)
        """
        lock = await get_workload_lock(name)
        async with lock:
            workload = await self._registry.require(name, owner)
            self._log.info("workload.destroy", workload=name, owner=owner)

            await self._discard_job(name, reason="destroy")
            workload = await self._registry.require(name, owner)

            current = workload.current_version()
            retained = workload.retained_version
            await self._stop(current.instance_name)

            await self._registry.clear_attachments(name)
            await self._db.delete(workload)
            await self._db.commit()

            await self._quota.release(owner, QuotaDelta.for_version(current))
            await self._drop_images(current.digest, retained.digest if retained else None)

        await self._console.detach(name)
        await cleanup_workload_lock(name)
