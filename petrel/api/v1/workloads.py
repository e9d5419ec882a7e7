"""Workloads API endpoints.

Deploy and update take multipart forms: JSON documents travel as form
fields next to the unikernel binary.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, File, Form, Query, UploadFile
from pydantic import BaseModel

from petrel.api.dependencies import AuthDep, LauncherDep, WorkloadManagerDep
from petrel.api.v1.responses import Envelope, ok
from petrel.errors import ValidationError
from petrel.managers.workload import WorkloadListItem
from petrel.models.workload import Workload

router = APIRouter()


class WorkloadResponse(BaseModel):
    """Workload view polled by the dashboard."""

    name: str
    type: str
    status: str
    fail_behaviour: str
    cpuid: int
    memory: int
    storage: int
    digest: str
    revision: int
    arguments: list[str]
    network_interfaces: list[dict[str, Any]]
    block_devices: list[dict[str, Any]]
    liveliness: dict[str, Any] | None
    can_rollback: bool
    update_in_progress: bool
    created_at: datetime
    updated_at: datetime


class ConsoleLineResponse(BaseModel):
    timestamp: datetime
    line: str


def _workload_to_response(
    workload: Workload,
    launcher_type: str,
    *,
    update_in_progress: bool = False,
) -> dict[str, Any]:
    return WorkloadResponse(
        name=workload.name,
        type=launcher_type,
        status=workload.status.value,
        fail_behaviour=workload.fail_behaviour.value,
        cpuid=workload.cpuid,
        memory=workload.memory_mb,
        storage=workload.storage_mb,
        digest=workload.digest,
        revision=workload.revision,
        arguments=workload.arguments,
        network_interfaces=workload.network_interfaces,
        block_devices=workload.block_devices,
        liveliness=workload.liveliness,
        can_rollback=workload.can_rollback,
        update_in_progress=update_in_progress,
        created_at=workload.created_at,
        updated_at=workload.updated_at,
    ).model_dump(mode="json")


def _item_to_response(item: WorkloadListItem, launcher_type: str) -> dict[str, Any]:
    return _workload_to_response(
        item.workload,
        launcher_type,
        update_in_progress=item.update_in_progress,
    )


def _parse_json_field(raw: str | None, field: str) -> Any:
    """Decode a JSON form field (None stays None)."""
    if raw is None or raw == "":
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(
            message=f"{field} is not valid JSON",
            details={"field": field, "reason": e.msg},
        ) from e


@router.post("", response_model=Envelope, status_code=201)
async def deploy_workload(
    workload_mgr: WorkloadManagerDep,
    launcher: LauncherDep,
    owner: AuthDep,
    name: str = Form(...),
    config: str = Form(...),
    binary: UploadFile = File(...),
) -> Envelope:
    """Deploy a new workload."""
    workload = await workload_mgr.deploy(
        owner,
        name,
        _parse_json_field(config, "config"),
        await binary.read(),
    )
    return ok(
        f"Workload {name} deployed",
        _workload_to_response(workload, launcher.type),
        status=201,
    )


@router.get("", response_model=Envelope)
async def list_workloads(
    workload_mgr: WorkloadManagerDep,
    launcher: LauncherDep,
    owner: AuthDep,
) -> Envelope:
    """List the caller's workloads."""
    items = await workload_mgr.list(owner)
    return ok(
        f"{len(items)} workloads",
        {"items": [_item_to_response(item, launcher.type) for item in items]},
    )


@router.get("/{name}", response_model=Envelope)
async def get_workload(
    name: str,
    workload_mgr: WorkloadManagerDep,
    launcher: LauncherDep,
    owner: AuthDep,
) -> Envelope:
    item = await workload_mgr.get(owner, name)
    return ok(f"Workload {name}", _item_to_response(item, launcher.type))


@router.post("/{name}/update", response_model=Envelope)
async def update_workload(
    name: str,
    workload_mgr: WorkloadManagerDep,
    launcher: LauncherDep,
    owner: AuthDep,
    config: str | None = Form(None),
    arguments: str | None = Form(None),
    liveliness: str | None = Form(None),
    binary: UploadFile | None = File(None),
) -> Envelope:
    """Update a workload.

    The request returns once the candidate is confirmed healthy and has
    replaced the running version, or once the update failed.
    """
    workload = await workload_mgr.update(
        owner,
        name,
        config=_parse_json_field(config, "config"),
        arguments=_parse_json_field(arguments, "arguments"),
        liveliness=_parse_json_field(liveliness, "liveliness"),
        binary=await binary.read() if binary is not None else None,
    )
    return ok(f"Workload {name} updated", _workload_to_response(workload, launcher.type))


@router.post("/{name}/rollback", response_model=Envelope)
async def rollback_workload(
    name: str,
    workload_mgr: WorkloadManagerDep,
    launcher: LauncherDep,
    owner: AuthDep,
) -> Envelope:
    workload = await workload_mgr.rollback(owner, name)
    return ok(f"Workload {name} rolled back", _workload_to_response(workload, launcher.type))


@router.post("/{name}/restart", response_model=Envelope)
async def restart_workload(
    name: str,
    workload_mgr: WorkloadManagerDep,
    launcher: LauncherDep,
    owner: AuthDep,
) -> Envelope:
    workload = await workload_mgr.restart(owner, name)
    return ok(f"Workload {name} restarted", _workload_to_response(workload, launcher.type))


@router.post("/{name}/destroy", response_model=Envelope)
async def destroy_workload(
    name: str,
    workload_mgr: WorkloadManagerDep,
    owner: AuthDep,
) -> Envelope:
    """Destroy a workload. Attached volumes are kept."""
    await workload_mgr.destroy(owner, name)
    return ok(f"Workload {name} destroyed")


@router.get("/{name}/console", response_model=Envelope)
async def read_console(
    name: str,
    workload_mgr: WorkloadManagerDep,
    owner: AuthDep,
    since: datetime | None = Query(None, description="Only lines newer than this (UTC)"),
    limit: int | None = Query(None, ge=0, le=10000),
) -> Envelope:
    """Snapshot of the workload's console ring buffer."""
    if since is not None and since.tzinfo is not None:
        since = since.astimezone(UTC).replace(tzinfo=None)
    lines = await workload_mgr.console(owner, name, since=since, limit=limit)
    return ok(
        f"{len(lines)} console lines",
        [
            ConsoleLineResponse(timestamp=entry.timestamp, line=entry.line).model_dump(mode="json")
            for entry in lines
        ],
    )
