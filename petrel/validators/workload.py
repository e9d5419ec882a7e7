"""Workload configuration validation.

Every check here runs before any lock, quota reservation or launcher call,
so a malformed request never leaves partial state behind.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from petrel.errors import ValidationError
from petrel.models.workload import (
    BlockDevice,
    DnsProbe,
    FailBehaviour,
    HttpProbe,
    Liveliness,
)
from petrel.validators.names import validate_name


@dataclass
class DeviceRequest:
    """A requested device binding, before MAC assignment."""

    name: str
    host_device: str
    sector_size: int = 512


@dataclass
class WorkloadConfig:
    """Validated workload configuration."""

    cpuid: int
    memory_mb: int
    fail_behaviour: FailBehaviour = FailBehaviour.QUIT
    arguments: list[str] = field(default_factory=list)
    network_interfaces: list[DeviceRequest] = field(default_factory=list)
    block_devices: list[DeviceRequest] = field(default_factory=list)

    def block_device_models(self) -> list[BlockDevice]:
        return [
            BlockDevice(name=d.name, host_device=d.host_device, sector_size=d.sector_size)
            for d in self.block_devices
        ]

    def volume_names(self) -> set[str]:
        return {d.host_device for d in self.block_devices}

    def bridges(self) -> set[str]:
        return {d.host_device for d in self.network_interfaces}


def _invalid(message: str, **details: Any) -> ValidationError:
    return ValidationError(message=message, details=details)


def _require_int(raw: dict[str, Any], key: str, *, minimum: int) -> int:
    if key not in raw:
        raise _invalid(f"config.{key} is required", field=key, reason="missing")
    value = raw[key]
    # bool is an int subclass; "true" is not a CPU id
    if isinstance(value, bool) or not isinstance(value, int):
        raise _invalid(f"config.{key} must be an integer", field=key, value=value)
    if value < minimum:
        raise _invalid(
            f"config.{key} must be >= {minimum}",
            field=key,
            value=value,
            reason="out_of_range",
        )
    return value


def parse_fail_behaviour(value: Any) -> FailBehaviour:
    """Accept "quit", "restart" or {"restart": bool}."""
    if value is None:
        return FailBehaviour.QUIT
    if isinstance(value, str):
        try:
            return FailBehaviour(value)
        except ValueError:
            raise _invalid(
                "config.fail_behaviour must be 'quit' or 'restart'",
                field="fail_behaviour",
                value=value,
            ) from None
    if isinstance(value, dict) and set(value) == {"restart"} and isinstance(value["restart"], bool):
        return FailBehaviour.RESTART if value["restart"] else FailBehaviour.QUIT
    raise _invalid(
        "config.fail_behaviour must be 'quit', 'restart' or {'restart': bool}",
        field="fail_behaviour",
        value=value,
    )


def parse_arguments(value: Any) -> list[str]:
    """Arguments are passed to the unikernel verbatim."""
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(a, str) for a in value):
        raise _invalid("arguments must be a list of strings", field="arguments")
    return list(value)


def _parse_devices(value: Any, *, kind: str, with_sector_size: bool) -> list[DeviceRequest]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise _invalid(f"config.{kind} must be a list", field=kind)

    devices: list[DeviceRequest] = []
    seen: set[str] = set()
    for index, entry in enumerate(value):
        if not isinstance(entry, dict):
            raise _invalid(f"config.{kind}[{index}] must be an object", field=kind, index=index)

        name = entry.get("name")
        host_device = entry.get("host_device")
        # A lone selector or a lone logical name is never completed implicitly
        if not isinstance(name, str) or not name or not isinstance(host_device, str) or not host_device:
            raise _invalid(
                f"config.{kind}[{index}] requires both name and host_device",
                field=kind,
                index=index,
                reason="incomplete_device",
            )
        if name in seen:
            raise _invalid(
                f"config.{kind}[{index}] duplicates logical name {name!r}",
                field=kind,
                index=index,
                reason="duplicate_device",
            )
        seen.add(name)

        device = DeviceRequest(name=name, host_device=host_device)
        if with_sector_size:
            validate_name(host_device, field_name=f"{kind}[{index}].host_device")
            sector_size = entry.get("sector_size", 512)
            if (
                isinstance(sector_size, bool)
                or not isinstance(sector_size, int)
                or sector_size < 512
                or sector_size % 512
            ):
                raise _invalid(
                    f"config.{kind}[{index}].sector_size must be a positive multiple of 512",
                    field=kind,
                    index=index,
                    value=sector_size,
                )
            device.sector_size = sector_size
        devices.append(device)
    return devices


def parse_workload_config(raw: Any) -> WorkloadConfig:
    """Validate a deploy/update configuration document.

    Expected shape::

        {
            "cpuid": 0,
            "memory": 256,
            "fail_behaviour": "quit" | "restart" | {"restart": true},
            "arguments": ["--port=80"],
            "network_interfaces": [{"name": "service", "host_device": "br0"}],
            "block_devices": [{"name": "storage", "host_device": "vol-1"}],
        }

    Raises:
        ValidationError: On the first violated rule
    """
    if not isinstance(raw, dict):
        raise _invalid("config must be a JSON object", field="config")

    return WorkloadConfig(
        cpuid=_require_int(raw, "cpuid", minimum=0),
        memory_mb=_require_int(raw, "memory", minimum=1),
        fail_behaviour=parse_fail_behaviour(raw.get("fail_behaviour")),
        arguments=parse_arguments(raw.get("arguments")),
        network_interfaces=_parse_devices(
            raw.get("network_interfaces"), kind="network_interfaces", with_sector_size=False
        ),
        block_devices=_parse_devices(
            raw.get("block_devices"), kind="block_devices", with_sector_size=True
        ),
    )


def normalize_dns_name(name: str) -> str:
    """ASCII (IDNA) form of ``name`` without the trailing root dot.

    Raises:
        ValueError: Empty labels, labels over 63 octets, names over 253
            octets, or names IDNA cannot encode
    """
    ascii_name = name.rstrip(".").encode("idna").decode("ascii")
    labels = ascii_name.split(".")
    if len(ascii_name) > 253 or any(not 1 <= len(label) <= 63 for label in labels):
        raise ValueError(f"invalid DNS name: {name!r}")
    return ascii_name


def parse_liveliness(raw: Any) -> Liveliness | None:
    """Validate an update's liveliness document.

    ``{"enabled": false}`` (or no probes and not enabled) disables probing.
    When enabled, at least one of http/dns must be configured; http needs
    an address and dns needs both address and name.

    Returns:
        The probe configuration, or None when probing is disabled
    """
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise _invalid("liveliness must be a JSON object", field="liveliness")

    enabled = raw.get("enabled", True)
    if not isinstance(enabled, bool):
        raise _invalid("liveliness.enabled must be a boolean", field="liveliness.enabled")
    if not enabled:
        return None

    http_raw = raw.get("http")
    dns_raw = raw.get("dns")
    http: HttpProbe | None = None
    dns: DnsProbe | None = None

    if http_raw is not None:
        address = http_raw.get("address") if isinstance(http_raw, dict) else None
        if not isinstance(address, str) or not address:
            raise _invalid(
                "liveliness.http requires an address",
                field="liveliness.http",
                reason="missing_address",
            )
        http = HttpProbe(address=address)

    if dns_raw is not None:
        if not isinstance(dns_raw, dict):
            raise _invalid("liveliness.dns must be an object", field="liveliness.dns")
        address = dns_raw.get("address")
        name = dns_raw.get("name")
        if not isinstance(address, str) or not address or not isinstance(name, str) or not name:
            raise _invalid(
                "liveliness.dns requires both address and name",
                field="liveliness.dns",
                reason="incomplete_probe",
            )
        try:
            name = normalize_dns_name(name)
        except ValueError as e:
            raise _invalid(
                "liveliness.dns.name is not a valid DNS name",
                field="liveliness.dns.name",
                value=name,
                reason="invalid_dns_name",
            ) from e
        dns = DnsProbe(address=address, name=name)

    if http is None and dns is None:
        raise _invalid(
            "liveliness enabled without an http or dns probe",
            field="liveliness",
            reason="no_probe",
        )

    return Liveliness(http=http, dns=dns)
