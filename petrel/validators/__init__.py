"""Validation utilities for Petrel."""

from petrel.validators.names import validate_name
from petrel.validators.workload import (
    DeviceRequest,
    WorkloadConfig,
    parse_arguments,
    parse_fail_behaviour,
    parse_liveliness,
    parse_workload_config,
)

__all__ = [
    "DeviceRequest",
    "WorkloadConfig",
    "parse_arguments",
    "parse_fail_behaviour",
    "parse_liveliness",
    "parse_workload_config",
    "validate_name",
]
