"""Name validation for workloads and volumes.

Workload names become launcher instance names and volume names become
file names under the block store root, so both share one strict rule.
"""

from __future__ import annotations

import re

from petrel.errors import ValidationError

_NAME_RE = re.compile(r"[A-Za-z0-9.-]{1,63}")


def validate_name(name: str | None, *, field_name: str = "name") -> str:
    """Validate a workload or volume name.

    Rules:
    1. 1 to 63 characters
    2. Only letters, digits, hyphen and period
    3. Must not start with a hyphen

    Raises:
        ValidationError: If validation fails
    """
    if not name:
        raise ValidationError(
            message=f"{field_name} cannot be empty",
            details={"field": field_name, "reason": "empty"},
        )

    if not _NAME_RE.fullmatch(name):
        raise ValidationError(
            message=f"{field_name} must be 1-63 characters of [A-Za-z0-9.-]",
            details={"field": field_name, "value": name, "reason": "invalid_characters"},
        )

    if name.startswith("-"):
        raise ValidationError(
            message=f"{field_name} must not start with '-'",
            details={"field": field_name, "value": name, "reason": "leading_hyphen"},
        )

    return name
