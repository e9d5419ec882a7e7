"""Response envelope shared by the v1 endpoints.

Success bodies mirror the error body rendered by PetrelError.to_dict::

    {"success": true, "status": 200, "message": "...", "data": {...}}
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel


class Envelope(BaseModel):
    success: bool = True
    status: int = 200
    message: str = ""
    data: Any = None


def ok(message: str, data: Any = None, *, status: int = 200) -> Envelope:
    return Envelope(success=True, status=status, message=message, data=data)
