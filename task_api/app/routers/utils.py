from __future__ import annotations

from typing import Any

from fastapi import Response
from pydantic import BaseModel


def json_response(status_code: int, model: BaseModel) -> Response:
    return Response(
        status_code=status_code,
        media_type="application/json",
        content=model.model_dump_json(by_alias=True),
    )


def internal_error_response() -> Response:
    return Response(
        status_code=500,
        media_type="application/json",
        content='{"error":"Internal Server Error"}',
    )


def missing_or_blank(body: dict[str, Any], key: str) -> bool:
    """Absent, null, false, zero or a blank string. Empty arrays and objects count as present."""
    value = body.get(key)
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return False
    return not value


__all__ = ["json_response", "internal_error_response", "missing_or_blank"]
