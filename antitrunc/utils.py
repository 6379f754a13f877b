from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse

from .schemas.gemini import ErrorBody, ErrorResponse

CORS_HEADERS = {"Access-Control-Allow-Origin": "*"}


def log_debug(settings: Any, *args: Any) -> None:
    """Print a ``[proxy]`` line to stderr when debug mode is enabled."""
    if not getattr(settings, "debug", False):
        return
    ts = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    print(f"[proxy {ts}]", *args, file=sys.stderr)


def error_payload(status: int, message: str, details: Optional[Any] = None) -> Dict[str, Any]:
    return ErrorResponse(error=ErrorBody(code=status, message=message, details=details)).model_dump()


def json_error(status: int, message: str, details: Optional[Any] = None) -> JSONResponse:
    return JSONResponse(status_code=status, content=error_payload(status, message, details), headers=CORS_HEADERS)


def sse_data(data: Dict[str, Any]) -> bytes:
    return f"data: {json.dumps(data, ensure_ascii=False)}\n\n".encode()


def sse_error(status: int, message: str, details: Optional[Any] = None) -> bytes:
    payload = json.dumps(error_payload(status, message, details), ensure_ascii=False)
    return f"event: error\ndata: {payload}\n\n".encode()
