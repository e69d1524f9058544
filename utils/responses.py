from typing import Any, Optional
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from utils.clock import utcnow


def _timestamp() -> str:
    return utcnow().isoformat() + "Z"


def success_response(data: Any, status_code: int = 200, next_cursor: Optional[str] = None, paginated: bool = False) -> JSONResponse:
    """
    Wrap a payload in the {success, data, timestamp, statusCode} envelope.
    List endpoints pass paginated=True to add pagination.nextCursor.
    """
    body = {
        "success": True,
        "data": data,
        "timestamp": _timestamp(),
        "statusCode": status_code,
    }
    if paginated:
        body["pagination"] = {"nextCursor": next_cursor}
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def error_response(error: Any, status_code: int) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({"success": False, "error": error}),
    )


def row_to_dict(row) -> dict:
    return {c.name: getattr(row, c.name) for c in row.__table__.columns}
