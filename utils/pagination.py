"""
Cursor pagination shared by every list endpoint.

A cursor is the (created_at, id) key of the last row a caller has seen,
serialized as base64 of canonical JSON:

    {"created_at": "2024-01-01T10:00:00.000001", "id": "<row id>"}

Rows are ordered by (created_at, id) so two rows with the same timestamp
still have a fixed position, and the next page starts strictly after the
cursor instead of at an offset. Rows inserted between two page requests
therefore never shift rows that were not yet returned.
"""
import base64
import binascii
import json
import logging
from datetime import datetime
from typing import NamedTuple, Optional, List, Tuple, Any
from sqlalchemy import and_, or_
from utils.clock import to_naive_utc

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 20
MAX_LIMIT = 100
SORT_ORDERS = ("asc", "desc")


class CursorDecodeError(ValueError):
    pass


class Cursor(NamedTuple):
    created_at: datetime
    id: str


def encode_cursor(cursor: Cursor) -> str:
    payload = json.dumps(
        {"created_at": cursor.created_at.isoformat(), "id": str(cursor.id)},
        sort_keys=True,
        separators=(",", ":"),
    )
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")


def decode_cursor(token: Optional[str], strict: bool = False) -> Optional[Cursor]:
    """
    Decode a cursor token.

    A missing token means "first page". A malformed token raises
    CursorDecodeError when strict, otherwise it is logged and also treated
    as "first page".
    """
    if not token:
        return None
    try:
        padded = token + "=" * (-len(token) % 4)
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
        data = json.loads(raw.decode("utf-8"))
        if not isinstance(data, dict):
            raise CursorDecodeError("cursor payload is not an object")
        created_at = data.get("created_at")
        row_id = data.get("id")
        if not isinstance(created_at, str) or row_id is None or row_id == "":
            raise CursorDecodeError("cursor is missing created_at or id")
        return Cursor(created_at=to_naive_utc(datetime.fromisoformat(created_at)), id=str(row_id))
    except (CursorDecodeError, ValueError, binascii.Error, UnicodeError) as e:
        if strict:
            if isinstance(e, CursorDecodeError):
                raise
            raise CursorDecodeError(f"Malformed cursor: {e}") from e
        logger.warning(f"Ignoring malformed pagination cursor: {e}")
        return None


def paginate(query, model, cursor: Optional[Cursor], limit: int = DEFAULT_LIMIT, sort_order: str = "desc") -> Tuple[List[Any], Optional[str]]:
    """
    Apply the keyset contract to a SQLAlchemy query.

    Fetches limit + 1 rows strictly after the cursor; when the extra row is
    present the page is trimmed and next_cursor points at the last returned
    row, otherwise next_cursor is None.
    """
    if sort_order not in SORT_ORDERS:
        raise ValueError(f"sort_order must be one of {SORT_ORDERS}")
    limit = max(1, min(int(limit), MAX_LIMIT))

    created_col = model.created_at
    id_col = model.id

    if cursor is not None:
        if sort_order == "desc":
            query = query.filter(
                or_(
                    created_col < cursor.created_at,
                    and_(created_col == cursor.created_at, id_col < cursor.id),
                )
            )
        else:
            query = query.filter(
                or_(
                    created_col > cursor.created_at,
                    and_(created_col == cursor.created_at, id_col > cursor.id),
                )
            )

    if sort_order == "desc":
        query = query.order_by(created_col.desc(), id_col.desc())
    else:
        query = query.order_by(created_col.asc(), id_col.asc())

    rows = query.limit(limit + 1).all()

    next_cursor = None
    if len(rows) > limit:
        rows = rows[:limit]
        last = rows[-1]
        next_cursor = encode_cursor(Cursor(created_at=last.created_at, id=last.id))

    return rows, next_cursor
