import uuid
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC now; every stored timestamp uses this form."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_gateway_datetime(value):
    """Parse an ISO-8601 timestamp as sent by Paystack ("2024-01-01T10:00:00.000Z")."""
    if not value:
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    text_value = str(value).strip()
    if text_value.endswith("Z"):
        text_value = text_value[:-1] + "+00:00"
    try:
        return to_naive_utc(datetime.fromisoformat(text_value))
    except ValueError:
        return None


def new_id() -> str:
    return str(uuid.uuid4())
