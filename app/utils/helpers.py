"""
Helper utilities
"""
from datetime import date, datetime, timezone
from typing import Any, List, Optional

from dateutil import parser as date_parser


def chunk_list(lst: List, chunk_size: int) -> List[List]:
    """Split list into chunks"""
    return [lst[i:i + chunk_size] for i in range(0, len(lst), chunk_size)]


def utcnow() -> datetime:
    """Naive UTC now (matches how timestamps are stored)"""
    return datetime.utcnow()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a vendor timestamp into naive UTC.

    Shopify sends offsets (`2024-03-01T10:00:00+11:00`), Meta sends
    `2024-03-01T10:00:00+0000`; both are normalized to UTC without tzinfo.
    Raises ValueError for strings that are not timestamps.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = date_parser.isoparse(str(value)) if "T" in str(value) else date_parser.parse(str(value))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_date(value: Any) -> Optional[date]:
    """Parse `YYYY-MM-DD` (or a full timestamp) into a date"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date_parser.isoparse(str(value)).date()


def parse_gid(value: Any) -> Optional[int]:
    """
    Numeric id from a Shopify global id.

    `gid://shopify/Order/450789469` -> 450789469. Plain numbers pass through.
    """
    if value is None or value == "":
        return None
    if isinstance(value, int):
        return value
    tail = str(value).rsplit("/", 1)[-1]
    # Some gids carry a query suffix (`...?inventory_item_id=1`)
    tail = tail.split("?", 1)[0]
    return int(tail)


def gid_type(value: Any) -> Optional[str]:
    """Resource type from a global id (`gid://shopify/LineItem/1` -> `LineItem`)"""
    if not value or not str(value).startswith("gid://"):
        return None
    parts = str(value).split("/")
    return parts[3] if len(parts) > 4 else None


def to_float(value: Any, default: Optional[float] = None) -> Optional[float]:
    """Vendor money and metric fields arrive as strings"""
    if value is None or value == "":
        return default
    return float(value)


def to_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    if value is None or value == "":
        return default
    return int(float(value))
