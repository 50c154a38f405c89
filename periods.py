import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings
from errors import MalformedTimestamp
from models import IntervalUnit

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
MILLIS_PER_HOUR = 3_600_000

_TIMESTAMP_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}(Z|[+-]\d{2}:?\d{2})$"
)


@dataclass(frozen=True)
class Bucket:
    start_millis: int
    end_millis: int


def ledger_timezone() -> ZoneInfo:
    return ZoneInfo(get_settings().timezone)


def to_millis(moment: datetime) -> int:
    return (moment - EPOCH) // timedelta(milliseconds=1)


def from_millis(millis: int, tz: Optional[ZoneInfo] = None) -> datetime:
    return (EPOCH + timedelta(milliseconds=millis)).astimezone(tz or ledger_timezone())


def parse_timestamp(value: str) -> int:
    """Parse a ``yyyy-MM-ddTHH:mm:ss.SSS±hh:mm`` string into epoch millis."""
    text = (value or "").strip()
    if not _TIMESTAMP_RE.match(text):
        raise MalformedTimestamp(f"Malformed timestamp: {value!r}")
    try:
        moment = datetime.strptime(text, "%Y-%m-%dT%H:%M:%S.%f%z")
    except ValueError as exc:
        raise MalformedTimestamp(f"Malformed timestamp: {value!r}") from exc
    return to_millis(moment)


def format_timestamp(millis: int, tz: Optional[ZoneInfo] = None) -> str:
    moment = from_millis(millis, tz)
    return f"{moment:%Y-%m-%dT%H:%M:%S}.{moment.microsecond // 1000:03d}{moment:%z}"


def month_index(moment: datetime) -> int:
    return moment.year * 12 + (moment.month - 1)


def add_months(d: date, count: int) -> date:
    index = (d.year * 12) + (d.month - 1) + count
    return date(index // 12, (index % 12) + 1, 1)


def month_start_millis(index: int, tz: Optional[ZoneInfo] = None) -> int:
    tz = tz or ledger_timezone()
    start = datetime(index // 12, (index % 12) + 1, 1, tzinfo=tz)
    return to_millis(start)


def _local_midnight_millis(d: date, tz: ZoneInfo) -> int:
    return to_millis(datetime.combine(d, time.min, tzinfo=tz))


def bucket_bounds(
    unit: IntervalUnit,
    count: int,
    *,
    now: Optional[datetime] = None,
    tz: Optional[ZoneInfo] = None,
) -> list[Bucket]:
    """
    Buckets ending with the one containing ``now``, most recent first.

    Boundaries are local midnights in ``tz``; weeks start on Monday and hour
    buckets are aligned to the local hour.
    """
    tz = tz or ledger_timezone()
    now = (now or datetime.now(tz)).astimezone(tz)
    buckets: list[Bucket] = []

    if unit == IntervalUnit.hour:
        top = now.replace(minute=0, second=0, microsecond=0)
        end = to_millis(top) + MILLIS_PER_HOUR
        for _ in range(count):
            buckets.append(Bucket(end - MILLIS_PER_HOUR, end))
            end -= MILLIS_PER_HOUR
        return buckets

    today = now.date()
    if unit == IntervalUnit.day:
        start = today
        for _ in range(count):
            nxt = start + timedelta(days=1)
            buckets.append(
                Bucket(_local_midnight_millis(start, tz), _local_midnight_millis(nxt, tz))
            )
            start -= timedelta(days=1)
    elif unit == IntervalUnit.week:
        start = today - timedelta(days=today.weekday())
        for _ in range(count):
            nxt = start + timedelta(weeks=1)
            buckets.append(
                Bucket(_local_midnight_millis(start, tz), _local_midnight_millis(nxt, tz))
            )
            start -= timedelta(weeks=1)
    elif unit == IntervalUnit.month:
        start = today.replace(day=1)
        for _ in range(count):
            nxt = add_months(start, 1)
            buckets.append(
                Bucket(_local_midnight_millis(start, tz), _local_midnight_millis(nxt, tz))
            )
            start = add_months(start, -1)
    else:
        start = date(today.year, 1, 1)
        for _ in range(count):
            nxt = date(start.year + 1, 1, 1)
            buckets.append(
                Bucket(_local_midnight_millis(start, tz), _local_midnight_millis(nxt, tz))
            )
            start = date(start.year - 1, 1, 1)
    return buckets
