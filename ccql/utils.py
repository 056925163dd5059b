from __future__ import annotations

import datetime as dt

EPOCH = dt.datetime(1970, 1, 1, tzinfo=dt.UTC)
_ONE_MS = dt.timedelta(milliseconds=1)


def parse_iso8601(value: str) -> dt.datetime | None:
    raw = value.strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.UTC)
    return parsed.astimezone(dt.UTC)


def to_epoch_ms(value: dt.datetime) -> int:
    return (value - EPOCH) // _ONE_MS


def format_iso_ms(epoch_ms: int) -> str:
    moment = EPOCH + dt.timedelta(milliseconds=epoch_ms)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def parse_day(value: str, *, end_of_day: bool = False) -> int:
    """Turn ``YYYY-MM-DD`` into epoch-ms at the start (or last ms) of that UTC day."""

    day = dt.date.fromisoformat(value.strip())
    start = dt.datetime.combine(day, dt.time(), tzinfo=dt.UTC)
    if end_of_day:
        return to_epoch_ms(start + dt.timedelta(days=1)) - 1
    return to_epoch_ms(start)
