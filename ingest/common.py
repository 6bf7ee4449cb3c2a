"""Shared helpers for the session ingestion lane (timestamps, JSON state I/O)."""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

# Epoch values above this are taken to be milliseconds rather than seconds.
_EPOCH_MS_THRESHOLD = 10**11


def now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace('+00:00', 'Z')


def format_iso(dt: datetime) -> str:
    """Render an aware datetime as UTC ISO-8601 with a ``Z`` suffix.

    Sub-second precision is kept (milliseconds when that is exact) so that
    cursor comparisons never collapse two distinct message timestamps.
    """
    dt = dt.astimezone(timezone.utc)
    if dt.microsecond == 0:
        timespec = 'seconds'
    elif dt.microsecond % 1000 == 0:
        timespec = 'milliseconds'
    else:
        timespec = 'microseconds'
    return dt.isoformat(timespec=timespec).replace('+00:00', 'Z')


def parse_iso(value: Any) -> datetime | None:
    """Parse an ISO-8601 string or epoch number to a UTC-aware datetime.

    Returns None for absent, empty or malformed values (lenient parser).
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = float(value)
        if abs(seconds) > _EPOCH_MS_THRESHOLD:
            seconds /= 1000.0
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            return None

    txt = str(value).strip()
    if not txt:
        return None
    try:
        if txt.endswith('Z') or txt.endswith('z'):
            dt = datetime.fromisoformat(txt[:-1]).replace(tzinfo=timezone.utc)
        else:
            dt = datetime.fromisoformat(txt)
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except (ValueError, TypeError):
        return None


def normalize_timestamp(raw: Any) -> tuple[str | None, str | None]:
    """Strict timestamp validation at the ingest boundary.

    Returns ``(normalized_iso, error)``. Absent or empty values are valid and
    yield ``(None, None)``; present but unparseable values yield an error string
    so the caller can reject the record.
    """
    if raw is None:
        return (None, None)
    if isinstance(raw, str) and not raw.strip():
        return (None, None)

    dt = parse_iso(raw)
    if dt is None:
        return (None, f'malformed timestamp {raw!r}: not parseable as ISO-8601')
    return (format_iso(dt), None)


def parse_since(value: str) -> datetime:
    """Parse a ``--since`` cutoff (``YYYY-MM-DD`` or full ISO-8601) as UTC."""
    dt = parse_iso(value)
    if dt is None:
        raise ValueError(f'invalid date {value!r} (expected YYYY-MM-DD or ISO-8601)')
    return dt


def read_json_file(path: Path) -> Any:
    with path.open('r', encoding='utf-8') as fh:
        return json.load(fh)


def write_json_atomic(path: Path, payload: Any) -> None:
    """Replace *path* with *payload* as JSON without ever exposing a partial file.

    The document is written to a sibling temp file, flushed and fsynced, then
    moved over the target with ``os.replace`` (atomic on POSIX).
    """
    tmp_path = path.with_name(f'{path.name}.tmp')
    with open(tmp_path, 'w', encoding='utf-8') as fh:
        json.dump(payload, fh, indent=2, ensure_ascii=True)
        fh.write('\n')
        fh.flush()
        os.fsync(fh.fileno())
    os.replace(tmp_path, path)
