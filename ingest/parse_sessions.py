"""Streaming parser for JSONL session transcripts.

Reads one session file line by line (bounded memory regardless of file size),
decodes each line through the record contract and extracts the user/assistant
messages worth sending to Graphiti.

Filtering rules:
- ``type == "message"`` records with role ``user`` or ``assistant`` only
- only text segments of the content are kept (tool calls, attachments dropped)
- trimmed content must be longer than ``min_content_chars``
- content starting with a synthetic marker (``[cron:`` ...) is an automated
  turn and is excluded
- kept content is capped at ``max_content_chars``

Re-parsing the same file with the same cursor always yields the same messages;
checkpoint resume depends on this.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator

from ingest.common import parse_iso
from ingest.contracts import (
    MessageRecord,
    ParsedRecord,
    SessionMeta,
    Unrecognized,
    extract_text_content,
    parse_record_line,
)
from ingest.errors import FileReadError

logger = logging.getLogger(__name__)

UNKNOWN_GROUP_SUFFIX = 'unknown'
SKIP_BEFORE_SINCE = 'before_since'


@dataclass(frozen=True)
class ParseOptions:
    min_content_chars: int = 20
    max_content_chars: int = 3000
    synthetic_markers: tuple[str, ...] = ('[cron:',)
    display_names: dict[str, str] = field(
        default_factory=lambda: {'user': 'User', 'assistant': 'Assistant'}
    )
    group_id_prefix: str = 'sessions-dm'

    @classmethod
    def from_config(cls, config) -> ParseOptions:
        return cls(
            min_content_chars=config.min_content_chars,
            max_content_chars=config.max_content_chars,
            synthetic_markers=tuple(config.synthetic_markers),
            display_names=dict(config.display_names),
            group_id_prefix=config.group_id_prefix,
        )


@dataclass(frozen=True)
class ExtractedMessage:
    role_type: str
    display_name: str
    content: str
    timestamp: str | None
    group_id: str
    source_description: str

    def to_payload(self) -> dict[str, str | None]:
        return {
            'role_type': self.role_type,
            'role': self.display_name,
            'content': self.content,
            'timestamp': self.timestamp,
            'source_description': self.source_description,
        }


@dataclass
class ParsedSession:
    path: Path
    session_meta: SessionMeta | None = None
    messages: list[ExtractedMessage] = field(default_factory=list)
    group_id: str = ''
    lines_read: int = 0
    unrecognized_lines: int = 0
    skipped_reason: str | None = None

    @property
    def session_timestamp(self) -> str | None:
        return self.session_meta.timestamp if self.session_meta else None

    @property
    def last_timestamp(self) -> str | None:
        return max_timestamp(m.timestamp for m in self.messages)


def max_timestamp(values: Iterable[str | None]) -> str | None:
    """Latest of the given ISO timestamps (compared as instants); None if none parse."""
    best: str | None = None
    best_dt: datetime | None = None
    for value in values:
        dt = parse_iso(value)
        if dt is None:
            continue
        if best_dt is None or dt > best_dt:
            best, best_dt = value, dt
    return best


def group_id_for(session_meta: SessionMeta | None, prefix: str) -> str:
    """Group key for a session: ``<prefix>-<YYYY-MM-DD>`` of the session start (UTC)."""
    dt = parse_iso(session_meta.timestamp) if session_meta else None
    if dt is None:
        return f'{prefix}-{UNKNOWN_GROUP_SUFFIX}'
    return f'{prefix}-{dt.date().isoformat()}'


def iter_records(file_path: Path) -> Iterator[ParsedRecord]:
    """Yield one parsed record per non-blank line of *file_path*.

    Raises:
        FileReadError: the file cannot be opened or read. Malformed lines
            never raise; they come back as ``Unrecognized``.
    """
    try:
        with open(file_path, 'r', encoding='utf-8', errors='replace') as fh:
            for line_number, line in enumerate(fh, start=1):
                line = line.strip()
                if not line:
                    continue
                yield parse_record_line(line, line_number)
    except OSError as exc:
        raise FileReadError(str(file_path), exc.strerror or str(exc)) from exc


def _qualifying_text(record: MessageRecord, options: ParseOptions) -> str | None:
    if record.role not in ('user', 'assistant'):
        return None
    text = extract_text_content(record.content).strip()
    if len(text) <= options.min_content_chars:
        return None
    if any(text.startswith(marker) for marker in options.synthetic_markers):
        return None
    return text[: options.max_content_chars]


def parse_session_file(
    file_path: Path,
    *,
    cursor: str | None = None,
    since: datetime | None = None,
    options: ParseOptions | None = None,
) -> ParsedSession:
    """Parse a session file into the messages to ingest.

    Args:
        file_path: JSONL session transcript.
        cursor: capture mode only; messages at or before this timestamp are
            skipped, as are messages with no timestamp at all.
        since: backfill cutoff; if the session started before it the whole file
            is reported as ``skipped_reason="before_since"`` with no messages.
        options: extraction limits and naming.

    Raises:
        FileReadError: the file could not be read.
    """
    options = options or ParseOptions()
    cursor_dt = parse_iso(cursor) if cursor else None
    result = ParsedSession(path=file_path)
    source_description = file_path.name

    for record in iter_records(file_path):
        result.lines_read += 1

        if isinstance(record, Unrecognized):
            result.unrecognized_lines += 1
            logger.debug('%s: dropping line %d (%s)', file_path.name, record.line_number, record.reason)
            continue

        if isinstance(record, SessionMeta):
            if result.session_meta is not None:
                continue
            result.session_meta = record
            result.group_id = group_id_for(record, options.group_id_prefix)
            if since is not None:
                session_dt = parse_iso(record.timestamp)
                if session_dt is not None and session_dt < since:
                    result.skipped_reason = SKIP_BEFORE_SINCE
                    result.messages = []
                    return result
            continue

        text = _qualifying_text(record, options)
        if text is None:
            continue

        timestamp = record.timestamp or result.session_timestamp
        if cursor_dt is not None:
            msg_dt = parse_iso(timestamp)
            if msg_dt is None or msg_dt <= cursor_dt:
                continue

        result.messages.append(
            ExtractedMessage(
                role_type=record.role,
                display_name=options.display_names.get(record.role, record.role),
                content=text,
                timestamp=timestamp,
                group_id='',
                source_description=source_description,
            )
        )

    if not result.group_id:
        result.group_id = group_id_for(result.session_meta, options.group_id_prefix)

    # Session metadata may appear after the first messages; stamp the final group.
    result.messages = [replace(m, group_id=result.group_id) for m in result.messages]
    return result
