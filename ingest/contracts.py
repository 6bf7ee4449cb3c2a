"""SESSION_RECORD_CONTRACT_V1 -- schema for JSONL session log lines.

Every non-blank line of a session file decodes to exactly one of:

- ``SessionMeta``   ``{"type": "session", "id", "timestamp", "cwd"}``
- ``MessageRecord`` ``{"type": "message", "timestamp", "message": {"role", "content"}}``
- ``Unrecognized``  anything else, including lines that fail JSON decoding or
  validation of a known shape.

Parsing never raises for bad input; the caller decides what to do with an
``Unrecognized`` record (the parser drops it and keeps streaming).
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from ingest.common import normalize_timestamp
from ingest.errors import ParseError

SESSION_RECORD_CONTRACT_VERSION = 'v1'

KNOWN_RECORD_TYPES = {'session', 'message'}


def _normalize_ts_field(value: Any) -> str | None:
    normalized, error = normalize_timestamp(value)
    if error:
        raise ValueError(error)
    return normalized


class SessionMeta(BaseModel):
    model_config = ConfigDict(extra='ignore', frozen=True)

    type: Literal['session']
    id: str | None = None
    timestamp: str | None = None
    cwd: str | None = None

    @field_validator('id', 'cwd', mode='before')
    @classmethod
    def _stringify(cls, value: Any) -> str | None:
        if value is None:
            return None
        return str(value)

    @field_validator('timestamp', mode='before')
    @classmethod
    def _timestamp(cls, value: Any) -> str | None:
        return _normalize_ts_field(value)


class MessageBody(BaseModel):
    model_config = ConfigDict(extra='ignore', frozen=True)

    role: str
    content: str | list[Any] | None = None


class MessageRecord(BaseModel):
    model_config = ConfigDict(extra='ignore', frozen=True)

    type: Literal['message']
    timestamp: str | None = None
    message: MessageBody

    @field_validator('timestamp', mode='before')
    @classmethod
    def _timestamp(cls, value: Any) -> str | None:
        return _normalize_ts_field(value)

    @property
    def role(self) -> str:
        return self.message.role

    @property
    def content(self) -> str | list[Any] | None:
        return self.message.content


@dataclass(frozen=True)
class Unrecognized:
    line_number: int
    reason: str


ParsedRecord = Union[SessionMeta, MessageRecord, Unrecognized]

_KNOWN_RECORD = TypeAdapter(
    Annotated[Union[SessionMeta, MessageRecord], Field(discriminator='type')]
)


def decode_record(line: str, line_number: int) -> SessionMeta | MessageRecord:
    """Decode one JSONL line into a known record shape.

    Raises:
        ParseError: the line is not JSON, not an object, not a known shape,
            or a known shape that fails validation.
    """
    try:
        obj = json.loads(line)
    except json.JSONDecodeError as exc:
        raise ParseError(line_number, f'invalid JSON ({exc.msg})') from exc
    except (RecursionError, ValueError) as exc:
        raise ParseError(line_number, f'undecodable JSON ({type(exc).__name__})') from exc

    if not isinstance(obj, dict):
        raise ParseError(line_number, f'expected object, got {type(obj).__name__}')

    record_type = obj.get('type')
    if record_type not in KNOWN_RECORD_TYPES:
        raise ParseError(line_number, f'unrecognized record type {record_type!r}')

    try:
        return _KNOWN_RECORD.validate_python(obj)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        loc = '.'.join(str(part) for part in first.get('loc', ()))
        raise ParseError(
            line_number, f'invalid {record_type} record at {loc or "?"}: {first.get("msg", exc)}'
        ) from exc


def parse_record_line(line: str, line_number: int) -> ParsedRecord:
    """Tolerant wrapper around :func:`decode_record`; never raises."""
    try:
        return decode_record(line, line_number)
    except ParseError as exc:
        return Unrecognized(line_number=line_number, reason=exc.reason)


def extract_text_content(content: str | list[Any] | None) -> str:
    """Concatenate the text-bearing segments of a message body.

    A flat string is returned as-is. For a segment list only ``type == "text"``
    segments are kept, in order, newline-joined; tool calls, thinking blocks
    and attachments are dropped.
    """
    if not content:
        return ''
    if isinstance(content, str):
        return content
    parts: list[str] = []
    for item in content:
        if not isinstance(item, dict):
            continue
        if item.get('type') == 'text':
            txt = item.get('text')
            if isinstance(txt, str):
                parts.append(txt)
    return '\n'.join(parts)
