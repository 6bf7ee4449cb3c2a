"""Durable per-file ingestion checkpoints.

State file layout (JSON)::

    {
      "version": 1,
      "processed": {filename: {processedAt, groupId, messageCount, cursorTimestamp}},
      "skipped":   {filename: {skippedAt, reason, messageCount, sessionTimestamp}},
      "failed":    {filename: {failedAt, reason, error, groupId, messageCount,
                               ingestedCount, cursorTimestamp}},
      "createdAt": ..., "updatedAt": ..., "legacyImports": [path, ...]
    }

A filename lives in exactly one of the three maps. Every mutation is written
through immediately with an atomic whole-file replace, so a crash can lose at
most the decision that was being taken, never one already recorded.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator

from ingest.common import now_iso, parse_iso, read_json_file, write_json_atomic
from ingest.errors import CheckpointLockedError, FatalStartupError, StateCorruptionError

logger = logging.getLogger(__name__)

STATE_VERSION = 1

STATUS_PROCESSED = 'processed'
STATUS_SKIPPED = 'skipped'
STATUS_FAILED = 'failed'
STATUSES = (STATUS_PROCESSED, STATUS_SKIPPED, STATUS_FAILED)

LEGACY_GROUP_ID = 'legacy-import'

_TIMESTAMP_KEYS = {
    STATUS_PROCESSED: 'processedAt',
    STATUS_SKIPPED: 'skippedAt',
    STATUS_FAILED: 'failedAt',
}


@dataclass(frozen=True)
class CheckpointEntry:
    name: str
    status: str
    reason: str | None = None
    group_id: str | None = None
    message_count: int | None = None
    cursor_timestamp: str | None = None
    recorded_at: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def resume_cursor(self) -> str | None:
        """Cursor to resume a capture run from.

        Entries written by a backfill run before cursors were tracked fall back
        to the time they were recorded.
        """
        if self.cursor_timestamp:
            return self.cursor_timestamp
        if self.status == STATUS_PROCESSED:
            return self.recorded_at
        return None

    @property
    def ingested_count(self) -> int:
        if self.status == STATUS_PROCESSED:
            return self.message_count or 0
        value = self.details.get('ingestedCount')
        return value if isinstance(value, int) else 0


def _empty_state() -> dict[str, Any]:
    return {
        'version': STATE_VERSION,
        'processed': {},
        'skipped': {},
        'failed': {},
        'createdAt': now_iso(),
        'updatedAt': None,
        'legacyImports': [],
    }


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    return None


def _later(a: str | None, b: str | None) -> str | None:
    """The later of two ISO timestamps, comparing instants; tolerant of None."""
    a_dt, b_dt = parse_iso(a), parse_iso(b)
    if a_dt is None:
        return b if b_dt is not None else a
    if b_dt is None:
        return a
    return b if b_dt > a_dt else a


def _normalize_entry(entry: Any) -> dict[str, Any]:
    if not isinstance(entry, dict):
        return {}
    out = dict(entry)
    # Pre-v1 backfill state used "messages" for the count.
    if 'messageCount' not in out and 'messages' in out:
        out['messageCount'] = out.pop('messages')
    return out


def _normalize_state(raw: dict[str, Any]) -> dict[str, Any]:
    state = _empty_state()
    state['createdAt'] = raw.get('createdAt') or state['createdAt']
    state['updatedAt'] = raw.get('updatedAt')
    imports = raw.get('legacyImports')
    state['legacyImports'] = [str(p) for p in imports] if isinstance(imports, list) else []

    seen: set[str] = set()
    for status in STATUSES:
        section = raw.get(status)
        if section is None:
            continue
        if not isinstance(section, dict):
            raise StateCorruptionError(f'"{status}" must be an object, got {type(section).__name__}')
        for name, entry in section.items():
            # processed > skipped > failed when a file appears in several maps.
            if name in seen:
                continue
            seen.add(name)
            state[status][str(name)] = _normalize_entry(entry)
    return state


class CheckpointStore:
    """Crash-consistent record of per-file ingestion outcomes.

    Args:
        path: checkpoint JSON file.
        read_only: never write (dry-run); mutations only change memory.
    """

    def __init__(self, path: str | Path, *, read_only: bool = False) -> None:
        self.path = Path(path)
        self.read_only = read_only
        self._state: dict[str, Any] = _empty_state()
        self._corrupt_on_disk = False

    # ── Loading ────────────────────────────────────────────────

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return _empty_state()
        try:
            raw = read_json_file(self.path)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise StateCorruptionError(f'cannot parse {self.path}: {exc}') from exc
        if not isinstance(raw, dict):
            raise StateCorruptionError(f'{self.path}: expected a JSON object')
        return _normalize_state(raw)

    def load(self) -> CheckpointStore:
        """Read persisted state; a missing or corrupt file yields empty state."""
        try:
            self._state = self._read()
        except StateCorruptionError as exc:
            logger.warning('Checkpoint state unreadable, starting fresh: %s', exc)
            self._state = _empty_state()
            self._corrupt_on_disk = True
        counts = self.counts()
        logger.info(
            'Loaded checkpoint %s (processed=%d skipped=%d failed=%d)',
            self.path,
            counts[STATUS_PROCESSED],
            counts[STATUS_SKIPPED],
            counts[STATUS_FAILED],
        )
        return self

    # ── Lookup ─────────────────────────────────────────────────

    def lookup(self, name: str) -> CheckpointEntry | None:
        """Current checkpoint for *name*, or None if the file was never seen."""
        for status in STATUSES:
            raw = self._state[status].get(name)
            if raw is None:
                continue
            return CheckpointEntry(
                name=name,
                status=status,
                reason=raw.get('reason'),
                group_id=raw.get('groupId'),
                message_count=_as_int(raw.get('messageCount')),
                cursor_timestamp=raw.get('cursorTimestamp'),
                recorded_at=raw.get(_TIMESTAMP_KEYS[status]),
                details=dict(raw),
            )
        return None

    def counts(self) -> dict[str, int]:
        return {status: len(self._state[status]) for status in STATUSES}

    def snapshot(self) -> dict[str, Any]:
        return json.loads(json.dumps(self._state))

    # ── Mutations (write-through) ──────────────────────────────

    def _discard(self, name: str) -> None:
        for status in STATUSES:
            self._state[status].pop(name, None)

    def mark_processed(
        self,
        name: str,
        *,
        group_id: str,
        message_count: int,
        cursor: str | None,
    ) -> CheckpointEntry:
        previous = self.lookup(name)
        if previous is not None:
            cursor = _later(previous.cursor_timestamp, cursor)
        self._discard(name)
        self._state[STATUS_PROCESSED][name] = {
            'processedAt': now_iso(),
            'groupId': group_id,
            'messageCount': message_count,
            'cursorTimestamp': cursor,
        }
        self._persist()
        return self.lookup(name)

    def mark_skipped(
        self,
        name: str,
        reason: str,
        *,
        message_count: int | None = None,
        session_timestamp: str | None = None,
    ) -> CheckpointEntry:
        self._discard(name)
        self._state[STATUS_SKIPPED][name] = {
            'skippedAt': now_iso(),
            'reason': reason,
            'messageCount': message_count,
            'sessionTimestamp': session_timestamp,
        }
        self._persist()
        return self.lookup(name)

    def mark_failed(
        self,
        name: str,
        reason: str,
        *,
        error: str | None = None,
        group_id: str | None = None,
        message_count: int | None = None,
        ingested_count: int | None = None,
        cursor: str | None = None,
    ) -> CheckpointEntry:
        previous = self.lookup(name)
        if previous is not None:
            cursor = _later(previous.cursor_timestamp, cursor)
        self._discard(name)
        entry: dict[str, Any] = {
            'failedAt': now_iso(),
            'reason': reason,
            'error': (error or '')[:500] or None,
            'groupId': group_id,
            'messageCount': message_count,
            'cursorTimestamp': cursor,
        }
        if ingested_count is not None:
            entry['ingestedCount'] = ingested_count
        self._state[STATUS_FAILED][name] = entry
        self._persist()
        return self.lookup(name)

    # ── Legacy import ──────────────────────────────────────────

    def import_legacy(self, legacy_path: str | Path) -> int:
        """Merge entries from an older state file without overwriting current ones.

        Understands the auto-capture layout ``{"processedFiles": {name: ts}}``
        (imported as processed, with the timestamp as cursor) and state files in
        the current layout. A path is merged once; later calls return 0.
        """
        legacy_path = Path(legacy_path).expanduser()
        key = str(legacy_path.resolve())
        if key in self._state['legacyImports']:
            return 0
        if not legacy_path.exists():
            return 0

        try:
            legacy = read_json_file(legacy_path)
            if not isinstance(legacy, dict):
                raise StateCorruptionError(f'{legacy_path}: expected a JSON object')
            if 'processedFiles' in legacy:
                incoming = self._legacy_capture_entries(legacy, key)
            else:
                incoming = _normalize_state(legacy)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError, StateCorruptionError) as exc:
            logger.warning('Failed to import legacy state from %s (%s)', legacy_path, exc)
            return 0

        added = 0
        for status in STATUSES:
            for name, entry in incoming[status].items():
                if self.lookup(name) is not None:
                    continue
                self._state[status][name] = {**entry, 'importedFrom': key}
                added += 1

        self._state['legacyImports'].append(key)
        self._persist()
        if added:
            logger.info('Imported %d entries from legacy state: %s', added, legacy_path)
        return added

    @staticmethod
    def _legacy_capture_entries(legacy: dict[str, Any], key: str) -> dict[str, Any]:
        processed_files = legacy.get('processedFiles') or {}
        if not isinstance(processed_files, dict):
            raise StateCorruptionError(f'{key}: "processedFiles" must be an object')
        incoming = _empty_state()
        for name, last_ts in processed_files.items():
            cursor = last_ts if isinstance(last_ts, str) and parse_iso(last_ts) else None
            incoming[STATUS_PROCESSED][str(name)] = {
                'processedAt': cursor or now_iso(),
                'groupId': LEGACY_GROUP_ID,
                'messageCount': None,
                'cursorTimestamp': cursor,
            }
        return incoming

    # ── Persistence ────────────────────────────────────────────

    def _persist(self) -> None:
        if self.read_only:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self._corrupt_on_disk:
            aside = self.path.with_name(f'{self.path.name}.corrupt')
            if self.path.exists():
                os.replace(self.path, aside)
                logger.warning('Moved unreadable checkpoint aside to %s', aside)
            self._corrupt_on_disk = False
        self._state['updatedAt'] = now_iso()
        write_json_atomic(self.path, self._state)


# ---------------------------------------------------------------------------
# Run-level guards
# ---------------------------------------------------------------------------


def ensure_writable(state_path: Path) -> None:
    """Make sure the checkpoint location exists and can be (re)initialized.

    Raises:
        FatalStartupError: the directory cannot be created or written.
    """
    try:
        state_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise FatalStartupError(
            f'cannot create checkpoint directory {state_path.parent}: {exc}'
        ) from exc
    if not os.access(state_path.parent, os.W_OK | os.X_OK):
        raise FatalStartupError(f'checkpoint directory is not writable: {state_path.parent}')
    if state_path.exists() and not os.access(state_path, os.R_OK):
        raise FatalStartupError(f'checkpoint file is not readable: {state_path}')


def lock_path_for(state_path: Path) -> Path:
    return state_path.with_name(f'{state_path.name}.lock')


@contextmanager
def checkpoint_lock(state_path: Path) -> Iterator[Path]:
    """Hold an exclusive advisory lock on the checkpoint for the whole run.

    Non-blocking: a second concurrent run fails fast instead of queueing.

    Raises:
        CheckpointLockedError: another run holds the lock.
    """
    lock_path = lock_path_for(state_path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open('a+') as lock_file:
        try:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            raise CheckpointLockedError(
                f'another ingest run holds the checkpoint lock: {lock_path}'
            ) from exc
        try:
            yield lock_path
        finally:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
