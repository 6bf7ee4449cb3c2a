"""Tests for the durable checkpoint store."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from ingest.checkpoint import (
    LEGACY_GROUP_ID,
    STATUS_FAILED,
    STATUS_PROCESSED,
    STATUS_SKIPPED,
    CheckpointStore,
    checkpoint_lock,
    ensure_writable,
    lock_path_for,
)
from ingest.errors import CheckpointLockedError


def _load(path: Path) -> CheckpointStore:
    return CheckpointStore(path).load()


def test_missing_file_loads_empty(tmp_path: Path) -> None:
    store = _load(tmp_path / 'state.json')
    assert store.counts() == {STATUS_PROCESSED: 0, STATUS_SKIPPED: 0, STATUS_FAILED: 0}
    assert store.lookup('a.jsonl') is None
    assert not (tmp_path / 'state.json').exists()


def test_mark_processed_is_written_through(tmp_path: Path) -> None:
    path = tmp_path / 'state' / 'state.json'
    store = _load(path)

    store.mark_processed(
        'a.jsonl', group_id='sessions-dm-2026-01-15', message_count=4, cursor='2026-01-15T10:00:04Z'
    )

    on_disk = json.loads(path.read_text(encoding='utf-8'))
    assert on_disk['version'] == 1
    entry = on_disk['processed']['a.jsonl']
    assert entry['groupId'] == 'sessions-dm-2026-01-15'
    assert entry['messageCount'] == 4
    assert entry['cursorTimestamp'] == '2026-01-15T10:00:04Z'
    assert not path.with_name('state.json.tmp').exists()

    reloaded = _load(path).lookup('a.jsonl')
    assert reloaded.status == STATUS_PROCESSED
    assert reloaded.resume_cursor == '2026-01-15T10:00:04Z'


def test_entry_moves_between_maps_without_duplication(tmp_path: Path) -> None:
    path = tmp_path / 'state.json'
    store = _load(path)

    store.mark_failed('a.jsonl', 'batch_failed', error='HTTP 400')
    store.mark_processed('a.jsonl', group_id='g', message_count=3, cursor=None)

    on_disk = json.loads(path.read_text(encoding='utf-8'))
    assert 'a.jsonl' in on_disk['processed']
    assert 'a.jsonl' not in on_disk['failed']
    assert store.counts() == {STATUS_PROCESSED: 1, STATUS_SKIPPED: 0, STATUS_FAILED: 0}


def test_cursor_never_moves_backwards(tmp_path: Path) -> None:
    store = _load(tmp_path / 'state.json')
    store.mark_processed('a.jsonl', group_id='g', message_count=2, cursor='2026-01-15T10:00:05Z')

    store.mark_failed('a.jsonl', 'batch_failed', cursor='2026-01-15T10:00:01Z')
    assert store.lookup('a.jsonl').cursor_timestamp == '2026-01-15T10:00:05Z'

    store.mark_processed('a.jsonl', group_id='g', message_count=3, cursor='2026-01-15T10:00:03Z')
    assert store.lookup('a.jsonl').cursor_timestamp == '2026-01-15T10:00:05Z'

    store.mark_processed('a.jsonl', group_id='g', message_count=4, cursor='2026-01-15T10:00:09Z')
    assert store.lookup('a.jsonl').cursor_timestamp == '2026-01-15T10:00:09Z'


def test_failed_entry_reports_ingested_count(tmp_path: Path) -> None:
    store = _load(tmp_path / 'state.json')
    entry = store.mark_failed('a.jsonl', 'batch_failed', message_count=7, ingested_count=5)
    assert entry.ingested_count == 5
    assert entry.reason == 'batch_failed'


def test_corrupt_state_recovers_and_is_moved_aside(tmp_path: Path) -> None:
    path = tmp_path / 'state.json'
    path.write_text('{"processed": {"a.jsonl": ', encoding='utf-8')

    store = _load(path)
    assert store.counts()[STATUS_PROCESSED] == 0

    store.mark_skipped('b.jsonl', 'min_messages', message_count=1)

    aside = tmp_path / 'state.json.corrupt'
    assert aside.read_text(encoding='utf-8') == '{"processed": {"a.jsonl": '
    assert 'b.jsonl' in json.loads(path.read_text(encoding='utf-8'))['skipped']


def test_wrong_section_type_counts_as_corrupt(tmp_path: Path) -> None:
    path = tmp_path / 'state.json'
    path.write_text(json.dumps({'processed': ['a.jsonl']}), encoding='utf-8')
    assert _load(path).counts()[STATUS_PROCESSED] == 0


def test_duplicate_across_maps_prefers_processed(tmp_path: Path) -> None:
    path = tmp_path / 'state.json'
    path.write_text(
        json.dumps(
            {
                'failed': {'a.jsonl': {'reason': 'batch_failed'}},
                'processed': {'a.jsonl': {'groupId': 'g', 'messages': 9}},
            }
        ),
        encoding='utf-8',
    )
    entry = _load(path).lookup('a.jsonl')
    assert entry.status == STATUS_PROCESSED
    assert entry.message_count == 9


def test_read_only_store_never_writes(tmp_path: Path) -> None:
    path = tmp_path / 'state.json'
    store = CheckpointStore(path, read_only=True).load()
    store.mark_processed('a.jsonl', group_id='g', message_count=3, cursor=None)

    assert store.lookup('a.jsonl').status == STATUS_PROCESSED
    assert not path.exists()


def test_import_legacy_capture_state_once(tmp_path: Path) -> None:
    legacy = tmp_path / 'graphiti-capture-state.json'
    legacy.write_text(
        json.dumps(
            {
                'lastRun': '2026-01-20T00:00:00Z',
                'processedFiles': {
                    'a.jsonl': '2026-01-19T08:00:00.000Z',
                    'b.jsonl': '2026-01-19T09:00:00.000Z',
                },
            }
        ),
        encoding='utf-8',
    )
    path = tmp_path / 'state.json'
    store = _load(path)
    store.mark_failed('b.jsonl', 'batch_failed')

    assert store.import_legacy(legacy) == 1
    entry = store.lookup('a.jsonl')
    assert entry.status == STATUS_PROCESSED
    assert entry.group_id == LEGACY_GROUP_ID
    assert entry.resume_cursor == '2026-01-19T08:00:00.000Z'
    assert store.lookup('b.jsonl').status == STATUS_FAILED

    assert store.import_legacy(legacy) == 0
    reloaded = _load(path)
    assert reloaded.import_legacy(legacy) == 0
    assert str(legacy.resolve()) in reloaded.snapshot()['legacyImports']


def test_import_legacy_missing_file_is_noop(tmp_path: Path) -> None:
    store = _load(tmp_path / 'state.json')
    assert store.import_legacy(tmp_path / 'nope.json') == 0


def test_lock_rejects_second_holder(tmp_path: Path) -> None:
    state = tmp_path / 'state.json'
    with checkpoint_lock(state) as lock_path:
        assert lock_path == lock_path_for(state)
        with pytest.raises(CheckpointLockedError):
            with checkpoint_lock(state):
                pass
    with checkpoint_lock(state):
        pass


def test_ensure_writable_creates_directory(tmp_path: Path) -> None:
    state = tmp_path / 'nested' / 'dir' / 'state.json'
    ensure_writable(state)
    assert state.parent.is_dir()
