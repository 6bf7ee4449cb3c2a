"""Session file discovery across one or more archive directories."""

from __future__ import annotations

import fnmatch
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterable, Sequence

from ingest.errors import FatalStartupError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceFile:
    name: str
    path: Path
    origin_dir: Path
    mtime: float


def _list_dir(directory: Path, pattern: str) -> list[SourceFile] | None:
    """List matching files in *directory*; None when it does not exist."""
    try:
        entries = os.listdir(directory)
    except FileNotFoundError:
        return None
    except NotADirectoryError:
        logger.warning('Source path is not a directory, ignoring: %s', directory)
        return None
    except PermissionError as exc:
        raise FatalStartupError(f'source directory is not readable: {directory} ({exc})') from exc

    found: list[SourceFile] = []
    for name in entries:
        if not fnmatch.fnmatchcase(name, pattern):
            continue
        path = directory / name
        try:
            st = path.stat()
        except OSError as exc:
            # Rotated away between listdir and stat.
            logger.debug('Skipping %s: %s', path, exc)
            continue
        if not path.is_file():
            continue
        found.append(
            SourceFile(name=name, path=path.resolve(), origin_dir=directory, mtime=st.st_mtime)
        )
    return found


def discover_source_files(dirs: Sequence[Path], pattern: str = '*.jsonl') -> list[SourceFile]:
    """Find session files across *dirs*, deduplicated by filename.

    Directories are scanned in the given order and the first one holding a
    filename wins, so mirrored archive locations do not double-ingest. The
    result is sorted by filename for a reproducible run order.

    Raises:
        FatalStartupError: a directory exists but cannot be listed, or none of
            the directories exists.
    """
    by_name: dict[str, SourceFile] = {}
    readable = 0

    for raw_dir in dirs:
        directory = Path(raw_dir).expanduser()
        listed = _list_dir(directory, pattern)
        if listed is None:
            logger.debug('Source directory missing, skipping: %s', directory)
            continue
        readable += 1
        for source in sorted(listed, key=lambda s: s.name):
            if source.name in by_name:
                continue
            by_name[source.name] = source

    if readable == 0:
        shown = ', '.join(str(d) for d in dirs) or '(none configured)'
        raise FatalStartupError(f'no readable source directories: {shown}')

    return [by_name[name] for name in sorted(by_name)]


def filter_recent(
    files: Iterable[SourceFile],
    minutes: int,
    *,
    now: datetime | None = None,
    keep: Callable[[SourceFile], bool] | None = None,
) -> list[SourceFile]:
    """Keep files modified within the last *minutes* (0 disables the filter).

    Files for which *keep* returns True are retained regardless of age; capture
    runs use this to retry files whose previous attempt failed.
    """
    files = list(files)
    if minutes <= 0:
        return files
    current = now or datetime.now(timezone.utc)
    cutoff = (current - timedelta(minutes=minutes)).timestamp()
    return [f for f in files if f.mtime > cutoff or (keep is not None and keep(f))]
