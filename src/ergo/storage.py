"""
On-disk storage for ergo: the event log, the lock file, and data-dir discovery.

Layout:
    .ergo/
        events.jsonl    # append-only, one JSON event per line
        lock            # empty; only used as the flock target

The reader has two policies. Interior lines must parse, otherwise the whole
read fails with file/line context. The final line, if it lacks a trailing
newline and does not parse, is a crash-truncated write and gets dropped.
"""

import json
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Optional

from ergo.errors import EventLogParseError, LockBusyError, MergeConflictError, NoErgoDirError
from ergo.model import Event

# Platform-specific file locking
try:
    import fcntl
    HAS_FCNTL = True
except ImportError:
    HAS_FCNTL = False

try:
    import msvcrt
    HAS_MSVCRT = True
except ImportError:
    HAS_MSVCRT = False

logger = logging.getLogger(__name__)

DATA_DIR_NAME = '.ergo'
EVENTS_FILE_NAME = 'events.jsonl'
LOCK_FILE_NAME = 'lock'

SNIPPET_LENGTH = 160
CONFLICT_MARKERS = (b'<<<<<<<', b'=======', b'>>>>>>>')


# ============================================================================
# Locking
# ============================================================================

class FileLock:
    """
    Exclusive, non-blocking advisory lock on a lock file.

    Uses fcntl on Unix, msvcrt on Windows. Acquisition either succeeds at once
    or raises LockBusyError; there is no waiting.
    """

    def __init__(self, lock_path: Path):
        self.lock_path = Path(lock_path)
        self._fd = None

    def acquire(self) -> None:
        """
        Acquire the lock, creating the lock file if it is missing.

        Raises:
            LockBusyError: if another process holds the lock
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        self._fd = open(self.lock_path, 'a+b')
        try:
            if HAS_FCNTL:
                fcntl.flock(self._fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            elif HAS_MSVCRT:
                self._fd.seek(0)
                msvcrt.locking(self._fd.fileno(), msvcrt.LK_NBLCK, 1)
        except OSError:
            self._fd.close()
            self._fd = None
            raise LockBusyError(self.lock_path)
        logger.debug("acquired lock %s", self.lock_path)

    def release(self) -> None:
        """Release the lock. Closing the descriptor drops it even if unlock fails."""
        if self._fd is None:
            return
        try:
            if HAS_FCNTL:
                fcntl.flock(self._fd.fileno(), fcntl.LOCK_UN)
            elif HAS_MSVCRT:
                self._fd.seek(0)
                msvcrt.locking(self._fd.fileno(), msvcrt.LK_UNLCK, 1)
        finally:
            self._fd.close()
            self._fd = None
            logger.debug("released lock %s", self.lock_path)

    @property
    def held(self) -> bool:
        return self._fd is not None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


@contextmanager
def file_lock(lock_path: Path):
    """Context manager for the non-blocking exclusive lock."""
    lock = FileLock(lock_path)
    lock.acquire()
    try:
        yield lock
    finally:
        lock.release()


# ============================================================================
# Event log
# ============================================================================

def _snippet(raw: bytes) -> str:
    text = raw.decode('utf-8', errors='replace').strip()
    if len(text) > SNIPPET_LENGTH:
        text = text[:SNIPPET_LENGTH] + '...'
    return text


def _looks_like_conflict(raw: bytes) -> bool:
    return raw.lstrip().startswith(CONFLICT_MARKERS)


def _decode_line(raw: bytes, lineno: Optional[int] = None) -> Event:
    """Decode one log line. Raises ValueError (incl. JSON/Unicode errors) on junk."""
    return Event.from_dict(json.loads(raw.decode('utf-8')), line=lineno)


class EventLog:
    """Append-only JSONL event log."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def read(self) -> list:
        """
        Read every event in log order.

        A missing file reads as empty and blank lines are skipped.

        Raises:
            MergeConflictError: if an interior line is a conflict marker
            EventLogParseError: if any other interior line is malformed
        """
        try:
            data = self.path.read_bytes()
        except FileNotFoundError:
            return []

        lines = data.split(b'\n')
        # A trailing newline leaves one empty element behind; anything else is
        # an unterminated tail.
        tail = lines.pop()
        events = []
        for lineno, raw in enumerate(lines, start=1):
            if not raw.strip():
                continue
            events.append(self._parse_interior(raw, lineno))

        if tail.strip():
            tail_event = self._parse_tail(tail, len(lines) + 1)
            if tail_event is not None:
                events.append(tail_event)

        logger.debug("read %d events from %s", len(events), self.path)
        return events

    def _parse_interior(self, raw: bytes, lineno: int) -> Event:
        if _looks_like_conflict(raw):
            raise MergeConflictError(self.path, lineno, _snippet(raw))
        try:
            return _decode_line(raw, lineno)
        except ValueError as e:
            raise EventLogParseError(self.path, lineno, _snippet(raw), str(e)) from e

    def _parse_tail(self, raw: bytes, lineno: int) -> Optional[Event]:
        try:
            return _decode_line(raw, lineno)
        except ValueError:
            logger.warning("dropping truncated final line %d of %s", lineno, self.path)
            return None

    def _repair_tail(self) -> None:
        """
        Make sure the file ends on a line boundary before appending.

        A parseable unterminated tail gets its newline; an unparseable one is cut
        off, exactly as read() would have dropped it.
        """
        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            return
        if size == 0:
            return
        with open(self.path, 'r+b') as f:
            f.seek(size - 1)
            if f.read(1) == b'\n':
                return
            f.seek(0)
            data = f.read()
            cut = data.rfind(b'\n') + 1
            tail = data[cut:]
            try:
                _decode_line(tail)
            except ValueError:
                logger.warning("truncating partial final line of %s before append", self.path)
                f.truncate(cut)
            else:
                f.seek(0, os.SEEK_END)
                f.write(b'\n')
            f.flush()
            os.fsync(f.fileno())

    def append(self, events: Iterable[Event]) -> None:
        """Append events with a single write and fsync. Caller must hold the lock."""
        payload = ''.join(e.to_line() for e in events).encode('utf-8')
        if not payload:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._repair_tail()
        with open(self.path, 'ab') as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        logger.debug("appended %d bytes to %s", len(payload), self.path)

    def write_full(self, events: Iterable[Event]) -> None:
        """
        Atomically replace the whole log. Caller must hold the lock.

        Writes a temp file beside the log, fsyncs it, renames it over the log,
        then fsyncs the directory so the rename itself is durable.
        """
        tmp_path = self.path.with_name(self.path.name + '.tmp')
        payload = ''.join(e.to_line() for e in events).encode('utf-8')
        try:
            with open(tmp_path, 'wb') as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise
        _fsync_dir(self.path.parent)
        logger.debug("rewrote %s (%d bytes)", self.path, len(payload))


def _fsync_dir(directory: Path) -> None:
    if not hasattr(os, 'O_DIRECTORY'):
        return
    fd = os.open(directory, os.O_RDONLY | os.O_DIRECTORY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


# ============================================================================
# Data directory
# ============================================================================

def resolve_ergo_dir(start: Optional[Path] = None) -> Path:
    """
    Find the data directory by walking upward from `start`.

    A start directory that is itself named `.ergo` is taken as-is.

    Raises:
        NoErgoDirError: if no `.ergo` directory exists on the way up
    """
    start = Path(start or Path.cwd()).resolve()
    if start.name == DATA_DIR_NAME and start.is_dir():
        return start
    for directory in (start, *start.parents):
        candidate = directory / DATA_DIR_NAME
        if candidate.is_dir():
            return candidate
    raise NoErgoDirError(start)


def init_ergo_dir(directory: Path) -> Path:
    """Create `.ergo/` with an empty log and lock file. Safe to repeat."""
    ergo_dir = Path(directory) / DATA_DIR_NAME
    ergo_dir.mkdir(parents=True, exist_ok=True)
    (ergo_dir / EVENTS_FILE_NAME).touch(exist_ok=True)
    (ergo_dir / LOCK_FILE_NAME).touch(exist_ok=True)
    return ergo_dir
