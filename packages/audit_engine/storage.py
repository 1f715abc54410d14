"""Segment storage backends.

The substrate below the append-only store: durable, ordered byte
records grouped into numbered segments. Segmentation policy lives in
the store; backends only append, read, seal and erase.
"""

from __future__ import annotations

import errno
import logging
import os
import stat
from pathlib import Path
from typing import Iterator, Protocol

from packages.audit_engine.errors import StorageContentionError, StorageError

logger = logging.getLogger(__name__)

RECORD_SEPARATOR = b"\n"
_CONTENTION_ERRNOS = {errno.EAGAIN, errno.EWOULDBLOCK, errno.EBUSY, errno.EINTR}


def _translate(error: OSError, action: str) -> StorageError:
    if isinstance(error, (BlockingIOError, InterruptedError)) or error.errno in _CONTENTION_ERRNOS:
        return StorageContentionError(f"{action}: {error}")
    return StorageError(f"{action}: {error}")


class SegmentStorage(Protocol):
    """Protocol for segment storage backends.

    Implementations must provide append-only semantics: a record is
    either fully visible after `append` returns or not visible at all.
    """

    def list_segments(self) -> list[int]:
        """Indices of existing segments, ascending."""
        ...

    def create_segment(self, segment_index: int) -> None:
        """Create an empty, writable segment."""
        ...

    def append(self, segment_index: int, record: bytes) -> None:
        """Durably append one record (no separators inside)."""
        ...

    def size(self, segment_index: int) -> int:
        """Committed size of a segment in bytes."""
        ...

    def read(self, segment_index: int) -> Iterator[bytes]:
        """Committed records of a segment in append order."""
        ...

    def last_record(self, segment_index: int) -> bytes | None:
        """Most recently committed record of a segment."""
        ...

    def seal(self, segment_index: int) -> None:
        """Make a segment read-only."""
        ...

    def is_sealed(self, segment_index: int) -> bool:
        ...

    def erase(self, segment_index: int) -> None:
        """Securely erase a segment (overwrite, then delete)."""
        ...

    def load_anchor(self) -> bytes | None:
        ...

    def save_anchor(self, data: bytes) -> None:
        ...


class FileSegmentStorage:
    """File-based segment storage.

    Stores each segment as a JSON Lines file. A record is committed once
    its trailing newline is written, flushed and fsynced; an unterminated
    tail left by a crash is ignored on read and truncated by `recover()`.
    """

    SEGMENT_PREFIX = "segment_"
    SEGMENT_SUFFIX = ".jsonl"
    ANCHOR_FILE = "retention_anchor.json"

    def __init__(self, storage_path: str | Path):
        """Initialize file storage.

        Args:
            storage_path: Directory holding segment files
        """
        self.storage_path = Path(storage_path)
        self.storage_path.mkdir(parents=True, exist_ok=True)
        logger.info("FileSegmentStorage initialized at %s", self.storage_path)

    def segment_file(self, segment_index: int) -> Path:
        return self.storage_path / f"{self.SEGMENT_PREFIX}{segment_index:06d}{self.SEGMENT_SUFFIX}"

    def list_segments(self) -> list[int]:
        indices = []
        for path in self.storage_path.glob(f"{self.SEGMENT_PREFIX}*{self.SEGMENT_SUFFIX}"):
            number = path.name[len(self.SEGMENT_PREFIX):-len(self.SEGMENT_SUFFIX)]
            if number.isdigit():
                indices.append(int(number))
        return sorted(indices)

    def create_segment(self, segment_index: int) -> None:
        path = self.segment_file(segment_index)
        try:
            with open(path, "xb"):
                pass
            self._fsync_dir()
        except FileExistsError:
            return
        except OSError as e:
            raise _translate(e, f"create segment {segment_index}") from e

    def append(self, segment_index: int, record: bytes) -> None:
        """Append a record, rolling back a partial write on failure."""
        if RECORD_SEPARATOR in record:
            raise StorageError("record contains a separator")

        path = self.segment_file(segment_index)
        try:
            with open(path, "ab") as f:
                start = f.tell()
                try:
                    f.write(record + RECORD_SEPARATOR)
                    f.flush()
                    os.fsync(f.fileno())
                except OSError:
                    f.truncate(start)
                    raise
        except OSError as e:
            raise _translate(e, f"append to segment {segment_index}") from e

        logger.debug("Appended %d bytes to segment %d", len(record), segment_index)

    def size(self, segment_index: int) -> int:
        path = self.segment_file(segment_index)
        try:
            return path.stat().st_size
        except FileNotFoundError:
            return 0
        except OSError as e:
            raise _translate(e, f"stat segment {segment_index}") from e

    def read(self, segment_index: int) -> Iterator[bytes]:
        path = self.segment_file(segment_index)
        try:
            with open(path, "rb") as f:
                for line in f:
                    if not line.endswith(RECORD_SEPARATOR):
                        # Torn write, never committed
                        break
                    record = line[:-1]
                    if record.strip():
                        yield record
        except FileNotFoundError:
            return
        except OSError as e:
            raise _translate(e, f"read segment {segment_index}") from e

    def last_record(self, segment_index: int) -> bytes | None:
        last = None
        for record in self.read(segment_index):
            last = record
        return last

    def recover(self, segment_index: int) -> int:
        """Truncate an unterminated tail. Returns bytes removed."""
        path = self.segment_file(segment_index)
        if not path.exists() or self.is_sealed(segment_index):
            return 0

        committed = 0
        with open(path, "rb") as f:
            for line in f:
                if not line.endswith(RECORD_SEPARATOR):
                    break
                committed += len(line)

        total = path.stat().st_size
        if committed < total:
            with open(path, "r+b") as f:
                f.truncate(committed)
                f.flush()
                os.fsync(f.fileno())
            logger.warning(
                "Truncated %d torn bytes from segment %d",
                total - committed,
                segment_index,
            )
        return total - committed

    def seal(self, segment_index: int) -> None:
        path = self.segment_file(segment_index)
        try:
            os.chmod(path, stat.S_IRUSR | stat.S_IRGRP)
        except OSError as e:
            raise _translate(e, f"seal segment {segment_index}") from e

    def is_sealed(self, segment_index: int) -> bool:
        path = self.segment_file(segment_index)
        try:
            return not path.stat().st_mode & stat.S_IWUSR
        except FileNotFoundError:
            return False

    def erase(self, segment_index: int) -> None:
        """Overwrite a segment with random bytes, fsync, then unlink."""
        path = self.segment_file(segment_index)
        try:
            os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
            length = path.stat().st_size
            with open(path, "r+b") as f:
                remaining = length
                while remaining > 0:
                    chunk = min(remaining, 1 << 20)
                    f.write(os.urandom(chunk))
                    remaining -= chunk
                f.flush()
                os.fsync(f.fileno())
            path.unlink()
            self._fsync_dir()
        except FileNotFoundError:
            return
        except OSError as e:
            raise _translate(e, f"erase segment {segment_index}") from e

        logger.info("Securely erased segment %d (%d bytes)", segment_index, length)

    def load_anchor(self) -> bytes | None:
        path = self.storage_path / self.ANCHOR_FILE
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise _translate(e, "read retention anchor") from e

    def save_anchor(self, data: bytes) -> None:
        """Replace the anchor atomically (write temp file, then rename)."""
        path = self.storage_path / self.ANCHOR_FILE
        tmp = path.with_suffix(".tmp")
        try:
            with open(tmp, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
            self._fsync_dir()
        except OSError as e:
            raise _translate(e, "write retention anchor") from e

    def _fsync_dir(self) -> None:
        if os.name != "posix":
            return
        fd = os.open(self.storage_path, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)


class InMemorySegmentStorage:
    """Segment storage held in process memory.

    For tests and ephemeral engines; nothing survives the process.
    """

    def __init__(self):
        self._segments: dict[int, list[bytes]] = {}
        self._sealed: set[int] = set()
        self._anchor: bytes | None = None

    def list_segments(self) -> list[int]:
        return sorted(self._segments)

    def create_segment(self, segment_index: int) -> None:
        self._segments.setdefault(segment_index, [])

    def append(self, segment_index: int, record: bytes) -> None:
        if RECORD_SEPARATOR in record:
            raise StorageError("record contains a separator")
        if segment_index in self._sealed:
            raise StorageError(f"segment {segment_index} is sealed")
        self._segments.setdefault(segment_index, []).append(bytes(record))

    def size(self, segment_index: int) -> int:
        return sum(len(r) + 1 for r in self._segments.get(segment_index, []))

    def read(self, segment_index: int) -> Iterator[bytes]:
        # Snapshot so concurrent appends do not disturb iteration
        yield from list(self._segments.get(segment_index, []))

    def last_record(self, segment_index: int) -> bytes | None:
        records = self._segments.get(segment_index)
        return records[-1] if records else None

    def seal(self, segment_index: int) -> None:
        self._sealed.add(segment_index)

    def is_sealed(self, segment_index: int) -> bool:
        return segment_index in self._sealed

    def erase(self, segment_index: int) -> None:
        records = self._segments.pop(segment_index, [])
        for i, record in enumerate(records):
            records[i] = bytes(len(record))
        self._sealed.discard(segment_index)

    def load_anchor(self) -> bytes | None:
        return self._anchor

    def save_anchor(self, data: bytes) -> None:
        self._anchor = bytes(data)


def get_segment_storage(backend: str = "file", storage_path: str | Path = "data/audit") -> SegmentStorage:
    """Get segment storage instance based on configuration."""
    if backend == "memory":
        return InMemorySegmentStorage()
    if backend != "file":
        raise ValueError(f"Unknown storage backend: {backend}")
    return FileSegmentStorage(storage_path)
