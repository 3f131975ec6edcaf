"""Writer configuration and the helpers a writer relies on.

Covers backpressure policies, the retention cache, the background segment
preallocator, the deferred segment sealer and tail recovery.
"""

from __future__ import annotations

import mmap
import queue
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

from .retention import min_live_reader_position
from .segment import (
    DEFAULT_SEGMENT_SIZE,
    HEADER_SIZE,
    MAX_PAYLOAD_LEN,
    RECORD_ALIGN,
    SEG_DATA_OFFSET,
    CorruptError,
    MappedSegment,
    align_up,
    create_segment,
    load_commit_len,
    payload_len_from_commit,
    prepare_segment_temp,
    publish_segment,
    read_segment_header,
    repair_unsealed_tail,
    segment_path,
    segment_temp_path,
)

BACKPRESSURE_POLL_INTERVAL = 100e-6
RETENTION_CHECK_INTERVAL = 0.010
RETENTION_CHECK_BYTES = 1024 * 1024
_FAILURE_BACKOFF = 0.010
_PUT_POLL = 0.05
_PAGE_SIZE = 4096
_U64_MAX = (1 << 64) - 1


@dataclass(frozen=True)
class FailFast:
    """Reject an append at once when retention limits are reached."""


@dataclass(frozen=True)
class Block:
    """Wait for readers to make room; ``timeout`` of None waits forever (seconds)."""

    timeout: float | None = None
    poll_interval: float = BACKPRESSURE_POLL_INTERVAL


@dataclass(frozen=True)
class WriterConfig:
    """Settings for a queue writer. Durations are in seconds."""

    max_segments: int | None = None
    max_bytes: int | None = None
    backpressure: FailFast | Block = field(default_factory=FailFast)
    segment_size_bytes: int = DEFAULT_SEGMENT_SIZE
    retention_check_interval: float = RETENTION_CHECK_INTERVAL
    retention_check_bytes: int = RETENTION_CHECK_BYTES
    # Sync sealed segments on a background thread (lower latency, not durable to power loss).
    defer_seal_sync: bool = False
    # How long a roll waits for a preallocated next segment.
    prealloc_wait: float = 0.0
    # Fail the roll when no preallocated segment is ready within prealloc_wait.
    require_prealloc: bool = False
    # Keep control and active segment pages resident in memory.
    memlock: bool = False


def blocking_config(
    max_segments: int | None, max_bytes: int | None, timeout: float | None
) -> WriterConfig:
    """A config that blocks appends while the retention limits are exceeded."""
    return WriterConfig(
        max_segments=max_segments,
        max_bytes=max_bytes,
        backpressure=Block(timeout=timeout, poll_interval=BACKPRESSURE_POLL_INTERVAL),
    )


def ultra_low_latency_config() -> WriterConfig:
    """A config tuned for the lowest roll latency."""
    return WriterConfig(
        defer_seal_sync=True,
        prealloc_wait=0.001,
        require_prealloc=True,
        memlock=True,
    )


def _global_position(segment_id: int, offset: int, segment_size: int) -> int:
    return min(min(segment_id * segment_size, _U64_MAX) + offset, _U64_MAX)


def pin_pages(segment: MappedSegment) -> None:
    """Ask the kernel to keep a segment's pages resident and fault them in."""
    buf = segment.buf
    if hasattr(mmap, "MADV_WILLNEED"):
        buf.madvise(mmap.MADV_WILLNEED)
    for offset in range(0, len(buf), _PAGE_SIZE):
        buf[offset]


class RetentionCache:
    """Caches the slowest live reader's position so appends rarely scan metadata."""

    def __init__(self, check_interval: float, check_bytes: int) -> None:
        self.check_interval = check_interval
        self.check_bytes = check_bytes
        self._min_pos = 0
        self._last_head = 0
        self._last_check = time.monotonic()
        self._valid = False

    def invalidate(self) -> None:
        self._valid = False

    def min_pos(self, path, head_segment: int, head_offset: int, segment_size: int) -> int:
        head = _global_position(head_segment, head_offset, segment_size)
        now = time.monotonic()
        if (
            not self._valid
            or now - self._last_check >= self.check_interval
            or max(head - self._last_head, 0) >= self.check_bytes
        ):
            self._min_pos = min_live_reader_position(
                path, head_segment, head_offset, segment_size
            )
            self._last_head = head
            self._last_check = now
            self._valid = True
        return self._min_pos


class PreallocWorker:
    """Background thread that prepares the next segment file ahead of a roll."""

    def __init__(self, root, segment_size: int, memlock: bool = False) -> None:
        self.root = Path(root)
        self.segment_size = segment_size
        self.memlock = memlock
        self._wakeup = threading.Event()
        self._stop = threading.Event()
        self._desired_lock = threading.Lock()
        self._desired: int | None = None
        self._ready: queue.Queue[tuple[int, MappedSegment]] = queue.Queue(maxsize=1)
        self._errors = 0
        self._errors_lock = threading.Lock()
        self._thread = threading.Thread(
            target=self._run, name="segment-prealloc", daemon=True
        )
        self._thread.start()

    @property
    def error_count(self) -> int:
        return self._errors

    def _record_error(self) -> None:
        with self._errors_lock:
            self._errors += 1
        self._stop.wait(_FAILURE_BACKOFF)

    def _take_desired(self) -> int | None:
        with self._desired_lock:
            desired, self._desired = self._desired, None
        return desired

    def _deliver(self, segment_id: int, segment: MappedSegment) -> bool:
        while not self._stop.is_set():
            try:
                self._ready.put((segment_id, segment), timeout=_PUT_POLL)
            except queue.Full:
                continue
            return True
        segment.close()
        return False

    def _prepare(self, segment_id: int) -> MappedSegment | None:
        temp_path = segment_temp_path(self.root, segment_id)
        try:
            segment = prepare_segment_temp(self.root, segment_id, self.segment_size)
        except (OSError, ValueError, CorruptError):
            temp_path.unlink(missing_ok=True)
            return None
        try:
            publish_segment(temp_path, segment_path(self.root, segment_id))
        except OSError:
            segment.close()
            temp_path.unlink(missing_ok=True)
            return None
        if self.memlock:
            try:
                pin_pages(segment)
            except (OSError, ValueError):
                segment.close()
                return None
        return segment

    def _run(self) -> None:
        while True:
            self._wakeup.wait()
            self._wakeup.clear()
            if self._stop.is_set():
                return
            segment_id = self._take_desired()
            if segment_id is None:
                continue
            segment = self._prepare(segment_id)
            if segment is None:
                self._record_error()
                continue
            if not self._deliver(segment_id, segment):
                return

    def request(self, next_segment_id: int) -> None:
        """Ask for ``next_segment_id`` to be prepared; replaces any pending request."""
        with self._desired_lock:
            self._desired = next_segment_id
        self._wakeup.set()

    def try_take(self, next_segment: int) -> MappedSegment | None:
        """Return the prepared ``next_segment`` if ready, discarding stale ones."""
        while True:
            try:
                segment_id, segment = self._ready.get_nowait()
            except queue.Empty:
                if not self._thread.is_alive():
                    raise BrokenPipeError("prealloc worker closed") from None
                return None
            if segment_id == next_segment:
                return segment
            segment.close()

    def close(self) -> None:
        self._stop.set()
        self._wakeup.set()
        self._thread.join()
        while True:
            try:
                _, segment = self._ready.get_nowait()
            except queue.Empty:
                break
            segment.close()

    def __enter__(self) -> "PreallocWorker":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class AsyncSealer:
    """Background thread that syncs and unmaps sealed segments."""

    def __init__(self) -> None:
        self._queue: queue.Queue[MappedSegment | None] = queue.Queue()
        self._errors = 0
        self._closed = False
        self._lock = threading.Lock()
        self._thread = threading.Thread(target=self._run, name="segment-sync", daemon=True)
        self._thread.start()

    @property
    def error_count(self) -> int:
        return self._errors

    def _run(self) -> None:
        while True:
            segment = self._queue.get()
            if segment is None:
                return
            try:
                segment.flush()
            except (OSError, ValueError):
                self._errors += 1
            finally:
                segment.close()

    def submit(self, segment: MappedSegment) -> None:
        """Queue a segment to be synced to disk and closed."""
        with self._lock:
            if self._closed:
                raise BrokenPipeError("async sealer closed")
            self._queue.put(segment)

    def close(self) -> None:
        """Finish syncing everything submitted and stop the thread."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put(None)
        self._thread.join()

    def __enter__(self) -> "AsyncSealer":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def scan_segment_tail(
    segment: MappedSegment, start_offset: int, segment_size: int
) -> tuple[int, bool]:
    """Find the end of committed records from ``start_offset``.

    Returns the offset after the last committed record and whether a torn or
    partially written record follows it.
    """
    buf = segment.buf
    offset = max(start_offset, SEG_DATA_OFFSET)
    while offset + HEADER_SIZE <= segment_size:
        commit = load_commit_len(buf, offset)
        if commit == 0:
            return offset, any(buf[offset : offset + HEADER_SIZE])
        try:
            payload_len = payload_len_from_commit(commit)
        except CorruptError:
            return offset, True
        if payload_len > MAX_PAYLOAD_LEN:
            return offset, True
        record_len = align_up(HEADER_SIZE + payload_len, RECORD_ALIGN)
        if offset + record_len > segment_size:
            return offset, True
        offset += record_len
    return offset, False


def repair_tail_and_roll(
    segment: MappedSegment, root, segment_id: int, segment_size: int
) -> int:
    """Seal a segment with a damaged tail and create the one after it.

    Returns the id of the newly created segment.
    """
    if not read_segment_header(segment).sealed:
        repair_unsealed_tail(segment, segment_size)
    next_segment = segment_id + 1
    create_segment(root, next_segment, segment_size).close()
    return next_segment