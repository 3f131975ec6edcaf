"""The single queue writer: appends records, rolls segments and enforces retention."""

from __future__ import annotations

import os
import time
from contextlib import ExitStack
from pathlib import Path

from .control import ControlFile, create_control, open_control
from .retention import cleanup_segments
from .segment import (
    HEADER_SIZE,
    MAX_PAYLOAD_LEN,
    RECORD_ALIGN,
    SEG_DATA_OFFSET,
    CorruptError,
    MappedSegment,
    MessageHeader,
    PayloadTooLargeError,
    QueueFullError,
    SegmentIndex,
    UnsupportedError,
    WriterAlreadyActiveError,
    align_up,
    commit_len_for_payload,
    create_segment,
    load_index,
    open_or_create_segment,
    open_segment,
    payload_crc32,
    read_segment_header,
    repair_unsealed_tail,
    seal_segment,
    segment_path,
    store_commit_len,
    store_index,
    validate_segment_size,
)
from .wait import wake
from .writer_lock import try_lock, write_lock_record, writer_alive
from .writer_support import (
    AsyncSealer,
    Block,
    FailFast,
    PreallocWorker,
    RetentionCache,
    WriterConfig,
    pin_pages,
    repair_tail_and_roll,
    scan_segment_tail,
)

INDEX_FILE = "index.meta"
CONTROL_FILE = "control.meta"
WRITER_LOCK_FILE = "writer.lock"

_U32_MASK = 0xFFFF_FFFF
_U64_MAX = (1 << 64) - 1
_LOCK_RETRY_PAUSE = 0.001


def _now_ns() -> int:
    now = time.time_ns()
    if now < 0:
        raise UnsupportedError("system time before UNIX epoch")
    if now > _U64_MAX:
        raise UnsupportedError("system time exceeds timestamp range")
    return now


def _global_position(segment_id: int, offset: int, segment_size: int) -> int:
    return min(min(segment_id * segment_size, _U64_MAX) + offset, _U64_MAX)


class _WriterLock:
    """An exclusive flock on the queue's lock file, recording the owner's identity."""

    def __init__(self, file) -> None:
        self._file = file

    @classmethod
    def acquire(cls, path: Path, writer_epoch: int) -> "_WriterLock":
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        file = os.fdopen(fd, "r+b")
        try:
            while True:
                if try_lock(file):
                    write_lock_record(file, writer_epoch)
                    return cls(file)
                if writer_alive(path):
                    raise WriterAlreadyActiveError("another writer is active")
                time.sleep(_LOCK_RETRY_PAUSE)
        except BaseException:
            file.close()
            raise

    def update_epoch(self, writer_epoch: int) -> None:
        write_lock_record(self._file, writer_epoch)

    def release(self) -> None:
        self._file.close()


class QueueWriter:
    """Appends records to a queue directory. Only one writer may be open at a time."""

    def __init__(
        self,
        *,
        path: Path,
        control: ControlFile,
        segment: MappedSegment,
        segment_id: int,
        write_offset: int,
        config: WriterConfig,
        segment_size: int,
        prealloc: PreallocWorker,
        async_sealer: AsyncSealer | None,
        lock: _WriterLock,
    ) -> None:
        self._path = path
        self._control = control
        self._segment = segment
        self._segment_id = segment_id
        self._write_offset = write_offset
        self._seq = 0
        self._config = config
        self._segment_size = segment_size
        self._retention_cache = RetentionCache(
            config.retention_check_interval, config.retention_check_bytes
        )
        self._prealloc = prealloc
        self._async_sealer = async_sealer
        self._lock = lock
        self._closed = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def control(self) -> ControlFile:
        return self._control

    @property
    def config(self) -> WriterConfig:
        return self._config

    @property
    def segment_id(self) -> int:
        return self._segment_id

    @property
    def segment_size(self) -> int:
        return self._segment_size

    @property
    def write_offset(self) -> int:
        return self._write_offset

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def async_seal_error_count(self) -> int:
        return 0 if self._async_sealer is None else self._async_sealer.error_count

    @property
    def prealloc_error_count(self) -> int:
        return self._prealloc.error_count

    def _check_open(self) -> None:
        if self._closed:
            raise ValueError("writer is closed")

    def trigger_preallocation(self, next_segment_id: int) -> None:
        """Ask the background worker to prepare ``next_segment_id``."""
        self._prealloc.request(next_segment_id)

    def acquire_preallocated(self, next_segment: int) -> MappedSegment | None:
        """Take the prepared ``next_segment``, waiting up to ``config.prealloc_wait``.

        Raises TimeoutError when none is ready and ``config.require_prealloc`` is set.
        """
        segment = self._prealloc.try_take(next_segment)
        if segment is not None:
            return segment
        wait = self._config.prealloc_wait
        if wait > 0:
            deadline = time.monotonic() + wait
            while True:
                segment = self._prealloc.try_take(next_segment)
                if segment is not None:
                    return segment
                if time.monotonic() >= deadline:
                    break
                time.sleep(0)
        if self._config.require_prealloc:
            raise TimeoutError("preallocated segment not ready")
        return None

    def append(self, type_id: int, payload: bytes) -> None:
        """Append a record stamped with the current wall-clock time."""
        self.append_with_timestamp(type_id, payload, _now_ns())

    def append_with_timestamp(self, type_id: int, payload: bytes, timestamp_ns: int) -> None:
        """Append a record with an explicit timestamp in nanoseconds."""
        self._check_open()
        payload = bytes(payload)
        if len(payload) > MAX_PAYLOAD_LEN:
            raise PayloadTooLargeError("payload length exceeds max")
        record_len = align_up(HEADER_SIZE + len(payload), RECORD_ALIGN)
        if record_len > self._segment_size - SEG_DATA_OFFSET:
            raise PayloadTooLargeError("record does not fit into a segment")

        self._ensure_capacity(record_len)

        if self._write_offset + record_len > self._segment_size:
            self.roll_segment()

        header = MessageHeader(self._seq, timestamp_ns, type_id, 0, payload_crc32(payload))
        buf = self._segment.buf
        offset = self._write_offset
        buf[offset : offset + HEADER_SIZE] = header.to_bytes()
        if payload:
            start = offset + HEADER_SIZE
            buf[start : start + len(payload)] = payload
        store_commit_len(buf, offset, commit_len_for_payload(len(payload)))

        self._seq = (self._seq + 1) & _U64_MAX
        self._write_offset += record_len
        self._control.set_write_offset(self._write_offset)
        self._control.writer_heartbeat_ns = _now_ns()
        self._notify()

    def _notify(self) -> None:
        self._control.bump_notify_seq()
        # Only signal when somebody is actually sleeping.
        if self._control.waiters_pending > 0:
            wake(self._control)

    def _ensure_capacity(self, record_len: int) -> None:
        config = self._config
        if config.max_segments is None and config.max_bytes is None:
            return
        policy = config.backpressure
        deadline = None
        if isinstance(policy, Block) and policy.timeout is not None:
            deadline = time.monotonic() + policy.timeout
        while True:
            if self._has_capacity(record_len):
                return
            cleanup_segments(
                self._path, self._segment_id, self._write_offset, self._segment_size
            )
            if self._has_capacity(record_len):
                return
            if isinstance(policy, FailFast):
                raise QueueFullError("queue is full")
            if deadline is not None and time.monotonic() >= deadline:
                raise QueueFullError("queue is full")
            time.sleep(policy.poll_interval)

    def _has_capacity(self, record_len: int) -> bool:
        head_segment = self._segment_id
        head_offset = self._write_offset
        size = self._segment_size
        min_pos = self._retention_cache.min_pos(self._path, head_segment, head_offset, size)
        if head_offset + record_len > size:
            next_segment, next_offset = head_segment + 1, SEG_DATA_OFFSET + record_len
        else:
            next_segment, next_offset = head_segment, head_offset + record_len
        head_after = _global_position(next_segment, next_offset, size)

        max_bytes = self._config.max_bytes
        bytes_ok = max_bytes is None or max(head_after - min_pos, 0) <= max_bytes

        max_segments = self._config.max_segments
        if max_segments is None:
            segments_ok = True
        else:
            used = max(next_segment - min_pos // size, 0) + 1
            segments_ok = used <= max_segments
        return bytes_ok and segments_ok

    def roll_segment(self) -> None:
        """Seal the current segment and continue in the next one."""
        self._check_open()
        next_segment = self._segment_id + 1
        new_segment = self.acquire_preallocated(next_segment)
        if new_segment is not None:
            if read_segment_header(new_segment).segment_id != next_segment & _U32_MASK:
                new_segment.close()
                raise CorruptError("preallocated segment id mismatch")
        else:
            new_segment = open_or_create_segment(self._path, next_segment, self._segment_size)
        if self._config.memlock:
            pin_pages(new_segment)

        self._control.set_segment_index(next_segment, SEG_DATA_OFFSET)

        old_segment = self._segment
        seal_segment(old_segment)
        if self._config.defer_seal_sync:
            self._segment = new_segment
            if self._async_sealer is not None:
                self._async_sealer.submit(old_segment)
            else:
                old_segment.flush()
                old_segment.close()
        else:
            old_segment.flush()
            old_segment.close()
            self._segment = new_segment

        self._segment_id = next_segment
        self._write_offset = SEG_DATA_OFFSET
        self._control.writer_heartbeat_ns = _now_ns()
        self._notify()
        self.trigger_preallocation(next_segment + 1)

    def flush_async(self) -> None:
        """Write the current segment's dirty pages back to its file."""
        self._check_open()
        self._segment.flush()

    def flush_sync(self) -> None:
        """Flush the current segment and persist the write position to the index."""
        self._check_open()
        self._segment.flush()
        store_index(
            self._path / INDEX_FILE, SegmentIndex(self._segment_id, self._write_offset)
        )

    def cleanup(self) -> list[int]:
        """Delete segments no live reader needs; return their ids."""
        self._check_open()
        return cleanup_segments(
            self._path, self._segment_id, self._write_offset, self._segment_size
        )

    def close(self) -> None:
        """Stop background work and release the segment, control block and lock."""
        if self._closed:
            return
        self._closed = True
        self._prealloc.close()
        if self._async_sealer is not None:
            self._async_sealer.close()
        self._segment.close()
        self._control.close()
        self._lock.release()

    def __enter__(self) -> "QueueWriter":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def open_publisher(path, config: WriterConfig | None = None) -> QueueWriter:
    """Open the queue at ``path`` for writing, creating and recovering it as needed."""
    config = config or WriterConfig()
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    control_path = path / CONTROL_FILE

    with ExitStack() as stack:
        lock = _WriterLock.acquire(path / WRITER_LOCK_FILE, 0)
        stack.callback(lock.release)

        if control_path.exists():
            control = open_control(control_path)
            stack.callback(control.close)
            control.wait_ready()
            segment_size = validate_segment_size(control.segment_size)
        else:
            segment_size = validate_segment_size(config.segment_size_bytes)
            control = create_control(
                control_path, 0, SEG_DATA_OFFSET, 0, config.segment_size_bytes
            )
            stack.callback(control.close)

        writer_epoch = max((control.writer_epoch + 1) & _U64_MAX, 1)
        control.writer_epoch = writer_epoch
        lock.update_epoch(writer_epoch)
        control.writer_heartbeat_ns = _now_ns()

        control_segment, control_offset = control.segment_index()
        index = load_index(path / INDEX_FILE)
        segment_id = index.current_segment & _U32_MASK
        scan_offset = index.write_offset

        if control_segment > segment_id:
            prev_segment = control_segment - 1
            if segment_path(path, prev_segment).exists():
                with open_segment(path, prev_segment, segment_size) as prev:
                    if not read_segment_header(prev).sealed:
                        repair_unsealed_tail(prev, segment_size)
            segment_id = control_segment
            scan_offset = control_offset

        if segment_path(path, segment_id).exists():
            segment = open_segment(path, segment_id, segment_size)
        else:
            segment = create_segment(path, segment_id, segment_size)
        stack.callback(lambda: segment.close())

        write_offset, tail_partial = scan_segment_tail(segment, scan_offset, segment_size)
        if tail_partial:
            segment_id = repair_tail_and_roll(segment, path, segment_id, segment_size)
            segment.close()
            segment = open_segment(path, segment_id, segment_size)
            write_offset = SEG_DATA_OFFSET

        if not tail_partial and read_segment_header(segment).sealed:
            next_segment_id = segment_id + 1
            segment.close()
            if segment_path(path, next_segment_id).exists():
                segment = open_segment(path, next_segment_id, segment_size)
            else:
                segment = create_segment(path, next_segment_id, segment_size)
            segment_id = next_segment_id
            write_offset = SEG_DATA_OFFSET

        control.set_segment_index(segment_id, write_offset)

        prealloc = PreallocWorker(path, segment_size, config.memlock)
        stack.callback(prealloc.close)
        async_sealer = None
        if config.defer_seal_sync:
            async_sealer = AsyncSealer()
            stack.callback(async_sealer.close)
        if config.memlock:
            pin_pages(segment)

        writer = QueueWriter(
            path=path,
            control=control,
            segment=segment,
            segment_id=segment_id,
            write_offset=write_offset,
            config=config,
            segment_size=segment_size,
            prealloc=prealloc,
            async_sealer=async_sealer,
            lock=lock,
        )
        stack.pop_all()

    writer.trigger_preallocation(segment_id + 1)
    return writer