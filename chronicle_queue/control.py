"""Shared control block: segment cursor, writer liveness and wake-up counters."""

from __future__ import annotations

import fcntl
import mmap
import os
import struct
import threading
import time
from collections.abc import Callable
from pathlib import Path

from .segment import CorruptError, UnsupportedVersionError

CONTROL_MAGIC = 0x43544C30  # 'CTL0'
CONTROL_VERSION = 1
CONTROL_SIZE = 64
READY_TIMEOUT = 2.0

_STATE_INIT = 0
_STATE_READY = 1

_U32_MASK = 0xFFFF_FFFF
_U64_MASK = (1 << 64) - 1
_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")

_OFF_MAGIC = 0
_OFF_VERSION = 4
_OFF_STATE = 8
_OFF_SEGMENT = 12
_OFF_WRITE_OFFSET = 16
_OFF_EPOCH = 24
_OFF_HEARTBEAT = 32
_OFF_SEGMENT_SIZE = 40
_OFF_NOTIFY = 48
_OFF_WAITERS = 52
_COUNTERS_LEN = 8

# Record locks are per process, so threads of one process serialise here first.
_counter_lock = threading.Lock()


class ControlFile:
    """Memory-mapped control block shared by the writer and all readers."""

    def __init__(self, path, file, buf: mmap.mmap) -> None:
        self.path = Path(path)
        self._file = file
        self._buf = buf

    def _u32(self, offset: int) -> int:
        return _U32.unpack_from(self._buf, offset)[0]

    def _u64(self, offset: int) -> int:
        return _U64.unpack_from(self._buf, offset)[0]

    def _update_counter(self, offset: int, update: Callable[[int], int]) -> int:
        fd = self._file.fileno()
        with _counter_lock:
            fcntl.lockf(fd, fcntl.LOCK_EX, _COUNTERS_LEN, _OFF_NOTIFY)
            try:
                value = update(self._u32(offset)) & _U32_MASK
                _U32.pack_into(self._buf, offset, value)
            finally:
                fcntl.lockf(fd, fcntl.LOCK_UN, _COUNTERS_LEN, _OFF_NOTIFY)
        return value

    @property
    def closed(self) -> bool:
        return self._buf.closed

    def close(self) -> None:
        if not self._buf.closed:
            self._buf.close()
        self._file.close()

    def __enter__(self) -> "ControlFile":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def wait_ready(self) -> None:
        """Block until the creator has finished initialising the block, then validate it."""
        deadline = time.monotonic() + READY_TIMEOUT
        while True:
            state = self._u32(_OFF_STATE)
            if state == _STATE_READY:
                break
            if state != _STATE_INIT:
                raise CorruptError("control file has invalid state")
            if time.monotonic() >= deadline:
                raise CorruptError("control file never became ready")
            time.sleep(0.001)
        if self._u32(_OFF_MAGIC) != CONTROL_MAGIC:
            raise CorruptError("control magic mismatch")
        version = self._u32(_OFF_VERSION)
        if version != CONTROL_VERSION:
            raise UnsupportedVersionError(version)

    @property
    def segment_size(self) -> int:
        return self._u64(_OFF_SEGMENT_SIZE)

    @property
    def current_segment(self) -> int:
        return self._u32(_OFF_SEGMENT)

    @property
    def write_offset(self) -> int:
        return self._u64(_OFF_WRITE_OFFSET)

    def segment_index(self) -> tuple[int, int]:
        """The writer's current segment and write offset."""
        return self._u32(_OFF_SEGMENT), self._u64(_OFF_WRITE_OFFSET)

    def set_segment_index(self, segment_id: int, write_offset: int) -> None:
        _U64.pack_into(self._buf, _OFF_WRITE_OFFSET, write_offset & _U64_MASK)
        _U32.pack_into(self._buf, _OFF_SEGMENT, segment_id & _U32_MASK)

    def set_write_offset(self, write_offset: int) -> None:
        _U64.pack_into(self._buf, _OFF_WRITE_OFFSET, write_offset & _U64_MASK)

    @property
    def writer_epoch(self) -> int:
        return self._u64(_OFF_EPOCH)

    @writer_epoch.setter
    def writer_epoch(self, epoch: int) -> None:
        _U64.pack_into(self._buf, _OFF_EPOCH, epoch & _U64_MASK)

    @property
    def writer_heartbeat_ns(self) -> int:
        return self._u64(_OFF_HEARTBEAT)

    @writer_heartbeat_ns.setter
    def writer_heartbeat_ns(self, timestamp_ns: int) -> None:
        _U64.pack_into(self._buf, _OFF_HEARTBEAT, timestamp_ns & _U64_MASK)

    @property
    def notify_seq(self) -> int:
        return self._u32(_OFF_NOTIFY)

    @property
    def waiters_pending(self) -> int:
        return self._u32(_OFF_WAITERS)

    def bump_notify_seq(self) -> int:
        """Advance the notification counter and return its new value."""
        return self._update_counter(_OFF_NOTIFY, lambda value: value + 1)

    def add_waiter(self) -> int:
        return self._update_counter(_OFF_WAITERS, lambda value: value + 1)

    def remove_waiter(self) -> int:
        return self._update_counter(_OFF_WAITERS, lambda value: max(value - 1, 0))


def create_control(
    path, current_segment: int, write_offset: int, writer_epoch: int, segment_size: int
) -> ControlFile:
    """Create and initialise a control file; readers see it only once it is complete."""
    path = Path(path)
    file = open(path, "w+b")
    try:
        file.truncate(CONTROL_SIZE)
        buf = mmap.mmap(file.fileno(), CONTROL_SIZE)
    except BaseException:
        file.close()
        raise
    _U32.pack_into(buf, _OFF_MAGIC, CONTROL_MAGIC)
    _U32.pack_into(buf, _OFF_VERSION, CONTROL_VERSION)
    _U32.pack_into(buf, _OFF_SEGMENT, current_segment & _U32_MASK)
    _U64.pack_into(buf, _OFF_WRITE_OFFSET, write_offset & _U64_MASK)
    _U64.pack_into(buf, _OFF_EPOCH, writer_epoch & _U64_MASK)
    _U64.pack_into(buf, _OFF_SEGMENT_SIZE, segment_size & _U64_MASK)
    buf.flush()
    _U32.pack_into(buf, _OFF_STATE, _STATE_READY)
    buf.flush()
    os.fsync(file.fileno())
    return ControlFile(path, file, buf)


def open_control(path) -> ControlFile:
    """Map an existing control file; call wait_ready before trusting its contents."""
    path = Path(path)
    file = open(path, "r+b")
    try:
        if os.fstat(file.fileno()).st_size < CONTROL_SIZE:
            raise CorruptError("control file truncated")
        buf = mmap.mmap(file.fileno(), CONTROL_SIZE)
    except BaseException:
        file.close()
        raise
    return ControlFile(path, file, buf)