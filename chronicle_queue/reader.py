"""Named queue readers that follow the writer across segments."""

from __future__ import annotations

import time
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path

from .control import ControlFile, open_control
from .segment import (
    HEADER_SIZE,
    MAX_PAYLOAD_LEN,
    PAD_TYPE_ID,
    RECORD_ALIGN,
    SEG_DATA_OFFSET,
    CorruptError,
    MappedSegment,
    ReaderMeta,
    UnsupportedError,
    align_up,
    decode_header,
    load_commit_len,
    load_reader_meta,
    open_segment,
    payload_len_from_commit,
    read_segment_header,
    repair_unsealed_tail,
    segment_path,
    store_reader_meta,
    validate_segment_size,
)
from .wait import wait_for_change
from .writer import CONTROL_FILE, WRITER_LOCK_FILE
from .writer_lock import writer_alive
from .writer_support import pin_pages

READERS_DIR = "readers"
DEFAULT_SPIN_US = 10
WRITER_TTL_NS = 5_000_000_000
HEARTBEAT_INTERVAL_NS = 1_000_000_000

_U64_MAX = (1 << 64) - 1


def _now_ns() -> int:
    now = time.time_ns()
    if now < 0:
        raise UnsupportedError("system time before UNIX epoch")
    if now > _U64_MAX:
        raise UnsupportedError("system time exceeds timestamp range")
    return now


@dataclass(frozen=True)
class MessageView:
    """One record read from the queue."""

    seq: int
    timestamp_ns: int
    type_id: int
    payload: bytes


@dataclass(frozen=True)
class BusySpin:
    """Spin on the CPU until data arrives; ignores any timeout."""


@dataclass(frozen=True)
class SpinThenPark:
    """Spin for ``spin_us`` microseconds, then sleep until the writer signals."""

    spin_us: int = DEFAULT_SPIN_US


@dataclass(frozen=True)
class Sleep:
    """Sleep for a fixed ``duration`` in seconds and return."""

    duration: float


WaitStrategy = BusySpin | SpinThenPark | Sleep


class QueueReader:
    """Reads records in order and persists its position under a reader name."""

    def __init__(
        self,
        *,
        path: Path,
        control: ControlFile,
        segment: MappedSegment,
        meta_path: Path,
        meta: ReaderMeta,
        segment_size: int,
        memlock: bool = False,
    ) -> None:
        self._path = path
        self._control = control
        self._segment = segment
        self._segment_id = meta.segment_id
        self._read_offset = meta.offset
        self._meta_path = meta_path
        self._meta = meta
        self._segment_size = segment_size
        self._memlock = memlock
        self.wait_strategy: WaitStrategy = SpinThenPark(DEFAULT_SPIN_US)
        self._closed = False

    @property
    def segment_id(self) -> int:
        return self._segment_id

    @property
    def read_offset(self) -> int:
        return self._read_offset

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self) -> None:
        if self._closed:
            raise ValueError("reader is closed")

    def next(self) -> MessageView | None:
        """Return the next committed record, or None when none is available yet."""
        self._check_open()
        last_possible = self._segment_size - HEADER_SIZE
        while True:
            if self._read_offset > last_possible:
                if self._advance_segment():
                    continue
                return None

            buf = self._segment.buf
            offset = self._read_offset
            commit = load_commit_len(buf, offset)
            if commit == 0:
                if self._advance_segment():
                    continue
                return None

            payload_len = payload_len_from_commit(commit)
            if payload_len > MAX_PAYLOAD_LEN:
                raise CorruptError("payload length exceeds max")
            record_len = align_up(HEADER_SIZE + payload_len, RECORD_ALIGN)
            if offset + record_len > self._segment_size:
                raise CorruptError("record length out of bounds")

            header = decode_header(buf[offset : offset + HEADER_SIZE])
            self._read_offset = offset + record_len
            payload = self._payload_at(offset + HEADER_SIZE, payload_len)
            if header.type_id == PAD_TYPE_ID:
                continue
            header.validate_crc(payload)
            return MessageView(header.seq, header.timestamp_ns, header.type_id, payload)

    def __iter__(self):
        """Yield records until none is available."""
        while (message := self.next()) is not None:
            yield message

    def commit(self) -> None:
        """Persist the current read position under this reader's name."""
        self._check_open()
        self._meta.segment_id = self._segment_id
        self._meta.offset = self._read_offset
        self._meta.last_heartbeat_ns = _now_ns()
        store_reader_meta(self._meta_path, self._meta)

    def wait(self, timeout: float | None = None) -> None:
        """Wait for new data according to the wait strategy; ``timeout`` in seconds."""
        self._check_open()
        self._maybe_heartbeat()
        strategy = self.wait_strategy
        if isinstance(strategy, BusySpin):
            while not self.peek_committed():
                time.sleep(0)
            return
        if isinstance(strategy, Sleep):
            time.sleep(strategy.duration)
            return

        spin_deadline = time.monotonic() + strategy.spin_us / 1_000_000
        while time.monotonic() < spin_deadline:
            if self.peek_committed():
                return

        control = self._control
        # Register before sampling the counter so a writer that commits now sees us.
        control.add_waiter()
        try:
            seq = control.notify_seq
            if self.peek_committed():
                return
            wait_for_change(control, seq, timeout)
        finally:
            control.remove_waiter()

    def peek_committed(self) -> bool:
        """Whether a committed record sits at the current read position."""
        self._check_open()
        if self._read_offset > self._segment_size - HEADER_SIZE:
            return False
        return load_commit_len(self._segment.buf, self._read_offset) > 0

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._segment.close()
        self._control.close()

    def __enter__(self) -> "QueueReader":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _payload_at(self, offset: int, length: int) -> bytes:
        end = offset + length
        if end > len(self._segment):
            raise CorruptError("payload out of bounds")
        return bytes(self._segment.buf[offset:end])

    def _maybe_heartbeat(self) -> None:
        now = _now_ns()
        if max(now - self._meta.last_heartbeat_ns, 0) > HEARTBEAT_INTERVAL_NS:
            self._meta.last_heartbeat_ns = now
            store_reader_meta(self._meta_path, self._meta)

    def _advance_segment(self) -> bool:
        # The control block tells whether the writer has moved on at all,
        # which avoids touching the file system while waiting at the tail.
        if self._control.current_segment <= self._segment_id:
            return False
        header = read_segment_header(self._segment)
        next_segment = self._segment_id + 1
        if not segment_path(self._path, next_segment).exists():
            return False
        if not header.sealed:
            if not self._writer_dead():
                return False
            repair_unsealed_tail(self._segment, self._segment_size)
        segment = open_segment(self._path, next_segment, self._segment_size)
        if self._memlock:
            pin_pages(segment)
        self._segment.close()
        self._segment = segment
        self._segment_id = next_segment
        self._read_offset = SEG_DATA_OFFSET
        return True

    def _writer_dead(self) -> bool:
        if writer_alive(self._path / WRITER_LOCK_FILE):
            return False
        heartbeat = self._control.writer_heartbeat_ns
        if heartbeat == 0:
            return True
        return max(_now_ns() - heartbeat, 0) > WRITER_TTL_NS


def _open_subscriber(path, reader: str, memlock: bool) -> QueueReader:
    if not reader:
        raise UnsupportedError("reader name cannot be empty")
    path = Path(path)
    with ExitStack() as stack:
        control = open_control(path / CONTROL_FILE)
        stack.callback(control.close)
        control.wait_ready()
        segment_size = validate_segment_size(control.segment_size)

        readers_dir = path / READERS_DIR
        readers_dir.mkdir(parents=True, exist_ok=True)
        meta_path = readers_dir / f"{reader}.meta"
        meta = load_reader_meta(meta_path)
        if meta.offset < SEG_DATA_OFFSET:
            meta.offset = SEG_DATA_OFFSET
        meta.last_heartbeat_ns = _now_ns()
        store_reader_meta(meta_path, meta)

        if not segment_path(path, meta.segment_id).exists():
            raise CorruptError("reader segment missing")
        segment = open_segment(path, meta.segment_id, segment_size)
        stack.callback(segment.close)
        if memlock:
            pin_pages(segment)

        queue_reader = QueueReader(
            path=path,
            control=control,
            segment=segment,
            meta_path=meta_path,
            meta=meta,
            segment_size=segment_size,
            memlock=memlock,
        )
        stack.pop_all()
    return queue_reader


def open_subscriber(path, reader: str) -> QueueReader:
    """Open the queue at ``path`` for reading under the name ``reader``."""
    return _open_subscriber(path, reader, memlock=False)