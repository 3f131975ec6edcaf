"""On-disk segment format, message record headers, index and reader metadata."""

from __future__ import annotations

import errno
import mmap
import os
import struct
import sys
import zlib
from dataclasses import dataclass
from pathlib import Path

HEADER_SIZE = 64
RECORD_ALIGN = 64
MAX_PAYLOAD_LEN = 0x7FFF_FFFF
PAD_TYPE_ID = 0xFFFF

DEFAULT_SEGMENT_SIZE = 128 * 1024 * 1024
SEG_HEADER_SIZE = 64
SEG_DATA_OFFSET = 64
SEG_MAGIC = 0x53454730  # 'SEG0'
SEG_VERSION = 1
SEG_FLAG_SEALED = 1

_U32_MASK = 0xFFFF_FFFF
_U64_MAX = (1 << 64) - 1
_PAGE_SIZE = 4096

# commit_len, checksum, seq, timestamp_ns, type_id, flags
_MESSAGE_HEADER = struct.Struct("<IIQQHH")
_COMMIT = struct.Struct("<I")
_SEGMENT_HEADER = struct.Struct("<IIII")
_INDEX = struct.Struct("<QQ")
_READER_SLOT = struct.Struct("<QQQQ")
_READER_SLOT_SIZE = 40
_READER_META_FILE_SIZE = _READER_SLOT_SIZE * 2


class QueueError(Exception):
    """Base class for queue errors."""


class CorruptError(QueueError):
    """Queue data on disk is inconsistent."""


class CorruptMetadataError(QueueError):
    """A metadata file could not be decoded."""


class UnsupportedError(QueueError):
    """The requested operation or configuration is not supported."""


class UnsupportedVersionError(UnsupportedError):
    """A segment was written with an unknown format version."""

    def __init__(self, version: int) -> None:
        super().__init__(f"unsupported segment version {version}")
        self.version = version


class PayloadTooLargeError(QueueError):
    """The payload does not fit into a segment."""


class QueueFullError(QueueError):
    """Retention limits leave no room for another record."""


class WriterAlreadyActiveError(QueueError):
    """Another live process holds the writer lock."""


@dataclass(frozen=True)
class MessageHeader:
    """Fixed-size header that precedes every record's payload."""

    seq: int
    timestamp_ns: int
    type_id: int
    flags: int = 0
    checksum: int = 0

    def to_bytes(self) -> bytes:
        """Encode the header with a zero (uncommitted) commit length."""
        packed = _MESSAGE_HEADER.pack(
            0,
            self.checksum & _U32_MASK,
            self.seq & _U64_MAX,
            self.timestamp_ns & _U64_MAX,
            self.type_id & 0xFFFF,
            self.flags & 0xFFFF,
        )
        return packed.ljust(HEADER_SIZE, b"\0")

    def validate_crc(self, payload: bytes) -> None:
        """Raise CorruptError if the payload does not match the stored checksum."""
        if payload_crc32(payload) != self.checksum:
            raise CorruptError("payload crc mismatch")


def decode_header(data: bytes) -> MessageHeader:
    """Decode a record header from its bytes."""
    if len(data) < HEADER_SIZE:
        raise CorruptError("record header truncated")
    _, checksum, seq, timestamp_ns, type_id, flags = _MESSAGE_HEADER.unpack_from(data, 0)
    return MessageHeader(seq, timestamp_ns, type_id, flags, checksum)


def payload_crc32(payload: bytes) -> int:
    return zlib.crc32(payload) & _U32_MASK


def load_commit_len(buf, offset: int) -> int:
    """Read the commit word of the record header at ``offset``."""
    return _COMMIT.unpack_from(buf, offset)[0]


def store_commit_len(buf, offset: int, commit_len: int) -> None:
    """Publish a record by writing its commit word last."""
    _COMMIT.pack_into(buf, offset, commit_len)


def commit_len_for_payload(payload_len: int) -> int:
    if payload_len < 0 or payload_len > MAX_PAYLOAD_LEN:
        raise PayloadTooLargeError("payload length exceeds max")
    return payload_len + 1


def payload_len_from_commit(commit: int) -> int:
    if commit == 0:
        raise CorruptError("record is not committed")
    return commit - 1


def align_up(value: int, align: int) -> int:
    if align == 0:
        return value
    return (value + align - 1) & ~(align - 1)


@dataclass(frozen=True)
class SegmentHeader:
    magic: int
    version: int
    segment_id: int
    flags: int

    @property
    def sealed(self) -> bool:
        return bool(self.flags & SEG_FLAG_SEALED)


@dataclass(frozen=True)
class SegmentIndex:
    current_segment: int
    write_offset: int


@dataclass(frozen=True)
class ReaderPosition:
    segment_id: int
    offset: int


@dataclass
class ReaderMeta:
    segment_id: int
    offset: int
    last_heartbeat_ns: int = 0
    generation: int = 0


class MappedSegment:
    """A shared read-write memory mapping of a whole segment file."""

    def __init__(self, path, file, buf: mmap.mmap) -> None:
        self.path = Path(path)
        self._file = file
        self.buf = buf

    @classmethod
    def open(cls, path) -> "MappedSegment":
        file = open(path, "r+b")
        try:
            size = os.fstat(file.fileno()).st_size
            if size == 0:
                raise CorruptError("segment file is empty")
            buf = mmap.mmap(file.fileno(), size)
        except BaseException:
            file.close()
            raise
        return cls(path, file, buf)

    @classmethod
    def create(cls, path, size: int, *, exclusive: bool = False) -> "MappedSegment":
        file = open(path, "x+b" if exclusive else "w+b")
        try:
            file.truncate(size)
            buf = mmap.mmap(file.fileno(), size)
        except BaseException:
            file.close()
            raise
        return cls(path, file, buf)

    def __len__(self) -> int:
        return len(self.buf)

    @property
    def closed(self) -> bool:
        return self.buf.closed

    def close(self) -> None:
        if not self.buf.closed:
            self.buf.close()
        self._file.close()

    def flush(self) -> None:
        """Write dirty pages back to the file."""
        self.buf.flush()

    def __enter__(self) -> "MappedSegment":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def segment_filename(segment_id: int) -> str:
    return f"{segment_id:09d}.q"


def segment_temp_filename(segment_id: int) -> str:
    return f"{segment_id:09d}.q.tmp"


def segment_path(root, segment_id: int) -> Path:
    return Path(root) / segment_filename(segment_id)


def segment_temp_path(root, segment_id: int) -> Path:
    return Path(root) / segment_temp_filename(segment_id)


def open_segment(root, segment_id: int, segment_size: int) -> MappedSegment:
    """Map an existing segment, checking its size and identity."""
    segment = MappedSegment.open(segment_path(root, segment_id))
    try:
        if len(segment) != segment_size:
            raise CorruptError("segment size mismatch")
        header = read_segment_header(segment)
        if header.segment_id != segment_id & _U32_MASK:
            raise CorruptError("segment id mismatch")
    except BaseException:
        segment.close()
        raise
    return segment


def create_segment(root, segment_id: int, segment_size: int) -> MappedSegment:
    segment = MappedSegment.create(segment_path(root, segment_id), segment_size)
    write_segment_header(segment, segment_id, 0)
    return segment


def open_or_create_segment(root, segment_id: int, segment_size: int) -> MappedSegment:
    """Open a segment, creating it only if nobody else has already done so."""
    try:
        return open_segment(root, segment_id, segment_size)
    except FileNotFoundError:
        pass
    try:
        segment = MappedSegment.create(
            segment_path(root, segment_id), segment_size, exclusive=True
        )
    except FileExistsError:
        return open_segment(root, segment_id, segment_size)
    write_segment_header(segment, segment_id, 0)
    return segment


def _prefault(segment: MappedSegment) -> None:
    # The first page already holds the freshly written header.
    buf = segment.buf
    for offset in range(_PAGE_SIZE, len(buf), _PAGE_SIZE):
        buf[offset] = 0


def prepare_segment(root, segment_id: int, segment_size: int) -> MappedSegment:
    segment = create_segment(root, segment_id, segment_size)
    _prefault(segment)
    return segment


def prepare_segment_temp(root, segment_id: int, segment_size: int) -> MappedSegment:
    temp_path = segment_temp_path(root, segment_id)
    try:
        temp_path.unlink()
    except OSError:
        pass
    segment = MappedSegment.create(temp_path, segment_size)
    write_segment_header(segment, segment_id, 0)
    _prefault(segment)
    return segment


_NO_HARDLINK_ERRNOS = {
    errno.EPERM,
    errno.ENOSYS,
    errno.EXDEV,
    getattr(errno, "ENOTSUP", errno.EPERM),
    getattr(errno, "EOPNOTSUPP", errno.EPERM),
}


def publish_segment(temp, final_path) -> None:
    """Move a prepared segment into place without replacing an existing one."""
    temp = Path(temp)
    final_path = Path(final_path)
    try:
        os.link(temp, final_path)
    except OSError as exc:
        if exc.errno not in _NO_HARDLINK_ERRNOS:
            raise
    else:
        os.unlink(temp)
        return
    if final_path.exists():
        raise FileExistsError(errno.EEXIST, "segment already exists", str(final_path))
    os.rename(temp, final_path)


def validate_segment_size(segment_size: int) -> int:
    if segment_size > sys.maxsize:
        raise UnsupportedError("segment size exceeds addressable range")
    if segment_size < SEG_DATA_OFFSET + HEADER_SIZE:
        raise UnsupportedError("segment size too small")
    return int(segment_size)


def load_index(path) -> SegmentIndex:
    try:
        with open(path, "rb") as file:
            data = file.read(_INDEX.size)
    except FileNotFoundError:
        return SegmentIndex(0, SEG_DATA_OFFSET)
    if len(data) < _INDEX.size:
        raise EOFError("index file truncated")
    current_segment, write_offset = _INDEX.unpack(data)
    return SegmentIndex(current_segment, write_offset)


def store_index(path, index: SegmentIndex) -> None:
    with open(path, "wb") as file:
        file.write(_INDEX.pack(index.current_segment, index.write_offset))
        file.flush()
        os.fsync(file.fileno())


def _reader_meta_crc(data: bytes) -> int:
    return zlib.crc32(data) & _U32_MASK


def _encode_reader_slot(meta: ReaderMeta) -> bytes:
    body = _READER_SLOT.pack(
        meta.segment_id, meta.offset, meta.last_heartbeat_ns, meta.generation
    )
    return (body + _COMMIT.pack(_reader_meta_crc(body))).ljust(_READER_SLOT_SIZE, b"\0")


def _parse_reader_slot(data: bytes) -> ReaderMeta | None:
    if len(data) != _READER_SLOT_SIZE:
        return None
    body = data[: _READER_SLOT.size]
    (crc,) = _COMMIT.unpack_from(data, _READER_SLOT.size)
    if _reader_meta_crc(body) != crc:
        return None
    return ReaderMeta(*_READER_SLOT.unpack(body))


def _select_reader_slot(slot0: ReaderMeta | None, slot1: ReaderMeta | None) -> ReaderMeta | None:
    if slot0 is None or slot1 is None:
        return slot0 or slot1
    return slot1 if slot1.generation > slot0.generation else slot0


def load_reader_meta(path) -> ReaderMeta:
    """Load a reader's position; a missing file means the start of the queue."""
    try:
        data = Path(path).read_bytes()
    except FileNotFoundError:
        return ReaderMeta(0, SEG_DATA_OFFSET)
    if len(data) == 8:
        (offset,) = struct.unpack("<Q", data)
        return ReaderMeta(0, offset)
    if len(data) == 16:
        segment_id, offset = _INDEX.unpack(data)
        return ReaderMeta(segment_id, offset)
    if len(data) != _READER_META_FILE_SIZE:
        raise CorruptMetadataError("reader metadata has unexpected size")
    meta = _select_reader_slot(
        _parse_reader_slot(data[:_READER_SLOT_SIZE]),
        _parse_reader_slot(data[_READER_SLOT_SIZE:]),
    )
    if meta is None:
        raise CorruptMetadataError("no valid reader metadata slot")
    return meta


def store_reader_meta(path, meta: ReaderMeta) -> None:
    """Persist ``meta`` into the slot its next generation selects."""
    meta.generation = min(meta.generation + 1, _U64_MAX)
    slot = meta.generation % 2
    fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
    try:
        os.ftruncate(fd, _READER_META_FILE_SIZE)
        os.pwrite(fd, _encode_reader_slot(meta), slot * _READER_SLOT_SIZE)
        os.fsync(fd)
    finally:
        os.close(fd)


def read_segment_header(segment: MappedSegment) -> SegmentHeader:
    if len(segment) < SEG_HEADER_SIZE:
        raise CorruptError("segment too small for header")
    magic, version, segment_id, flags = _SEGMENT_HEADER.unpack_from(segment.buf, 0)
    if magic != SEG_MAGIC:
        raise CorruptError("segment magic mismatch")
    if version != SEG_VERSION:
        raise UnsupportedVersionError(version)
    return SegmentHeader(magic, version, segment_id, flags)


def write_segment_header(segment: MappedSegment, segment_id: int, flags: int) -> None:
    if len(segment) < SEG_HEADER_SIZE:
        raise CorruptError("segment too small for header")
    packed = _SEGMENT_HEADER.pack(
        SEG_MAGIC, SEG_VERSION, segment_id & _U32_MASK, flags & _U32_MASK
    )
    segment.buf[0:SEG_HEADER_SIZE] = packed.ljust(SEG_HEADER_SIZE, b"\0")


def seal_segment(segment: MappedSegment) -> None:
    header = read_segment_header(segment)
    if header.sealed:
        return
    write_segment_header(segment, header.segment_id, header.flags | SEG_FLAG_SEALED)


def _committed_end(buf, segment_size: int) -> int:
    offset = SEG_DATA_OFFSET
    while offset + HEADER_SIZE <= segment_size:
        commit = load_commit_len(buf, offset)
        if commit == 0:
            break
        try:
            payload_len = payload_len_from_commit(commit)
        except CorruptError:
            break
        if payload_len > MAX_PAYLOAD_LEN:
            break
        record_len = align_up(HEADER_SIZE + payload_len, RECORD_ALIGN)
        if offset + record_len > segment_size:
            break
        offset += record_len
    return offset


def repair_unsealed_tail(segment: MappedSegment, segment_size: int) -> None:
    """Pad everything after the last committed record and seal the segment."""
    if read_segment_header(segment).sealed:
        return
    buf = segment.buf
    end = _committed_end(buf, segment_size)
    if end + HEADER_SIZE <= segment_size:
        payload_len = segment_size - end - HEADER_SIZE
        commit_len = commit_len_for_payload(payload_len)
        pad = MessageHeader(0, 0, PAD_TYPE_ID, 0, 0)
        buf[end : end + HEADER_SIZE] = pad.to_bytes()
        if payload_len > 0:
            buf[end + HEADER_SIZE : segment_size] = bytes(payload_len)
        store_commit_len(buf, end, commit_len)
    seal_segment(segment)