"""Segment retention: which segments live readers still need, and removal of the rest."""

from __future__ import annotations

import re
import time
from collections.abc import Iterator
from pathlib import Path

from .segment import ReaderMeta, UnsupportedError, load_reader_meta

READERS_DIR = "readers"
READER_TTL_NS = 30_000_000_000
MAX_RETENTION_LAG = 10 * 1024 * 1024 * 1024

_U64_MAX = (1 << 64) - 1
_SEGMENT_STEM = re.compile(r"\+?[0-9]+")


def _global_position(segment_id: int, offset: int, segment_size: int) -> int:
    return min(min(segment_id * segment_size, _U64_MAX) + offset, _U64_MAX)


def _now_ns() -> int:
    now = time.time_ns()
    if now < 0:
        raise UnsupportedError("system time before UNIX epoch")
    if now > _U64_MAX:
        raise UnsupportedError("system time exceeds timestamp range")
    return now


def _parse_segment_id(name: str) -> int | None:
    if not name.endswith(".q"):
        return None
    stem = name[: -len(".q")]
    if not _SEGMENT_STEM.fullmatch(stem):
        return None
    value = int(stem)
    return value if value <= _U64_MAX else None


def _segment_files(root: Path) -> Iterator[tuple[int, Path]]:
    for path in root.iterdir():
        if path.suffix != ".q":
            continue
        segment_id = _parse_segment_id(path.name)
        if segment_id is not None:
            yield segment_id, path


def _live_readers(root: Path, head: int, segment_size: int) -> Iterator[ReaderMeta]:
    """Readers whose heartbeat is fresh and who are not hopelessly far behind."""
    now = _now_ns()
    for path in (root / READERS_DIR).iterdir():
        if path.suffix != ".meta":
            continue
        meta = load_reader_meta(path)
        if meta.last_heartbeat_ns != 0 and max(now - meta.last_heartbeat_ns, 0) > READER_TTL_NS:
            continue
        reader_global = _global_position(meta.segment_id, meta.offset, segment_size)
        if head > reader_global and head - reader_global > MAX_RETENTION_LAG:
            continue
        yield meta


def min_live_reader_segment(root, head_segment: int, head_offset: int, segment_size: int) -> int:
    """Lowest segment any live reader is positioned in, or the head segment."""
    root = Path(root)
    if not (root / READERS_DIR).exists():
        return head_segment
    head = _global_position(head_segment, head_offset, segment_size)
    segments = [meta.segment_id for meta in _live_readers(root, head, segment_size)]
    return min(segments, default=head_segment)


def min_live_reader_position(root, head_segment: int, head_offset: int, segment_size: int) -> int:
    """Lowest global byte position of any live reader, or the head position."""
    root = Path(root)
    head = _global_position(head_segment, head_offset, segment_size)
    if not (root / READERS_DIR).exists():
        return head
    positions = [
        _global_position(meta.segment_id, meta.offset, segment_size)
        for meta in _live_readers(root, head, segment_size)
    ]
    return min(positions, default=head)


def _candidate_paths(
    root: Path, head_segment: int, head_offset: int, segment_size: int
) -> list[tuple[int, Path]]:
    if not (root / READERS_DIR).exists():
        return []
    min_segment = min_live_reader_segment(root, head_segment, head_offset, segment_size)
    return [
        (segment_id, path)
        for segment_id, path in _segment_files(root)
        if segment_id < min_segment and segment_id < head_segment
    ]


def retention_candidates(root, head_segment: int, head_offset: int, segment_size: int) -> list[int]:
    """Ids of segments that no live reader needs any more, in ascending order."""
    return sorted(
        segment_id
        for segment_id, _ in _candidate_paths(Path(root), head_segment, head_offset, segment_size)
    )


def cleanup_segments(root, head_segment: int, head_offset: int, segment_size: int) -> list[int]:
    """Delete the segments no live reader needs and return their ids in ascending order."""
    deleted = []
    for segment_id, path in _candidate_paths(Path(root), head_segment, head_offset, segment_size):
        path.unlink()
        deleted.append(segment_id)
    return sorted(deleted)