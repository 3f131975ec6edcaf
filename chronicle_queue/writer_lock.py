"""Single-writer lock file and liveness checks for the process holding it."""

from __future__ import annotations

import fcntl
import os
import re
import sys
from dataclasses import dataclass
from pathlib import Path

from .segment import CorruptMetadataError

_IS_LINUX = sys.platform.startswith("linux")
_UINT = re.compile(r"\+?[0-9]+")
_U32_MAX = 0xFFFF_FFFF
_U64_MAX = (1 << 64) - 1


@dataclass(frozen=True)
class WriterLockInfo:
    pid: int
    start_time: int
    epoch: int


def _parse_uint(token: str | None, limit: int) -> int | None:
    if token is None or not _UINT.fullmatch(token):
        return None
    value = int(token)
    return value if value <= limit else None


def try_lock(file) -> bool:
    """Take an exclusive non-blocking flock; False if another holder has it."""
    try:
        fcntl.flock(file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        return False
    return True


def write_lock_record(file, writer_epoch: int) -> None:
    """Replace the lock file's contents with this process's identity."""
    pid, start_time = lock_identity()
    record = f"{pid} {start_time} {writer_epoch}\n".encode()
    fd = file.fileno()
    os.ftruncate(fd, 0)
    os.pwrite(fd, record, 0)
    os.fsync(fd)


def writer_alive(path) -> bool:
    path = Path(path)
    if not path.exists():
        return False
    info = read_lock_info(path)
    if info is None:
        return False
    return lock_owner_alive(info)


def _read_lock_record(path: Path) -> tuple[int, int, int]:
    parts = path.read_text(encoding="utf-8").split()
    parts += [None] * (3 - len(parts))
    pid = _parse_uint(parts[0], _U32_MAX) or 0
    start_time = _parse_uint(parts[1], _U64_MAX) or 0
    epoch = _parse_uint(parts[2], _U64_MAX) or 0
    return pid, start_time, epoch


def read_lock_info(path) -> WriterLockInfo | None:
    """Read the owner record; None when there is no file or no owner in it."""
    path = Path(path)
    if not path.exists():
        return None
    info = WriterLockInfo(*_read_lock_record(path))
    if _IS_LINUX and info == WriterLockInfo(0, 0, 0):
        return None
    return info


def lock_owner_alive(info: WriterLockInfo) -> bool:
    """Whether the recorded process still runs and is the same incarnation."""
    if not _IS_LINUX:
        return True
    if info.pid == 0:
        return False
    try:
        start = proc_start_time(info.pid)
    except FileNotFoundError:
        return False
    return start == info.start_time


def lock_identity() -> tuple[int, int]:
    pid = os.getpid()
    if not _IS_LINUX:
        return pid, 0
    return pid, proc_start_time(pid)


def proc_start_time(pid: int) -> int:
    """Start time of a process in clock ticks since boot, from /proc."""
    with open(f"/proc/{pid}/stat", encoding="utf-8") as file:
        contents = file.read()
    end = contents.rfind(")")
    if end < 0:
        raise CorruptMetadataError("stat parse")
    fields = contents[end + 1 :].split()
    if len(fields) < 20:
        raise CorruptMetadataError("stat missing starttime")
    start_time = _parse_uint(fields[19], _U64_MAX)
    if start_time is None:
        raise CorruptMetadataError("stat starttime invalid")
    return start_time