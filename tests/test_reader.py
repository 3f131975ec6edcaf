import threading
import time

import pytest

from chronicle_queue.control import open_control
from chronicle_queue.reader import (
    BusySpin,
    MessageView,
    Sleep,
    SpinThenPark,
    open_subscriber,
)
from chronicle_queue.segment import (
    CorruptError,
    ReaderMeta,
    UnsupportedError,
    load_reader_meta,
    open_or_create_segment,
    open_segment,
    read_segment_header,
    segment_path,
    store_reader_meta,
)
from chronicle_queue.writer import open_publisher
from chronicle_queue.writer_support import WriterConfig

SMALL = WriterConfig(segment_size_bytes=4096)


@pytest.fixture
def queue_dir(tmp_path):
    return tmp_path / "queue"


@pytest.fixture
def writer(queue_dir):
    w = open_publisher(queue_dir, SMALL)
    yield w
    w.close()


def test_reads_messages_in_order(queue_dir, writer):
    writer.append_with_timestamp(1, b"alpha", 100)
    writer.append_with_timestamp(2, b"beta", 200)
    writer.append_with_timestamp(3, b"", 300)
    with open_subscriber(queue_dir, "r1") as reader:
        assert reader.next() == MessageView(0, 100, 1, b"alpha")
        assert reader.next() == MessageView(1, 200, 2, b"beta")
        assert reader.next() == MessageView(2, 300, 3, b"")
        assert reader.next() is None


def test_iteration_yields_all_available(queue_dir, writer):
    for i in range(5):
        writer.append(7, bytes([i]) * 10)
    with open_subscriber(queue_dir, "iter") as reader:
        payloads = [m.payload for m in reader]
    assert payloads == [bytes([i]) * 10 for i in range(5)]


@pytest.mark.parametrize("size", [64, 256, 1024])
def test_read_all_appended_across_segments(tmp_path, size):
    path = tmp_path / "bench_queue"
    appends = 10_000
    with open_publisher(path, WriterConfig(segment_size_bytes=1024 * 1024)) as w:
        payload = bytes(size)
        for _ in range(appends):
            w.append(1, payload)
        w.flush_sync()
        with open_subscriber(path, "bench") as reader:
            count = 0
            for message in reader:
                assert len(message.payload) == size
                count += 1
    assert count == appends


def test_follows_rolls_with_preallocation(tmp_path):
    path = tmp_path / "roll_latency_q"
    config = WriterConfig(
        segment_size_bytes=64 * 1024,
        defer_seal_sync=True,
        prealloc_wait=2.0,
        require_prealloc=True,
    )
    with open_publisher(path, config) as w, open_subscriber(path, "bench_reader") as reader:
        reader.wait_strategy = BusySpin()
        time.sleep(0.01)
        rolls = 0
        for i in range(1000):
            payload = i.to_bytes(16, "little") + bytes(240)
            old = w.segment_id
            w.append(1, payload)
            if w.segment_id > old:
                rolls += 1
            message = reader.next()
            assert message is not None
            assert message.seq == i
            assert message.payload == payload
        assert reader.next() is None
        assert rolls >= 3
        assert reader.segment_id == w.segment_id


def test_commit_persists_position(queue_dir, writer):
    for payload in (b"one", b"two", b"three"):
        writer.append(1, payload)
    with open_subscriber(queue_dir, "durable") as reader:
        assert reader.next().payload == b"one"
        assert reader.next().payload == b"two"
        reader.commit()
    with open_subscriber(queue_dir, "durable") as reader:
        assert reader.next().payload == b"three"
    with open_subscriber(queue_dir, "fresh") as reader:
        assert reader.next().payload == b"one"


def test_open_records_heartbeat(queue_dir, writer):
    before = time.time_ns()
    with open_subscriber(queue_dir, "hb"):
        meta = load_reader_meta(queue_dir / "readers" / "hb.meta")
    assert meta.last_heartbeat_ns >= before
    assert meta.offset == 64


def test_empty_reader_name_rejected(queue_dir, writer):
    with pytest.raises(UnsupportedError):
        open_subscriber(queue_dir, "")


def test_missing_queue_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        open_subscriber(tmp_path / "nothing", "r")


def test_missing_reader_segment_is_corrupt(queue_dir, writer):
    readers = queue_dir / "readers"
    readers.mkdir()
    store_reader_meta(readers / "lost.meta", ReaderMeta(50, 64))
    with pytest.raises(CorruptError):
        open_subscriber(queue_dir, "lost")


def test_payload_corruption_detected(queue_dir, writer):
    writer.append(1, b"payload")
    writer.flush_async()
    with open(segment_path(queue_dir, 0), "r+b") as f:
        f.seek(128)
        f.write(b"X")
    with open_subscriber(queue_dir, "crc") as reader:
        with pytest.raises(CorruptError):
            reader.next()


def test_peek_committed(queue_dir, writer):
    with open_subscriber(queue_dir, "peek") as reader:
        assert reader.peek_committed() is False
        writer.append(1, b"x")
        assert reader.peek_committed() is True
        assert reader.next().payload == b"x"
        assert reader.peek_committed() is False


def test_default_wait_strategy(queue_dir, writer):
    with open_subscriber(queue_dir, "ws") as reader:
        assert reader.wait_strategy == SpinThenPark(10)


def test_wait_times_out_without_data(queue_dir, writer):
    with open_subscriber(queue_dir, "timeout") as reader:
        start = time.monotonic()
        reader.wait(0.05)
        elapsed = time.monotonic() - start
        assert elapsed >= 0.04
        assert reader.next() is None
        control = writer.control
        assert control.waiters_pending == 0


def test_wait_returns_immediately_when_data_present(queue_dir, writer):
    writer.append(1, b"ready")
    with open_subscriber(queue_dir, "now") as reader:
        start = time.monotonic()
        reader.wait(5.0)
        assert time.monotonic() - start < 1.0
        assert reader.next().payload == b"ready"


def test_sleep_strategy_sleeps(queue_dir, writer):
    with open_subscriber(queue_dir, "sleepy") as reader:
        reader.wait_strategy = Sleep(0.03)
        start = time.monotonic()
        reader.wait(None)
        elapsed = time.monotonic() - start
        assert elapsed >= 0.025
        assert reader.wait_strategy == Sleep(0.03)
        assert reader.peek_committed() is False
        assert reader.next() is None
        writer.append(2, b"after-sleep")
        reader.wait(None)
        message = reader.next()
        assert message.payload == b"after-sleep"
        assert message.type_id == 2


def test_wait_wakes_when_writer_appends(queue_dir, writer):
    with open_subscriber(queue_dir, "waker") as reader:
        def produce():
            time.sleep(0.05)
            writer.append(3, b"late")

        thread = threading.Thread(target=produce)
        thread.start()
        start = time.monotonic()
        reader.wait(5.0)
        elapsed = time.monotonic() - start
        thread.join()
        assert elapsed < 4.0
        message = reader.next()
        assert message.payload == b"late"
        assert message.type_id == 3


def test_unsealed_segment_repaired_when_writer_dead(queue_dir):
    w = open_publisher(queue_dir, SMALL)
    w.append_with_timestamp(1, b"alpha", 0)
    w.flush_async()
    w.close()

    open_or_create_segment(queue_dir, 1, 4096).close()
    with open_control(queue_dir / "control.meta") as control:
        control.set_segment_index(1, 64)
        control.writer_heartbeat_ns = 0
    (queue_dir / "writer.lock").unlink()

    with open_subscriber(queue_dir, "recover") as reader:
        assert reader.next().payload == b"alpha"
        assert reader.next() is None
        assert reader.segment_id == 1

    with open_segment(queue_dir, 0, 4096) as old:
        assert read_segment_header(old).sealed is True


def test_closed_reader_rejects_use(queue_dir, writer):
    reader = open_subscriber(queue_dir, "closed")
    reader.close()
    assert reader.closed is True
    with pytest.raises(ValueError):
        reader.next()