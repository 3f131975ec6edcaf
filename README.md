# chronicle_queue

A persisted messaging queue built on memory-mapped segment files. One
publisher appends records. Any number of named subscribers read them back,
and each subscriber keeps its own durable position.

The package needs a POSIX system because it uses `fcntl` locks. Checking
whether a writer is still alive relies on `/proc` and works only on Linux.

## Layout on disk

A queue is a directory that holds:

- `000000000.q`, `000000001.q`, ... — fixed-size segment files. Each one
  starts with a 64-byte segment header, followed by records aligned to
  64 bytes. Each record is a 64-byte header plus its payload, and carries a
  CRC-32 of its payload.
- `control.meta` — the shared control block. It holds the current segment,
  the write offset, the segment size, the writer epoch and heartbeat, and the
  notification counters.
- `index.meta` — the last position saved with `flush_sync`.
- `writer.lock` — held by the active publisher through `flock`. It records
  the publisher's pid, process start time and epoch.
- `readers/<name>.meta` — the committed position of each subscriber. It is
  stored in two checksummed slots, so a torn write never loses it.

## Writing

```python
from chronicle_queue.writer import open_publisher
from chronicle_queue.writer_support import WriterConfig

config = WriterConfig(segment_size_bytes=4 * 1024 * 1024)
with open_publisher("/tmp/orders", config) as writer:
    writer.append(1, b"hello")
    writer.append_with_timestamp(2, b"world", 0)
    writer.flush_sync()
```

Only one publisher may be open on a directory. A second one raises
`WriterAlreadyActiveError` while the first one's process is alive.

Payloads that cannot fit in one segment raise `PayloadTooLargeError`. The
largest payload is the segment size minus 128 bytes.

When a segment fills up, the writer seals it and rolls on to the next one.
A background `PreallocWorker` prepares the next segment ahead of time.

`WriterConfig` has these options:

- `prealloc_wait` — how long, in seconds, a roll waits for a prepared
  segment.
- `require_prealloc` — when set, a roll raises `TimeoutError` if no prepared
  segment is ready in time.
- `defer_seal_sync` — hands sealed segments to an `AsyncSealer` thread,
  which flushes and closes them.
- `memlock` — advises the kernel to keep segment pages resident and faults
  them in.

`ultra_low_latency_config()` turns all four of these on.

`flush_async()` writes the current segment's pages back to disk.
`flush_sync()` does the same and also updates `index.meta`.

### Retention and backpressure

`max_segments` and `max_bytes` bound how far the writer may run ahead of the
slowest live reader:

- With the default `FailFast` policy, a full queue raises `QueueFullError`.
- `blocking_config(max_segments, max_bytes, timeout)` builds a configuration
  with the `Block` policy. It polls until readers catch up, or until the
  timeout in seconds runs out.

`writer.cleanup()` deletes the segments that no live reader still needs and
returns their ids. The functions in `chronicle_queue.retention` do the same
from outside a writer:

- `cleanup_segments` and `retention_candidates`
- `min_live_reader_segment` and `min_live_reader_position`

A reader does not count as live if its heartbeat is older than 30 seconds,
or if it lags the head by more than 10 GiB.

## Reading

```python
from chronicle_queue.reader import open_subscriber, Sleep

with open_subscriber("/tmp/orders", "audit") as reader:
    while True:
        message = reader.next()
        if message is None:
            reader.wait(0.1)
            continue
        print(message.seq, message.type_id, message.payload)
        reader.commit()
```

`next()` returns a `MessageView`, or `None` when nothing new has been
committed. A `MessageView` holds `seq`, `timestamp_ns`, `type_id` and
`payload`.

Iterating over a reader yields records until none is available.

`commit()` stores the reader's position. A subscriber reopened under the
same name resumes from there.

The `wait_strategy` attribute selects how `wait(timeout)` behaves:

- `SpinThenPark(spin_us)` — the default, with 10 µs. It spins, then sleeps
  until the notification counter changes or the timeout passes. A publisher
  in the same process wakes it at once. Changes made by other processes are
  noticed by polling every millisecond.
- `BusySpin()` — spins until data arrives and ignores the timeout.
- `Sleep(duration)` — sleeps for `duration` seconds.

## Recovery

When a publisher opens a queue, it scans the tail of the current segment.
If a crash left a partly written record there, the publisher pads it over,
seals the segment and continues in a fresh one.

A reader may find an unsealed segment that is followed by a newer one. It
repairs that segment itself once the writer is known to be dead: either no
live process holds the lock record, or the writer's heartbeat is more than
5 seconds old.

## What it does not do

There is no command-line tool and no network transport. The queue is used
as a library by processes on the same machine. Nothing merges several
queues into one reader.

## Running the tests

```
pip install -e .[test]
pytest
```