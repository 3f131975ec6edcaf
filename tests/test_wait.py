import threading
import time

import pytest

from chronicle_queue.control import create_control, open_control
from chronicle_queue.wait import wait_for_change, wake


@pytest.fixture
def control(tmp_path):
    with create_control(tmp_path / "control.meta", 0, 64, 0, 4096) as created:
        yield created


def test_times_out_when_nothing_changes(control):
    start = time.monotonic()
    assert wait_for_change(control, control.notify_seq, 0.05) is False
    assert time.monotonic() - start >= 0.05


def test_zero_timeout_returns_at_once(control):
    assert wait_for_change(control, control.notify_seq, 0) is False


def test_returns_immediately_when_already_changed(control):
    expected = control.notify_seq
    control.bump_notify_seq()
    start = time.monotonic()
    assert wait_for_change(control, expected, 5.0) is True
    assert time.monotonic() - start < 1.0


def test_wake_from_another_thread(control):
    expected = control.notify_seq

    def signal():
        time.sleep(0.05)
        control.bump_notify_seq()
        wake(control)

    thread = threading.Thread(target=signal)
    thread.start()
    try:
        assert wait_for_change(control, expected, None) is True
    finally:
        thread.join()
    assert control.notify_seq == expected + 1


def test_change_through_other_mapping_is_seen_without_wake(control):
    expected = control.notify_seq
    with open_control(control.path) as other:
        other.wait_ready()

        def signal():
            time.sleep(0.02)
            other.bump_notify_seq()

        thread = threading.Thread(target=signal)
        thread.start()
        try:
            assert wait_for_change(control, expected, 5.0) is True
        finally:
            thread.join()
    assert control.notify_seq == expected + 1


def test_wake_without_change_keeps_waiting(control):
    expected = control.notify_seq

    def spurious():
        time.sleep(0.01)
        wake(control)

    thread = threading.Thread(target=spurious)
    thread.start()
    try:
        assert wait_for_change(control, expected, 0.1) is False
    finally:
        thread.join()