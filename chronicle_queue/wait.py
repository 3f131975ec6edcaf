"""Waiting for and signalling changes of a control block's notification counter."""

from __future__ import annotations

import os
import threading
import time

_POLL_INTERVAL = 0.001

_registry_lock = threading.Lock()
_conditions: dict[str, threading.Condition] = {}


def _condition_for(control) -> threading.Condition:
    key = os.path.realpath(control.path)
    with _registry_lock:
        condition = _conditions.get(key)
        if condition is None:
            condition = _conditions[key] = threading.Condition()
        return condition


def wait_for_change(control, expected: int, timeout: float | None = None) -> bool:
    """Block until ``control.notify_seq`` differs from ``expected``.

    Wakes from the same process arrive immediately; changes made elsewhere are
    noticed by polling. ``timeout`` is in seconds, ``None`` waits indefinitely.
    Returns True if the counter changed, False if the timeout ran out.
    """
    condition = _condition_for(control)
    deadline = None if timeout is None else time.monotonic() + max(timeout, 0.0)
    while True:
        if control.notify_seq != expected:
            return True
        if deadline is None:
            pause = _POLL_INTERVAL
        else:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            pause = min(remaining, _POLL_INTERVAL)
        with condition:
            condition.wait(pause)


def wake(control) -> None:
    """Wake every waiter of this control block in the current process."""
    condition = _condition_for(control)
    with condition:
        condition.notify_all()