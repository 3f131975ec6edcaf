"""Persisted, memory-mapped messaging queue with a single publisher and named subscribers."""

__version__ = "0.1.0"

__all__ = [
    "control",
    "reader",
    "retention",
    "segment",
    "wait",
    "writer",
    "writer_lock",
    "writer_support",
]