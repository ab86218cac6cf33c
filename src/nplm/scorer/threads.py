"""
Single-threaded execution guard
-------------------------------
Scoring one n-gram multiplies matrices far too small for a thread pool to pay
off, so single lookups run with torch's intra-op pool limited to one thread.

torch keeps one process-wide thread count. The guard is re-entrant within a
thread and reference-counted across threads: the first active guard saves the
current count and sets 1, the last one to exit restores it.
"""

import threading
from contextlib import contextmanager

import torch

_lock = threading.Lock()
_local = threading.local()
_active = 0
_saved_threads = None


def _acquire() -> None:
    global _active, _saved_threads
    with _lock:
        if _active == 0:
            _saved_threads = torch.get_num_threads()
            torch.set_num_threads(1)
        _active += 1


def _release() -> None:
    global _active, _saved_threads
    with _lock:
        _active -= 1
        if _active == 0:
            torch.set_num_threads(_saved_threads)
            _saved_threads = None


@contextmanager
def single_threaded():
    """Run the enclosed block with one intra-op thread; the previous count is restored on exit."""
    depth = getattr(_local, "depth", 0)
    if depth == 0:
        _acquire()
    _local.depth = depth + 1
    try:
        yield
    finally:
        _local.depth = depth
        if depth == 0:
            _release()


def setup_threads(num_threads: int = 0) -> int:
    """
    Set the intra-op thread count for batch work; 0 keeps torch's default.

    Returns:
        int: The thread count in effect.
    """
    if num_threads < 0:
        raise ValueError(f"num_threads must be non-negative, got {num_threads}")
    if num_threads > 0:
        torch.set_num_threads(num_threads)
    return torch.get_num_threads()
