import inspect
import sys
import threading
from collections import ChainMap
from typing import Any, Mapping, Optional

_global_future_counter = 0
_counter_lock = threading.Lock()


def get_next_uid():
    """Return the next unique future ID."""
    global _global_future_counter
    with _counter_lock:
        _global_future_counter += 1
        return f"{_global_future_counter:06d}"


def reset_uid_counter():
    """Reset the counter to zero (only call from tests)."""
    global _global_future_counter
    with _counter_lock:
        _global_future_counter = 0


def caller_environment(depth: int = 2) -> Mapping[str, Any]:
    """Return the namespace visible in the frame ``depth`` levels up.

    Locals shadow globals, the same lookup order the interpreter uses for
    names referenced in ``eval``'d source.

    Args:
        depth: Number of frames to go up from the caller of this function.

    Returns:
        Mapping: A read-only view chaining the frame's locals and globals.
    """
    frame = sys._getframe(depth)
    try:
        return ChainMap(dict(frame.f_locals), frame.f_globals)
    finally:
        del frame


def estimate_size(value: Any, _seen: Optional[set] = None) -> int:
    """Estimate the memory footprint of ``value`` in bytes.

    Containers are walked recursively, objects exposing ``nbytes`` (arrays,
    dataframes) report that instead. Modules, classes and functions count as
    zero since they are transferred by reference.
    """
    if _seen is None:
        _seen = set()

    if id(value) in _seen:
        return 0
    _seen.add(id(value))

    if inspect.ismodule(value) or inspect.isclass(value) or callable(value):
        return 0

    nbytes = getattr(value, "nbytes", None)
    if isinstance(nbytes, int):
        return nbytes

    size = sys.getsizeof(value, 0)
    if isinstance(value, Mapping):
        for k, v in value.items():
            size += estimate_size(k, _seen) + estimate_size(v, _seen)
    elif isinstance(value, (list, tuple, set, frozenset)):
        for item in value:
            size += estimate_size(item, _seen)
    elif hasattr(value, "__dict__") and not isinstance(value, type):
        size += estimate_size(vars(value), _seen)

    return size


def format_size(nbytes: int) -> str:
    """Human readable byte size, e.g. ``'1.5 MiB'``."""
    size = float(nbytes)
    for unit in ("bytes", "KiB", "MiB", "GiB"):
        if size < 1024 or unit == "GiB":
            if unit == "bytes":
                return f"{int(size)} bytes"
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GiB"
