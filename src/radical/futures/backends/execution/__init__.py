"""Execution backends of radical.futures.

The local backends are imported here; cluster, batch and the optional dask
backend are loaded on demand through the registry.
"""

from __future__ import annotations

from .base import BaseExecutionBackend, Handle
from .multisession import MultisessionExecutionBackend
from .sequential import SequentialExecutionBackend

__all__ = [
    "BaseExecutionBackend",
    "Handle",
    "SequentialExecutionBackend",
    "MultisessionExecutionBackend",
]
