"""Backend subsystem of radical.futures with plugin-based registration."""

from __future__ import annotations

from .execution import (
    BaseExecutionBackend,
    Handle,
    MultisessionExecutionBackend,
    SequentialExecutionBackend,
)
from .factory import factory
from .registry import registry

__all__ = [
    "BaseExecutionBackend",
    "Handle",
    "SequentialExecutionBackend",
    "MultisessionExecutionBackend",
    "factory",
    "registry",
]
