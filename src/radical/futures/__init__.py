from __future__ import annotations

import importlib.metadata as importlib_metadata

from .backends import factory, registry
from .backends.execution.base import BaseExecutionBackend, Handle
from .conditions import (
    Condition,
    ConditionKind,
    ConditionLog,
    add_condition_listener,
    message,
    remove_condition_listener,
)
from .config import FutureSettings, configure, get_settings
from .constants import FutureState, HandleStatus
from .errors import (
    BackendConnectivityError,
    CancellationError,
    DependencyTransferError,
    EvaluationError,
    FutureError,
    FutureStateError,
    GlobalsSizeWarning,
    JobFailedError,
    RngSafetyWarning,
    ScanError,
)
from .future import (
    Future,
    create_future,
    future,
    nbr_of_free_workers,
    nbr_of_workers,
    resolved,
    value,
)
from .plan import Plan, get_plan, set_plan, using_plan
from .result import FutureResult
from .rng import RngStream, RngStreamManager, current_generator, set_root_seed
from .scanner import ScanResult, scan_globals
from .workitem import WorkItem

try:
    __version__ = importlib_metadata.version("radical.futures")
except importlib_metadata.PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = [
    "BackendConnectivityError",
    "BaseExecutionBackend",
    "CancellationError",
    "Condition",
    "ConditionKind",
    "ConditionLog",
    "DependencyTransferError",
    "EvaluationError",
    "Future",
    "FutureError",
    "FutureResult",
    "FutureSettings",
    "FutureState",
    "FutureStateError",
    "GlobalsSizeWarning",
    "Handle",
    "HandleStatus",
    "JobFailedError",
    "Plan",
    "RngSafetyWarning",
    "RngStream",
    "RngStreamManager",
    "ScanError",
    "ScanResult",
    "WorkItem",
    "add_condition_listener",
    "configure",
    "create_future",
    "current_generator",
    "factory",
    "future",
    "get_plan",
    "get_settings",
    "message",
    "nbr_of_free_workers",
    "nbr_of_workers",
    "registry",
    "remove_condition_listener",
    "resolved",
    "scan_globals",
    "set_plan",
    "set_root_seed",
    "using_plan",
    "value",
]
