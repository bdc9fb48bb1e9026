"""Work items: an expression plus an immutable snapshot of what it reads."""

from __future__ import annotations

import builtins
import copy
import inspect
import logging
import types
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional, Union

from .config import get_settings
from .errors import DependencyTransferError
from .rng import RngStream, resolve_seed
from .scanner import GlobalsOption, ScanResult, function_closure, scan_globals
from .utils import get_next_uid

logger = logging.getLogger(__name__)

Expression = Union[str, Callable[..., Any]]


class Bindings(Mapping):
    """Read-only name -> value mapping holding a work item's snapshot."""

    __slots__ = ("_data",)

    def __init__(self, data=None):
        self._data = dict(data or {})

    def __getitem__(self, key):
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"Bindings({list(self._data)})"

    def __getstate__(self):
        return self._data

    def __setstate__(self, state):
        self._data = state


@dataclass(frozen=True)
class WorkItem:
    """The self-contained unit of work handed to a backend.

    Attributes:
        uid: Identifier shared with the future owning this item.
        expression: Python source code or a callable.
        args: Positional arguments for a callable expression.
        kwargs: Keyword arguments for a callable expression.
        globals: Snapshot of the free variables the expression reads.
        packages: Top-level modules imported before evaluation.
        seed: The RNG stream assigned to this item, if any.
        stdout: Whether output written to stdout is captured and relayed.
        log_level: Root logger level of the caller at creation time; worker
            processes use it to decide which log records to capture.
        rng_check: Whether to report use of the default RNG without a stream.
        label: Optional human readable name.
    """

    uid: str
    expression: Expression
    args: tuple = ()
    kwargs: Bindings = field(default_factory=Bindings)
    globals: Bindings = field(default_factory=Bindings)
    packages: tuple[str, ...] = ()
    seed: Optional[RngStream] = None
    stdout: bool = True
    log_level: int = logging.WARNING
    rng_check: bool = True
    label: Optional[str] = None

    @property
    def name(self) -> str:
        if self.label:
            return self.label
        if isinstance(self.expression, str):
            lines = self.expression.strip().splitlines()
            return lines[0][:40] if lines else "<empty>"
        return getattr(self.expression, "__qualname__", repr(self.expression))


class _Snapshotter:
    """Deep-copies bindings so later changes in the caller cannot leak in.

    Modules, classes and builtins are shared by reference. Python functions
    defined in the caller's own module are rebuilt over a private copy of the
    globals they read (and fresh closure cells), up to ``depth`` levels.
    """

    def __init__(self, home_module: Optional[str], depth: int):
        self.home_module = home_module
        self.depth = depth
        self._copies: dict = {}
        self._functions: dict = {}

    def _is_home(self, func) -> bool:
        return func.__module__ in ("__main__", self.home_module)

    def value(self, name: str, value: Any, depth: Optional[int] = None) -> Any:
        depth = self.depth if depth is None else depth

        if inspect.ismodule(value) or inspect.isclass(value) or inspect.isbuiltin(value):
            return value
        if inspect.isfunction(value):
            if self._is_home(value) and depth > 0:
                return self.function(value, depth - 1)
            return value
        if inspect.ismethod(value) and inspect.isfunction(value.__func__):
            func = self.value(name, value.__func__, depth)
            return types.MethodType(func, self.value(name, value.__self__, depth))

        try:
            return copy.deepcopy(value, self._copies)
        except Exception as e:
            raise DependencyTransferError(
                f"Cannot snapshot global '{name}' of type "
                f"{type(value).__name__}: {e}", name=name, root_cause=e
            ) from e

    def function(self, func: types.FunctionType, depth: int) -> types.FunctionType:
        if id(func) in self._functions:
            return self._functions[id(func)]

        namespace = {"__builtins__": builtins, "__name__": func.__globals__.get("__name__")}
        cells = None
        if func.__closure__:
            cells = tuple(types.CellType() for _ in func.__closure__)

        clone = types.FunctionType(func.__code__, namespace, func.__name__,
                                   None, cells)
        self._functions[id(func)] = clone

        _, reads = function_closure(func)
        for name, value in reads.items():
            namespace[name] = self.value(name, value, depth)

        if func.__closure__:
            for name, cell, new in zip(func.__code__.co_freevars, func.__closure__, cells):
                try:
                    contents = cell.cell_contents
                except ValueError:
                    continue
                new.cell_contents = self.value(name, contents, depth)

        if func.__defaults__:
            clone.__defaults__ = tuple(self.value(func.__name__, d, depth)
                                       for d in func.__defaults__)
        if func.__kwdefaults__:
            clone.__kwdefaults__ = {k: self.value(k, v, depth)
                                    for k, v in func.__kwdefaults__.items()}
        clone.__qualname__ = func.__qualname__
        clone.__module__ = func.__module__
        clone.__doc__ = func.__doc__
        clone.__dict__.update(func.__dict__)
        return clone


def build_work_item(expression: Expression,
                    *,
                    args: tuple = (),
                    kwargs: Optional[Mapping[str, Any]] = None,
                    env: Optional[Mapping[str, Any]] = None,
                    seed: Any = False,
                    globals: GlobalsOption = True,
                    packages=(),
                    stdout: Optional[bool] = None,
                    label: Optional[str] = None,
                    uid: Optional[str] = None) -> tuple[WorkItem, ScanResult]:
    """Scan ``expression`` and freeze everything it depends on.

    Returns:
        tuple: The work item and the scan result it was built from.

    Raises:
        ScanError: If the dependencies cannot be determined.
        DependencyTransferError: If a binding cannot be copied.
    """
    if not isinstance(expression, str) and not callable(expression):
        raise TypeError(
            f"Future expression must be source code or a callable, "
            f"got {type(expression).__name__}")
    if isinstance(expression, str) and (args or kwargs):
        raise TypeError("args/kwargs are only supported for callable expressions")

    settings = get_settings()
    scan = scan_globals(expression, env, globals=globals, packages=packages)

    if isinstance(expression, str):
        home = (env or {}).get("__name__")
    else:
        home = getattr(expression, "__module__", None)
    snap = _Snapshotter(home, settings.search_depth + 1)

    frozen = {name: snap.value(name, value) for name, value in scan.globals.items()}

    if not isinstance(expression, str) and globals is not False:
        expression = snap.value(getattr(expression, "__name__", "expression"),
                                expression)

    item = WorkItem(
        uid=uid or f"future.{get_next_uid()}",
        expression=expression,
        args=tuple(snap.value(f"args[{i}]", a) for i, a in enumerate(args)),
        kwargs=Bindings({k: snap.value(k, v) for k, v in (kwargs or {}).items()}),
        globals=Bindings(frozen),
        packages=scan.packages,
        seed=resolve_seed(seed),
        stdout=settings.stdout if stdout is None else stdout,
        log_level=logging.getLogger().getEffectiveLevel(),
        rng_check=settings.rng_check,
        label=label,
    )
    logger.debug(f"Built work item {item.uid} ({item.name}) with globals "
                 f"{list(item.globals)} and packages {list(item.packages)}")
    return item, scan
