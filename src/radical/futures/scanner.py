"""Dependency scanner: which globals and packages does a work item need?

Two kinds of expressions are supported. Python source strings are parsed and
walked with a scope-aware visitor that reports the names read before they are
bound, in first-use order. Callables are inspected through their code objects,
nested ones included, and global functions they reference are descended
into (up to a search depth) to find the packages their code relies on.
"""

from __future__ import annotations

import ast
import builtins
import inspect
import types
import logging
import warnings
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Union

from .config import get_settings
from .errors import GlobalsSizeWarning, ScanError
from .utils import estimate_size, format_size

logger = logging.getLogger(__name__)

GlobalsOption = Union[bool, str, Iterable[str], Mapping[str, Any]]

_BUILTIN_NAMES = frozenset(dir(builtins))
_IGNORED_PACKAGES = frozenset({"builtins", "__main__", "__mp_main__"})

_NESTED_SCOPES = (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef,
                  ast.Lambda, ast.ListComp, ast.SetComp, ast.DictComp,
                  ast.GeneratorExp)


@dataclass(frozen=True)
class ScanResult:
    """Outcome of scanning one expression.

    Attributes:
        globals: Name to (live, not yet copied) value, in first-use order.
        packages: Top-level modules the expression and its functions use.
        unresolved: Free names found in no enclosing namespace. They only
            matter if evaluation actually reaches them.
        size: Estimated total byte size of ``globals``.
    """

    globals: Mapping[str, Any] = field(default_factory=dict)
    packages: tuple[str, ...] = ()
    unresolved: tuple[str, ...] = ()
    size: int = 0


def _scope_bindings(nodes) -> tuple[set, set]:
    """Names bound directly in a scope (nested scopes excluded), and the names
    the scope declares ``global``/``nonlocal``."""
    bound: set = set()
    declared: set = set()
    stack = list(nodes)

    while stack:
        node = stack.pop()

        if isinstance(node, ast.Name):
            if not isinstance(node.ctx, ast.Load):
                bound.add(node.id)
        elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            bound.add(node.name)
        elif isinstance(node, (ast.Import, ast.ImportFrom)):
            for alias in node.names:
                if alias.name != "*":
                    bound.add((alias.asname or alias.name).split(".")[0])
        elif isinstance(node, ast.ExceptHandler) and node.name:
            bound.add(node.name)
        elif isinstance(node, (ast.Global, ast.Nonlocal)):
            declared.update(node.names)
        elif isinstance(node, (ast.MatchAs, ast.MatchStar)) and node.name:
            bound.add(node.name)
        elif isinstance(node, ast.MatchMapping) and node.rest:
            bound.add(node.rest)

        if isinstance(node, _NESTED_SCOPES):
            continue
        stack.extend(ast.iter_child_nodes(node))

    return bound - declared, declared


class _FreeNameVisitor(ast.NodeVisitor):
    """Collect names read before being bound, in order of first use.

    The top level is walked in evaluation order, so ``x = x + 1`` reports
    ``x``. Bodies of nested functions run later, when every top-level binding
    may exist, so inside them only names bound nowhere count as free.
    """

    def __init__(self, toplevel: set):
        self.free: dict[str, None] = {}
        self._top_bound: set = set()
        self._top_all = toplevel
        self._scopes: list[set] = []

    def _is_bound(self, name: str) -> bool:
        for scope in reversed(self._scopes):
            if name in scope:
                return True
        if self._scopes:
            return name in self._top_all
        return name in self._top_bound

    def _bind(self, name: str) -> None:
        if self._scopes:
            self._scopes[-1].add(name)
        else:
            self._top_bound.add(name)

    def _read(self, name: str) -> None:
        if not self._is_bound(name):
            self.free.setdefault(name)

    def visit_Name(self, node):
        if isinstance(node.ctx, ast.Load):
            self._read(node.id)
        else:
            self._bind(node.id)

    def visit_Assign(self, node):
        self.visit(node.value)
        for target in node.targets:
            self.visit(target)

    def visit_AugAssign(self, node):
        self.visit(node.value)
        if isinstance(node.target, ast.Name):
            self._read(node.target.id)
            self._bind(node.target.id)
        else:
            self.visit(node.target)

    def visit_AnnAssign(self, node):
        if node.value is not None:
            self.visit(node.value)
        self.visit(node.target)

    def visit_NamedExpr(self, node):
        self.visit(node.value)
        self.visit(node.target)

    def visit_For(self, node):
        self.visit(node.iter)
        self.visit(node.target)
        for stmt in node.body + node.orelse:
            self.visit(stmt)

    visit_AsyncFor = visit_For

    def visit_With(self, node):
        for item in node.items:
            self.visit(item.context_expr)
            if item.optional_vars is not None:
                self.visit(item.optional_vars)
        for stmt in node.body:
            self.visit(stmt)

    visit_AsyncWith = visit_With

    def visit_Import(self, node):
        for alias in node.names:
            self._bind((alias.asname or alias.name).split(".")[0])

    def visit_ImportFrom(self, node):
        for alias in node.names:
            if alias.name != "*":
                self._bind(alias.asname or alias.name)

    def visit_ExceptHandler(self, node):
        if node.type is not None:
            self.visit(node.type)
        if node.name:
            self._bind(node.name)
        for stmt in node.body:
            self.visit(stmt)

    def visit_MatchAs(self, node):
        if node.pattern is not None:
            self.visit(node.pattern)
        if node.name:
            self._bind(node.name)

    def visit_MatchStar(self, node):
        if node.name:
            self._bind(node.name)

    def visit_MatchMapping(self, node):
        for key in node.keys:
            self.visit(key)
        for pattern in node.patterns:
            self.visit(pattern)
        if node.rest:
            self._bind(node.rest)

    def _visit_arguments_defaults(self, args: ast.arguments):
        for default in args.defaults + [d for d in args.kw_defaults if d is not None]:
            self.visit(default)

    def _visit_function_scope(self, args: ast.arguments, body: list):
        params = {a.arg for a in args.posonlyargs + args.args + args.kwonlyargs}
        if args.vararg:
            params.add(args.vararg.arg)
        if args.kwarg:
            params.add(args.kwarg.arg)
        local, _ = _scope_bindings(body)

        self._scopes.append(params | local)
        for stmt in body:
            self.visit(stmt)
        self._scopes.pop()

    def visit_FunctionDef(self, node):
        for decorator in node.decorator_list:
            self.visit(decorator)
        self._visit_arguments_defaults(node.args)
        self._bind(node.name)
        self._visit_function_scope(node.args, node.body)

    visit_AsyncFunctionDef = visit_FunctionDef

    def visit_Lambda(self, node):
        self._visit_arguments_defaults(node.args)
        self._visit_function_scope(node.args, [node.body])

    def visit_ClassDef(self, node):
        for expr in node.decorator_list + node.bases:
            self.visit(expr)
        for keyword in node.keywords:
            self.visit(keyword.value)
        self._bind(node.name)
        local, _ = _scope_bindings(node.body)
        self._scopes.append(local)
        for stmt in node.body:
            self.visit(stmt)
        self._scopes.pop()

    def _visit_comprehension(self, node, elements):
        # the outermost iterable is evaluated in the enclosing scope
        self.visit(node.generators[0].iter)
        self._scopes.append(set())
        for i, generator in enumerate(node.generators):
            if i:
                self.visit(generator.iter)
            self.visit(generator.target)
            for condition in generator.ifs:
                self.visit(condition)
        for element in elements:
            self.visit(element)
        self._scopes.pop()

    def visit_ListComp(self, node):
        self._visit_comprehension(node, [node.elt])

    visit_SetComp = visit_ListComp
    visit_GeneratorExp = visit_ListComp

    def visit_DictComp(self, node):
        self._visit_comprehension(node, [node.key, node.value])


def parse_source(source: str) -> ast.Module:
    """Parse work item source code, raising ``ScanError`` on syntax errors."""
    try:
        return ast.parse(source, filename="<future>", mode="exec")
    except SyntaxError as e:
        raise ScanError(f"Cannot parse future expression: {e}") from e


def free_names(source: str) -> list[str]:
    """Names ``source`` reads without binding them first, in first-use order.

    Example:
        >>> free_names("y = [x * i for i in range(n)]\\ny + z")
        ['range', 'n', 'x', 'z']
    """
    tree = parse_source(source)
    toplevel, _ = _scope_bindings(tree.body)
    visitor = _FreeNameVisitor(toplevel)
    for stmt in tree.body:
        visitor.visit(stmt)
    return list(visitor.free)


def _top_package(obj: Any) -> Optional[str]:
    if inspect.ismodule(obj):
        name = obj.__name__
    else:
        name = getattr(obj, "__module__", None)
    if not isinstance(name, str) or not name:
        return None
    top = name.split(".")[0]
    return None if top in _IGNORED_PACKAGES else top


def _function_of(obj: Any) -> Optional[Callable]:
    if inspect.ismethod(obj):
        obj = obj.__func__
    return obj if inspect.isfunction(obj) else None


def _code_names(code: types.CodeType) -> set:
    names = set(code.co_names)
    for const in code.co_consts:
        if isinstance(const, types.CodeType):
            names |= _code_names(const)
    return names


def function_closure(func: Callable) -> tuple[dict, dict]:
    """Nonlocals and globals a Python function reads.

    Unlike ``inspect.getclosurevars`` this also looks into nested code such
    as generator expressions and inner functions.
    """
    nonlocals = {}
    if func.__closure__:
        for name, cell in zip(func.__code__.co_freevars, func.__closure__):
            try:
                nonlocals[name] = cell.cell_contents
            except ValueError:
                continue

    namespace = func.__globals__
    found = {}
    for name in sorted(_code_names(func.__code__)):
        if name in namespace:
            found[name] = namespace[name]
    return nonlocals, found


def _function_dependencies(func: Callable) -> tuple[dict, set]:
    """Globals/nonlocals a Python function reads, and the packages they come from."""
    nonlocals, found = function_closure(func)
    values = {**nonlocals, **found}
    packages = {pkg for pkg in map(_top_package, values.values()) if pkg}
    return values, packages


def _collect_packages(values: Iterable[Any], depth: int,
                      seen: Optional[set] = None) -> set:
    """Packages used by ``values`` and, transitively, by the functions among
    them, descending at most ``depth`` levels."""
    seen = set() if seen is None else seen
    packages: set = set()

    for value in values:
        pkg = _top_package(value)
        if pkg:
            packages.add(pkg)

        func = _function_of(value)
        if func is None or depth <= 0 or id(func) in seen:
            continue
        seen.add(id(func))

        try:
            deps, pkgs = _function_dependencies(func)
        except (TypeError, ValueError):
            continue
        packages |= pkgs
        packages |= _collect_packages(deps.values(), depth - 1, seen)

    return packages


def _explicit_globals(names: Iterable[str], env: Mapping[str, Any]) -> dict:
    values = {}
    missing = []
    for name in names:
        if name in env:
            values[name] = env[name]
        elif name in _BUILTIN_NAMES:
            continue
        else:
            missing.append(name)
    if missing:
        raise ScanError(f"Explicit globals not found: {', '.join(missing)}",
                        names=missing)
    return values


def scan_globals(expression: Union[str, Callable],
                 env: Optional[Mapping[str, Any]] = None,
                 *,
                 globals: GlobalsOption = True,
                 packages: Iterable[str] = (),
                 max_size: Optional[int] = None,
                 search_depth: Optional[int] = None) -> ScanResult:
    """Find the bindings and packages ``expression`` depends on.

    Args:
        expression: Python source code or a callable.
        env: Namespace the expression closes over. For callables it defaults
            to the function's own globals; for source it must be given.
        globals: ``True``/``"auto"`` scans, a list of names exports exactly
            those, a mapping is exported verbatim, ``False`` exports nothing.
        packages: Extra packages to import before evaluation.
        max_size: Byte size above which a binding triggers a warning.
        search_depth: How deep to descend into global functions for packages.

    Returns:
        ScanResult: Exported bindings, packages and unresolved names.

    Raises:
        ScanError: If the source does not parse or an explicitly listed
            global does not exist.
    """
    settings = get_settings()
    max_size = settings.globals_max_size if max_size is None else max_size
    search_depth = settings.search_depth if search_depth is None else search_depth

    func = None if isinstance(expression, str) else _function_of(expression)
    if env is None:
        env = func.__globals__ if func is not None else {}

    unresolved: list[str] = []

    if isinstance(expression, str):
        # parse even when not scanning so syntax errors surface at creation
        names = free_names(expression)
    else:
        names = []

    if globals is False:
        values: dict = {}
    elif isinstance(globals, Mapping):
        values = dict(globals)
    elif globals is True or globals == "auto":
        if isinstance(expression, str):
            values = {}
            for name in names:
                if name in env:
                    values[name] = env[name]
                elif name not in _BUILTIN_NAMES:
                    unresolved.append(name)
        elif func is not None:
            try:
                values, _ = _function_dependencies(func)
            except (TypeError, ValueError) as e:
                raise ScanError(f"Cannot inspect {expression!r}: {e}") from e
        else:
            values = {}
    elif isinstance(globals, str):
        raise ScanError(f"Unknown globals option: {globals!r}")
    else:
        values = _explicit_globals(globals, env)

    used = _collect_packages(values.values(), search_depth)
    if not isinstance(expression, str):
        used |= _collect_packages([expression], search_depth)
        home = getattr(func or expression, "__module__", None)
    else:
        home = env.get("__name__")
    # the caller's own module travels by value, it is not imported remotely
    if isinstance(home, str):
        used.discard(home.split(".")[0])
    found = set(packages) | used

    total = 0
    for name, value in values.items():
        size = estimate_size(value)
        total += size
        if size > max_size:
            warnings.warn(
                f"Global '{name}' is {format_size(size)}, exceeding the "
                f"limit of {format_size(max_size)}; exporting it to the "
                "future may be expensive",
                GlobalsSizeWarning, stacklevel=3)

    if unresolved:
        logger.debug(f"Unresolved free names (deferred): {unresolved}")

    return ScanResult(globals=values, packages=tuple(sorted(found)),
                      unresolved=tuple(unresolved), size=total)
