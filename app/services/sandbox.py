"""
Restricted execution of compiled generator source.

``CodeSandbox`` runs untrusted, assistant-authored Python that implements
``generate(toolkit, builder, context)``:

- the source is parsed and checked against an AST allowlist first
  (imports from a fixed module set only, no names or attributes starting
  with an underscore, no ``global`` / ``nonlocal``, no bare ``except``, no
  file or eval builtins, no attribute writes on imported modules or on
  names derived from them)
- every run gets a fresh namespace with a curated ``__builtins__``; imports
  resolve to read-only views of the allowed modules
- the generator runs on a worker thread under a line-level deadline, so a
  CPU-bound loop (sync or async ``generate``) cannot stall the event loop;
  toolkit coroutines are forwarded back to the caller's loop

Anything that goes wrong surfaces as ``GenerationFailed`` with the original
exception as ``__cause__``.
"""
from __future__ import annotations

import ast
import asyncio
import builtins
import copy
import inspect
import logging
import sys
import time
import types
from typing import Any, Dict, Iterable, Optional, Set

from app.config import settings
from app.services.exceptions import GenerationFailed

logger = logging.getLogger(__name__)

ENTRY_POINT = "generate"
SOURCE_FILENAME = "<generator>"

# Seconds the worker thread gets to unwind after the deadline before it is abandoned
UNWIND_GRACE = 1.0

ALLOWED_IMPORTS = frozenset({
    "collections",
    "datetime",
    "decimal",
    "functools",
    "itertools",
    "json",
    "math",
    "re",
    "statistics",
    "string",
    "textwrap",
    "typing",
})

FORBIDDEN_NAMES = frozenset({
    "breakpoint", "compile", "delattr", "dir", "eval", "exec", "exit", "getattr",
    "globals", "help", "input", "locals", "memoryview", "open", "quit", "setattr",
    "type", "vars",
})

SAFE_BUILTINS = (
    "abs", "all", "any", "bool", "chr", "dict", "divmod", "enumerate", "filter",
    "float", "format", "frozenset", "hasattr", "int", "isinstance", "iter", "len",
    "list", "map", "max", "min", "next", "ord", "pow", "range", "repr", "reversed",
    "round", "set", "slice", "sorted", "str", "sum", "tuple", "zip",
    "ArithmeticError", "AttributeError", "Exception", "IndexError", "KeyError",
    "LookupError", "RuntimeError", "StopIteration", "TypeError", "ValueError",
    "ZeroDivisionError",
)


# ---------------------------------------------------------------------------
# Static validation
# ---------------------------------------------------------------------------

class _Validator(ast.NodeVisitor):
    def __init__(self) -> None:
        self.problems: list = []
        # Names bound to imported modules or to anything computed from them
        self.module_names: Set[str] = set()

    def _flag(self, node: ast.AST, message: str) -> None:
        self.problems.append(f"line {getattr(node, 'lineno', '?')}: {message}")

    def _mentions_module(self, expr: ast.AST) -> bool:
        return any(isinstance(n, ast.Name) and n.id in self.module_names for n in ast.walk(expr))

    def _bind_if_derived(self, value: Optional[ast.AST], targets: Iterable[Optional[ast.AST]]) -> None:
        if value is None or not self._mentions_module(value):
            return
        for target in targets:
            if target is None:
                continue
            for node in ast.walk(target):
                if isinstance(node, ast.Name):
                    self.module_names.add(node.id)

    def visit_Import(self, node: ast.Import) -> None:
        for alias in node.names:
            if alias.name.split(".")[0] not in ALLOWED_IMPORTS:
                self._flag(node, f"import of '{alias.name}' is not allowed")
            self.module_names.add(alias.asname or alias.name.split(".")[0])
        self.generic_visit(node)

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        if node.level or (node.module or "").split(".")[0] not in ALLOWED_IMPORTS:
            self._flag(node, f"import from '{node.module}' is not allowed")
        for alias in node.names:
            if alias.name == "*":
                self._flag(node, "star imports are not allowed")
            else:
                self.module_names.add(alias.asname or alias.name)
        self.generic_visit(node)

    def visit_Assign(self, node: ast.Assign) -> None:
        self._bind_if_derived(node.value, node.targets)
        self.generic_visit(node)

    def visit_AnnAssign(self, node: ast.AnnAssign) -> None:
        self._bind_if_derived(node.value, [node.target])
        self.generic_visit(node)

    def visit_NamedExpr(self, node: ast.NamedExpr) -> None:
        self._bind_if_derived(node.value, [node.target])
        self.generic_visit(node)

    def visit_For(self, node: ast.For) -> None:
        self._bind_if_derived(node.iter, [node.target])
        self.generic_visit(node)

    visit_AsyncFor = visit_For

    def visit_comprehension(self, node: ast.comprehension) -> None:
        self._bind_if_derived(node.iter, [node.target])
        self.generic_visit(node)

    def visit_withitem(self, node: ast.withitem) -> None:
        self._bind_if_derived(node.context_expr, [node.optional_vars])
        self.generic_visit(node)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if node.attr.startswith("_"):
            self._flag(node, f"access to attribute '{node.attr}' is not allowed")
        if isinstance(node.ctx, (ast.Store, ast.Del)):
            root = node.value
            while isinstance(root, (ast.Attribute, ast.Subscript)):
                root = root.value
            if not isinstance(root, ast.Name):
                self._flag(node, f"assignment to attribute '{node.attr}' of a computed object is not allowed")
            elif root.id in self.module_names:
                self._flag(node, f"assignment to attribute '{node.attr}' of imported module '{root.id}' is not allowed")
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if node.id.startswith("__") or node.id in FORBIDDEN_NAMES:
            self._flag(node, f"use of '{node.id}' is not allowed")
        self.generic_visit(node)

    def visit_ExceptHandler(self, node: ast.ExceptHandler) -> None:
        if node.type is None:
            self._flag(node, "bare 'except' is not allowed")
        self.generic_visit(node)

    def visit_Global(self, node: ast.Global) -> None:
        self._flag(node, "'global' is not allowed")

    def visit_Nonlocal(self, node: ast.Nonlocal) -> None:
        self._flag(node, "'nonlocal' is not allowed")


# ---------------------------------------------------------------------------
# Runtime isolation
# ---------------------------------------------------------------------------

class ReadOnlyModule:
    """Attribute view of an allowed module; writes and deletes raise."""

    __slots__ = ("_module",)

    def __init__(self, module: types.ModuleType) -> None:
        object.__setattr__(self, "_module", module)

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        value = getattr(self._module, name)
        return ReadOnlyModule(value) if isinstance(value, types.ModuleType) else value

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError(f"module '{self._module.__name__}' is read-only")

    def __delattr__(self, name: str) -> None:
        raise AttributeError(f"module '{self._module.__name__}' is read-only")

    def __repr__(self) -> str:
        return f"<read-only module '{self._module.__name__}'>"


def safe_import(name, globals=None, locals=None, fromlist=(), level=0):
    if level or name.split(".")[0] not in ALLOWED_IMPORTS:
        raise ImportError(f"import of '{name}' is not allowed")
    return ReadOnlyModule(builtins.__import__(name, globals, locals, fromlist, level))


def _sandbox_print(*args: Any, **_kwargs: Any) -> None:
    logger.info("generator: %s", " ".join(str(a) for a in args))


class _BudgetExceeded(BaseException):
    """Raised inside generator frames once the deadline has passed."""


def _deadline_tracer(deadline: float):
    # Only frames compiled from generator source are line-traced
    def trace_lines(frame, event, arg):
        if time.monotonic() >= deadline:
            raise _BudgetExceeded()
        return trace_lines

    def trace_calls(frame, event, arg):
        if frame.f_code.co_filename != SOURCE_FILENAME:
            return None
        return trace_lines(frame, event, arg)

    return trace_calls


class _ToolkitBridge:
    """Runs the toolkit's coroutine methods on the loop that owns the toolkit."""

    def __init__(self, toolkit: Any, loop: asyncio.AbstractEventLoop) -> None:
        self._toolkit = toolkit
        self._loop = loop

    def __getattr__(self, name: str) -> Any:
        attr = getattr(self._toolkit, name)
        if not inspect.iscoroutinefunction(attr):
            return attr
        loop = self._loop

        async def forward(*args: Any, **kwargs: Any) -> Any:
            future = asyncio.run_coroutine_threadsafe(attr(*args, **kwargs), loop)
            return await asyncio.wrap_future(future)

        return forward


async def _await_until(awaitable: Any, deadline: float) -> Any:
    return await asyncio.wait_for(awaitable, timeout=max(deadline - time.monotonic(), 0.0))


# ---------------------------------------------------------------------------
# Sandbox
# ---------------------------------------------------------------------------

class CodeSandbox:
    """Validate and run generator source in an isolated namespace."""

    def __init__(self, timeout: Optional[float] = None) -> None:
        self.timeout = timeout if timeout is not None else settings.GENERATOR_TIMEOUT

    @staticmethod
    def validate(source: str) -> ast.Module:
        """Parse and statically check *source*; raises GenerationFailed with every problem found."""
        if not source or not source.strip():
            raise GenerationFailed("Generator source is empty")
        try:
            tree = ast.parse(source, filename=SOURCE_FILENAME)
        except SyntaxError as exc:
            raise GenerationFailed(f"Generator source has a syntax error: {exc.msg} (line {exc.lineno})") from exc

        validator = _Validator()
        validator.visit(tree)

        entry = [
            node for node in tree.body
            if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)) and node.name == ENTRY_POINT
        ]
        if not entry:
            validator.problems.append(f"no top-level '{ENTRY_POINT}' function")
        else:
            args = entry[-1].args
            if len(args.posonlyargs) + len(args.args) < 3 and args.vararg is None:
                validator.problems.append(f"'{ENTRY_POINT}' must accept (toolkit, builder, context)")

        if validator.problems:
            raise GenerationFailed("Generator source rejected: " + "; ".join(validator.problems[:10]))
        return tree

    @staticmethod
    def _builtins() -> Dict[str, Any]:
        safe = {name: getattr(builtins, name) for name in SAFE_BUILTINS}
        safe["__import__"] = safe_import
        safe["__build_class__"] = builtins.__build_class__
        safe["print"] = _sandbox_print
        return safe

    def _execute(self, code: types.CodeType, toolkit: Any, builder: Any, context: Dict[str, Any], deadline: float) -> Any:
        # Worker thread: load the module and drive generate() under the deadline tracer
        previous = sys.gettrace()
        sys.settrace(_deadline_tracer(deadline))
        try:
            namespace: Dict[str, Any] = {"__builtins__": self._builtins(), "__name__": "generator"}
            try:
                exec(code, namespace)
            except Exception as exc:
                raise GenerationFailed(f"Generator module failed to load: {exc}") from exc

            entry = namespace.get(ENTRY_POINT)
            if not callable(entry):
                raise GenerationFailed(f"Generator does not define a callable '{ENTRY_POINT}'")

            result = entry(toolkit, builder, context)
            if inspect.isawaitable(result):
                result = asyncio.run(_await_until(result, deadline))
            return result
        finally:
            sys.settrace(previous)

    async def run(
        self,
        source: str,
        toolkit: Any,
        builder: Any,
        context: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Any:
        """Execute *source* and wait for its ``generate``; returns whatever it returns."""
        tree = self.validate(source)
        code = compile(tree, SOURCE_FILENAME, "exec")
        budget = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + budget
        bridge = _ToolkitBridge(toolkit, asyncio.get_running_loop())

        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._execute, code, bridge, builder, copy.deepcopy(context), deadline),
                timeout=budget + UNWIND_GRACE,
            )
        except (asyncio.TimeoutError, _BudgetExceeded) as exc:
            raise GenerationFailed(f"Generator exceeded its {budget:g}s time budget") from exc
        except GenerationFailed:
            raise
        except Exception as exc:
            raise GenerationFailed(f"Generator raised {type(exc).__name__}: {exc}") from exc
