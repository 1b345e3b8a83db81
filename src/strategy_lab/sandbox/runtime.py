"""Script execution inside the sandbox worker process.

Strategy scripts run with a reduced builtins table, an import hook that
enforces the allow-list, a captured ``print`` and a line-event budget.
Script calls run under an audit hook that refuses host access, and peak
resident memory is checked after every callback.
"""

from __future__ import annotations

import builtins
import importlib
import importlib.util
import inspect
import resource
import sys
import threading
import time
from typing import Any, Callable, Iterable, Optional

from strategy_lab.execution.positions import EMPTY_SCRIPT_POSITION, OrderSide, PositionBook
from strategy_lab.sandbox.indicators import IndicatorLibrary
from strategy_lab.sandbox.policy import BAR_CALLBACK, STRATEGY_CLASS, SandboxPolicy, is_io_name
from strategy_lab.strategy.models import Bar, Signal, SignalType

SCRIPT_FILENAME = "<strategy>"
SCRIPT_MARKET = "script"

SAFE_BUILTINS = (
    "abs",
    "all",
    "any",
    "bool",
    "callable",
    "chr",
    "dict",
    "divmod",
    "enumerate",
    "filter",
    "float",
    "format",
    "frozenset",
    "hash",
    "int",
    "isinstance",
    "issubclass",
    "iter",
    "len",
    "list",
    "map",
    "max",
    "min",
    "next",
    "object",
    "ord",
    "pow",
    "property",
    "range",
    "repr",
    "reversed",
    "round",
    "set",
    "slice",
    "sorted",
    "staticmethod",
    "classmethod",
    "str",
    "sum",
    "super",
    "tuple",
    "zip",
    "ArithmeticError",
    "AssertionError",
    "AttributeError",
    "Exception",
    "IndexError",
    "KeyError",
    "LookupError",
    "NotImplementedError",
    "OverflowError",
    "RuntimeError",
    "StopIteration",
    "TypeError",
    "ValueError",
    "ZeroDivisionError",
    "__build_class__",
)


class ScriptResourceError(RuntimeError):
    """A script exceeded its iteration, memory or output allowance."""


class ScriptLoadError(RuntimeError):
    """The script could not be compiled or its Strategy class instantiated."""


class ScriptAccessError(PermissionError):
    """A script reached for the filesystem, a process, the network or native code."""


# audit events refused while script code is on the stack
BLOCKED_EVENTS = frozenset(
    {
        "open",
        "marshal.load",
        "marshal.loads",
        "pickle.find_class",
        "sys.addaudithook",
        "sys.setprofile",
        "resource.setrlimit",
    }
)
BLOCKED_EVENT_PREFIXES = (
    "ctypes.",
    "ftplib.",
    "glob.",
    "http.",
    "mmap.",
    "os.",
    "pty.",
    "shutil.",
    "smtplib.",
    "socket.",
    "sqlite3.",
    "subprocess.",
    "urllib.",
    "webbrowser.",
)


class AccessGuard:
    """Process-wide audit hook that refuses host access while a script call is active.

    The hook is installed once and stays inert outside ``with guard:`` blocks;
    the active flag is per thread so host code in other threads is unaffected.
    """

    _installed = False
    _install_lock = threading.Lock()
    _state = threading.local()

    @classmethod
    def install(cls) -> None:
        with cls._install_lock:
            if cls._installed:
                return
            sys.addaudithook(cls._hook)
            cls._installed = True

    @classmethod
    def _hook(cls, event: str, args: tuple) -> None:
        if not getattr(cls._state, "active", False):
            return
        if event in BLOCKED_EVENTS or event.startswith(BLOCKED_EVENT_PREFIXES):
            raise ScriptAccessError(f'Security violation: "{event}" is not allowed in strategy scripts')

    def __enter__(self) -> "AccessGuard":
        self.install()
        self._previous = getattr(self._state, "active", False)
        self._state.active = True
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._state.active = self._previous


def preload_modules(names: Iterable[str]) -> None:
    """Import allowed modules up front; the guard refuses the file reads a first import needs."""
    for name in names:
        if name not in sys.modules and importlib.util.find_spec(name) is not None:
            importlib.import_module(name)


def peak_rss_mb() -> float:
    # ru_maxrss is reported in kilobytes on Linux.
    return resource.getrusage(resource.RUSAGE_SELF).ru_maxrss / 1024.0


class OutputBuffer:
    def __init__(self, limit_bytes: int) -> None:
        self.limit_bytes = limit_bytes
        self.lines: list[str] = []
        self.size = 0
        self.truncated = False

    def write_line(self, *args: Any, sep: str = " ", end: str = "\n", **_: Any) -> None:
        if self.truncated:
            return
        text = sep.join(str(arg) for arg in args) + end
        encoded = len(text.encode("utf-8"))
        if self.size + encoded > self.limit_bytes:
            self.truncated = True
            return
        self.size += encoded
        self.lines.append(text.rstrip("\n"))


def make_import(allowed: Iterable[str]) -> Callable[..., Any]:
    allowed_roots = frozenset(allowed)

    def guarded_import(name, globals=None, locals=None, fromlist=(), level=0):
        root, *parts = name.split(".")
        if level != 0 or root not in allowed_roots:
            raise ImportError(f'Import not allowed: "{name}"')
        for part in (*parts, *(fromlist or ())):
            if part == "*" or is_io_name(part):
                raise ImportError(f'Import not allowed: "{name}.{part}"')
        return builtins.__import__(name, globals, locals, fromlist, level)

    return guarded_import


def make_builtins(policy: SandboxPolicy, output: OutputBuffer) -> dict[str, Any]:
    table = {name: getattr(builtins, name) for name in SAFE_BUILTINS}
    table["print"] = output.write_line
    table["__import__"] = make_import(policy.allowed_imports)
    return table


class LineBudget:
    """Counts line events in script frames and aborts once the budget is spent."""

    def __init__(self, max_lines: int) -> None:
        self.max_lines = max_lines
        self.count = 0

    def _local(self, frame, event, arg):
        if event == "line":
            self.count += 1
            if self.count > self.max_lines:
                raise ScriptResourceError(f"Iteration limit exceeded ({self.max_lines} line events)")
        return self._local

    def _global(self, frame, event, arg):
        if frame.f_code.co_filename != SCRIPT_FILENAME:
            return None
        return self._local

    def run(self, fn: Callable[..., Any], *args: Any) -> Any:
        self.count = 0
        previous = sys.gettrace()
        sys.settrace(self._global)
        try:
            return fn(*args)
        finally:
            sys.settrace(previous)


class StrategyContext:
    """Object handed to ``Strategy.__init__``."""

    def __init__(self, params: Optional[dict] = None, indicators: Optional[IndicatorLibrary] = None) -> None:
        self.params = dict(params or {})
        self.indicators = indicators or IndicatorLibrary()

    def get_param(self, name: str, default: Any = None) -> Any:
        return self.params.get(name, default)


class StrategySession:
    def __init__(self, code: str, params: Optional[dict] = None, policy: Optional[SandboxPolicy] = None) -> None:
        self.policy = policy or SandboxPolicy()
        self.output = OutputBuffer(self.policy.max_output_bytes)
        self.budget = LineBudget(self.policy.max_iterations)
        self.context = StrategyContext(params)
        self.bar_errors: list[dict] = []
        self.bars_processed = 0
        self._book = PositionBook()
        self._guard = AccessGuard()
        preload_modules(self.policy.allowed_imports)

        try:
            compiled = compile(code, SCRIPT_FILENAME, "exec")
        except SyntaxError as exc:
            raise ScriptLoadError(f"SyntaxError: {exc.msg} (line {exc.lineno})") from exc

        namespace: dict[str, Any] = {
            "__builtins__": make_builtins(self.policy, self.output),
            "__name__": "strategy",
        }
        try:
            self._call(exec, compiled, namespace)
        except ScriptResourceError:
            raise
        except Exception as exc:
            raise ScriptLoadError(f"{type(exc).__name__}: {exc}") from exc

        strategy_cls = namespace.get(STRATEGY_CLASS)
        if not inspect.isclass(strategy_cls):
            raise ScriptLoadError(f"Missing required class '{STRATEGY_CLASS}'")
        if not callable(getattr(strategy_cls, BAR_CALLBACK, None)):
            raise ScriptLoadError(f"{STRATEGY_CLASS} class must define '{BAR_CALLBACK}'")

        init = strategy_cls.__init__
        if init is object.__init__:
            accepts_context = False
        else:
            try:
                accepts_context = len(inspect.signature(init).parameters) > 1
            except (TypeError, ValueError):
                accepts_context = True
        try:
            if accepts_context:
                self.instance = self._call(strategy_cls, self.context)
            else:
                self.instance = self._call(strategy_cls)
        except ScriptResourceError:
            raise
        except Exception as exc:
            raise ScriptLoadError(f"{STRATEGY_CLASS}.__init__ failed: {type(exc).__name__}: {exc}") from exc
        self._check_memory()

    def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        with self._guard:
            return self.budget.run(fn, *args)

    def _check_memory(self) -> None:
        used = peak_rss_mb()
        if used > self.policy.memory_limit_mb:
            raise ScriptResourceError(
                f"Memory limit exceeded ({used:.0f} MB used, limit {self.policy.memory_limit_mb} MB)"
            )

    def tracked_position(self, price: float) -> dict:
        position = self._book.update_price(SCRIPT_MARKET, price)
        if position is None:
            return dict(EMPTY_SCRIPT_POSITION)
        return position.to_script_view()

    def _track(self, signal: Signal, price: float, bar: Bar) -> None:
        if signal.type == SignalType.CANCEL:
            return
        existing = self._book.get(SCRIPT_MARKET)
        if signal.type == SignalType.CLOSE:
            if existing is None:
                return
            quantity = signal.quantity if 0 < signal.quantity <= existing.quantity else existing.quantity
            self._book.apply_fill(SCRIPT_MARKET, existing.side.closing_side, quantity, price, bar.time)
            return
        side = OrderSide.BUY if signal.type == SignalType.BUY else OrderSide.SELL
        self._book.apply_fill(SCRIPT_MARKET, side, signal.quantity, signal.price or price, bar.time)

    def on_bar(self, bar: Bar, position: Optional[dict] = None, orders: Optional[list] = None) -> list[Signal]:
        """Run one callback; ``position`` overrides the session's own view when given."""
        index = self.bars_processed
        self.bars_processed += 1
        view = dict(position) if position is not None else self.tracked_position(bar.close)
        callback = getattr(self.instance, BAR_CALLBACK)
        try:
            raw = self._call(callback, bar.to_dict(), view, list(orders or []))
        except ScriptResourceError:
            raise
        except Exception as exc:
            self.bar_errors.append(
                {"index": index, "time": bar.to_dict()["time"], "message": f"{type(exc).__name__}: {exc}"}
            )
            return []
        finally:
            self._check_memory()

        if raw is None:
            return []
        if isinstance(raw, dict):
            raw = [raw]
        if not isinstance(raw, (list, tuple)):
            self.bar_errors.append(
                {"index": index, "time": bar.to_dict()["time"], "message": f"on_bar returned {type(raw).__name__}"}
            )
            return []

        signals: list[Signal] = []
        for item in raw:
            try:
                signal = Signal.from_dict(item).stamped(bar.time)
            except ValueError as exc:
                self.bar_errors.append({"index": index, "time": bar.to_dict()["time"], "message": str(exc)})
                continue
            signals.append(signal)
            if position is None:
                self._track(signal, bar.close, bar)
        return signals

    def replay(
        self,
        bars: list[Bar],
        progress: Optional[Callable[[int, int], None]] = None,
    ) -> dict:
        started = time.perf_counter()
        signals: list[Signal] = []
        total = len(bars)
        step = max(total // 10, 1)
        for index, bar in enumerate(bars):
            signals.extend(self.on_bar(bar))
            if progress is not None and (index + 1) % step == 0:
                progress(index + 1, total)
        return self.result(signals, started)

    def step(self, bars: list[Bar], position: Optional[dict], orders: Optional[list] = None) -> dict:
        started = time.perf_counter()
        errors_before = len(self.bar_errors)
        signals: list[Signal] = []
        for bar in bars:
            signals.extend(self.on_bar(bar, position or dict(EMPTY_SCRIPT_POSITION), orders))
        return self.result(signals, started, errors_from=errors_before)

    def result(self, signals: list[Signal], started: float, errors_from: int = 0) -> dict:
        logs = list(self.output.lines)
        self.output.lines.clear()
        return {
            "signals": [signal.to_dict() for signal in signals],
            "bar_errors": self.bar_errors[errors_from:],
            "logs": logs,
            "output_truncated": self.output.truncated,
            "bars_processed": self.bars_processed,
            "execution_time_ms": (time.perf_counter() - started) * 1000.0,
            "peak_memory_mb": peak_rss_mb(),
        }
