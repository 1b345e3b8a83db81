"""Bridge between the host process and the sandboxed strategy worker."""

from __future__ import annotations

import logging
import multiprocessing
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Sequence

from strategy_lab.sandbox.policy import SandboxPolicy, ValidationResult, validate_code
from strategy_lab.sandbox.protocol import (
    DEFAULT_EXECUTE_TIMEOUT_MS,
    DEFAULT_INIT_TIMEOUT_MS,
    DEFAULT_REQUEST_TIMEOUT_MS,
    RequestType,
    ResponseType,
    SandboxRequest,
    SandboxResponse,
)
from strategy_lab.sandbox.worker import RESOURCE_ERROR, worker_main
from strategy_lab.strategy.models import Bar, Signal

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str], None]


class SandboxError(RuntimeError):
    pass


class SandboxTimeoutError(SandboxError):
    pass


class SandboxNotReadyError(SandboxError):
    pass


class BridgeStatus(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    READY = "ready"
    ERROR = "error"


@dataclass(frozen=True)
class SandboxExecutionResult:
    success: bool
    signals: list[Signal] = field(default_factory=list)
    bar_errors: list[dict] = field(default_factory=list)
    logs: list[str] = field(default_factory=list)
    bars_processed: int = 0
    execution_time_ms: float = 0.0
    peak_memory_mb: float = 0.0
    error: Optional[str] = None
    error_type: Optional[str] = None
    validation: Optional[ValidationResult] = None

    @classmethod
    def from_payload(cls, payload: dict) -> "SandboxExecutionResult":
        return cls(
            success=True,
            signals=[Signal.from_dict(item) for item in payload.get("signals", [])],
            bar_errors=list(payload.get("bar_errors", [])),
            logs=list(payload.get("logs", [])),
            bars_processed=int(payload.get("bars_processed", 0)),
            execution_time_ms=float(payload.get("execution_time_ms", 0.0)),
            peak_memory_mb=float(payload.get("peak_memory_mb", 0.0)),
        )


@dataclass(frozen=True)
class IndicatorResult:
    success: bool
    name: str
    values: dict[str, list[float]] = field(default_factory=dict)
    error: Optional[str] = None


def _bar_payload(bars: Sequence[Bar | dict]) -> list[dict]:
    return [bar.to_dict() if isinstance(bar, Bar) else dict(bar) for bar in bars]


class SandboxBridge:
    """Owns one worker process and serializes requests to it."""

    def __init__(
        self,
        policy: Optional[SandboxPolicy] = None,
        audit_log: Optional[object] = None,
        monitor: Optional[object] = None,
    ) -> None:
        self.policy = policy or SandboxPolicy()
        self._audit_log = audit_log
        self._monitor = monitor
        self._lock = threading.RLock()
        self._context = multiprocessing.get_context("spawn")
        self._process = None
        self._conn = None
        self._loaded: Optional[dict[str, Any]] = None
        self.status = BridgeStatus.IDLE
        self.last_error: Optional[str] = None

    def _log(self, event: str, payload: dict) -> None:
        if self._audit_log is None:
            return
        self._audit_log.log(event, payload)

    @property
    def is_ready(self) -> bool:
        return self.status == BridgeStatus.READY

    @property
    def has_strategy(self) -> bool:
        return self._loaded is not None

    def __enter__(self) -> "SandboxBridge":
        self.initialize()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.terminate()

    def initialize(self) -> None:
        with self._lock:
            if self.status == BridgeStatus.READY:
                return
            self.status = BridgeStatus.INITIALIZING
            parent, child = self._context.Pipe()
            process = self._context.Process(target=worker_main, args=(child,), daemon=True)
            try:
                process.start()
            except OSError as exc:
                self.status = BridgeStatus.ERROR
                self.last_error = str(exc)
                raise SandboxError(f"Failed to start sandbox worker: {exc}") from exc
            child.close()
            self._process = process
            self._conn = parent
            try:
                self._roundtrip(SandboxRequest(RequestType.INIT.value), DEFAULT_INIT_TIMEOUT_MS)
            except SandboxError as exc:
                self.status = BridgeStatus.ERROR
                self.last_error = str(exc)
                raise
            self.status = BridgeStatus.READY
            self._log("sandbox_ready", {"pid": process.pid})

    def _stop_process(self) -> None:
        conn, process = self._conn, self._process
        self._conn = None
        self._process = None
        if conn is not None:
            conn.close()
        if process is not None:
            if process.is_alive():
                process.terminate()
            process.join(timeout=5)
        self.status = BridgeStatus.IDLE

    def _on_timeout(self, request: SandboxRequest, timeout_ms: int) -> None:
        message = f"Sandbox {request.type} timed out after {timeout_ms} ms"
        logger.warning(message)
        self._log("sandbox_timeout", {"request": request.type, "timeout_ms": timeout_ms})
        if self._monitor is not None:
            self._monitor.sandbox_timeout(message)
        self._stop_process()
        raise SandboxTimeoutError(message)

    def _roundtrip(
        self,
        request: SandboxRequest,
        timeout_ms: int,
        progress: Optional[ProgressCallback] = None,
    ) -> SandboxResponse:
        if self._conn is None:
            raise SandboxNotReadyError("Sandbox worker is not running")
        try:
            self._conn.send(request.to_dict())
        except (BrokenPipeError, OSError) as exc:
            self._stop_process()
            raise SandboxError(f"Sandbox worker unavailable: {exc}") from exc

        deadline = time.monotonic() + timeout_ms / 1000.0
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0 or not self._conn.poll(remaining):
                self._on_timeout(request, timeout_ms)
            try:
                response = SandboxResponse.from_dict(self._conn.recv())
            except (EOFError, OSError) as exc:
                self._stop_process()
                raise SandboxError("Sandbox worker exited unexpectedly") from exc
            if response.id != request.id:
                continue
            if response.type == ResponseType.PROGRESS:
                if progress is not None:
                    progress(float(response.payload.get("progress", 0.0)), str(response.payload.get("message", "")))
                continue
            if response.payload.get("error_type") == RESOURCE_ERROR:
                logger.warning("Sandbox worker exceeded resources: %s", response.error)
                self._log("sandbox_resource_exceeded", {"request": request.type, "message": response.error})
                self._stop_process()
            return response

    def _request(
        self,
        kind: RequestType,
        payload: dict,
        timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS,
        progress: Optional[ProgressCallback] = None,
    ) -> SandboxResponse:
        with self._lock:
            self.initialize()
            return self._roundtrip(SandboxRequest(kind.value, payload), timeout_ms, progress)

    def validate(self, code: str) -> ValidationResult:
        response = self._request(
            RequestType.VALIDATE,
            {"code": code, "policy": self.policy.to_dict()},
        )
        if response.type == ResponseType.ERROR:
            raise SandboxError(response.error or "Validation failed")
        return ValidationResult.from_dict(response.payload)

    def execute(
        self,
        code: str,
        bars: Sequence[Bar | dict],
        params: Optional[dict] = None,
        timeout_ms: int = DEFAULT_EXECUTE_TIMEOUT_MS,
        position: Optional[dict] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> SandboxExecutionResult:
        """Replay ``bars`` through ``code`` in a fresh strategy instance.

        Code that fails local validation is never sent to the worker. When
        ``position`` is given the bars are stepped through the loaded strategy
        instead, with that position view.
        """
        validation = validate_code(code, self.policy.allowed_imports)
        if not validation.is_valid:
            issue = validation.first_error()
            return SandboxExecutionResult(
                success=False,
                error=issue.message if issue else "Validation failed",
                error_type=issue.type.value if issue else None,
                validation=validation,
            )

        payload: dict[str, Any] = {
            "bars": _bar_payload(bars),
            "params": dict(params or {}),
            "policy": self.policy.to_dict(),
        }
        if position is None:
            payload["code"] = code
        else:
            self.load_strategy(code, params)
            payload["position"] = dict(position)
        response = self._request(RequestType.EXECUTE, payload, timeout_ms, progress)
        return self._execution_result(response)

    def load_strategy(self, code: str, params: Optional[dict] = None) -> None:
        validation = validate_code(code, self.policy.allowed_imports)
        if not validation.is_valid:
            issue = validation.first_error()
            raise SandboxError(issue.message if issue else "Validation failed")
        loaded = {"code": code, "params": dict(params or {}), "policy": self.policy.to_dict()}
        response = self._request(RequestType.INIT, loaded, DEFAULT_INIT_TIMEOUT_MS)
        if response.type == ResponseType.ERROR:
            self._loaded = None
            raise SandboxError(response.error or "Failed to load strategy")
        self._loaded = loaded

    def step(
        self,
        bar: Bar | dict,
        position: dict,
        timeout_ms: int = DEFAULT_EXECUTE_TIMEOUT_MS,
        orders: Optional[list[dict]] = None,
    ) -> SandboxExecutionResult:
        """Feed one bar to the loaded strategy with the caller's position view."""
        with self._lock:
            if self._loaded is None:
                raise SandboxNotReadyError("No strategy loaded")
            if self.status != BridgeStatus.READY:
                # the worker was restarted after a timeout; reload the strategy first
                self.initialize()
                response = self._roundtrip(SandboxRequest(RequestType.INIT.value, self._loaded), DEFAULT_INIT_TIMEOUT_MS)
                if response.type == ResponseType.ERROR:
                    raise SandboxError(response.error or "Failed to reload strategy")
            payload = {"bars": _bar_payload([bar]), "position": dict(position), "orders": list(orders or [])}
            response = self._roundtrip(SandboxRequest(RequestType.EXECUTE.value, payload), timeout_ms)
            return self._execution_result(response)

    @staticmethod
    def _execution_result(response: SandboxResponse) -> SandboxExecutionResult:
        if response.type == ResponseType.ERROR:
            return SandboxExecutionResult(
                success=False,
                error=response.error,
                error_type=response.payload.get("error_type"),
            )
        return SandboxExecutionResult.from_payload(response.payload)

    def calculate_indicator(self, name: str, data: Sequence[Any], params: Optional[dict] = None) -> IndicatorResult:
        payload = {
            "name": name,
            "data": _bar_payload(data) if data and isinstance(data[0], Bar) else list(data),
            "params": dict(params or {}),
        }
        response = self._request(RequestType.CALCULATE_INDICATOR, payload)
        if response.type == ResponseType.ERROR:
            return IndicatorResult(success=False, name=name, error=response.error)
        return IndicatorResult(success=True, name=name, values=dict(response.payload.get("values", {})))

    def terminate(self) -> None:
        with self._lock:
            if self._conn is not None and self._process is not None and self._process.is_alive():
                try:
                    self._roundtrip(SandboxRequest(RequestType.TERMINATE.value), 5000)
                except SandboxError as exc:
                    logger.debug("Sandbox terminate handshake failed: %s", exc)
            self._stop_process()
            self._loaded = None
            self._log("sandbox_terminated", {})
