"""Worker process entry point for the sandbox bridge."""

from __future__ import annotations

import resource
import signal
from typing import Any, Optional

from strategy_lab.sandbox.indicators import calculate_indicator
from strategy_lab.sandbox.policy import ALLOWED_IMPORTS, SandboxPolicy, categorize_error, validate_code
from strategy_lab.sandbox.protocol import RequestType, SandboxRequest, SandboxResponse
from strategy_lab.sandbox.runtime import AccessGuard, ScriptLoadError, ScriptResourceError, StrategySession, preload_modules
from strategy_lab.strategy.models import Bar

RESOURCE_ERROR = "resource"


class WorkerState:
    def __init__(self, conn) -> None:
        self.conn = conn
        self.session: Optional[StrategySession] = None

    def send(self, response: SandboxResponse) -> None:
        self.conn.send(response.to_dict())

    def handle(self, request: SandboxRequest) -> SandboxResponse:
        payload = request.payload
        kind = request.type

        if kind == RequestType.INIT.value:
            code = payload.get("code")
            if not code:
                return SandboxResponse.success(request.id, {"ready": True, "loaded": self.session is not None})
            self.session = StrategySession(
                code,
                payload.get("params"),
                SandboxPolicy.from_dict(payload.get("policy")),
            )
            return SandboxResponse.success(request.id, {"ready": True, "loaded": True})

        if kind == RequestType.VALIDATE.value:
            policy = SandboxPolicy.from_dict(payload.get("policy"))
            result = validate_code(str(payload.get("code", "")), policy.allowed_imports)
            return SandboxResponse.success(request.id, result.to_dict())

        if kind == RequestType.EXECUTE.value:
            bars = [Bar.from_dict(item) for item in payload.get("bars", [])]
            code = payload.get("code")
            if code:
                session = StrategySession(
                    code,
                    payload.get("params"),
                    SandboxPolicy.from_dict(payload.get("policy")),
                )

                def report(done: int, total: int) -> None:
                    self.send(SandboxResponse.progress(request.id, done / total * 100.0, f"{done}/{total} bars"))

                return SandboxResponse.success(request.id, session.replay(bars, report))
            if self.session is None:
                return SandboxResponse.failure(request.id, "No strategy loaded", "runtime")
            result = self.session.step(bars, payload.get("position"), payload.get("orders"))
            return SandboxResponse.success(request.id, result)

        if kind == RequestType.CALCULATE_INDICATOR.value:
            values = calculate_indicator(
                str(payload.get("name", "")),
                payload.get("data", []),
                payload.get("params") or {},
            )
            return SandboxResponse.success(request.id, {"name": payload.get("name"), "values": values})

        return SandboxResponse.failure(request.id, f"Unknown message type: {kind}", "runtime")


def restrict_process() -> None:
    """Lock the worker down before it serves requests.

    Script calls additionally run under the ``AccessGuard`` audit hook, which
    refuses file opens, process creation, sockets and native-library loads.
    """
    preload_modules(ALLOWED_IMPORTS)
    AccessGuard.install()
    # writes past zero bytes fail with EFBIG instead of killing the worker
    signal.signal(signal.SIGXFSZ, signal.SIG_IGN)
    resource.setrlimit(resource.RLIMIT_FSIZE, (0, 0))
    resource.setrlimit(resource.RLIMIT_CORE, (0, 0))


def worker_main(conn) -> None:
    restrict_process()
    state = WorkerState(conn)
    while True:
        try:
            message: Any = conn.recv()
        except EOFError:
            break
        request = SandboxRequest.from_dict(message if isinstance(message, dict) else {})

        if request.type == RequestType.TERMINATE.value:
            state.send(SandboxResponse.success(request.id, {"terminated": True}))
            break

        try:
            response = state.handle(request)
        except ScriptResourceError as exc:
            state.send(SandboxResponse.failure(request.id, str(exc), RESOURCE_ERROR))
            break
        except ScriptLoadError as exc:
            response = SandboxResponse.failure(request.id, str(exc), categorize_error(str(exc)).value)
        except Exception as exc:
            response = SandboxResponse.failure(request.id, f"{type(exc).__name__}: {exc}", "runtime")
        state.send(response)
    conn.close()
