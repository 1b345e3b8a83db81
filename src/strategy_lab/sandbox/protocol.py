"""Request/response messages exchanged with the sandbox worker."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

DEFAULT_EXECUTE_TIMEOUT_MS = 30_000
DEFAULT_REQUEST_TIMEOUT_MS = 60_000
DEFAULT_INIT_TIMEOUT_MS = 60_000


class RequestType(str, Enum):
    INIT = "init"
    EXECUTE = "execute"
    VALIDATE = "validate"
    CALCULATE_INDICATOR = "calculate_indicator"
    TERMINATE = "terminate"


class ResponseType(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    PROGRESS = "progress"


@dataclass(frozen=True)
class SandboxRequest:
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "type": self.type, "payload": self.payload}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SandboxRequest":
        return cls(type=str(data.get("type")), payload=dict(data.get("payload") or {}), id=str(data.get("id")))


@dataclass(frozen=True)
class SandboxResponse:
    id: str
    type: ResponseType
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def error(self) -> Optional[str]:
        if self.type != ResponseType.ERROR:
            return None
        return str(self.payload.get("message", "Unknown sandbox error"))

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "type": self.type.value, "payload": self.payload}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SandboxResponse":
        return cls(id=str(data.get("id")), type=ResponseType(data["type"]), payload=dict(data.get("payload") or {}))

    @classmethod
    def success(cls, request_id: str, payload: Optional[dict[str, Any]] = None) -> "SandboxResponse":
        return cls(request_id, ResponseType.SUCCESS, payload or {})

    @classmethod
    def failure(cls, request_id: str, message: str, error_type: Optional[str] = None) -> "SandboxResponse":
        payload: dict[str, Any] = {"message": message}
        if error_type is not None:
            payload["error_type"] = error_type
        return cls(request_id, ResponseType.ERROR, payload)

    @classmethod
    def progress(cls, request_id: str, percent: float, message: str = "") -> "SandboxResponse":
        return cls(request_id, ResponseType.PROGRESS, {"progress": percent, "message": message})
