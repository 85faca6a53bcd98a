from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

TurnRole = Literal["user", "assistant"]


@dataclass(frozen=True, slots=True)
class CommandResult:
    name: str
    success: bool
    detail: str
    index: int = 0
    execution_mode: str = "sequential"
    turn_id: str | None = None
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "success": self.success,
            "detail": self.detail,
            "index": self.index,
            "execution_mode": self.execution_mode,
        }


@dataclass(slots=True)
class Turn:
    id: str
    role: TurnRole
    content: str
    command_results: list[CommandResult] | None = None
    is_status: bool = False
    is_streaming: bool = False
    attachments: list[str] = field(default_factory=list)
    created_at: str | None = None

    @property
    def is_transient(self) -> bool:
        return self.is_status or self.is_streaming

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "is_status": self.is_status,
            "is_streaming": self.is_streaming,
            "attachments": list(self.attachments),
            "created_at": self.created_at,
        }
        if self.command_results is not None:
            payload["command_results"] = [result.to_dict() for result in self.command_results]
        return payload


@dataclass(slots=True)
class ParsedReply:
    reasoning: str | None
    commands: list[Any]
    message: str
    raw: str
    strategy: str


@dataclass(slots=True)
class StreamResult:
    text: str
    done: bool = False
    cancelled: bool = False


@dataclass(slots=True)
class TurnOutcome:
    turn_id: str | None
    text: str = ""
    reply: ParsedReply | None = None
    results: list[CommandResult] = field(default_factory=list)
    cancelled: bool = False
    error: str | None = None
