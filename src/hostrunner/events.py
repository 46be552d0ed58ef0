from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar

AWAITING_CONFIRMATION = "awaiting-confirmation"
CANCELLED_DETAIL = "cancelled"


@dataclass(frozen=True, slots=True)
class TextChunk:
    content: str
    terminal: ClassVar[bool] = False


@dataclass(frozen=True, slots=True)
class StatusChanged:
    phase: str
    terminal: ClassVar[bool] = False


@dataclass(frozen=True, slots=True)
class Completed:
    terminal: ClassVar[bool] = True


@dataclass(frozen=True, slots=True)
class Failed:
    detail: str
    kind: str = "ExternalOperationFailure"
    phase: str = "execution"
    operation: str | None = None
    terminal: ClassVar[bool] = True

    @classmethod
    def cancelled(cls) -> Failed:
        return cls(detail=CANCELLED_DETAIL, kind="Cancelled")

    @property
    def is_cancelled(self) -> bool:
        return self.kind == "Cancelled"


ExecutionEvent = TextChunk | StatusChanged | Completed | Failed


def is_terminal(event: ExecutionEvent) -> bool:
    return event.terminal


def event_to_dict(event: ExecutionEvent) -> dict[str, Any]:
    if isinstance(event, TextChunk):
        return {"type": "text", "content": event.content}
    if isinstance(event, StatusChanged):
        return {"type": "status", "phase": event.phase}
    if isinstance(event, Completed):
        return {"type": "completed"}
    return {
        "type": "failed",
        "kind": event.kind,
        "phase": event.phase,
        "detail": event.detail,
        "operation": event.operation,
    }
