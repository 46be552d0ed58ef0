"""Static table of task handlers, validated once at startup."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

from hostrunner.errors import RegistryError, UnknownTaskError
from hostrunner.operations import CAPABILITY_TOOLS, KNOWN_CAPABILITIES

if TYPE_CHECKING:
    from hostrunner.context import ExecutionContext
    from hostrunner.handlers.base import AgentBrief, OperationStep

HandlerKind = Literal["steps", "agent"]
StepPlanner = Callable[["ExecutionContext"], "list[OperationStep]"]
BriefBuilder = Callable[["ExecutionContext"], "AgentBrief"]


@dataclass(frozen=True, slots=True)
class TaskHandlerDefinition:
    name: str
    description: str
    capabilities: frozenset[str]
    policy: tuple[str, ...]
    kind: HandlerKind
    steps: StepPlanner | None = None
    brief: BriefBuilder | None = None
    # agent handlers only; step handlers mark privilege per operation
    privileged: bool = False

    @property
    def tools(self) -> list[str]:
        return sorted(CAPABILITY_TOOLS[capability] for capability in self.capabilities)

    def policy_text(self) -> str:
        return "\n".join(self.policy)


class HandlerRegistry:
    def __init__(self, definitions: Iterable[TaskHandlerDefinition] = ()) -> None:
        self._handlers: dict[str, TaskHandlerDefinition] = {}
        self._frozen = False
        for definition in definitions:
            self.register(definition)

    def register(self, definition: TaskHandlerDefinition) -> None:
        if self._frozen:
            raise RegistryError(
                f"Registry is frozen; cannot register '{definition.name}' at runtime."
            )
        name = definition.name.strip()
        if not name:
            raise RegistryError("Handler definitions need a non-empty name.")
        if name in self._handlers:
            raise RegistryError(f"Duplicate handler name: '{name}'.")
        if not definition.capabilities:
            raise RegistryError(f"Handler '{name}' declares no capabilities.")
        unknown = sorted(definition.capabilities - KNOWN_CAPABILITIES)
        if unknown:
            raise RegistryError(
                f"Handler '{name}' declares unknown capabilities: {', '.join(unknown)}."
            )
        if definition.kind == "steps" and definition.steps is None:
            raise RegistryError(f"Step handler '{name}' has no step planner.")
        if definition.kind == "agent" and definition.brief is None:
            raise RegistryError(f"Agent handler '{name}' has no brief builder.")
        self._handlers[name] = definition

    def freeze(self) -> HandlerRegistry:
        self._frozen = True
        return self

    def lookup(self, name: str) -> TaskHandlerDefinition:
        definition = self._handlers.get(name)
        if definition is None:
            raise UnknownTaskError(name, self.names())
        return definition

    def names(self) -> list[str]:
        return list(self._handlers)

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    def __iter__(self) -> Iterator[TaskHandlerDefinition]:
        return iter(self._handlers.values())

    def __len__(self) -> int:
        return len(self._handlers)
