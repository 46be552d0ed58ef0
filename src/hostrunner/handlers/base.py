from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from hostrunner.operations import Operation
from hostrunner.preflight import PreflightSnapshot

SnapshotPredicate = Callable[[PreflightSnapshot], bool]


@dataclass(frozen=True, slots=True)
class OperationStep:
    """One external operation in a step handler's plan.

    ``satisfied_when`` consults the snapshot before anything runs; a satisfied
    step is reported with ``satisfied_message`` and never issued.
    ``already_satisfied_codes`` are exit codes the handler treats as an
    idempotent no-op rather than a failure.
    """

    label: str
    operation: Operation
    satisfied_when: SnapshotPredicate | None = None
    satisfied_message: str = ""
    run_when: SnapshotPredicate | None = None
    only_after_change: bool = False
    already_satisfied_codes: frozenset[int] = frozenset()

    def is_satisfied(self, snapshot: PreflightSnapshot) -> bool:
        return self.satisfied_when is not None and self.satisfied_when(snapshot)

    def applies(self, snapshot: PreflightSnapshot) -> bool:
        return self.run_when is None or self.run_when(snapshot)


@dataclass(frozen=True, slots=True)
class AgentBrief:
    prompt: str
    environment: dict[str, str] = field(default_factory=dict)


def shell(*argv: str, description: str = "", **flags: bool) -> Operation:
    return Operation(capability="run-shell", argv=argv, description=description, **flags)
