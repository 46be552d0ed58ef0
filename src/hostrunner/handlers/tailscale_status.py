from __future__ import annotations

from hostrunner.context import ExecutionContext
from hostrunner.handlers.base import OperationStep, shell
from hostrunner.registry import TaskHandlerDefinition


def plan(context: ExecutionContext) -> list[OperationStep]:
    _ = context
    return [
        OperationStep(
            label="status",
            operation=shell("tailscale", "status", "--peers=false", "--json"),
        ),
        OperationStep(label="addresses", operation=shell("tailscale", "ip")),
        OperationStep(
            label="netcheck",
            operation=shell("tailscale", "netcheck"),
            run_when=lambda snapshot: not snapshot.service_running,
        ),
    ]


TAILSCALE_STATUS = TaskHandlerDefinition(
    name="tailscale-status",
    description="Check tailscale status, addresses and connectivity on the host.",
    capabilities=frozenset({"run-shell"}),
    policy=(
        "Read-only: collect status and addresses, never change node settings.",
        "Run netcheck only when status indicates the node is offline.",
    ),
    kind="steps",
    steps=plan,
)
