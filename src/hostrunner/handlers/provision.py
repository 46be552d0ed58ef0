from __future__ import annotations

from hostrunner.context import ExecutionContext
from hostrunner.handlers.base import OperationStep, shell
from hostrunner.operations import Operation
from hostrunner.registry import TaskHandlerDefinition

TAILSCALE_UP_FLAGS = ("--ssh", "--accept-dns", "--advertise-tags=tag:devhost")


def _tailscale_up(context: ExecutionContext) -> Operation:
    argv = ["sudo", "-n", "tailscale", "up", *TAILSCALE_UP_FLAGS]
    secrets: tuple[str, ...] = ()
    credential = context.unattended_credential
    if credential:
        argv.append(f"--auth-key={credential}")
        secrets = (credential,)
    return Operation(
        capability="run-shell",
        argv=tuple(argv),
        description="Bring the tailscale node up",
        privileged=True,
        mutating=True,
        secrets=secrets,
    )


def plan(context: ExecutionContext) -> list[OperationStep]:
    return [
        OperationStep(
            label="install",
            operation=shell(
                "brew", "install", "tailscale", description="Install the tailscale CLI", mutating=True
            ),
            satisfied_when=lambda snapshot: snapshot.dependency_present,
            satisfied_message="dependency already present",
        ),
        OperationStep(
            label="configure",
            operation=_tailscale_up(context),
            satisfied_when=lambda snapshot: snapshot.service_running,
            satisfied_message="service already running",
        ),
        OperationStep(
            label="verify",
            operation=shell("tailscale", "status", description="Confirm the node is online"),
            only_after_change=True,
        ),
    ]


PROVISION = TaskHandlerDefinition(
    name="provision",
    description="Install tailscale and bring the node up, skipping anything already in place.",
    capabilities=frozenset({"run-shell"}),
    policy=(
        "Consult the preflight snapshot before every mutating step.",
        "Never reinstall a dependency that is already on PATH.",
        "Use non-interactive sudo only; a password prompt means the step fails.",
        "Verify the node only when this run changed something.",
    ),
    kind="steps",
    steps=plan,
)
