from __future__ import annotations

from hostrunner.context import ExecutionContext
from hostrunner.handlers.base import AgentBrief
from hostrunner.registry import TaskHandlerDefinition


def brief(context: ExecutionContext) -> AgentBrief:
    host = context.host
    ips = ", ".join(context.snapshot.tailscale_ips) or "unknown"
    prompt = "\n".join(
        [
            "Give quickstart guidance for connecting client devices to the host.",
            "Cover: MacBook (ssh + mosh), iPad/iPhone (Blink), Android (Termux).",
            f"Host tailscale addresses: {ips}",
            f"Playbook root: {host.root}",
            f"Config templates live under: {host.implementation_dir}",
        ]
    )
    return AgentBrief(prompt=prompt)


CLIENT_ADVISOR = TaskHandlerDefinition(
    name="client-advisor",
    description="Offer quickstart guidance for client devices.",
    capabilities=frozenset({"read-files", "search-files"}),
    policy=(
        "You are a documentation-focused assistant for the Code From Anywhere playbook.",
        "Pull exact snippets from the playbook or implementation templates.",
        "Respond with short bullet checklists (8 bullets at most).",
        "Provide concrete file paths for config templates.",
        "Never invent commands; quote from the playbook.",
        "If automation is required, point the operator at the relevant task instead.",
    ),
    kind="agent",
    brief=brief,
)
