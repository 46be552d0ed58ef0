from __future__ import annotations

from hostrunner.context import ExecutionContext
from hostrunner.handlers.base import AgentBrief
from hostrunner.preflight import format_snapshot
from hostrunner.registry import TaskHandlerDefinition


def _yes_no(value: bool) -> str:
    return "yes" if value else "no"


def brief(context: ExecutionContext) -> AgentBrief:
    host = context.host
    snapshot = context.snapshot
    credential_key = context.settings.unattended_key
    lines = [
        f"Bootstrap the host '{host.name}' per the Code From Anywhere playbook.",
        "Steps to perform:",
        f"- Run {host.bootstrap_script} with sudo privileges.",
        f"- If {credential_key} is present, pass it through to avoid interactive login.",
        "- Confirm sshd hardening and tmux helper files exist in the implementation directory.",
        "- Report remaining manual items (e.g., approving the device in the admin console).",
        "",
        format_snapshot(snapshot),
        "",
        f"Dry run requested: {_yes_no(context.gating.dry_run)}"
        " (set DRY_RUN=1 when executing commands if yes).",
        f"{credential_key} present: {_yes_no(context.unattended_credential is not None)}",
        f"Auto-confirm mode: {_yes_no(context.gating.auto_confirm)}"
        " (proceed without asking if yes).",
        "Sudo credential is cached; initial sudo commands should succeed without prompts."
        if snapshot.privileged_credential_cached
        else "Sudo credential is NOT cached; the operator confirmed before this run started.",
        "",
        "Reference assets (read-only):",
        f"- verification script: {host.verify_script}",
        f"- sshd config template: {host.sshd_template}",
        f"- tmux config template: {host.tmux_template}",
    ]
    return AgentBrief(prompt="\n".join(lines), environment=context.environment())


BOOTSTRAP = TaskHandlerDefinition(
    name="bootstrap",
    description="Provision and harden the host per the Code From Anywhere playbook.",
    capabilities=frozenset({"run-shell", "read-files", "search-files"}),
    policy=(
        "You are a senior operations engineer automating the Code From Anywhere host.",
        "1. Run lightweight checks before changing anything: `bash -n` on the bootstrap"
        " script, `sudo -n true`, `command -v tailscale`.",
        "2. Execute the bootstrap script with DRY_RUN set when the caller requested it.",
        "3. Run the verification script when the caller asked for verification.",
        "4. Keep prompts to the human minimal; only ask when sudo or device approval is needed.",
        "5. After each significant command, capture output and surface warnings.",
        "6. Finish with a concise summary: steps completed, items needing attention,"
        " next actions.",
    ),
    kind="agent",
    brief=brief,
    privileged=True,
)
