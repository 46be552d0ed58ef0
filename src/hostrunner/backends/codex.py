from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from hostrunner.backends.base import SubprocessAgentBackend


class CodexBackend(SubprocessAgentBackend):
    name = "codex"
    credential_key = "OPENAI_API_KEY"

    def __init__(self, binary: str = "codex", working_directory: Path | None = None) -> None:
        super().__init__(binary, working_directory)

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> list[str]:
        command = [
            self.binary,
            "exec",
            "--json",
            "-c",
            f"instructions={json.dumps(system_prompt, ensure_ascii=False)}",
        ]
        command.extend(["--sandbox", _sandbox_mode(context, tools)])
        model = context.get("model")
        # codex has no notion of claude model aliases
        if isinstance(model, str) and model.strip() and model not in {"sonnet", "opus", "haiku"}:
            command.extend(["-m", model.strip()])
        prompt = user_prompt
        if tools:
            prompt = f"{user_prompt}\n\nAllowed tools:\n{json.dumps(tools, ensure_ascii=False)}"
        command.append(prompt)
        return command


def _sandbox_mode(context: dict[str, Any], tools: list[str] | None) -> str:
    """Translate the handler's tool allow-list into a codex sandbox policy."""
    if tools is not None and "Bash" not in tools:
        return "read-only"
    if context.get("privileged"):
        # sudo and system paths live outside the workspace
        return "danger-full-access"
    return "workspace-write"
