from __future__ import annotations

from pathlib import Path
from typing import Any

from hostrunner.backends.base import SubprocessAgentBackend


class ClaudeCodeBackend(SubprocessAgentBackend):
    name = "claude"
    credential_key = "ANTHROPIC_API_KEY"

    def __init__(self, binary: str = "claude", working_directory: Path | None = None) -> None:
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
            "-p",
            user_prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--append-system-prompt",
            system_prompt,
        ]
        model = context.get("model")
        if isinstance(model, str) and model.strip():
            command.extend(["--model", model.strip()])
        if tools:
            command.extend(["--allowedTools", ",".join(tools)])
        return command
