from __future__ import annotations

from typing import Literal

Phase = Literal["config", "preflight", "gating", "execution"]


class HostRunnerError(RuntimeError):
    """Base class for orchestrator failures that end a run."""

    kind: str = "InternalError"

    def __init__(self, message: str, *, phase: Phase = "execution") -> None:
        super().__init__(message)
        self.message = message
        self.phase = phase


class ConfigParseError(HostRunnerError):
    kind = "ConfigParseError"

    def __init__(self, source: str, line: int | None = None, reason: str = "") -> None:
        location = f"{source}:{line}" if line is not None else source
        message = f"Malformed configuration source {location}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, phase="config")
        self.source = source
        self.line = line


class ConfigValueError(HostRunnerError):
    kind = "ConfigValueError"

    def __init__(self, key: str, value: str, expected: str) -> None:
        super().__init__(
            f"Configuration key {key}={value!r} is invalid: expected {expected}.",
            phase="config",
        )
        self.key = key


class InvalidHostError(HostRunnerError):
    kind = "InvalidHost"

    def __init__(self, message: str) -> None:
        super().__init__(message, phase="preflight")


class RegistryError(HostRunnerError):
    """Raised at startup for duplicate or capability-less handler definitions."""

    kind = "RegistryError"


class UnknownTaskError(HostRunnerError):
    kind = "UnknownTask"

    def __init__(self, task_name: str, known: list[str]) -> None:
        choices = ", ".join(f'"{name}"' for name in known) or "none registered"
        super().__init__(f'Unknown task "{task_name}". Use one of: {choices}.')
        self.task_name = task_name


class GatingUnsatisfiedError(HostRunnerError):
    kind = "GatingUnsatisfied"

    def __init__(self, message: str) -> None:
        super().__init__(message, phase="gating")


class CapabilityRefusedError(HostRunnerError):
    kind = "CapabilityRefused"


class ExternalOperationError(HostRunnerError):
    kind = "ExternalOperationFailure"

    def __init__(
        self,
        operation: str,
        *,
        exit_code: int | None = None,
        stderr: str = "",
        reason: str = "",
    ) -> None:
        detail = reason or f"exited with code {exit_code}"
        message = f"Operation failed: {operation} ({detail})"
        if stderr:
            message = f"{message}: {stderr[-400:]}"
        super().__init__(message)
        self.operation = operation
        self.exit_code = exit_code
        self.stderr = stderr
