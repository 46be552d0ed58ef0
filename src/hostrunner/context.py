from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from hostrunner.config import EffectiveConfig, RuntimeSettings
from hostrunner.preflight import HostDescriptor, PreflightSnapshot

if TYPE_CHECKING:
    from hostrunner.registry import TaskHandlerDefinition


@dataclass(frozen=True, slots=True)
class GatingOptions:
    dry_run: bool = False
    auto_confirm: bool = False
    # explicit unattended credential; falls back to the configured key
    unattended_token: str | None = None

    @classmethod
    def from_config(
        cls,
        config: EffectiveConfig,
        *,
        dry_run: bool = False,
        auto_confirm: bool = False,
        unattended_token: str | None = None,
    ) -> GatingOptions:
        return cls(
            dry_run=dry_run or config.flag("DRY_RUN"),
            auto_confirm=auto_confirm or config.flag("AUTO_CONFIRM"),
            unattended_token=unattended_token,
        )


@dataclass(slots=True)
class ExecutionContext:
    """Everything one dispatch needs; owned by that dispatch alone."""

    task: str
    config: EffectiveConfig
    snapshot: PreflightSnapshot
    handler: TaskHandlerDefinition
    gating: GatingOptions
    settings: RuntimeSettings

    @property
    def host(self) -> HostDescriptor:
        return self.snapshot.host

    @property
    def unattended_credential(self) -> str | None:
        for token in (self.gating.unattended_token, self.config.get(self.settings.unattended_key)):
            if token and token.strip():
                return token.strip()
        return None

    def environment(self) -> dict[str, str]:
        env: dict[str, str] = {}
        if self.gating.dry_run:
            env["DRY_RUN"] = "1"
        if self.gating.auto_confirm:
            env["AUTO_CONFIRM"] = "1"
        credential = self.unattended_credential
        if credential:
            env[self.settings.unattended_key] = credential
        return env
