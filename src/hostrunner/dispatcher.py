from __future__ import annotations

import asyncio
from typing import Any

from hostrunner.backends.base import AgentBackend, BackendExecutionError
from hostrunner.config import EffectiveConfig, RuntimeSettings
from hostrunner.context import ExecutionContext, GatingOptions
from hostrunner.errors import (
    CapabilityRefusedError,
    ExternalOperationError,
    GatingUnsatisfiedError,
    HostRunnerError,
    RegistryError,
)
from hostrunner.events import AWAITING_CONFIRMATION, Completed, Failed, StatusChanged, TextChunk
from hostrunner.handlers.base import OperationStep
from hostrunner.logging import get_logger
from hostrunner.operations import Operation, OperationResult, OperationRunner
from hostrunner.preflight import PreflightSnapshot
from hostrunner.registry import HandlerRegistry, TaskHandlerDefinition
from hostrunner.stream import DispatchControl, DispatchStream, EventChannel

logger = get_logger(__name__)

CREDENTIAL_REFRESH = Operation(
    capability="run-shell",
    argv=("sudo", "-v"),
    description="Refresh the sudo credential after operator confirmation",
    privileged=True,
    interactive=True,
)


class Dispatcher:
    """Drives one task handler per dispatch and reports progress as events.

    Dispatches for the same host are serialized; different hosts run
    independently. The registry is only read here.
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        runner: OperationRunner,
        settings: RuntimeSettings,
        backend: AgentBackend | None = None,
    ) -> None:
        self.registry = registry
        self.runner = runner
        self.settings = settings
        self.backend = backend
        self._host_locks: dict[str, asyncio.Lock] = {}

    def dispatch(
        self,
        task_name: str,
        snapshot: PreflightSnapshot,
        config: EffectiveConfig,
        gating: GatingOptions | None = None,
        control: DispatchControl | None = None,
    ) -> DispatchStream:
        gating = gating or GatingOptions()
        control = control or DispatchControl()

        async def _producer(channel: EventChannel) -> None:
            lock = self._host_locks.setdefault(snapshot.host.name, asyncio.Lock())
            async with lock:
                await self._drive(task_name, snapshot, config, gating, control, channel)

        return DispatchStream(_producer, control)

    async def _drive(
        self,
        task_name: str,
        snapshot: PreflightSnapshot,
        config: EffectiveConfig,
        gating: GatingOptions,
        control: DispatchControl,
        channel: EventChannel,
    ) -> None:
        log = logger.bind(task=task_name, host=snapshot.host.name)
        try:
            definition = self.registry.lookup(task_name)
            context = ExecutionContext(
                task=task_name,
                config=config,
                snapshot=snapshot,
                handler=definition,
                gating=gating,
                settings=self.settings,
            )
            log.info("dispatch_start", kind=definition.kind, dry_run=gating.dry_run)
            self._check_unattended(context)
            if definition.kind == "steps":
                await self._run_steps(context, control, channel)
            else:
                await self._run_agent(context, control, channel)
        except HostRunnerError as exc:
            log.warning("dispatch_failed", kind=exc.kind, phase=exc.phase, error=exc.message)
            channel.emit(
                Failed(
                    detail=exc.message,
                    kind=exc.kind,
                    phase=exc.phase,
                    operation=getattr(exc, "operation", None),
                )
            )
            return
        log.info("dispatch_completed")
        channel.emit(Completed())

    @staticmethod
    def _check_capability(definition: TaskHandlerDefinition, operation: Operation) -> None:
        if operation.capability not in definition.capabilities:
            raise CapabilityRefusedError(
                f"Handler '{definition.name}' may not use capability "
                f"'{operation.capability}' (requested for {operation.display()})."
            )

    def _check_unattended(self, context: ExecutionContext) -> None:
        if not context.gating.auto_confirm or context.unattended_credential is not None:
            return
        key = self.settings.unattended_key
        cached = "cached" if context.snapshot.privileged_credential_cached else "not cached"
        raise GatingUnsatisfiedError(
            f"Unattended mode requires {key} in the configuration "
            f"(sudo credential {cached}). Add {key} to .env.local or rerun without --auto."
        )

    async def _gate(
        self,
        context: ExecutionContext,
        control: DispatchControl,
        channel: EventChannel,
    ) -> None:
        """Hold privileged work until it can run without a stray password prompt."""
        if context.gating.auto_confirm or context.snapshot.privileged_credential_cached:
            return

        channel.emit(StatusChanged(AWAITING_CONFIRMATION))
        logger.info("awaiting_confirmation", task=context.task, host=context.host.name)
        if not await control.wait_for_decision():
            raise GatingUnsatisfiedError("Operator declined the privileged operation.")

        self._check_capability(context.handler, CREDENTIAL_REFRESH)
        result = await self.runner.run(CREDENTIAL_REFRESH)
        if not result.ok:
            raise ExternalOperationError(
                CREDENTIAL_REFRESH.display(), exit_code=result.exit_code, stderr=result.stderr
            )

    async def _run_steps(
        self,
        context: ExecutionContext,
        control: DispatchControl,
        channel: EventChannel,
    ) -> None:
        definition = context.handler
        snapshot = context.snapshot
        if definition.steps is None:
            raise RegistryError(f"Step handler '{definition.name}' has no step planner.")
        steps = definition.steps(context)
        for step in steps:
            self._check_capability(definition, step.operation)

        pending = [
            step for step in steps if step.applies(snapshot) and not step.is_satisfied(snapshot)
        ]
        if not context.gating.dry_run and any(step.operation.privileged for step in pending):
            await self._gate(context, control, channel)

        changed = False
        for step in steps:
            operation = step.operation
            if not step.applies(snapshot):
                continue
            if step.is_satisfied(snapshot):
                channel.emit(TextChunk(step.satisfied_message or f"{step.label}: already satisfied"))
                continue
            if step.only_after_change and not changed:
                continue
            if context.gating.dry_run and operation.mutating:
                channel.emit(TextChunk(f"[dry-run] {step.label}: would run {operation.display()}"))
                continue

            result = await self.runner.run(
                operation,
                timeout=self.settings.operation_timeout_seconds,
                env=context.environment(),
            )
            if result.exit_code in step.already_satisfied_codes:
                channel.emit(TextChunk(f"{step.label}: already satisfied"))
                continue
            if not result.ok:
                raise ExternalOperationError(
                    operation.display(),
                    exit_code=result.exit_code,
                    stderr=result.stderr.strip(),
                    reason="timed out" if result.timed_out else "",
                )
            channel.emit(TextChunk(self._describe(step, result)))
            changed = changed or operation.mutating

    @staticmethod
    def _describe(step: OperationStep, result: OperationResult) -> str:
        summary = f"{step.label}: {step.operation.display()} ok"
        output = result.tail()
        return f"{summary}\n{output}" if output else summary

    async def _run_agent(
        self,
        context: ExecutionContext,
        control: DispatchControl,
        channel: EventChannel,
    ) -> None:
        definition = context.handler
        if self.backend is None:
            raise GatingUnsatisfiedError(f"Task '{definition.name}' needs an agent backend.")
        credential_key = self.backend.credential_key
        if credential_key and not context.config.present(credential_key):
            raise GatingUnsatisfiedError(
                f"{credential_key} is missing. Copy .env.example to .env and set your key."
            )
        if definition.privileged and not context.gating.dry_run:
            await self._gate(context, control, channel)

        if definition.brief is None:
            raise RegistryError(f"Agent handler '{definition.name}' has no brief builder.")
        brief = definition.brief(context)
        environment = {
            key: context.config[key]
            for key in self.backend.credential_keys()
            if context.config.present(key)
        }
        environment.update(brief.environment)
        session: dict[str, Any] = {
            "model": self.settings.model,
            "environment": environment,
            "privileged": definition.privileged,
        }
        operation = f"agent:{definition.name}"
        try:
            async for chunk in self.backend.execute(
                system_prompt=definition.policy_text(),
                user_prompt=brief.prompt,
                context=session,
                tools=definition.tools,
            ):
                channel.emit(TextChunk(chunk))
        except BackendExecutionError as exc:
            raise ExternalOperationError(operation, exit_code=exc.exit_code, reason=str(exc)) from exc
