from __future__ import annotations

import asyncio
import contextlib
import json
import os
import signal
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from hostrunner.backends import (
    AgentBackend,
    ClaudeCodeBackend,
    CodexBackend,
    ResilientBackend,
    RetryPolicy,
)
from hostrunner.config import (
    BackendName,
    ConfigSource,
    EffectiveConfig,
    RuntimeSettings,
    default_sources,
    environment_layer,
    resolve,
)
from hostrunner.consumer import ConsoleRenderer, EventConsumer, JsonLinesRenderer, Renderer
from hostrunner.context import GatingOptions
from hostrunner.dispatcher import Dispatcher
from hostrunner.errors import HostRunnerError
from hostrunner.events import Failed
from hostrunner.handlers import build_default_registry
from hostrunner.logging import configure_logging, get_logger
from hostrunner.operations import CommandPolicy, OperationRunner, SubprocessRunner
from hostrunner.preflight import HostDescriptor, PreflightProber, PreflightSnapshot, format_snapshot
from hostrunner.stream import DispatchControl

logger = get_logger(__name__)

EXIT_CANCELLED = 130


@dataclass(slots=True)
class Runtime:
    host: HostDescriptor
    config: EffectiveConfig
    settings: RuntimeSettings
    runner: OperationRunner


def _resolve_root(root_value: str | None) -> Path:
    return Path(root_value).expanduser().resolve() if root_value else Path.cwd().resolve()


def _load_config(root: Path, env_files: tuple[str, ...]) -> EffectiveConfig:
    sources: list[ConfigSource | Path] = list(default_sources(root))
    sources.extend(Path(value) for value in env_files)
    # exported variables outrank every file, .env.local included
    return resolve(sources, extra_layers=[environment_layer(os.environ)])


def _build_runner(settings: RuntimeSettings, host: HostDescriptor) -> OperationRunner:
    policy = CommandPolicy(
        executables=settings.allowed_executables,
        trusted_dirs=(host.scripts_dir,),
    )
    return SubprocessRunner(policy, cwd=host.root)


def _build_single_backend(backend_name: BackendName, root: Path) -> AgentBackend:
    if backend_name == "codex":
        return CodexBackend(working_directory=root)
    return ClaudeCodeBackend(working_directory=root)


def _log_backend_event(event: dict[str, Any]) -> None:
    payload = dict(event)
    name = str(payload.pop("event", "backend_event"))
    logger.info(name, **payload)


def _build_backend(settings: RuntimeSettings, root: Path) -> ResilientBackend:
    policy = RetryPolicy(
        max_retries=max(0, settings.backend_retries),
        timeout_seconds=max(5.0, settings.backend_timeout_seconds),
    )
    return ResilientBackend(
        primary_name=settings.backend,
        primary_backend=_build_single_backend(settings.backend, root),
        fallback_name=settings.fallback_backend,
        fallback_backend=_build_single_backend(settings.fallback_backend, root),
        retry_policy=policy,
        event_hook=_log_backend_event,
    )


def _load_runtime(root_value: str | None, env_files: tuple[str, ...], host_name: str) -> Runtime:
    root = _resolve_root(root_value)
    try:
        config = _load_config(root, env_files)
        settings = RuntimeSettings.from_config(config)
    except HostRunnerError as exc:
        raise click.ClickException(f"[{exc.phase}] {exc.message}") from exc
    configure_logging(json_output=settings.log_json, level=settings.log_level)
    host = HostDescriptor.for_playbook(root, name=host_name)
    return Runtime(
        host=host,
        config=config,
        settings=settings,
        runner=_build_runner(settings, host),
    )


def _prober(runtime: Runtime) -> PreflightProber:
    settings = runtime.settings
    return PreflightProber(
        runtime.runner,
        timeout_seconds=settings.check_timeout_seconds,
        concurrency=settings.check_concurrency,
        attempts=settings.check_attempts,
    )


async def _probe(runtime: Runtime) -> PreflightSnapshot:
    try:
        return await _prober(runtime).probe(runtime.host)
    except HostRunnerError as exc:
        raise click.ClickException(f"[{exc.phase}] {exc.message}") from exc


async def _confirm_privileged() -> bool:
    """Ask on a daemon thread; an abandoned prompt must not block interpreter exit."""
    loop = asyncio.get_running_loop()
    answer: asyncio.Future[bool] = loop.create_future()

    def _settle(approved: bool) -> None:
        if not answer.done():
            answer.set_result(approved)

    def _ask() -> None:
        try:
            approved = click.confirm(
                "Run privileged steps now? sudo may ask for your password", default=False
            )
        except click.Abort:
            approved = False
        # the loop is gone if the dispatch was cancelled while we waited
        with contextlib.suppress(RuntimeError):
            loop.call_soon_threadsafe(_settle, approved)

    threading.Thread(target=_ask, name="hostrunner-confirm", daemon=True).start()
    return await answer


async def _run_task(
    runtime: Runtime,
    task_name: str,
    gating: GatingOptions,
    render: Renderer,
) -> Failed | None:
    snapshot = await _probe(runtime)
    dispatcher = Dispatcher(
        registry=build_default_registry(),
        runner=runtime.runner,
        settings=runtime.settings,
        backend=_build_backend(runtime.settings, runtime.host.root),
    )
    control = DispatchControl()
    consumer = EventConsumer(render, control, confirm=_confirm_privileged)
    stream = dispatcher.dispatch(task_name, snapshot, runtime.config, gating, control)

    loop = asyncio.get_running_loop()
    handles_signal = False
    with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
        loop.add_signal_handler(signal.SIGINT, control.cancel)
        handles_signal = True
    try:
        terminal = await consumer.consume(stream)
    finally:
        await stream.aclose()
        if handles_signal:
            loop.remove_signal_handler(signal.SIGINT)
    return terminal if isinstance(terminal, Failed) else None


@click.group()
@click.version_option(package_name="hostrunner")
def cli() -> None:
    """Host bootstrap runner."""


root_option = click.option(
    "--root",
    "root_value",
    default=None,
    help="Playbook root holding scripts/ and implementation/ (default: current directory).",
)
env_file_option = click.option(
    "--env-file",
    "env_files",
    multiple=True,
    type=click.Path(dir_okay=False),
    help="Extra env-style file, applied after the default sources. Repeatable.",
)
host_option = click.option("--host", "host_name", default="localhost", show_default=True)


@cli.command("run")
@click.argument("task_name", default="bootstrap")
@click.option("--dry-run", is_flag=True, default=False, help="Simulate mutating steps only.")
@click.option("--auto", "auto_confirm", is_flag=True, default=False, help="Never prompt.")
@click.option(
    "--output",
    "output_format",
    type=click.Choice(["text", "jsonl"]),
    default="text",
    show_default=True,
    help="jsonl prints one JSON object per event.",
)
@click.option(
    "--unattended-token-file",
    "token_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="File holding the unattended credential for --auto runs.",
)
@root_option
@env_file_option
@host_option
def run_command(
    task_name: str,
    dry_run: bool,
    auto_confirm: bool,
    output_format: str,
    token_file: Path | None,
    root_value: str | None,
    env_files: tuple[str, ...],
    host_name: str,
) -> None:
    runtime = _load_runtime(root_value, env_files, host_name)
    gating = GatingOptions.from_config(
        runtime.config,
        dry_run=dry_run,
        auto_confirm=auto_confirm,
        unattended_token=token_file.read_text(encoding="utf-8") if token_file else None,
    )
    render: Renderer = JsonLinesRenderer() if output_format == "jsonl" else ConsoleRenderer()
    failure = asyncio.run(_run_task(runtime, task_name, gating, render))
    if failure is None:
        return
    if failure.is_cancelled:
        raise click.exceptions.Exit(EXIT_CANCELLED)
    raise click.exceptions.Exit(1)


@cli.command("preflight")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["json", "text"]),
    default="json",
    show_default=True,
)
@root_option
@env_file_option
@host_option
def preflight_command(
    output_format: str,
    root_value: str | None,
    env_files: tuple[str, ...],
    host_name: str,
) -> None:
    runtime = _load_runtime(root_value, env_files, host_name)
    snapshot = asyncio.run(_probe(runtime))
    if output_format == "text":
        click.echo(format_snapshot(snapshot))
        return
    click.echo(json.dumps(snapshot.to_dict(), ensure_ascii=False, indent=2))


@cli.command("tasks")
def tasks_command() -> None:
    for definition in build_default_registry():
        capabilities = ", ".join(sorted(definition.capabilities))
        click.echo(f"{definition.name:<18} {definition.kind:<6} [{capabilities}]")
        click.echo(f"    {definition.description}")
