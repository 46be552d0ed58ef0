"""Read-only host probing that runs before any mutating action.

Each check is independent and bounded by its own timeout. Checks run
concurrently under a semaphore and are joined before a snapshot is built, so a
snapshot always carries exactly one result per declared check.
"""

from __future__ import annotations

import asyncio
import shutil
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from hostrunner.errors import InvalidHostError
from hostrunner.logging import get_logger
from hostrunner.operations import Operation, OperationRunner

logger = get_logger(__name__)

TIMEOUT_DETAIL = "timeout"


@dataclass(frozen=True, slots=True)
class HostDescriptor:
    name: str
    root: Path
    scripts_dir: Path
    implementation_dir: Path

    @classmethod
    def for_playbook(cls, root: Path, name: str = "localhost") -> HostDescriptor:
        root = root.expanduser().resolve()
        return cls(
            name=name,
            root=root,
            scripts_dir=root / "scripts",
            implementation_dir=root / "implementation",
        )

    @property
    def bootstrap_script(self) -> Path:
        return self.scripts_dir / "bootstrap-mac-host.sh"

    @property
    def verify_script(self) -> Path:
        return self.scripts_dir / "run-bootstrap-and-verify.sh"

    @property
    def sshd_template(self) -> Path:
        return self.implementation_dir / "ssh" / "sshd_config.macos"

    @property
    def tmux_template(self) -> Path:
        return self.implementation_dir / "tmux.conf"

    def validate(self) -> None:
        if not self.name.strip():
            raise InvalidHostError("Host descriptor has an empty name.")
        if not self.root.is_absolute():
            raise InvalidHostError(f"Host root must be an absolute path: {self.root}")
        if not self.root.is_dir():
            raise InvalidHostError(f"Host root is not a directory: {self.root}")


@dataclass(frozen=True, slots=True)
class CheckResult:
    name: str
    ok: bool
    detail: str | None = None
    duration_ms: int = 0


CheckFn = Callable[[HostDescriptor, OperationRunner], Awaitable[CheckResult]]


@dataclass(frozen=True, slots=True)
class PreflightCheck:
    name: str
    description: str
    run: CheckFn


@dataclass(frozen=True, slots=True)
class PreflightSnapshot:
    host: HostDescriptor
    results: tuple[CheckResult, ...]
    checked_at: str = field(
        default_factory=lambda: datetime.now(UTC).replace(microsecond=0).isoformat()
    )

    def __post_init__(self) -> None:
        names = [result.name for result in self.results]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate check results in snapshot: {names}")

    def result(self, name: str) -> CheckResult | None:
        for item in self.results:
            if item.name == name:
                return item
        return None

    def passed(self, name: str) -> bool:
        # unknown or timed-out checks count as failed
        item = self.result(name)
        return bool(item and item.ok)

    @property
    def privileged_credential_cached(self) -> bool:
        return self.passed("sudo_cached")

    @property
    def dependency_present(self) -> bool:
        return self.passed("tailscale_cli")

    @property
    def service_running(self) -> bool:
        return self.passed("tailscale_running")

    @property
    def scripts_present(self) -> bool:
        return self.passed("bootstrap_script_present") and self.passed("verify_script_present")

    @property
    def tailscale_path(self) -> str | None:
        item = self.result("tailscale_cli")
        return item.detail if item and item.ok else None

    @property
    def tailscale_ips(self) -> list[str]:
        item = self.result("tailscale_ip")
        if not item or not item.ok or not item.detail:
            return []
        return [line.strip() for line in item.detail.splitlines() if line.strip()]

    def to_dict(self) -> dict[str, Any]:
        return {
            "host": self.host.name,
            "root": str(self.host.root),
            "checked_at": self.checked_at,
            "privileged_credential_cached": self.privileged_credential_cached,
            "dependency_present": self.dependency_present,
            "service_running": self.service_running,
            "tailscale_ips": self.tailscale_ips,
            "checks": [
                {
                    "name": item.name,
                    "ok": item.ok,
                    "detail": item.detail,
                    "duration_ms": item.duration_ms,
                }
                for item in self.results
            ],
        }


def format_snapshot(snapshot: PreflightSnapshot) -> str:
    """Render the snapshot as the briefing handed to operators and agents."""
    host = snapshot.host
    tailscale_path = snapshot.tailscale_path
    ips = ", ".join(snapshot.tailscale_ips) or "unknown"

    def yes_no(value: bool) -> str:
        return "yes" if value else "no"

    lines = [
        "Preflight snapshot from orchestrator:",
        f"- bootstrap script present: {yes_no(snapshot.passed('bootstrap_script_present'))}"
        f" ({host.bootstrap_script})",
        f"- verify script present: {yes_no(snapshot.passed('verify_script_present'))}"
        f" ({host.verify_script})",
        f"- tailscale CLI on PATH: {tailscale_path or 'not found'}",
        f"- sudo credentials cached: {yes_no(snapshot.privileged_credential_cached)}",
        f"- tailscale running: {yes_no(snapshot.service_running)}",
        f"- tailscale IPs: {ips}",
    ]
    timed_out = [item.name for item in snapshot.results if item.detail == TIMEOUT_DETAIL]
    if timed_out:
        lines.append(f"- checks timed out (treated as failed): {', '.join(timed_out)}")
    if not snapshot.privileged_credential_cached:
        lines.append("- sudo will require a password prompt. Ask the operator before proceeding.")
    if not tailscale_path:
        lines.append("- tailscale CLI missing; bootstrap is expected to install it.")
    if not snapshot.service_running:
        lines.append("- tailscale appears down; bootstrap should include tailscale up.")
    return "\n".join(lines)


def _probe_operation(*argv: str) -> Operation:
    return Operation(capability="run-shell", argv=argv, description="preflight probe")


def _file_check(name: str, target: Callable[[HostDescriptor], Path]) -> CheckFn:
    async def _check(host: HostDescriptor, runner: OperationRunner) -> CheckResult:
        _ = runner
        path = target(host)
        exists = await asyncio.to_thread(path.is_file)
        return CheckResult(name=name, ok=exists, detail=str(path))

    return _check


def _exit_code_check(name: str, *argv: str, keep_output: bool = False) -> CheckFn:
    async def _check(host: HostDescriptor, runner: OperationRunner) -> CheckResult:
        _ = host
        result = await runner.run(_probe_operation(*argv))
        detail = result.stdout.strip() if keep_output and result.ok else None
        if not result.ok:
            detail = result.stderr.strip()[-200:] or f"exit code {result.exit_code}"
        return CheckResult(name=name, ok=result.ok, detail=detail)

    return _check


async def _tailscale_cli(host: HostDescriptor, runner: OperationRunner) -> CheckResult:
    _ = host, runner
    path = await asyncio.to_thread(shutil.which, "tailscale")
    return CheckResult(name="tailscale_cli", ok=path is not None, detail=path)


DEFAULT_CHECKS: tuple[PreflightCheck, ...] = (
    PreflightCheck(
        "bootstrap_script_present",
        "Bootstrap script exists",
        _file_check("bootstrap_script_present", lambda host: host.bootstrap_script),
    ),
    PreflightCheck(
        "verify_script_present",
        "Verification script exists",
        _file_check("verify_script_present", lambda host: host.verify_script),
    ),
    PreflightCheck("tailscale_cli", "tailscale binary on PATH", _tailscale_cli),
    PreflightCheck(
        "sudo_cached",
        "sudo credential cached",
        _exit_code_check("sudo_cached", "sudo", "-n", "true"),
    ),
    PreflightCheck(
        "tailscale_running",
        "tailscale reports a running node",
        _exit_code_check("tailscale_running", "tailscale", "status"),
    ),
    PreflightCheck(
        "tailscale_ip",
        "tailscale addresses",
        _exit_code_check("tailscale_ip", "tailscale", "ip", keep_output=True),
    ),
)


class PreflightProber:
    def __init__(
        self,
        runner: OperationRunner,
        checks: Iterable[PreflightCheck] = DEFAULT_CHECKS,
        *,
        timeout_seconds: float = 5.0,
        concurrency: int = 4,
        attempts: int = 2,
        retry_wait_seconds: float = 0.2,
    ) -> None:
        self.runner = runner
        self.checks = tuple(checks)
        names = [check.name for check in self.checks]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate preflight checks: {', '.join(duplicates)}")
        self.timeout_seconds = timeout_seconds
        self.concurrency = max(1, concurrency)
        self.attempts = max(1, attempts)
        self.retry_wait_seconds = retry_wait_seconds

    @property
    def check_names(self) -> list[str]:
        return [check.name for check in self.checks]

    async def probe(self, target: HostDescriptor) -> PreflightSnapshot:
        target.validate()
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _bounded(check: PreflightCheck) -> CheckResult:
            async with semaphore:
                return await self._run_check(check, target)

        results = await asyncio.gather(*(_bounded(check) for check in self.checks))
        snapshot = PreflightSnapshot(host=target, results=tuple(results))
        logger.info(
            "preflight_complete",
            host=target.name,
            passed=sum(1 for item in results if item.ok),
            failed=sum(1 for item in results if not item.ok),
        )
        return snapshot

    async def _run_check(self, check: PreflightCheck, target: HostDescriptor) -> CheckResult:
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(
                self._attempt(check, target), timeout=self.timeout_seconds
            )
        except TimeoutError:
            logger.warning("preflight_check_timeout", check=check.name, host=target.name)
            result = CheckResult(name=check.name, ok=False, detail=TIMEOUT_DETAIL)
        except Exception as exc:
            logger.warning("preflight_check_error", check=check.name, error=str(exc))
            result = CheckResult(name=check.name, ok=False, detail=f"error: {exc}")
        duration_ms = int((time.monotonic() - started) * 1000)
        # results are keyed by the declared name regardless of what the check returned
        return CheckResult(
            name=check.name, ok=result.ok, detail=result.detail, duration_ms=duration_ms
        )

    async def _attempt(self, check: PreflightCheck, target: HostDescriptor) -> CheckResult:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_fixed(self.retry_wait_seconds),
            retry=retry_if_exception_type(OSError),
            reraise=True,
        ):
            with attempt:
                return await check.run(target, self.runner)
        raise AssertionError("unreachable")  # pragma: no cover
