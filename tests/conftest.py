import asyncio
from collections.abc import Callable, Mapping
from pathlib import Path

import pytest

from hostrunner.operations import Operation, OperationResult
from hostrunner.preflight import CheckResult, HostDescriptor, PreflightSnapshot


class FakeRunner:
    """Records operations and answers from a table keyed by argv prefix."""

    def __init__(
        self,
        responses: Mapping[tuple[str, ...], OperationResult] | None = None,
        *,
        hang_on: tuple[str, ...] | None = None,
    ) -> None:
        self.responses = dict(responses or {})
        self.hang_on = hang_on
        self.operations: list[Operation] = []
        self.envs: list[dict[str, str]] = []
        self.cancelled: list[Operation] = []

    @property
    def argvs(self) -> list[tuple[str, ...]]:
        return [operation.argv for operation in self.operations]

    async def run(
        self,
        operation: Operation,
        *,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> OperationResult:
        _ = timeout
        self.operations.append(operation)
        self.envs.append(dict(env or {}))
        if self.hang_on is not None and operation.argv[: len(self.hang_on)] == self.hang_on:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.cancelled.append(operation)
                raise
        for prefix, result in sorted(self.responses.items(), key=lambda item: -len(item[0])):
            if operation.argv[: len(prefix)] == prefix:
                return result
        return OperationResult(exit_code=0, stdout="")


@pytest.fixture
def playbook_root(tmp_path: Path) -> Path:
    scripts = tmp_path / "scripts"
    scripts.mkdir()
    (scripts / "bootstrap-mac-host.sh").write_text("#!/bin/bash\n", encoding="utf-8")
    (scripts / "run-bootstrap-and-verify.sh").write_text("#!/bin/bash\n", encoding="utf-8")
    (tmp_path / "implementation").mkdir()
    return tmp_path


@pytest.fixture
def host(playbook_root: Path) -> HostDescriptor:
    return HostDescriptor.for_playbook(playbook_root)


@pytest.fixture
def make_snapshot(host: HostDescriptor) -> Callable[..., PreflightSnapshot]:
    def _make(
        *,
        sudo_cached: bool = True,
        tailscale_cli: bool = True,
        tailscale_running: bool = True,
        target: HostDescriptor | None = None,
    ) -> PreflightSnapshot:
        return PreflightSnapshot(
            host=target or host,
            results=(
                CheckResult("bootstrap_script_present", True, "scripts/bootstrap-mac-host.sh"),
                CheckResult("verify_script_present", True, "scripts/run-bootstrap-and-verify.sh"),
                CheckResult(
                    "tailscale_cli",
                    tailscale_cli,
                    "/usr/local/bin/tailscale" if tailscale_cli else None,
                ),
                CheckResult("sudo_cached", sudo_cached),
                CheckResult("tailscale_running", tailscale_running),
                CheckResult(
                    "tailscale_ip", tailscale_running, "100.64.0.7" if tailscale_running else None
                ),
            ),
        )

    return _make
