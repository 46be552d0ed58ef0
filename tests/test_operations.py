import asyncio
from pathlib import Path
from typing import Any

import pytest

from hostrunner.errors import CapabilityRefusedError
from hostrunner.operations import CommandPolicy, Operation, OperationResult, SubprocessRunner

POLICY = CommandPolicy(executables=frozenset({"brew", "sudo", "tailscale", "true"}))


class FakeProcess:
    def __init__(self, returncode: int = 0, stdout: bytes = b"", stderr: bytes = b"") -> None:
        self._final = returncode
        self.returncode: int | None = None
        self._stdout = stdout
        self._stderr = stderr
        self.hang = False
        self.terminated = False
        self._exited = asyncio.Event()

    async def communicate(self) -> tuple[bytes, bytes]:
        if self.hang:
            await self._exited.wait()
        self.returncode = self._final
        return self._stdout, self._stderr

    def terminate(self) -> None:
        self.terminated = True
        self.returncode = -15
        self._exited.set()

    def kill(self) -> None:
        self.returncode = -9
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode if self.returncode is not None else 0


def _patch_exec(monkeypatch: pytest.MonkeyPatch, process: FakeProcess) -> list[dict[str, Any]]:
    calls: list[dict[str, Any]] = []

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        calls.append({"argv": args, **kwargs})
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    return calls


def test_display_redacts_secrets() -> None:
    operation = Operation(
        capability="run-shell",
        argv=("sudo", "-n", "tailscale", "up", "--auth-key=tskey-secret"),
        secrets=("tskey-secret",),
    )

    assert operation.display() == "sudo -n tailscale up --auth-key=***"


def test_policy_allows_listed_executables() -> None:
    POLICY.check(Operation("run-shell", ("brew", "install", "tailscale")))
    POLICY.check(Operation("run-shell", ("/opt/homebrew/bin/brew", "--version")))
    POLICY.check(Operation("run-shell", ("sudo", "-n", "true")))


@pytest.mark.parametrize(
    "argv",
    [
        ("rm", "-rf", "/"),
        ("./brew", "install"),
        ("sudo", "-n", "rm", "-rf", "/"),
        ("/bin/sh", "-c", "tailscale up"),
        (),
    ],
)
def test_policy_refuses_everything_else(argv: tuple[str, ...]) -> None:
    with pytest.raises(CapabilityRefusedError):
        POLICY.check(Operation("run-shell", argv))


def test_policy_trusts_scripts_directory(tmp_path: Path) -> None:
    script = tmp_path / "scripts" / "bootstrap-mac-host.sh"
    script.parent.mkdir()
    script.write_text("#!/bin/bash\n", encoding="utf-8")
    policy = CommandPolicy(executables=frozenset(), trusted_dirs=(tmp_path / "scripts",))

    policy.check(Operation("run-shell", (str(script),)))
    with pytest.raises(CapabilityRefusedError):
        policy.check(Operation("run-shell", (str(tmp_path / "elsewhere.sh"),)))


def test_refused_operation_never_spawns(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _patch_exec(monkeypatch, FakeProcess())

    with pytest.raises(CapabilityRefusedError):
        asyncio.run(SubprocessRunner(POLICY).run(Operation("run-shell", ("curl", "evil"))))

    assert calls == []


def test_runner_captures_output_and_merges_env(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _patch_exec(monkeypatch, FakeProcess(0, stdout=b"100.64.0.7\n"))
    runner = SubprocessRunner(POLICY, cwd=Path("/tmp"))

    result = asyncio.run(
        runner.run(Operation("run-shell", ("tailscale", "ip")), env={"DRY_RUN": "1"})
    )

    assert result.ok
    assert result.stdout == "100.64.0.7\n"
    assert calls[0]["argv"] == ("tailscale", "ip")
    assert calls[0]["env"]["DRY_RUN"] == "1"
    assert calls[0]["cwd"] == "/tmp"
    assert calls[0]["stdout"] == asyncio.subprocess.PIPE


def test_interactive_operations_inherit_the_terminal(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = _patch_exec(monkeypatch, FakeProcess(0))

    asyncio.run(
        SubprocessRunner(POLICY).run(Operation("run-shell", ("sudo", "-v"), interactive=True))
    )

    assert calls[0]["stdin"] is None
    assert calls[0]["stdout"] is None


def test_runner_terminates_on_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    process = FakeProcess(0)
    process.hang = True
    _patch_exec(monkeypatch, process)

    result = asyncio.run(
        SubprocessRunner(POLICY).run(Operation("run-shell", ("tailscale", "status")), timeout=0.05)
    )

    assert result.timed_out is True
    assert result.ok is False
    assert process.terminated is True


def test_runner_kills_child_when_cancelled(monkeypatch: pytest.MonkeyPatch) -> None:
    process = FakeProcess(0)
    process.hang = True
    _patch_exec(monkeypatch, process)

    async def _run() -> None:
        task = asyncio.create_task(
            SubprocessRunner(POLICY).run(Operation("run-shell", ("brew", "install", "tailscale")))
        )
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(_run())

    assert process.terminated is True


def test_missing_executable_maps_to_127(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    result = asyncio.run(SubprocessRunner(POLICY).run(Operation("run-shell", ("tailscale",))))

    assert result.exit_code == 127
    assert "tailscale" in result.stderr


def test_result_tail_prefers_stdout() -> None:
    assert OperationResult(0, stdout="ok\n", stderr="warn").tail() == "ok"
    assert OperationResult(1, stdout="", stderr="boom\n").tail() == "boom"
