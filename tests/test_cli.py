import json
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner
from conftest import FakeRunner

from hostrunner.cli import cli
from hostrunner.operations import OperationResult

COLD_HOST = {
    ("sudo", "-n", "true"): OperationResult(1, stderr="sudo: a password is required"),
    ("tailscale",): OperationResult(1, stderr="Tailscale is stopped."),
}


@pytest.fixture
def fake_runner(monkeypatch: pytest.MonkeyPatch) -> FakeRunner:
    runner = FakeRunner({("tailscale", "ip"): OperationResult(0, stdout="100.64.0.7\n")})
    monkeypatch.setattr("hostrunner.cli._build_runner", lambda settings, host: runner)
    return runner


class ColdHostRunner(FakeRunner):
    """Reports a stopped node until `tailscale up` has run."""

    async def run(self, operation, **kwargs):
        result = await super().run(operation, **kwargs)
        if operation.argv[2:4] == ("tailscale", "up"):
            self.responses.pop(("tailscale",), None)
        return result


@pytest.fixture
def cold_runner(monkeypatch: pytest.MonkeyPatch) -> ColdHostRunner:
    runner = ColdHostRunner({**COLD_HOST, ("tailscale", "ip"): OperationResult(1)})
    monkeypatch.setattr("hostrunner.cli._build_runner", lambda settings, host: runner)
    return runner


@pytest.fixture
def logging_calls(monkeypatch: pytest.MonkeyPatch) -> list[dict[str, Any]]:
    calls: list[dict[str, Any]] = []
    monkeypatch.setattr("hostrunner.cli.configure_logging", lambda **kwargs: calls.append(kwargs))
    return calls


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in (
        "AUTO_CONFIRM",
        "DRY_RUN",
        "TAILSCALE_AUTH_KEY",
        "ANTHROPIC_API_KEY",
        "OPENAI_API_KEY",
        "HOSTRUNNER_LOG_FORMAT",
        "HOSTRUNNER_UNATTENDED_KEY",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr("hostrunner.preflight.shutil.which", lambda name: f"/opt/bin/{name}")


def test_tasks_lists_registered_handlers() -> None:
    result = CliRunner().invoke(cli, ["tasks"])

    assert result.exit_code == 0, result.output
    for name in ("bootstrap", "provision", "tailscale-status", "client-advisor"):
        assert name in result.output
    assert "[read-files, run-shell, search-files]" in result.output


def test_preflight_prints_snapshot_json(
    playbook_root: Path, fake_runner: FakeRunner, logging_calls: list[dict[str, Any]]
) -> None:
    result = CliRunner().invoke(cli, ["preflight", "--root", str(playbook_root)])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["privileged_credential_cached"] is True
    assert payload["tailscale_ips"] == ["100.64.0.7"]
    assert len(payload["checks"]) == 6
    assert logging_calls == [{"json_output": False, "level": "WARNING"}]


def test_preflight_text_format(playbook_root: Path, fake_runner: FakeRunner, logging_calls) -> None:
    result = CliRunner().invoke(
        cli, ["preflight", "--format", "text", "--root", str(playbook_root)]
    )

    assert result.exit_code == 0, result.output
    assert "Preflight snapshot from orchestrator:" in result.output


def test_run_warm_host_is_idempotent(
    playbook_root: Path, fake_runner: FakeRunner, logging_calls
) -> None:
    result = CliRunner().invoke(cli, ["run", "provision", "--root", str(playbook_root)])

    assert result.exit_code == 0, result.output
    assert "dependency already present" in result.output
    assert "service already running" in result.output
    assert "Done." in result.output
    preflight_argvs = {("sudo", "-n", "true"), ("tailscale", "status"), ("tailscale", "ip")}
    assert set(fake_runner.argvs) == preflight_argvs


def test_run_jsonl_output_emits_one_object_per_event(
    playbook_root: Path, fake_runner: FakeRunner, logging_calls
) -> None:
    result = CliRunner().invoke(
        cli, ["run", "provision", "--output", "jsonl", "--root", str(playbook_root)]
    )

    assert result.exit_code == 0, result.output
    events = [json.loads(line) for line in result.stdout.splitlines() if line.startswith("{")]
    assert [event["type"] for event in events] == ["text", "text", "completed"]
    assert "Done." not in result.stdout


def test_run_unknown_task_exits_nonzero(
    playbook_root: Path, fake_runner: FakeRunner, logging_calls
) -> None:
    result = CliRunner().invoke(cli, ["run", "nonexistent-task", "--root", str(playbook_root)])

    assert result.exit_code == 1
    assert "UnknownTask" in result.output


def test_run_auto_without_credential_names_missing_key(
    playbook_root: Path, fake_runner: FakeRunner, logging_calls
) -> None:
    result = CliRunner().invoke(cli, ["run", "provision", "--auto", "--root", str(playbook_root)])

    assert result.exit_code == 1
    assert "[gating] GatingUnsatisfied" in result.output
    assert "TAILSCALE_AUTH_KEY" in result.output


def test_auto_confirm_can_come_from_env_files(
    playbook_root: Path, cold_runner: ColdHostRunner, logging_calls
) -> None:
    (playbook_root / ".env").write_text("AUTO_CONFIRM=1\n", encoding="utf-8")
    (playbook_root / ".env.local").write_text("TAILSCALE_AUTH_KEY=tskey-local\n", encoding="utf-8")

    result = CliRunner().invoke(cli, ["run", "provision", "--root", str(playbook_root)])

    assert result.exit_code == 0, result.output
    assert "tskey-local" not in result.output
    assert "--auth-key=***" in result.output


def test_run_dry_run_reports_plan(
    playbook_root: Path, cold_runner: ColdHostRunner, logging_calls, monkeypatch
) -> None:
    monkeypatch.setattr("hostrunner.preflight.shutil.which", lambda name: None)

    result = CliRunner().invoke(
        cli, ["run", "provision", "--dry-run", "--root", str(playbook_root)]
    )

    assert result.exit_code == 0, result.output
    assert "[dry-run] install: would run brew install tailscale" in result.output
    assert ("brew", "install", "tailscale") not in cold_runner.argvs


def test_run_cold_host_prompts_before_privileged_steps(
    playbook_root: Path, cold_runner: ColdHostRunner, logging_calls
) -> None:
    result = CliRunner().invoke(
        cli, ["run", "provision", "--root", str(playbook_root)], input="y\n"
    )

    assert result.exit_code == 0, result.output
    assert "Run privileged steps now?" in result.output
    assert ("sudo", "-v") in cold_runner.argvs
    assert "configure:" in result.output


def test_run_cold_host_declined_prompt_fails(
    playbook_root: Path, cold_runner: ColdHostRunner, logging_calls
) -> None:
    result = CliRunner().invoke(
        cli, ["run", "provision", "--root", str(playbook_root)], input="n\n"
    )

    assert result.exit_code == 1
    assert "Operator declined" in result.output
    assert ("sudo", "-v") not in cold_runner.argvs


def test_run_cold_host_without_an_answer_is_declined(
    playbook_root: Path, cold_runner: ColdHostRunner, logging_calls
) -> None:
    result = CliRunner().invoke(cli, ["run", "provision", "--root", str(playbook_root)])

    assert result.exit_code == 1
    assert "Operator declined" in result.output
    assert not any(argv[:3] == ("sudo", "-n", "tailscale") for argv in cold_runner.argvs)


def test_unattended_token_file_satisfies_auto_mode(
    playbook_root: Path, cold_runner: ColdHostRunner, logging_calls, tmp_path: Path
) -> None:
    token_file = tmp_path / "auth-key"
    token_file.write_text("tskey-from-file\n", encoding="utf-8")

    result = CliRunner().invoke(
        cli,
        [
            "run",
            "provision",
            "--auto",
            "--unattended-token-file",
            str(token_file),
            "--root",
            str(playbook_root),
        ],
    )

    assert result.exit_code == 0, result.output
    assert "Run privileged steps now?" not in result.output
    assert "--auth-key=***" in result.output
    assert "tskey-from-file" not in result.output
    assert "--auth-key=tskey-from-file" in cold_runner.argvs[-2]


def test_env_file_option_overrides_defaults(
    playbook_root: Path, fake_runner: FakeRunner, logging_calls, tmp_path: Path
) -> None:
    (playbook_root / ".env").write_text("HOSTRUNNER_LOG_FORMAT=console\n", encoding="utf-8")
    override = tmp_path / "override.env"
    override.write_text("HOSTRUNNER_LOG_FORMAT=json\n", encoding="utf-8")

    result = CliRunner().invoke(
        cli, ["preflight", "--root", str(playbook_root), "--env-file", str(override)]
    )

    assert result.exit_code == 0, result.output
    assert logging_calls == [{"json_output": True, "level": "WARNING"}]


def test_malformed_env_file_is_a_config_error(
    playbook_root: Path, fake_runner: FakeRunner, logging_calls
) -> None:
    (playbook_root / ".env.local").write_text("not a binding at all\n", encoding="utf-8")

    result = CliRunner().invoke(cli, ["run", "provision", "--root", str(playbook_root)])

    assert result.exit_code == 1
    assert "[config] Malformed configuration source local-secrets:1" in result.output
    assert fake_runner.operations == []


def test_missing_root_fails_in_preflight_phase(
    tmp_path: Path, fake_runner: FakeRunner, logging_calls
) -> None:
    result = CliRunner().invoke(cli, ["preflight", "--root", str(tmp_path / "nowhere")])

    assert result.exit_code == 1
    assert "[preflight]" in result.output
