from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

import pytest

from shellpilot import cli
from shellpilot.agent.events import SafetyConfirmationRequest, SafetyDecision
from shellpilot.agent.models import Message
from shellpilot.config import AppConfig
from shellpilot.shell import CommandResult, ShellAdapter


class FakeAdapter(ShellAdapter):
    def __init__(self) -> None:
        super().__init__()
        self.calls: list[tuple[str, str | None]] = []

    @property
    def name(self) -> str:
        return "fake"

    def execute(
        self,
        command: str,
        *,
        command_id: str | None = None,
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        self.calls.append((command, cwd))
        return CommandResult(command_id or "c", command, self.name, 0, "file.txt\n", "")


class FakeClient:
    def __init__(self, responses: list[str]) -> None:
        self.responses = responses
        self.system_prompts: list[str] = []

    def chat(self, system_prompt: str, messages: Sequence[Message]) -> str:
        self.system_prompts.append(system_prompt)
        return self.responses.pop(0)


def _install_fakes(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    argv: list[str],
    responses: list[str],
    *,
    working_directory: str | None = None,
) -> tuple[FakeAdapter, FakeClient]:
    adapter = FakeAdapter()
    client = FakeClient(responses)

    def fake_config() -> AppConfig:
        return AppConfig(
            api_key=None,
            model="gpt-4.1-mini",
            api_url="https://api.openai.com/v1/chat/completions",
            log_dir=str(tmp_path / "logs"),
            log_level="WARNING",
            system_prompt="prompt",
            shell="bash",
            working_directory=working_directory,
        )

    monkeypatch.setattr("sys.argv", argv)
    monkeypatch.setattr(cli, "create_shell_adapter", lambda _name: adapter)
    monkeypatch.setattr(cli, "ChatClient", lambda **_kwargs: client)
    monkeypatch.setattr(
        cli,
        "AppConfig",
        type("FakeConfig", (), {"from_env": staticmethod(fake_config)}),
    )
    return adapter, client


def test_parser_defaults() -> None:
    args = cli.build_parser().parse_args([])
    assert args.goal is None
    assert args.working_directory is None


def test_parser_accepts_cwd_override() -> None:
    args = cli.build_parser().parse_args(["--cwd", "./sandbox", "list files"])

    assert args.working_directory == "./sandbox"
    assert args.goal == "list files"


def test_main_rejects_invalid_cwd_from_config(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    _install_fakes(
        monkeypatch,
        tmp_path,
        ["shellpilot", "list files"],
        [],
        working_directory="./definitely-missing-dir",
    )

    assert cli.main() == 1
    assert "Invalid configured cwd directory" in capsys.readouterr().out


def test_main_requires_goal(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    _install_fakes(monkeypatch, tmp_path, ["shellpilot"], [])
    monkeypatch.setattr("builtins.input", lambda _prompt="": "  ")

    assert cli.main() == 1
    assert "No goal provided." in capsys.readouterr().out


def test_main_runs_episode_and_prints_summary(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    work = tmp_path / "work"
    work.mkdir()
    adapter, client = _install_fakes(
        monkeypatch,
        tmp_path,
        ["shellpilot", "--cwd", str(work), "list files"],
        ["```bash\nls\n```", "Mission Report: Found file.txt.\nTask Complete"],
    )

    assert cli.main() == 0

    out = capsys.readouterr().out
    assert adapter.calls == [("ls", str(work.resolve()))]
    assert "[status] Terminal: ls" in out
    assert "[terminal]\n> Executed: `ls` (Exit: 0)" in out
    assert "=== Task Summary [SUCCESS] ===" in out
    assert "Found file.txt." in out
    assert "Runtime environment context:" in client.system_prompts[0]
    assert list((tmp_path / "logs").glob("session-*.log"))


def test_main_stops_when_user_gives_no_guidance(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    adapter, _client = _install_fakes(
        monkeypatch,
        tmp_path,
        ["shellpilot", "deploy"],
        ["[ASK_USER] Which environment should I target?"],
    )
    monkeypatch.setattr("builtins.input", lambda _prompt="": "q")

    assert cli.main() == 0

    out = capsys.readouterr().out
    assert adapter.calls == []
    assert "Which environment should I target?" in out
    assert "Stopped by user" in out


def test_build_runtime_context_contains_shell_and_directory() -> None:
    context = cli.build_runtime_context("bash", "/tmp/work")

    assert "Runtime environment context:" in context
    assert "shell: bash" in context
    assert "starting_working_directory: /tmp/work" in context


def _request(risk: str, allow_all_option: bool) -> SafetyConfirmationRequest:
    return SafetyConfirmationRequest(
        command="pip install flask",
        risk=risk,  # type: ignore[arg-type]
        impact="Installs Python packages into the active environment.",
        session_id="s1",
        allow_all_option=allow_all_option,
    )


@pytest.mark.parametrize(
    ("answer", "allow_all_option", "expected"),
    [
        ("y", False, SafetyDecision(approved=True)),
        ("", False, SafetyDecision(approved=False)),
        ("a", True, SafetyDecision(approved=True, allow_all=True)),
        ("a", False, SafetyDecision(approved=False)),
        ("yes", True, SafetyDecision(approved=True)),
    ],
)
def test_confirm_safety_prompt(
    monkeypatch: pytest.MonkeyPatch,
    answer: str,
    allow_all_option: bool,
    expected: SafetyDecision,
) -> None:
    monkeypatch.setattr("builtins.input", lambda _prompt="": answer)

    assert cli._confirm_safety(_request("low", allow_all_option)) == expected
