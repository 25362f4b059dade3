"""Exit-code routing of the process entrypoint."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from cruise_orchestrator.config.loader import ConfigLoadError
from cruise_orchestrator.main import ExitCode, cli_entrypoint
from cruise_orchestrator.runner.claude_cli import RunnerUnavailableError
from cruise_orchestrator.ui import cli
from cruise_orchestrator.vcs.base import VcsError

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence


def _raising(exc: BaseException) -> Callable[[Sequence[str] | None], int]:
    def run(argv: Sequence[str] | None = None) -> int:
        raise exc

    return run


def test_argparse_errors_keep_their_code(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli_entrypoint([]) == ExitCode.CONFIG_ERROR
    assert "usage: cruise" in capsys.readouterr().err


def test_help_exits_successfully(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli_entrypoint(["--help"]) == ExitCode.SUCCESS
    assert "cruise review 42" in capsys.readouterr().out


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (ConfigLoadError("config file not found: x"), ExitCode.CONFIG_ERROR),
        (VcsError("gh pr view failed: not logged in"), ExitCode.COLLABORATOR_ERROR),
        (RunnerUnavailableError("claude not found on PATH"), ExitCode.COLLABORATOR_ERROR),
        (FileNotFoundError("plan.yaml"), ExitCode.CONFIG_ERROR),
    ],
)
def test_known_errors_map_to_exit_codes(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
    exc: BaseException,
    expected: ExitCode,
) -> None:
    monkeypatch.setattr(cli, "run_cli", _raising(exc))

    assert cli_entrypoint(["config"]) == expected
    assert str(exc) in capsys.readouterr().err


def test_wrapped_collaborator_error_is_found_in_the_chain(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    try:
        try:
            raise VcsError("api rate limited")
        except VcsError as inner:
            raise RuntimeError("review round failed") from inner
    except RuntimeError as outer:
        wrapped = outer

    monkeypatch.setattr(cli, "run_cli", _raising(wrapped))

    assert cli_entrypoint(["review", "1"]) == ExitCode.COLLABORATOR_ERROR


def test_unexpected_errors_print_a_traceback(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr(cli, "run_cli", _raising(RuntimeError("boom")))

    assert cli_entrypoint(["config"]) == ExitCode.INTERNAL_ERROR
    assert "Traceback" in capsys.readouterr().err


def test_unknown_return_codes_become_internal_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "run_cli", lambda argv=None: 17)

    assert cli_entrypoint(["config"]) == ExitCode.INTERNAL_ERROR
