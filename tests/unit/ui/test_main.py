"""Exit-code routing at the process boundary."""

from __future__ import annotations

import pytest

from agent_foreman.config.loader import ConfigLoadError
from agent_foreman.config.schema import ConfigValidationError, ConfigValidationIssue
from agent_foreman.main import ExitCode, cli_entrypoint, route_exception
from agent_foreman.producer.base import ProducerError
from agent_foreman.ui import cli as cli_module


def _chained(outer: BaseException, inner: BaseException) -> BaseException:
    try:
        try:
            raise inner
        except BaseException as exc:
            raise outer from exc
    except BaseException as exc:  # noqa: BLE001
        return exc


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (ConfigLoadError("bad toml"), ExitCode.CONFIG_ERROR),
        (ConfigValidationError((ConfigValidationIssue("git.remote", "must be a string"),)), ExitCode.CONFIG_ERROR),
        (FileNotFoundError("tickets.md"), ExitCode.CONFIG_ERROR),
        (ValueError("interval_seconds must be > 0"), ExitCode.CONFIG_ERROR),
        (ProducerError("rate limited", provider="openrouter"), ExitCode.PRODUCER_ERROR),
        (ModuleNotFoundError("No module named 'openai'", name="openai"), ExitCode.PRODUCER_ERROR),
        (ModuleNotFoundError("No module named 'yaml'", name="yaml"), ExitCode.INTERNAL_ERROR),
        (RuntimeError("boom"), ExitCode.INTERNAL_ERROR),
    ],
)
def test_route_exception(exc: BaseException, expected: ExitCode) -> None:
    assert route_exception(exc) is expected


def test_route_exception_follows_the_cause_chain() -> None:
    wrapped = _chained(RuntimeError("agent run failed"), ProducerError("upstream 502", provider="openrouter"))

    assert route_exception(wrapped) is ExitCode.PRODUCER_ERROR


def test_internal_errors_print_a_traceback(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    def explode(argv: object) -> int:
        raise RuntimeError("state corrupted")

    monkeypatch.setattr(cli_module, "run_cli", explode)

    assert cli_entrypoint(["status"]) == ExitCode.INTERNAL_ERROR
    assert "Traceback" in capsys.readouterr().err


def test_producer_errors_print_one_line(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    def explode(argv: object) -> int:
        raise ProducerError("authentication failed", provider="openrouter")

    monkeypatch.setattr(cli_module, "run_cli", explode)

    assert cli_entrypoint(["ai-workflow", "#1"]) == ExitCode.PRODUCER_ERROR
    err = capsys.readouterr().err
    assert err.startswith("error: ")
    assert "Traceback" not in err


def test_help_exits_cleanly(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli_entrypoint(["--help"]) == ExitCode.SUCCESS
    assert "foreman" in capsys.readouterr().out


def test_usage_errors_keep_argparse_status(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli_entrypoint(["resources", "report", "fortnight"]) == ExitCode.CONFIG_ERROR
    assert "invalid choice" in capsys.readouterr().err
