"""
Tests for the wtg command line.
"""

import pytest
from click.testing import CliRunner

from llm_wtg import cli as cli_module
from llm_wtg.cli import cli
from llm_wtg.config import get_settings
from llm_wtg.errors import LogOpenFailed, ModelError
from llm_wtg.markers import end_record, make_marker_id, start_record

SESSION = "feedfacecafebeef"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("WTG_LOG", "WTG_LLM", "WTG_PROMPT", "WTG_OPENAI_KEY", "WTG_SHELL", "WTG_DEBUG_LOG"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def log_file(tmp_path):
    path = tmp_path / "session.log"
    data = b""
    for seq, out in enumerate([b"first\n", b"\x1b[1msecond\x1b[0m\r\n"], start=1):
        marker_id = make_marker_id(SESSION, seq)
        data += start_record(marker_id, True) + out + end_record(marker_id)
    path.write_bytes(data)
    return path


def test_context_prints_raw_bytes(runner, log_file):
    """The context command prints the segment exactly as recorded."""
    result = runner.invoke(cli, ["context", "-l", str(log_file)])
    assert result.exit_code == 0
    assert result.stdout_bytes == b"\x1b[1msecond\x1b[0m\r\n"


def test_context_text_and_count(runner, log_file):
    """--text cleans the output; -n selects several commands."""
    result = runner.invoke(cli, ["context", "-l", str(log_file), "-n", "2", "--text"])
    assert result.exit_code == 0
    assert result.stdout == "first\nsecond\n"


def test_context_all(runner, log_file):
    """--all prints every completed command."""
    result = runner.invoke(cli, ["context", "-l", str(log_file), "--all"])
    assert result.stdout_bytes == b"first\n\x1b[1msecond\x1b[0m\r\n"


def test_context_from_env(runner, log_file, monkeypatch):
    """WTG_LOG is used when no log file is given."""
    monkeypatch.setenv("WTG_LOG", str(log_file))
    result = runner.invoke(cli, ["context", "--text"])
    assert result.exit_code == 0
    assert result.stdout == "second\n"


def test_missing_log_is_an_error(runner, tmp_path):
    """A missing log exits 1 with an actionable message."""
    result = runner.invoke(cli, ["context", "-l", str(tmp_path / "nope.log")])
    assert result.exit_code == 1
    assert "Log file not found" in result.output


def test_no_log_source(runner):
    """Without a pipe, a log argument or WTG_LOG there is nothing to ask about."""
    result = runner.invoke(cli, ["query"])
    assert result.exit_code == 1
    assert "No log file given" in result.output


def test_no_command_yet(runner, tmp_path):
    """An empty log reports that no command has run."""
    log = tmp_path / "empty.log"
    log.write_bytes(b"")
    result = runner.invoke(cli, ["context", "-l", str(log)])
    assert result.exit_code == 1
    assert "No command run yet" in result.output


def fake_llm(monkeypatch, calls):
    monkeypatch.setattr(cli_module, "get_model", lambda model_id=None: f"model:{model_id}")

    def fake_stream_query(context, prompt, model, key=None):
        calls.append((context, prompt, model, key))
        yield "It printed "
        yield "**second**."

    monkeypatch.setattr(cli_module, "stream_query", fake_stream_query)


def test_query_uses_last_segment(runner, log_file, monkeypatch):
    """query sends the last command's output with the given prompt and model."""
    calls = []
    fake_llm(monkeypatch, calls)
    result = runner.invoke(cli, ["query", "-l", str(log_file), "-p", "what?", "-m", "m1", "--no-stream"])

    assert result.exit_code == 0, result.output
    assert calls == [(b"\x1b[1msecond\x1b[0m\r\n", "what?", "model:m1", None)]
    assert "It printed" in result.output


def test_query_defaults_from_env(runner, log_file, monkeypatch):
    """Prompt, model and key default to the WTG_* settings."""
    monkeypatch.setenv("WTG_LOG", str(log_file))
    monkeypatch.setenv("WTG_PROMPT", "explain")
    monkeypatch.setenv("WTG_LLM", "m2")
    monkeypatch.setenv("WTG_OPENAI_KEY", "sk-env")
    calls = []
    fake_llm(monkeypatch, calls)
    result = runner.invoke(cli, ["q", "--no-stream"])

    assert result.exit_code == 0, result.output
    assert calls[0][1:] == ("explain", "model:m2", "sk-env")


def test_query_piped_input(runner, log_file, monkeypatch):
    """Piped input replaces the log as context."""
    calls = []
    fake_llm(monkeypatch, calls)
    result = runner.invoke(cli, ["query", "-l", str(log_file), "--no-stream"], input=b"piped text\n")

    assert result.exit_code == 0, result.output
    assert calls[0][0] == b"piped text\n"


def test_query_model_error(runner, log_file, monkeypatch):
    """Model failures are reported, not raised."""
    def broken(model_id=None):
        raise ModelError("Model nope is not available.")

    monkeypatch.setattr(cli_module, "get_model", broken)
    result = runner.invoke(cli, ["query", "-l", str(log_file)])
    assert result.exit_code == 1
    assert "Model nope is not available." in result.output


def test_query_count_must_be_positive(runner, log_file):
    """-n 0 is rejected by option validation."""
    result = runner.invoke(cli, ["query", "-l", str(log_file), "-n", "0"])
    assert result.exit_code == 2


def test_chat_requires_tty(runner, log_file):
    """chat refuses to run with non-interactive stdin."""
    result = runner.invoke(cli, ["c", "-l", str(log_file)])
    assert result.exit_code == 1
    assert "tty" in result.output


def test_start_runs_session(runner, tmp_path, monkeypatch):
    """start hands over to the recorder and exits with the shell's status."""
    seen = {}

    def fake_start_session(logfile, shell=None, settings=None):
        seen.update(logfile=logfile, shell=shell)
        return 5

    monkeypatch.setattr(cli_module, "start_session", fake_start_session)
    result = runner.invoke(cli, ["s", str(tmp_path / "a.log"), "--shell", "/bin/zsh"])

    assert result.exit_code == 5
    assert seen == {"logfile": tmp_path / "a.log", "shell": "/bin/zsh"}
    assert "Starting wtg session" in result.output


def test_start_warns_when_nested(runner, tmp_path, monkeypatch):
    """Starting inside a session is allowed but called out."""
    monkeypatch.setenv("WTG_LOG", str(tmp_path / "outer.log"))
    monkeypatch.setattr(cli_module, "start_session", lambda logfile, shell=None, settings=None: 0)
    result = runner.invoke(cli, ["start", str(tmp_path / "inner.log")])
    assert result.exit_code == 0
    assert "Already inside a wtg session" in result.output


def test_start_error(runner, tmp_path, monkeypatch):
    """Recorder errors exit 1 with their message."""
    def failing(logfile, shell=None, settings=None):
        raise LogOpenFailed(str(logfile), "Permission denied")

    monkeypatch.setattr(cli_module, "start_session", failing)
    result = runner.invoke(cli, ["start", str(tmp_path / "x.log")])
    assert result.exit_code == 1
    assert "Failed to open log file" in result.output


def test_unknown_command(runner):
    """Unknown subcommands are usage errors."""
    result = runner.invoke(cli, ["x"])
    assert result.exit_code == 2
