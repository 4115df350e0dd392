"""
Tests for the session recorder.

The recorder's tee logic is driven directly with byte chunks; the pty tests
run real shells and are skipped where those are missing.
"""

import io
import os
import pty
import shutil
import termios
import threading

import pytest

from llm_wtg.config import WtgSettings
from llm_wtg.errors import LogOpenFailed, NoSegmentFound, ShellSpawnFailed
from llm_wtg.markers import END, START, iter_marker_lines
from llm_wtg.segmenter import extract_last_segment, scan_segments
from llm_wtg.session import IDLE, INSIDE_COMMAND, SessionRecorder, start_session
from llm_wtg.shell_hooks import SIGNAL_END, SIGNAL_START, format_signal

SESSION = "00112233445566aa"
TOKEN = "a1b2c3d4e5f60718"

START_SIGNAL = format_signal(SIGNAL_START, TOKEN)
END_SIGNAL = format_signal(SIGNAL_END, TOKEN)


@pytest.fixture
def log_path(tmp_path):
    return tmp_path / "session.log"


def make_recorder(path, hooked=True):
    return SessionRecorder(open(path, "ab"), SESSION, TOKEN, hooked=hooked)


def test_signals_become_markers(log_path):
    """Hook signals turn into marker lines; the terminal never sees them."""
    recorder = make_recorder(log_path)
    shown = recorder.process_output(b"$ ls\r\n" + START_SIGNAL + b"a b c\r\n" + END_SIGNAL + b"$ ")
    recorder.finish()

    assert shown == b"$ ls\r\na b c\r\n$ "
    assert extract_last_segment(log_path) == b"a b c\r\n"
    kinds = [m.kind for m in iter_marker_lines(log_path.read_bytes())]
    assert kinds == [START, END]


def test_signal_split_across_reads(log_path):
    """A signal arriving in pieces still counts once."""
    recorder = make_recorder(log_path)
    shown = b""
    for chunk in (START_SIGNAL[:5], START_SIGNAL[5:] + b"out", b"put\n" + END_SIGNAL[:9], END_SIGNAL[9:]):
        shown += recorder.process_output(chunk)
    recorder.finish()

    assert shown == b"output\n"
    assert extract_last_segment(log_path) == b"output\n"


def test_foreign_token_is_output(log_path):
    """A signal with another session's token is passed through as-is."""
    foreign = format_signal(SIGNAL_START, "ffffffffffffffff")
    recorder = make_recorder(log_path)
    shown = recorder.process_output(START_SIGNAL + foreign + END_SIGNAL)
    recorder.finish()

    assert shown == foreign
    assert extract_last_segment(log_path) == foreign


def test_output_without_trailing_newline(log_path):
    """Output that does not end in LF is recovered byte-exact."""
    recorder = make_recorder(log_path)
    recorder.process_output(START_SIGNAL + b"no newline" + END_SIGNAL)
    recorder.finish()
    assert extract_last_segment(log_path) == b"no newline"


def test_empty_command_output(log_path):
    """A command printing nothing yields an empty segment, not an error."""
    recorder = make_recorder(log_path)
    recorder.process_output(START_SIGNAL + END_SIGNAL)
    recorder.finish()
    assert extract_last_segment(log_path) == b""


def test_fallback_boundaries(log_path):
    """Without hooks each Enter closes the open segment and opens the next."""
    recorder = make_recorder(log_path, hooked=False)
    recorder.command_boundary()
    recorder.process_output(b"\r\nfirst\r\n$ ")
    recorder.command_boundary()
    recorder.process_output(b"\r\nsecond\r\n$ ")
    assert recorder.state == INSIDE_COMMAND
    recorder.finish()

    segments = scan_segments(log_path.read_bytes())
    assert [s.complete for s in segments] == [True, False]
    assert extract_last_segment(log_path) == b"\r\nfirst\r\n$ "


def test_start_without_end_is_closed(log_path):
    """Opening a segment while one is open closes the previous one first."""
    recorder = make_recorder(log_path)
    recorder.process_output(START_SIGNAL + b"one\n" + START_SIGNAL + b"two\n" + END_SIGNAL)
    recorder.finish()

    segments = scan_segments(log_path.read_bytes())
    assert [s.content for s in segments] == [b"one\n", b"two\n"]
    assert all(s.complete for s in segments)
    assert recorder.seq == 2


def test_end_without_start_is_ignored(log_path):
    """A stray end signal writes nothing."""
    recorder = make_recorder(log_path)
    recorder.process_output(END_SIGNAL + b"$ ")
    recorder.finish()
    assert log_path.read_bytes() == b"$ "


def test_open_segment_left_open_on_finish(log_path):
    """A command still running when the shell exits keeps its START only."""
    recorder = make_recorder(log_path)
    recorder.process_output(START_SIGNAL + b"done\n" + END_SIGNAL + START_SIGNAL + b"killed")
    assert recorder.state == INSIDE_COMMAND
    recorder.finish()

    assert recorder.log_file.closed
    assert extract_last_segment(log_path) == b"done\n"
    kinds = [m.kind for m in iter_marker_lines(log_path.read_bytes())]
    assert kinds == [START, END, START]


def test_only_open_segment_is_not_context(log_path):
    """A session that only ever had an interrupted command has no context."""
    recorder = make_recorder(log_path)
    recorder.process_output(START_SIGNAL + b"partial")
    recorder.finish()
    with pytest.raises(NoSegmentFound):
        extract_last_segment(log_path)


def test_finish_releases_held_back_bytes(log_path):
    """An unfinished signal prefix at EOF is output after all."""
    recorder = make_recorder(log_path)
    shown = recorder.process_output(b"abc\x1b]69")
    assert shown == b"abc"
    assert recorder.finish() == b"\x1b]69"
    assert log_path.read_bytes() == b"abc\x1b]69"


def test_boundary_after_finish_is_ignored(log_path):
    """An input thread outliving the session cannot write to the closed log."""
    recorder = make_recorder(log_path, hooked=False)
    recorder.command_boundary()
    recorder.process_output(b"ls\r\n")
    recorder.finish()
    before = log_path.read_bytes()

    recorder.command_boundary()
    recorder.process_output(b"late output")

    assert recorder.log_error is None
    assert log_path.read_bytes() == before


def test_appends_to_existing_log(log_path):
    """Existing log content is kept; the new START goes on its own line."""
    log_path.write_bytes(b"older content")
    recorder = make_recorder(log_path)
    recorder.process_output(START_SIGNAL + b"new\n" + END_SIGNAL)
    recorder.finish()

    data = log_path.read_bytes()
    assert data.startswith(b"older content\n<<<wtg:cmd-start:")
    assert extract_last_segment(log_path) == b"new\n"


class FailingLog(io.BytesIO):
    def write(self, data):
        raise OSError(28, "No space left on device")


def test_log_write_failure_keeps_relaying():
    """When the log fails the terminal still gets its output."""
    recorder = SessionRecorder(FailingLog(), SESSION, TOKEN)
    shown = recorder.process_output(START_SIGNAL + b"still here\n" + END_SIGNAL)

    assert shown == b"still here\n"
    assert recorder.log_error is not None
    assert recorder.state == IDLE


def test_log_open_failed(tmp_path):
    """A log path in a missing directory is reported before anything runs."""
    with pytest.raises(LogOpenFailed) as excinfo:
        start_session(tmp_path / "missing" / "session.log", shell="/bin/sh", settings=WtgSettings())
    assert "missing" in excinfo.value.message


def _devnull():
    return os.open(os.devnull, os.O_WRONLY)


def test_shell_spawn_failed_restores_terminal(tmp_path):
    """A shell that cannot be executed is an error, and the terminal is restored."""
    master_fd, slave_fd = pty.openpty()
    out_fd = _devnull()
    try:
        before = termios.tcgetattr(slave_fd)
        with pytest.raises(ShellSpawnFailed):
            start_session(
                tmp_path / "session.log",
                shell="/nonexistent/shell",
                settings=WtgSettings(),
                stdin_fd=slave_fd,
                stdout_fd=out_fd,
            )
        assert termios.tcgetattr(slave_fd) == before
    finally:
        for fd in (master_fd, slave_fd, out_fd):
            os.close(fd)


@pytest.mark.skipif(not os.path.exists("/bin/sh"), reason="needs /bin/sh")
def test_terminal_restored_after_session(tmp_path):
    """Raw mode is undone when the shell exits normally."""
    master_fd, slave_fd = pty.openpty()
    out_fd = _devnull()
    typer = threading.Timer(0.5, os.write, args=(master_fd, b"exit\r"))
    try:
        before = termios.tcgetattr(slave_fd)
        typer.start()
        status = start_session(
            tmp_path / "session.log",
            shell="/bin/sh",
            settings=WtgSettings(),
            stdin_fd=slave_fd,
            stdout_fd=out_fd,
        )
        assert status == 0
        assert termios.tcgetattr(slave_fd) == before
    finally:
        typer.cancel()
        for fd in (master_fd, slave_fd, out_fd):
            os.close(fd)


def _run_shell(tmp_path, monkeypatch, shell, script):
    """Run ``script`` as typed input in a recorded session; return (status, log path)."""
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("TERM", "dumb")
    monkeypatch.delenv("ZDOTDIR", raising=False)
    inputrc = tmp_path / "inputrc"
    inputrc.write_text("set enable-bracketed-paste off\n")
    monkeypatch.setenv("INPUTRC", str(inputrc))

    log_path = tmp_path / "session.log"
    in_r, in_w = os.pipe()
    out_fd = _devnull()
    os.write(in_w, script)
    os.close(in_w)
    try:
        status = start_session(
            log_path,
            shell=shell,
            settings=WtgSettings(),
            stdin_fd=in_r,
            stdout_fd=out_fd,
        )
    finally:
        os.close(in_r)
        os.close(out_fd)
    return status, log_path


def _complete_segments(log_path):
    return [s.content for s in scan_segments(log_path.read_bytes()) if s.complete]


@pytest.mark.skipif(shutil.which("bash") is None, reason="needs bash")
def test_bash_session_end_to_end(tmp_path, monkeypatch):
    """Commands run in a hooked bash session are recoverable from the log."""
    status, log_path = _run_shell(tmp_path, monkeypatch, shutil.which("bash"), b"echo A\necho B\nexit 3\n")

    assert status == 3
    # The pty turns LF into CRLF; the log keeps what the terminal got
    assert extract_last_segment(log_path) == b"B\r\n"
    assert _complete_segments(log_path) == [b"A\r\n", b"B\r\n"]


@pytest.mark.skipif(shutil.which("bash") is None, reason="needs bash")
def test_bash_array_prompt_command(tmp_path, monkeypatch):
    """A user PROMPT_COMMAND array does not leak prompts into segments."""
    (tmp_path / ".bashrc").write_text("PROMPT_COMMAND=(':' 'true')\n")
    status, log_path = _run_shell(tmp_path, monkeypatch, shutil.which("bash"), b"echo A\necho B\nexit\n")

    assert status == 0
    assert _complete_segments(log_path) == [b"A\r\n", b"B\r\n"]


@pytest.mark.skipif(shutil.which("zsh") is None, reason="needs zsh")
def test_zsh_user_zdotdir_from_zshenv(tmp_path, monkeypatch):
    """Hooks stay installed when the user's .zshenv moves ZDOTDIR."""
    user_zdotdir = tmp_path / ".config" / "zsh"
    user_zdotdir.mkdir(parents=True)
    (tmp_path / ".zshenv").write_text('ZDOTDIR="$HOME/.config/zsh"\n')
    (user_zdotdir / ".zshrc").write_text("unsetopt prompt_sp\nPS1='$ '\nwtg_user_rc=loaded\n")
    status, log_path = _run_shell(tmp_path, monkeypatch, shutil.which("zsh"), b"echo A\necho $wtg_user_rc\nexit\n")

    assert status == 0
    assert _complete_segments(log_path) == [b"A\r\n", b"loaded\r\n"]
