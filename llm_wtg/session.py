"""PTY session recorder.

Runs the user's shell inside a pseudo-terminal and relays both directions:

- input thread: controlling terminal -> pty (raw passthrough)
- output loop (main thread): pty -> real terminal and log file (tee)

The log copy gets marker lines around each command's output. In hooked
shells (bash, zsh) the boundaries come from in-band signals printed by the
shell hooks; in any other shell every Enter keypress is a boundary.

The log is opened in append mode and never truncated. A command still
running when the shell exits keeps its START without an END; the segmenter
skips such segments.
"""

import contextlib
import errno
import fcntl
import logging
import os
import pty
import select
import shutil
import signal
import struct
import sys
import tempfile
import termios
import threading
import tty
from pathlib import Path
from typing import BinaryIO, Optional, Union

from .config import LOG_ENV_VAR, TOKEN_ENV_VAR, WtgSettings, get_settings
from .errors import LogOpenFailed, PtyAllocationFailed, RelayFailed, ShellSpawnFailed
from .markers import end_record, make_marker_id, new_session_id, start_record
from .shell_hooks import (
    SIGNAL_START,
    ShellLaunch,
    SignalScanner,
    contains_enter,
    new_token,
    prepare_shell,
    user_shell,
)

logger = logging.getLogger(__name__)

IDLE = "idle"
INSIDE_COMMAND = "inside-command"

# rows, cols, xpixel, ypixel
DEFAULT_WINSIZE = struct.pack("HHHH", 24, 80, 0, 0)
EXEC_FAILED_STATUS = 127
MAX_TRANSIENT_ERRORS = 3


class SessionRecorder:
    """Delimiter state and log writes for one session.

    Only bytes and boundary events go in; the recorder knows nothing about
    file descriptors, so the tee can be driven without a pty.
    """

    def __init__(self, log_file: BinaryIO, session_id: str, token: str, hooked: bool = True):
        self.log_file = log_file
        self.session_id = session_id
        self.hooked = hooked
        self.scanner = SignalScanner(token)
        self.state = IDLE
        self.seq = 0
        self.current_id: Optional[str] = None
        self.log_error: Optional[OSError] = None
        self.finished = False
        self._at_line_start = log_file.tell() == 0
        self._lock = threading.Lock()

    def process_output(self, data: bytes) -> bytes:
        """Tee a chunk of pty output.

        Returns:
            The bytes for the real terminal: the chunk minus boundary signals.
            The log receives the same bytes with marker lines in place of the
            signals.
        """
        out = []
        for item in self.scanner.feed(data):
            if isinstance(item, bytes):
                out.append(item)
                with self._lock:
                    self._write(item)
            elif item == SIGNAL_START:
                self.open_segment()
            else:
                self.close_segment()
        return b"".join(out)

    def command_boundary(self) -> None:
        """Enter pressed in an unhooked shell: close the open segment, open the next."""
        self.close_segment()
        self.open_segment()

    def open_segment(self) -> None:
        with self._lock:
            if self.state == INSIDE_COMMAND:
                logger.debug("Segment %s had no end signal, closing it", self.current_id)
                self._write(end_record(self.current_id))
            self.seq += 1
            self.current_id = make_marker_id(self.session_id, self.seq)
            self._write(start_record(self.current_id, self._at_line_start))
            self.state = INSIDE_COMMAND

    def close_segment(self) -> None:
        with self._lock:
            if self.state != INSIDE_COMMAND:
                return
            self._write(end_record(self.current_id))
            self.state = IDLE
            self.current_id = None

    def finish(self) -> bytes:
        """Flush held-back output and close the log.

        Returns:
            Output still owed to the terminal
        """
        rest = self.scanner.flush()
        with self._lock:
            if rest:
                self._write(rest)
            if self.state == INSIDE_COMMAND:
                logger.debug("Shell exited inside segment %s, leaving it open", self.current_id)
            self.log_file.close()
            self.finished = True
        return rest

    def _write(self, data: bytes) -> None:
        # A late input thread may still report a boundary after finish()
        if self.finished or self.log_error is not None:
            return
        try:
            self.log_file.write(data)
            self.log_file.flush()
        except OSError as e:
            self.log_error = e
            logger.error("Log write failed, recording stopped: %s", e)
            return
        self._at_line_start = data.endswith(b"\n")


@contextlib.contextmanager
def raw_mode(fd: int):
    """Put a terminal in raw mode, restoring its attributes on every exit path.

    No-op when ``fd`` is not a terminal (piped input).
    """
    if not os.isatty(fd):
        yield
        return
    saved = termios.tcgetattr(fd)
    try:
        tty.setraw(fd)
        yield
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, saved)


def get_winsize(fd: int) -> bytes:
    """Packed window size of a terminal, or 24x80 if it has none."""
    try:
        return fcntl.ioctl(fd, termios.TIOCGWINSZ, b"\0" * 8)
    except OSError:
        return DEFAULT_WINSIZE


def copy_winsize(src_fd: int, master_fd: int) -> None:
    """Give the pty the controlling terminal's size (the kernel signals the child)."""
    try:
        fcntl.ioctl(master_fd, termios.TIOCSWINSZ, get_winsize(src_fd))
    except OSError as e:
        logger.debug("Failed to update pty window size: %s", e)


def _write_all(fd: int, data: bytes) -> None:
    view = memoryview(data)
    while view:
        try:
            written = os.write(fd, view)
        except BlockingIOError:
            select.select([], [fd], [])
            continue
        view = view[written:]


def _relay_input(recorder: SessionRecorder, stdin_fd: int, master_fd: int,
                 stop_fd: int, read_size: int) -> None:
    """Controlling terminal -> pty, until stopped or stdin goes away."""
    while True:
        try:
            ready, _, _ = select.select([stdin_fd, stop_fd], [], [])
        except OSError as e:
            logger.debug("Input select failed: %s", e)
            return
        if stop_fd in ready:
            return
        try:
            data = os.read(stdin_fd, read_size)
        except BlockingIOError:
            continue
        except OSError as e:
            logger.debug("Input relay stopped: %s", e)
            return
        if not data:
            logger.debug("Input reached EOF")
            return
        # Marker first, so everything the command prints lands after it
        if not recorder.hooked and contains_enter(data):
            recorder.command_boundary()
        try:
            _write_all(master_fd, data)
        except OSError as e:
            logger.debug("Write to pty failed: %s", e)
            return


def _relay_output(recorder: SessionRecorder, master_fd: int, stdout_fd: int,
                  read_size: int) -> Optional[RelayFailed]:
    """Pty -> terminal and log, until the child side of the pty closes."""
    errors = 0
    while True:
        try:
            data = os.read(master_fd, read_size)
        except OSError as e:
            if e.errno == errno.EIO:
                # Linux reports a closed child side as EIO
                return None
            errors += 1
            logger.warning("Read from pty failed (%d): %s", errors, e)
            if errors >= MAX_TRANSIENT_ERRORS:
                return RelayFailed("pty output", e.strerror or str(e))
            continue
        if not data:
            return None
        errors = 0
        out = recorder.process_output(data)
        if not out:
            continue
        try:
            _write_all(stdout_fd, out)
        except OSError as e:
            return RelayFailed("terminal output", e.strerror or str(e))


def _exec_shell(launch: ShellLaunch, err_r: int, err_w: int) -> None:
    """Child side of the fork: exec the shell or report why not."""
    try:
        os.close(err_r)
        os.execvpe(launch.argv[0], launch.argv, launch.env)
    except Exception as e:
        reason = e.strerror if isinstance(e, OSError) and e.strerror else str(e)
        os.write(err_w, reason.encode("utf-8", errors="replace"))
    finally:
        os._exit(EXEC_FAILED_STATUS)


def _read_exec_error(fd: int) -> Optional[str]:
    """Read the exec error pipe; EOF without data means exec succeeded."""
    chunks = []
    while True:
        chunk = os.read(fd, 1024)
        if not chunk:
            break
        chunks.append(chunk)
    if not chunks:
        return None
    return b"".join(chunks).decode("utf-8", errors="replace")


def _wait_child(pid: int) -> int:
    _, status = os.waitpid(pid, 0)
    code = os.waitstatus_to_exitcode(status)
    # Killed by a signal: report it the way shells do
    return 128 - code if code < 0 else code


def _run(recorder: SessionRecorder, launch: ShellLaunch, stdin_fd: int,
         stdout_fd: int, read_size: int) -> int:
    # Non-inheritable: closed in the child by a successful exec
    err_r, err_w = os.pipe()
    try:
        pid, master_fd = pty.fork()
    except OSError as e:
        os.close(err_r)
        os.close(err_w)
        raise PtyAllocationFailed(e.strerror or str(e)) from e

    if pid == pty.CHILD:
        _exec_shell(launch, err_r, err_w)

    os.close(err_w)
    try:
        reason = _read_exec_error(err_r)
    finally:
        os.close(err_r)
    if reason is not None:
        os.close(master_fd)
        _wait_child(pid)
        raise ShellSpawnFailed(launch.argv[0], reason)

    logger.debug("Shell %s started with pid %d", launch.argv, pid)
    copy_winsize(stdin_fd, master_fd)

    previous_winch = None
    if threading.current_thread() is threading.main_thread():
        previous_winch = signal.signal(
            signal.SIGWINCH, lambda signum, frame: copy_winsize(stdin_fd, master_fd)
        )

    stop_r, stop_w = os.pipe()
    input_thread = threading.Thread(
        target=_relay_input,
        args=(recorder, stdin_fd, master_fd, stop_r, read_size),
        name="wtg-input",
        daemon=True,
    )
    input_thread.start()

    failure = None
    try:
        failure = _relay_output(recorder, master_fd, stdout_fd, read_size)
    finally:
        os.write(stop_w, b"\0")
        input_thread.join(timeout=1.0)
        if previous_winch is not None:
            signal.signal(signal.SIGWINCH, previous_winch)
        rest = recorder.finish()
        if rest and failure is None:
            with contextlib.suppress(OSError):
                _write_all(stdout_fd, rest)
        # Hangs up the pty, so a child still attached after a relay failure exits
        os.close(master_fd)
        os.close(stop_r)
        os.close(stop_w)

    status = _wait_child(pid)
    logger.debug("Shell exited with status %d", status)
    if recorder.log_error is not None:
        logger.warning("Session log incomplete: %s", recorder.log_error)
    if failure is not None:
        raise failure
    return status


def start_session(
    log_path: Union[str, Path],
    shell: Optional[str] = None,
    settings: Optional[WtgSettings] = None,
    stdin_fd: Optional[int] = None,
    stdout_fd: Optional[int] = None,
) -> int:
    """Run a recorded shell session until the shell exits.

    Args:
        log_path: Log file to append to (created if missing)
        shell: Shell to nest (default: WTG_SHELL, $SHELL, /bin/sh)
        settings: Settings (default: get_settings())
        stdin_fd: Controlling terminal input (default: sys.stdin)
        stdout_fd: Real terminal output (default: sys.stdout)

    Returns:
        Exit status of the nested shell

    Raises:
        LogOpenFailed: The log cannot be opened for appending
        PtyAllocationFailed: No pseudo-terminal could be allocated
        ShellSpawnFailed: The shell could not be executed
        RelayFailed: The pty or the terminal failed persistently mid-session
    """
    settings = settings or get_settings()
    path = Path(log_path).expanduser()
    try:
        log_file = open(path, "ab")
    except OSError as e:
        raise LogOpenFailed(str(path), e.strerror or str(e)) from e

    stdin_fd = sys.stdin.fileno() if stdin_fd is None else stdin_fd
    stdout_fd = sys.stdout.fileno() if stdout_fd is None else stdout_fd
    shell = user_shell(shell or settings.shell)
    workdir = Path(tempfile.mkdtemp(prefix="wtg-"))

    try:
        token = new_token()
        env = dict(os.environ)
        env[LOG_ENV_VAR] = str(path.resolve())
        env[TOKEN_ENV_VAR] = token
        try:
            launch = prepare_shell(shell, workdir, env)
        except OSError as e:
            raise ShellSpawnFailed(shell, f"cannot write shell integration: {e}") from e
        recorder = SessionRecorder(log_file, new_session_id(), token, hooked=launch.hooked)
        logger.info(
            "Recording session %s to %s (shell=%s, hooked=%s)",
            recorder.session_id, env[LOG_ENV_VAR], shell, launch.hooked,
        )
        with raw_mode(stdin_fd):
            return _run(recorder, launch, stdin_fd, stdout_fd, settings.read_size)
    finally:
        if not log_file.closed:
            log_file.close()
        shutil.rmtree(workdir, ignore_errors=True)
