"""Error codes and exceptions for wtg.

Every failure a user can hit maps to a distinct code and an actionable
message. The CLI prints the message; library callers can branch on the
exception type or on ``code``.
"""


class ErrorCode:
    """Standard error codes.

    Recorder errors are fatal to ``start_session``; segmenter and resolver
    errors are always surfaced, never turned into empty context.
    """

    # Recorder
    PTY_ALLOCATION_FAILED = "PTY_ALLOCATION_FAILED"
    SHELL_SPAWN_FAILED = "SHELL_SPAWN_FAILED"
    LOG_OPEN_FAILED = "LOG_OPEN_FAILED"
    RELAY_FAILED = "RELAY_FAILED"

    # Segmenter
    NOT_FOUND = "NOT_FOUND"
    LOG_UNREADABLE = "LOG_UNREADABLE"
    NO_SEGMENT_FOUND = "NO_SEGMENT_FOUND"

    # Resolver
    NO_LOG_SOURCE = "NO_LOG_SOURCE"
    CHAT_NOT_TTY = "CHAT_NOT_TTY"

    # LLM collaborator
    MODEL_ERROR = "MODEL_ERROR"


class WtgError(Exception):
    """Base exception for all wtg errors."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(message)


class PtyAllocationFailed(WtgError):
    """Raised when the pseudo-terminal pair cannot be allocated."""

    def __init__(self, reason: str):
        super().__init__(
            ErrorCode.PTY_ALLOCATION_FAILED,
            f"Failed to allocate a pseudo-terminal: {reason}",
        )


class ShellSpawnFailed(WtgError):
    """Raised when the nested shell cannot be started."""

    def __init__(self, shell: str, reason: str = ""):
        self.shell = shell
        detail = f": {reason}" if reason else ""
        super().__init__(
            ErrorCode.SHELL_SPAWN_FAILED,
            f"Failed to start shell '{shell}'{detail}. Set WTG_SHELL or SHELL to a valid shell.",
        )


class LogOpenFailed(WtgError):
    """Raised when the session log cannot be opened for appending."""

    def __init__(self, logfile: str, reason: str = ""):
        self.logfile = logfile
        detail = f" ({reason})" if reason else ""
        super().__init__(
            ErrorCode.LOG_OPEN_FAILED,
            f"Failed to open log file for writing: {logfile}{detail}",
        )


class RelayFailed(WtgError):
    """Raised when a relay descriptor fails persistently mid-session."""

    def __init__(self, direction: str, reason: str):
        self.direction = direction
        super().__init__(
            ErrorCode.RELAY_FAILED,
            f"Session ended: {direction} relay failed ({reason})",
        )


class NotFound(WtgError):
    """Raised when the log file does not exist."""

    def __init__(self, logfile: str):
        self.logfile = logfile
        super().__init__(
            ErrorCode.NOT_FOUND,
            f"Log file not found: {logfile}. Does it exist? Start a session with 'wtg start {logfile}'.",
        )


class LogUnreadable(WtgError):
    """Raised when the log file exists but cannot be read."""

    def __init__(self, logfile: str, reason: str = ""):
        self.logfile = logfile
        detail = f" ({reason})" if reason else ""
        super().__init__(
            ErrorCode.LOG_UNREADABLE,
            f"Failed to read log file: {logfile}{detail}",
        )


class NoSegmentFound(WtgError):
    """Raised when the log holds no completed command segment."""

    def __init__(self, logfile: str):
        self.logfile = logfile
        super().__init__(
            ErrorCode.NO_SEGMENT_FOUND,
            f"No command run yet in this session (no completed command in {logfile}).",
        )


class NoLogSource(WtgError):
    """Raised when neither piped input, a log argument nor WTG_LOG is available."""

    def __init__(self):
        super().__init__(
            ErrorCode.NO_LOG_SOURCE,
            "No log file given. Pass --logfile, set WTG_LOG, or pipe input on stdin.",
        )


class ChatNotTty(WtgError):
    """Raised when chat is started without an interactive stdin."""

    def __init__(self):
        super().__init__(
            ErrorCode.CHAT_NOT_TTY,
            "Chat should have stdin connected to a tty, otherwise input is not interactive.",
        )


class ModelError(WtgError):
    """Raised when the model cannot be resolved or the LLM call fails."""

    def __init__(self, message: str):
        super().__init__(ErrorCode.MODEL_ERROR, message)
