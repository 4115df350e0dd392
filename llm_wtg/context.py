"""Context resolution for query and chat requests.

Context comes from piped stdin when there is any, otherwise from the last
completed command segment of a session log. The log path falls back from the
explicit argument to WTG_LOG. Nothing here writes anything.
"""
import logging
import os
import re
import sys
from pathlib import Path
from typing import BinaryIO, List, Optional, Union

from .config import LOG_ENV_VAR
from .errors import ChatNotTty, NoLogSource
from .segmenter import extract_segments

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

# CSI, OSC (BEL or ST terminated) and two-byte escapes
ANSI_ESCAPE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)|\x1b[@-Z\\-_]")
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def stdin_is_piped(stream=None) -> bool:
    """True when stdin is not an interactive terminal."""
    stream = stream if stream is not None else sys.stdin
    try:
        return not stream.isatty()
    except (AttributeError, ValueError):
        return False


def env_log_path() -> Optional[str]:
    """Log path exported by a running wtg session, if any."""
    return os.environ.get(LOG_ENV_VAR) or None


def resolve_log_path(cli_log_path: Optional[PathLike], env_log_path: Optional[PathLike]) -> Path:
    """Explicit argument first, then the environment.

    Raises:
        NoLogSource: If neither is set
    """
    for candidate in (cli_log_path, env_log_path):
        if candidate:
            return Path(candidate)
    raise NoLogSource()


def resolve_context(
    cli_log_path: Optional[PathLike] = None,
    env_log_path: Optional[PathLike] = None,
    stdin_available: bool = False,
    stdin: Optional[BinaryIO] = None,
    count: Optional[int] = 1,
) -> bytes:
    """Assemble the context bytes for a one-shot query.

    Args:
        cli_log_path: Log file given on the command line
        env_log_path: Log file from WTG_LOG
        stdin_available: Whether the caller has a pipe attached to stdin
        stdin: Binary stream to read piped input from (default: sys.stdin.buffer)
        count: Number of trailing segments to join; None for all

    Returns:
        Piped bytes verbatim, or the selected segment contents

    Raises:
        NoLogSource: No piped input and no log path
        NotFound, LogUnreadable, NoSegmentFound: From the segmenter, unchanged
    """
    if stdin_available:
        stream = stdin if stdin is not None else sys.stdin.buffer
        piped = stream.read()
        if piped:
            logger.debug("Using %d bytes of piped input as context", len(piped))
            return piped
        logger.debug("Piped input is empty, falling back to the session log")

    log_path = resolve_log_path(cli_log_path, env_log_path)
    logger.debug("Extracting context from %s", log_path)
    return join_segments(extract_segments(log_path, count=count))


def join_segments(segments: List[bytes]) -> bytes:
    """Concatenate segments, adding a newline after any but the last that lacks one."""
    parts = []
    for idx, segment in enumerate(segments):
        parts.append(segment)
        if idx < len(segments) - 1 and not segment.endswith(b"\n"):
            parts.append(b"\n")
    return b"".join(parts)


def resolve_chat_context(
    cli_log_path: Optional[PathLike] = None,
    env_log_path: Optional[PathLike] = None,
    stdin_is_tty: bool = True,
) -> bytes:
    """Context for a chat: always the session log, never piped input.

    Raises:
        ChatNotTty: If stdin is not interactive
        NoLogSource, NotFound, LogUnreadable, NoSegmentFound
    """
    if not stdin_is_tty:
        raise ChatNotTty()
    return resolve_context(cli_log_path, env_log_path, stdin_available=False)


def context_to_text(data: bytes) -> str:
    """Readable text for the model: decoded, escapes dropped, CRLF -> LF."""
    text = data.decode("utf-8", errors="replace")
    text = ANSI_ESCAPE.sub("", text)
    text = text.replace("\r\n", "\n")
    # Bare CRs redraw the line (progress bars); keep what was drawn last
    text = "\n".join(_last_redraw(line) for line in text.split("\n"))
    return CONTROL_CHARS.sub("", text)


def _last_redraw(line: str) -> str:
    parts = [p for p in line.split("\r") if p]
    return parts[-1] if parts else ""
