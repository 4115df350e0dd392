"""Delimiter protocol for the session log.

Each command's output is bracketed by two marker lines:

    <<<wtg:cmd-start:3f9a0c1d2e4b5a69:7>>>
    ...command output...
    <<<wtg:cmd-end:3f9a0c1d2e4b5a69:7>>>

The identifier is ``<session-id>:<seq>``: a random per-session hex id plus a
counter, so segments written by different sessions appending to the same
file never pair with each other.

Framing: the recorder writes a START as ``[LF] START LF`` (the leading LF only
when the log is not already at the start of a line) and an END as
``LF END LF``. The LF in front of END belongs to the framing, not to the
command output, so output without a trailing newline survives byte-exact.
"""
import re
import secrets
from dataclasses import dataclass
from typing import Iterator, Optional, Tuple

MARKER_PREFIX = b"<<<wtg:"
MARKER_SUFFIX = b">>>"

START = "cmd-start"
END = "cmd-end"

SESSION_ID_BYTES = 8

# Full-line match only: a marker embedded mid-line is ordinary output
MARKER_LINE = re.compile(
    rb"^<<<wtg:(cmd-start|cmd-end):([0-9a-f]{16}):([0-9]+)>>>\n",
    re.MULTILINE,
)


@dataclass(frozen=True)
class MarkerMatch:
    """A marker line found in log data.

    ``start`` is the offset of the first byte of the marker line, ``end`` the
    offset just past its terminating LF.
    """

    kind: str
    marker_id: str
    start: int
    end: int


def new_session_id() -> str:
    """Generate a random session id (16 lowercase hex chars)."""
    return secrets.token_hex(SESSION_ID_BYTES)


def make_marker_id(session_id: str, seq: int) -> str:
    """Combine a session id and command counter into a marker identifier."""
    return f"{session_id}:{seq}"


def format_marker(kind: str, marker_id: str) -> bytes:
    """Return the marker line for ``kind`` (without the trailing LF).

    Raises:
        ValueError: If kind is not START or END
    """
    if kind not in (START, END):
        raise ValueError(f"Unknown marker kind: {kind!r}")
    return MARKER_PREFIX + f"{kind}:{marker_id}".encode("ascii") + MARKER_SUFFIX


def start_record(marker_id: str, at_line_start: bool) -> bytes:
    """Bytes the recorder appends to the log to open a segment."""
    lead = b"" if at_line_start else b"\n"
    return lead + format_marker(START, marker_id) + b"\n"


def end_record(marker_id: str) -> bytes:
    """Bytes the recorder appends to the log to close a segment."""
    return b"\n" + format_marker(END, marker_id) + b"\n"


def parse_marker_line(line: bytes) -> Optional[Tuple[str, str]]:
    """Parse a single line as a marker.

    The line may carry its trailing LF or not; anything else on the line
    makes it ordinary output.

    Returns:
        (kind, marker_id) or None if the line is not a marker
    """
    if not line.endswith(b"\n"):
        line += b"\n"
    match = MARKER_LINE.fullmatch(line)
    if match is None:
        return None
    kind, session_id, seq = match.groups()
    return kind.decode("ascii"), f"{session_id.decode('ascii')}:{int(seq)}"


def iter_marker_lines(data: bytes) -> Iterator[MarkerMatch]:
    """Yield every complete marker line in ``data``, in file order.

    A trailing marker without its LF (log still being appended) is not
    yielded.
    """
    for match in MARKER_LINE.finditer(data):
        kind, session_id, seq = match.groups()
        yield MarkerMatch(
            kind=kind.decode("ascii"),
            marker_id=f"{session_id.decode('ascii')}:{int(seq)}",
            start=match.start(),
            end=match.end(),
        )
