"""Log segmentation: find command segments in a session log.

A segment is authoritative only when built from the *first* START and the
first following END line carrying its identifier. Command output that echoes
the log (``cat $WTG_LOG``, ``tail -f``) can only contain copies of markers
that were already written, so copies always come after the real ones.

A START without an END is an in-progress (or abnormally terminated) command.
It is reported by ``scan_segments`` with ``complete=False`` and never
returned by ``extract_last_segment``.
"""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

from .errors import LogUnreadable, NoSegmentFound, NotFound
from .markers import END, START, MarkerMatch, iter_marker_lines

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Segment:
    """One command's captured output.

    ``start``/``end`` are the offsets of the content in the log, markers and
    framing excluded.
    """

    marker_id: str
    start: int
    end: int
    content: bytes
    complete: bool = True


def read_log(log_path: Union[str, Path]) -> bytes:
    """Read the whole log file.

    Raises:
        NotFound: If the path does not exist
        LogUnreadable: If the path cannot be read (permissions, directory, I/O)
    """
    path = Path(log_path)
    try:
        return path.read_bytes()
    except FileNotFoundError:
        raise NotFound(str(log_path)) from None
    except OSError as e:
        raise LogUnreadable(str(log_path), e.strerror or str(e)) from e


def scan_segments(data: bytes) -> List[Segment]:
    """Pair marker lines into segments, ordered by position in the log."""
    starts: Dict[str, MarkerMatch] = {}
    ends: Dict[str, List[MarkerMatch]] = {}
    for marker in iter_marker_lines(data):
        if marker.kind == START:
            starts.setdefault(marker.marker_id, marker)
        elif marker.kind == END:
            ends.setdefault(marker.marker_id, []).append(marker)

    ordered_starts = sorted(starts.values(), key=lambda m: m.start)
    segments = []
    for idx, start in enumerate(ordered_starts):
        content_start = start.end
        end = _first_end_after(ends.get(start.marker_id, []), content_start)
        if end is not None:
            # The LF in front of an END line is framing
            content_end = max(content_start, end.start - 1)
            segments.append(Segment(
                marker_id=start.marker_id,
                start=content_start,
                end=content_end,
                content=data[content_start:content_end],
                complete=True,
            ))
        else:
            following = ordered_starts[idx + 1] if idx + 1 < len(ordered_starts) else None
            content_end = following.start if following is not None else len(data)
            segments.append(Segment(
                marker_id=start.marker_id,
                start=content_start,
                end=content_end,
                content=data[content_start:content_end],
                complete=False,
            ))
    return segments


def _first_end_after(candidates: List[MarkerMatch], offset: int) -> Optional[MarkerMatch]:
    for marker in candidates:
        if marker.start >= offset:
            return marker
    return None


def completed_segments(data: bytes) -> List[Segment]:
    """Complete segments, oldest first by the time they were closed."""
    complete = [s for s in scan_segments(data) if s.complete]
    return sorted(complete, key=lambda s: s.end)


def extract_segments(log_path: Union[str, Path], count: Optional[int] = 1) -> List[bytes]:
    """Return the content of the last ``count`` completed segments.

    Args:
        log_path: Session log file
        count: Number of segments to return; None returns all of them

    Returns:
        Segment contents, oldest first

    Raises:
        NotFound, LogUnreadable: If the log cannot be read
        NoSegmentFound: If the log holds no completed segment
    """
    if count is not None and count < 1:
        raise ValueError(f"count must be a positive integer, got {count}")
    data = read_log(log_path)
    segments = completed_segments(data)
    if not segments:
        logger.debug("No completed segment in %s (%d bytes)", log_path, len(data))
        raise NoSegmentFound(str(log_path))
    if count is not None:
        segments = segments[-count:]
    return [s.content for s in segments]


def extract_last_segment(log_path: Union[str, Path]) -> bytes:
    """Return the output of the most recently completed command.

    An unterminated trailing segment (command still running, or a session
    that was killed) is skipped.

    Raises:
        NotFound, LogUnreadable: If the log cannot be read
        NoSegmentFound: If the log holds no completed segment
    """
    return extract_segments(log_path, count=1)[0]
