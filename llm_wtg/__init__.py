"""llm-wtg - Ask an LLM about the output of the last command you ran.

A wtg session runs your shell inside a pseudo-terminal and tees its output
into a log file, bracketing each command's output with marker lines. Queries
and chats later pull the most recent command's output out of that log (or
take piped stdin) and hand it to a model as context.

CLI Usage:
    wtg start session.log     # Record a session (exports WTG_LOG)
    wtg query                 # Explain/summarize the last command's output
    wtg query -p "why?"       # Ask a specific question
    make 2>&1 | wtg query     # Use piped output instead of the log
    wtg chat                  # Multi-turn chat about the last output
    wtg context               # Print the extracted output

Library Usage:
    from llm_wtg import start_session, extract_last_segment, resolve_context

    status = start_session("session.log")
    output = extract_last_segment("session.log")
    context = resolve_context(cli_log_path="session.log")

Environment Variables:
    WTG_LOG      Log file for query/chat (set automatically inside a session)
    WTG_LLM      Model id (default: llm's default model)
    WTG_PROMPT   Default question for query
    WTG_OPENAI_KEY  API key (default: keys stored with 'llm keys set')
    WTG_SHELL    Shell to run in a session (default: $SHELL)
"""

from .context import context_to_text, resolve_chat_context, resolve_context
from .errors import (
    ErrorCode,
    WtgError,
    PtyAllocationFailed,
    ShellSpawnFailed,
    LogOpenFailed,
    RelayFailed,
    NotFound,
    LogUnreadable,
    NoSegmentFound,
    NoLogSource,
    ChatNotTty,
    ModelError,
)
from .segmenter import Segment, extract_last_segment, extract_segments, scan_segments
from .session import start_session

__all__ = [
    # Recorder
    "start_session",
    # Segmenter
    "Segment",
    "extract_last_segment",
    "extract_segments",
    "scan_segments",
    # Context
    "resolve_context",
    "resolve_chat_context",
    "context_to_text",
    # Errors
    "ErrorCode",
    "WtgError",
    "PtyAllocationFailed",
    "ShellSpawnFailed",
    "LogOpenFailed",
    "RelayFailed",
    "NotFound",
    "LogUnreadable",
    "NoSegmentFound",
    "NoLogSource",
    "ChatNotTty",
    "ModelError",
]

__version__ = "0.1.0"
