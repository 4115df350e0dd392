"""Shell integration for command-boundary detection.

The nested shell announces command boundaries in-band: hook functions print
an OSC escape sequence carrying the session token,

    ESC ] 6973 ; wtg ; start ; <token> BEL    (before a command runs)
    ESC ] 6973 ; wtg ; end ; <token> BEL      (before the next prompt)

and the recorder strips these signals from the output stream, turning them
into marker lines in the log. Terminals ignore unknown OSC sequences, and the
token keeps a program that happens to print a look-alike from opening or
closing segments.

Supported:
- bash: ``--rcfile`` with a DEBUG trap (pre-exec) and PROMPT_COMMAND (pre-prompt)
- zsh: generated ZDOTDIR with ``preexec``/``precmd`` hooks

Any other shell runs unmodified and the recorder falls back to treating each
Enter keypress as a command boundary.
"""
import os
import re
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

SIGNAL_START = "start"
SIGNAL_END = "end"

SIGNAL_PREFIX = b"\x1b]6973;wtg;"
SIGNAL_PATTERN = re.compile(rb"\x1b\]6973;wtg;(start|end);([0-9a-f]+)\x07")

TOKEN_BYTES = 8
# Longest well-formed signal: prefix + "start;" + token + BEL
MAX_SIGNAL_LEN = len(SIGNAL_PREFIX) + len(b"start;") + TOKEN_BYTES * 2 + 1

# Body of a signal that has not been fully received yet
_PARTIAL_BODY = re.compile(rb"(?:s(?:t(?:a(?:r(?:t(?:;[0-9a-f]*)?)?)?)?)?|e(?:n(?:d(?:;[0-9a-f]*)?)?)?)?")

HOOKED_SHELLS = ("bash", "zsh")


BASH_RC = r"""# wtg shell integration (generated)
if [ -f "$HOME/.bashrc" ]; then
    . "$HOME/.bashrc"
fi

__wtg_state=prompt

__wtg_signal() {
    printf '\033]6973;wtg;%s;%s\007' "$1" "$WTG_SESSION_TOKEN"
}

__wtg_preexec() {
    [ -n "$COMP_LINE" ] && return
    [ "$__wtg_state" = ready ] || return
    case "$BASH_COMMAND" in
        __wtg_precmd*) return ;;
    esac
    __wtg_state=running
    __wtg_signal start
}

__wtg_precmd() {
    local ret=$?
    if [ "$__wtg_state" = running ]; then
        __wtg_signal end
    fi
    __wtg_state=prompt
    return $ret
}

__wtg_prompt_done() {
    __wtg_state=ready
}

# bash 5.1+ runs every element of an array PROMPT_COMMAND; ours go first and last
if [[ "$(declare -p PROMPT_COMMAND 2>/dev/null)" == "declare -a"* ]] &&
   (( BASH_VERSINFO[0] > 5 || (BASH_VERSINFO[0] == 5 && BASH_VERSINFO[1] >= 1) )); then
    PROMPT_COMMAND=(__wtg_precmd "${PROMPT_COMMAND[@]}" __wtg_prompt_done)
else
    PROMPT_COMMAND="__wtg_precmd${PROMPT_COMMAND:+; $PROMPT_COMMAND}; __wtg_prompt_done"
fi
trap '__wtg_preexec' DEBUG
"""

ZSH_ENV = r"""# wtg shell integration (generated)
__wtg_user_zdotdir="${WTG_USER_ZDOTDIR:-$HOME}"
[[ -f "$__wtg_user_zdotdir/.zshenv" ]] && source "$__wtg_user_zdotdir/.zshenv"
unset __wtg_user_zdotdir

# A .zshenv that sets ZDOTDIR would make zsh skip the hooks in our .zshrc
if [[ "$ZDOTDIR" != "$WTG_ZDOTDIR" ]]; then
    [[ -n "$ZDOTDIR" ]] && export WTG_USER_ZDOTDIR="$ZDOTDIR"
    ZDOTDIR="$WTG_ZDOTDIR"
fi
"""

ZSH_RC = r"""# wtg shell integration (generated)
if [[ -n "$WTG_USER_ZDOTDIR" ]]; then
    ZDOTDIR="$WTG_USER_ZDOTDIR"
else
    unset ZDOTDIR
fi
[[ -f "${ZDOTDIR:-$HOME}/.zshrc" ]] && source "${ZDOTDIR:-$HOME}/.zshrc"

typeset -g __wtg_running=0

__wtg_signal() {
    printf '\033]6973;wtg;%s;%s\007' "$1" "$WTG_SESSION_TOKEN"
}

__wtg_preexec() {
    __wtg_running=1
    __wtg_signal start
}

__wtg_precmd() {
    if [[ "$__wtg_running" == 1 ]]; then
        __wtg_signal end
    fi
    __wtg_running=0
}

typeset -ga preexec_functions precmd_functions
preexec_functions=(__wtg_preexec $preexec_functions)
precmd_functions=(__wtg_precmd $precmd_functions)
"""


def new_token() -> str:
    """Generate the per-session signal token."""
    return secrets.token_hex(TOKEN_BYTES)


def format_signal(kind: str, token: str) -> bytes:
    """Signal bytes as printed by the shell hooks."""
    return SIGNAL_PREFIX + f"{kind};{token}".encode("ascii") + b"\x07"


def shell_name(shell: str) -> str:
    """Basename of a shell path, without a leading '-' (login shells)."""
    return os.path.basename(shell).lstrip("-")


def supports_hooks(shell: str) -> bool:
    """Whether wtg can install command-boundary hooks into this shell."""
    return shell_name(shell) in HOOKED_SHELLS


@dataclass
class ShellLaunch:
    """How to exec the nested shell.

    ``hooked`` is False when the shell runs unmodified and the recorder has to
    fall back to keystroke-based boundaries.
    """

    argv: List[str]
    env: Dict[str, str] = field(default_factory=dict)
    hooked: bool = False


def prepare_shell(shell: str, workdir: Path, env: Dict[str, str]) -> ShellLaunch:
    """Write the integration files for ``shell`` under ``workdir``.

    Args:
        shell: Path or name of the interactive shell
        workdir: Private directory that lives as long as the session
        env: Child environment (copied, not modified)

    Returns:
        ShellLaunch with argv and the environment to exec with
    """
    env = dict(env)
    name = shell_name(shell)

    if name == "bash":
        rcfile = workdir / "bashrc"
        rcfile.write_text(BASH_RC)
        return ShellLaunch(argv=[shell, "--rcfile", str(rcfile), "-i"], env=env, hooked=True)

    if name == "zsh":
        zdotdir = workdir / "zsh"
        zdotdir.mkdir(exist_ok=True)
        (zdotdir / ".zshenv").write_text(ZSH_ENV)
        (zdotdir / ".zshrc").write_text(ZSH_RC)
        if env.get("ZDOTDIR"):
            env["WTG_USER_ZDOTDIR"] = env["ZDOTDIR"]
        else:
            env.pop("WTG_USER_ZDOTDIR", None)
        env["ZDOTDIR"] = str(zdotdir)
        env["WTG_ZDOTDIR"] = str(zdotdir)
        return ShellLaunch(argv=[shell, "-i"], env=env, hooked=True)

    return ShellLaunch(argv=[shell], env=env, hooked=False)


class SignalScanner:
    """Streaming extractor for boundary signals in pty output.

    ``feed()`` returns the chunk split into output bytes and signal kinds, in
    stream order. A signal split across reads is held back until it is
    complete; a held-back tail that turns out not to be a signal is released
    as output on the next feed. Signals carrying another token are ordinary
    output.
    """

    def __init__(self, token: str):
        self.token = token
        self._pending = b""

    def feed(self, data: bytes) -> List[Union[bytes, str]]:
        buf = self._pending + data
        self._pending = b""
        items: List[Union[bytes, str]] = []
        pos = 0

        for match in SIGNAL_PATTERN.finditer(buf):
            if match.group(2).decode("ascii") != self.token:
                continue
            if match.start() > pos:
                items.append(buf[pos:match.start()])
            items.append(match.group(1).decode("ascii"))
            pos = match.end()

        rest = buf[pos:]
        hold = self._partial_tail(rest)
        if hold:
            self._pending = rest[-hold:]
            rest = rest[:-hold]
        if rest:
            items.append(rest)
        return items

    def flush(self) -> bytes:
        """Release whatever is held back (end of stream)."""
        pending, self._pending = self._pending, b""
        return pending

    @staticmethod
    def _partial_tail(data: bytes) -> int:
        """Length of a trailing prefix of a possible signal, or 0."""
        idx = data.rfind(b"\x1b")
        if idx == -1:
            return 0
        tail = data[idx:]
        if len(tail) >= MAX_SIGNAL_LEN:
            return 0
        if SIGNAL_PREFIX.startswith(tail):
            return len(tail)
        if tail.startswith(SIGNAL_PREFIX) and _PARTIAL_BODY.fullmatch(tail[len(SIGNAL_PREFIX):]):
            return len(tail)
        return 0


def contains_enter(data: bytes) -> bool:
    """Whether a chunk of terminal input contains an Enter keypress (fallback mode)."""
    return b"\r" in data or b"\n" in data


def user_shell(configured: Optional[str] = None) -> str:
    """Shell to launch: explicit setting, then $SHELL, then /bin/sh."""
    return configured or os.environ.get("SHELL") or "/bin/sh"
