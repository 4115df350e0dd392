"""
Command-line interface for wtg.

Provides a CLI with subcommands (single-letter aliases in parentheses):
- wtg start (s): record a shell session to a log file
- wtg query (q): ask about the last command's output
- wtg chat (c): chat about the last command's output
- wtg context: print the extracted command output
"""

import logging
import sys
from pathlib import Path
from typing import NoReturn, Optional

import click
from prompt_toolkit import PromptSession
from prompt_toolkit.styles import Style as PTStyle
from rich.console import Console
from rich.live import Live
from rich.markdown import Markdown
from rich.markup import escape

from .config import LOG_ENV_VAR, get_settings, get_temp_dir
from .context import (
    context_to_text,
    env_log_path,
    resolve_chat_context,
    resolve_context,
    stdin_is_piped,
)
from .errors import WtgError
from .llm_client import ChatSession, get_model, is_exit_command, stream_query
from .session import start_session

ALIASES = {
    "s": "start",
    "q": "query",
    "c": "chat",
}

console = Console()
err_console = Console(stderr=True)


class AliasedGroup(click.Group):
    """Group that also accepts the single-letter command aliases."""

    def get_command(self, ctx, cmd_name):
        return super().get_command(ctx, ALIASES.get(cmd_name, cmd_name))

    def resolve_command(self, ctx, args):
        _, cmd, args = super().resolve_command(ctx, args)
        return (cmd.name if cmd else None), cmd, args


def configure_logging(debug: bool, debug_log: Optional[Path]) -> Optional[Path]:
    """Send debug logging to a file.

    Logging never goes to the terminal: during a session stderr belongs to
    the nested shell.

    Returns:
        The log file path, or None when logging stays off
    """
    if not debug and debug_log is None:
        return None
    path = debug_log or get_temp_dir() / "debug.log"
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root = logging.getLogger("llm_wtg")
    root.addHandler(handler)
    root.setLevel(logging.DEBUG)
    return path


def fail(error: WtgError) -> NoReturn:
    """Print an error and exit with status 1."""
    err_console.print(f"[red]Error:[/] {escape(error.message)}", highlight=False)
    sys.exit(1)


def render_stream(chunks, stream: bool = True) -> str:
    """Render streamed model text as markdown.

    Returns:
        The accumulated response text
    """
    accumulated_text = ""
    if stream:
        with Live(refresh_per_second=10, console=console) as live:
            for chunk in chunks:
                accumulated_text += chunk
                live.update(Markdown(accumulated_text))
    else:
        for chunk in chunks:
            accumulated_text += chunk
        if accumulated_text:
            console.print(Markdown(accumulated_text))
    return accumulated_text


@click.group(cls=AliasedGroup)
@click.version_option(package_name="llm-wtg")
@click.option("--debug", is_flag=True, help="Write debug logging to a file (see WTG_DEBUG_LOG)")
def cli(debug: bool):
    """Ask an LLM about the output of the last command you ran."""
    path = configure_logging(debug, get_settings().debug_log)
    if path is not None:
        err_console.print(f"[dim]Debug log: {path}[/]")


@cli.command()
@click.argument("logfile", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--shell", help="Shell to run (default: WTG_SHELL, then $SHELL)")
def start(logfile: Path, shell: Optional[str]):
    """Start a recorded session.

    Output of every command is logged to LOGFILE, which is also exported to
    the session as WTG_LOG.
    """
    current = env_log_path()
    if current:
        err_console.print(f"[yellow]Already inside a wtg session ({LOG_ENV_VAR}={escape(current)})[/]")

    console.print("Starting wtg session. Type 'exit' to quit.")
    try:
        status = start_session(logfile, shell=shell, settings=get_settings())
    except WtgError as e:
        fail(e)
    console.print("[dim]wtg session ended.[/]")
    sys.exit(status)


@cli.command()
@click.option("-l", "--logfile", type=click.Path(dir_okay=False, path_type=Path),
              help="Session log (default: WTG_LOG)")
@click.option("-p", "--prompt", help="Question to ask (default: WTG_PROMPT)")
@click.option("-m", "--model", help="Model to use (default: WTG_LLM, then llm's default)")
@click.option("-n", "--count", type=click.IntRange(min=1), default=1, show_default=True,
              help="Number of recent commands to include")
@click.option("--no-stream", is_flag=True, help="Print the answer once it is complete")
def query(logfile: Optional[Path], prompt: Optional[str], model: Optional[str],
          count: int, no_stream: bool):
    """Ask about the last command's output (or piped input)."""
    settings = get_settings()
    try:
        context = resolve_context(
            cli_log_path=logfile,
            env_log_path=settings.log,
            stdin_available=stdin_is_piped(),
            count=count,
        )
        llm_model = get_model(model or settings.llm)
        chunks = stream_query(context, prompt or settings.prompt, llm_model, key=settings.openai_key)
        render_stream(chunks, stream=not no_stream)
    except WtgError as e:
        fail(e)


@cli.command()
@click.option("-l", "--logfile", type=click.Path(dir_okay=False, path_type=Path),
              help="Session log (default: WTG_LOG)")
@click.option("-m", "--model", help="Model to use (default: WTG_LLM, then llm's default)")
def chat(logfile: Optional[Path], model: Optional[str]):
    """Chat about the last command's output."""
    settings = get_settings()
    try:
        context = resolve_chat_context(
            cli_log_path=logfile,
            env_log_path=settings.log,
            stdin_is_tty=not stdin_is_piped(),
        )
        session = ChatSession(context, get_model(model or settings.llm), key=settings.openai_key)
    except WtgError as e:
        fail(e)

    prompt_session = PromptSession(style=PTStyle.from_dict({"prompt": "ansicyan bold"}))
    console.print("[dim](type 'exit' ('e') or 'quit' ('q') to end chat)[/]")
    while True:
        try:
            text = prompt_session.prompt([("class:prompt", "user> ")])
        except KeyboardInterrupt:
            continue
        except EOFError:
            break
        if is_exit_command(text):
            break
        if not text.strip():
            continue
        try:
            render_stream(session.send(text.strip()))
        except WtgError as e:
            err_console.print(f"[red]Error:[/] {escape(e.message)}", highlight=False)


@cli.command("context")
@click.option("-l", "--logfile", type=click.Path(dir_okay=False, path_type=Path),
              help="Session log (default: WTG_LOG)")
@click.option("-n", "--count", type=click.IntRange(min=1), default=1, show_default=True,
              help="Number of recent commands to print")
@click.option("-a", "--all", "show_all", is_flag=True, help="Print every recorded command")
@click.option("--text", is_flag=True, help="Strip escape sequences and carriage returns")
def context_cmd(logfile: Optional[Path], count: int, show_all: bool, text: bool):
    """Print the output of the last command(s) as the model would see it."""
    settings = get_settings()
    try:
        data = resolve_context(
            cli_log_path=logfile,
            env_log_path=settings.log,
            count=None if show_all else count,
        )
    except WtgError as e:
        fail(e)
    if text:
        click.echo(context_to_text(data), nl=False)
    else:
        sys.stdout.buffer.write(data)
        sys.stdout.buffer.flush()


def main():
    cli()


if __name__ == "__main__":
    main()
