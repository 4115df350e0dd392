"""LLM exchange for query and chat, using Simon Willison's llm library.

Model keys, plugins and the default model are whatever ``llm`` is configured
with; WTG_LLM and WTG_OPENAI_KEY only override the model id and the key.
"""

import logging
from typing import Iterator, Optional

import llm

from .context import context_to_text
from .errors import ModelError

logger = logging.getLogger(__name__)

SYSTEM_PREAMBLE = (
    "You are a helpful assistant. "
    "The user has run a command and received the following output:"
)

# Words that end an interactive chat
EXIT_WORDS = ("exit", "e", "quit", "q")


def wrap_terminal_context(content: str) -> str:
    """Wrap terminal content in XML-style tags for structured injection.

    Args:
        content: Terminal content to wrap

    Returns:
        Content wrapped in <terminal_context> tags
    """
    return f"<terminal_context>\n{content}\n</terminal_context>"


def build_system_prompt(context: bytes) -> str:
    """System prompt carrying the command output."""
    return f"{SYSTEM_PREAMBLE}\n\n{wrap_terminal_context(context_to_text(context))}"


def get_model(model_id: Optional[str] = None) -> llm.Model:
    """Resolve a model by id, or llm's default model.

    Raises:
        ModelError: If the id is unknown to llm and its plugins
    """
    try:
        return llm.get_model(model_id) if model_id else llm.get_model()
    except llm.UnknownModelError as e:
        name = model_id or "default"
        raise ModelError(
            f"Model {name} is not available. Check --model or WTG_LLM; "
            "'llm models' lists the installed models."
        ) from e


def _prompt_kwargs(key: Optional[str], system: Optional[str] = None) -> dict:
    kwargs = {}
    if system is not None:
        kwargs["system"] = system
    # Only key-based models accept a key argument
    if key:
        kwargs["key"] = key
    return kwargs


def _stream(response) -> Iterator[str]:
    try:
        for chunk in response:
            if chunk:
                yield chunk
    except llm.NeedsKeyException as e:
        raise ModelError(f"{e}. Set WTG_OPENAI_KEY or run 'llm keys set'.") from e
    except Exception as e:
        logger.debug("Model call failed", exc_info=True)
        raise ModelError(f"Error querying the model: {e}") from e


def stream_query(context: bytes, prompt: str, model: llm.Model,
                 key: Optional[str] = None) -> Iterator[str]:
    """Ask a one-shot question about ``context``, yielding text chunks.

    Raises:
        ModelError: If the request fails
    """
    logger.debug("Querying %s with %d bytes of context", model.model_id, len(context))
    response = model.prompt(prompt, **_prompt_kwargs(key, build_system_prompt(context)))
    yield from _stream(response)


class ChatSession:
    """Multi-turn chat seeded with the command output.

    The system prompt carrying the context goes with the first turn only;
    later turns reuse the llm conversation. Nothing is persisted.
    """

    def __init__(self, context: bytes, model: llm.Model, key: Optional[str] = None):
        self.model = model
        self.key = key
        self.system_prompt = build_system_prompt(context)
        self.conversation = llm.Conversation(model=model)

    @property
    def turns(self) -> int:
        return len(self.conversation.responses)

    def send(self, prompt: str) -> Iterator[str]:
        """Send one user message, yielding the reply as it streams."""
        system = self.system_prompt if self.turns == 0 else None
        response = self.conversation.prompt(prompt, **_prompt_kwargs(self.key, system))
        yield from _stream(response)


def is_exit_command(text: str) -> bool:
    """Whether chat input asks to leave the chat."""
    return text.strip().lower() in EXIT_WORDS
