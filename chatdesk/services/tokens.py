"""Token estimates and per-conversation totals.

User turns have no provider-reported usage, so their token count is
estimated locally with the ``cl100k_base`` encoding. When the encoding
cannot be loaded the estimate falls back to one token per four characters.
"""

import math
from functools import lru_cache

import structlog
import tiktoken

from chatdesk.schemas.content import MessageContent, extract_text
from chatdesk.schemas.conversations import Message

logger = structlog.get_logger()

ENCODING_NAME = "cl100k_base"
MESSAGE_OVERHEAD = 4  # role and separator tokens per message
CHARS_PER_TOKEN = 4


@lru_cache(maxsize=1)
def _encoding() -> tiktoken.Encoding | None:
    try:
        return tiktoken.get_encoding(ENCODING_NAME)
    except Exception:
        logger.warning("tokenizer_unavailable", encoding=ENCODING_NAME, fallback="chars_per_token")
        return None


def count_tokens(text: str) -> int:
    if not text:
        return 0
    encoding = _encoding()
    if encoding is None:
        return math.ceil(len(text) / CHARS_PER_TOKEN)
    # Special-token text typed by a user is counted as plain text
    return len(encoding.encode(text, disallowed_special=()))


def estimate_message_tokens(content: MessageContent) -> int:
    """Estimated prompt tokens one message contributes, text blocks only."""
    return count_tokens(extract_text(content)) + MESSAGE_OVERHEAD


def conversation_tokens(messages: list[Message]) -> int:
    return sum(m.tokens or 0 for m in messages)


def conversation_cost(messages: list[Message]) -> float:
    """Sum of the recorded per-message costs in USD."""
    return sum(m.cost or 0.0 for m in messages)
