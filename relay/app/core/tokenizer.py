"""Fast token estimation.

The context budget only has to stay under the model's ceiling with some
headroom, so a fixed characters-per-token ratio is used instead of a real
tokenizer.
"""

import json
import math
from typing import Any, Dict, List

# English text averages roughly four characters per token.
CHARS_PER_TOKEN_ESTIMATE = 4


def content_to_text(content: Any) -> str:
    """Render message content as text for length accounting.

    Multi-part content (lists of text / image parts) is measured on its
    compact JSON form.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    return json.dumps(content, ensure_ascii=False, separators=(",", ":"))


def estimate_tokens(text: str, chars_per_token: int = CHARS_PER_TOKEN_ESTIMATE) -> int:
    """Estimate the token count of ``text`` (rounded up)."""
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token)


def estimate_message_tokens(
    message: Dict[str, Any], chars_per_token: int = CHARS_PER_TOKEN_ESTIMATE
) -> int:
    """Estimate the token cost of a single chat message's content."""
    return estimate_tokens(content_to_text(message.get("content")), chars_per_token)


def count_message_tokens(
    messages: List[Dict[str, Any]], chars_per_token: int = CHARS_PER_TOKEN_ESTIMATE
) -> int:
    """Estimate the token cost of a list of chat messages."""
    return sum(estimate_message_tokens(m, chars_per_token) for m in messages)
