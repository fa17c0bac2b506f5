"""
Token counting and usage estimation.

Rough pre-flight estimates; measured provider usage always replaces them.
"""

import math
from typing import Iterable

CHARS_PER_TOKEN = 4
BYTES_PER_TOKEN = 4


def estimate_units(text: str) -> int:
    """Approximate token count for English text (~4 characters per token)."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_units_for_bytes(size: int) -> int:
    """Approximate token count for a payload of ``size`` bytes."""
    if size <= 0:
        return 0
    return math.ceil(size / BYTES_PER_TOKEN)


def estimate_message_units(messages: Iterable[dict]) -> int:
    """Approximate token count for a list of chat messages."""
    parts = []
    for message in messages:
        content = message.get("content")
        if content is None:
            continue
        parts.append(content if isinstance(content, str) else str(content))
    return estimate_units(" ".join(parts))
