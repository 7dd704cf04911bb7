from __future__ import annotations

from functools import lru_cache
from typing import Dict, Iterable

import tiktoken


@lru_cache(maxsize=32)
def _encoding_for_model(model: str):
    # Provider-prefixed names ("anthropic/claude-3.7-sonnet") are unknown to tiktoken.
    try:
        return tiktoken.encoding_for_model(model.split("/")[-1])
    except KeyError:
        return tiktoken.get_encoding("cl100k_base")


def estimate_tokens(text: str, model: str) -> int:
    if not text:
        return 0
    return len(_encoding_for_model(model).encode(text))


def estimate_message_tokens(messages: Iterable[Dict[str, str]], max_output_tokens: int, model: str) -> int:
    return sum(estimate_tokens(msg.get("content", ""), model) for msg in messages) + (max_output_tokens or 0)
