"""
Token counting shared by every chunk-size and budget decision.
"""

from functools import lru_cache

import tiktoken

ENCODING_NAME = "cl100k_base"


@lru_cache(maxsize=1)
def get_encoder():
    return tiktoken.get_encoding(ENCODING_NAME)


def count_tokens(text: str) -> int:
    """
    Count tokens with a fixed encoding so that the same content always yields
    the same chunk boundaries.

    Args:
        text: The text to count

    Returns:
        Number of tokens
    """
    if not text:
        return 0
    return len(get_encoder().encode(text, disallowed_special=()))
