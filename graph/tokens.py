import json
from functools import lru_cache
from typing import Any

import tiktoken

ENCODING_MODEL = "gpt-4"


@lru_cache(maxsize=1)
def get_encoding() -> tiktoken.Encoding:
    """Load the encoding once; tiktoken fetches and caches the BPE ranks on first use."""
    return tiktoken.encoding_for_model(ENCODING_MODEL)


def estimate_tokens(text: str) -> int:
    """Count tokens in ``text`` with the gpt-4 encoding."""
    return len(get_encoding().encode(text, disallowed_special=()))


def serialize(value: Any) -> str:
    """Compact JSON, the text token estimates are taken over."""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
