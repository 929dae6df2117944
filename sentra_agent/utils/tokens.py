"""Token counting helpers."""

import litellm
from loguru import logger


def estimate_tokens(text: str) -> int:
    """Fast token estimate for mixed CJK/Latin text.

    Heuristic (no external dep):
    - CJK ideographs ≈ 1 token each
    - Everything else ≈ 1 token per 3.5 chars (English avg)
    """
    if not text:
        return 0
    cjk = 0
    other = 0
    for ch in text:
        cp = ord(ch)
        # CJK Unified Ideographs + common CJK ranges
        if (
            0x4E00 <= cp <= 0x9FFF
            or 0x3400 <= cp <= 0x4DBF
            or 0xF900 <= cp <= 0xFAFF
            or 0x20000 <= cp <= 0x2A6DF
        ):
            cjk += 1
        else:
            other += 1
    return cjk + int(other / 3.5) + 1


def count_tokens(text: str, model: str) -> int:
    """Count tokens with the model's tokenizer, falling back to the estimate."""
    if not text:
        return 0
    try:
        return int(litellm.token_counter(model=model, text=text))
    except Exception as e:
        logger.debug(f"token_counter unavailable for {model}: {e}; using estimate")
        return estimate_tokens(text)
