from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sentra_agent.providers.base import LLMProvider, LLMResponse  # noqa: E402


class ScriptedProvider(LLMProvider):
    """Returns queued replies in order; an Exception instance is raised instead."""

    def __init__(self, replies: list[Any] | None = None):
        super().__init__()
        self.replies = list(replies or [])
        self.calls: list[dict[str, Any]] = []

    async def chat(self, messages, model=None, max_tokens=None, temperature=None):
        self.calls.append({
            "messages": [dict(m) for m in messages],
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
        })
        if not self.replies:
            raise AssertionError("ScriptedProvider ran out of replies")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return LLMResponse(content=reply)

    def get_default_model(self) -> str:
        return "test-model"


def ok_response(*texts: str) -> str:
    body = "".join(f"<text{i}>{t}</text{i}>" for i, t in enumerate(texts, 1))
    return f"<sentra-response>{body}<resources></resources></sentra-response>"


@pytest.fixture
def scripted_provider():
    return ScriptedProvider
