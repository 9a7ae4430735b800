from __future__ import annotations

import logging
from typing import Sequence

from langchain_core.messages import BaseMessage, HumanMessage

from . import config
from .errors import GenerationError

logger = logging.getLogger(__name__)


class TextGenerator:
    """
    Completion capability the engine depends on.

    `chat` is the primitive; `complete` wraps a single prompt as one human turn.
    Implementations raise GenerationError (or anything else) on failure;
    callers decide what to fall back to.
    """

    def chat(self, messages: Sequence[BaseMessage], max_tokens: int = 350, temperature: float = 0.2) -> str:
        raise NotImplementedError

    def complete(self, prompt: str, max_tokens: int = 350, temperature: float = 0.2) -> str:
        return self.chat([HumanMessage(content=prompt)], max_tokens=max_tokens, temperature=temperature)


class BedrockTextGenerator(TextGenerator):
    """Anthropic models on AWS Bedrock via config.bedrock_chat."""

    def chat(self, messages: Sequence[BaseMessage], max_tokens: int = 350, temperature: float = 0.2) -> str:
        try:
            out = config.bedrock_chat(messages, max_tokens=max_tokens, temperature=temperature)
        except Exception as exc:
            raise GenerationError(f"Bedrock call failed: {exc}") from exc
        if not out.strip():
            raise GenerationError("Bedrock returned an empty completion")
        return out
