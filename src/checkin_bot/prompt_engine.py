from __future__ import annotations

import json
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Dict, List, Optional, Sequence

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from . import config
from .conversation_graph import Node, input_text
from .errors import GenerationError
from .generator import TextGenerator
from .prompts import fill_prompt, load_prompt
from .reasoning import ReasoningDelta

logger = logging.getLogger(__name__)


# -------------------------
# Prompts
# -------------------------
SYSTEM_PROMPT = load_prompt("system.txt")
STEP_USER_TMPL = load_prompt("step_user.txt")

HISTORY_TURNS = 4

# -------------------------
# Fallbacks (one per coarse topic)
# -------------------------
FALLBACK_RESPONSES: Dict[str, str] = {
    "consent": "Thank you. Everything you share stays within this check-in, and you can stop at any time.",
    "demographics": "Thanks, that gives me a better picture of your general health.",
    "history": "Thank you for telling me about your health history. I've noted it down.",
    "medications": "Thanks for listing your medications. Keeping that list up to date helps your care team.",
    "symptoms": "Thank you for describing how you feel. Let's keep going so I can get the full picture.",
    "mood": "Thank you for being open about how you've been feeling. That takes courage.",
    "lifestyle": "Thanks. Small, steady changes in daily habits can make a real difference over time.",
    "screening": "Thanks. Staying on top of routine checks is one of the best things you can do for your health.",
    "escalation": (
        "What you've described could be serious. Please contact emergency services or go to the nearest "
        "emergency department now. If you are thinking about harming yourself, call or text 988 "
        "(or your local crisis line) right away."
    ),
    "general": "Thank you for your response. Let's continue.",
}

_LEAK_PREFIXES = (
    "current question",
    "user response",
    "analysis notes",
    "important guidelines",
    "response format",
)


def fallback_response(topic: str) -> str:
    return FALLBACK_RESPONSES.get(topic, FALLBACK_RESPONSES["general"])


def cleanup_response(raw: str) -> str:
    """Strip role prefixes, leaked prompt sections and wrapping quotes."""
    text = (raw or "").strip()
    text = re.sub(r"^(?:assistant|ai|bot)\s*:\s*", "", text, flags=re.IGNORECASE)

    kept: List[str] = []
    for line in text.splitlines():
        if line.strip().lower().startswith(_LEAK_PREFIXES):
            continue
        kept.append(line.rstrip())
    text = "\n".join(kept).strip()
    text = re.sub(r"\n{3,}", "\n\n", text)

    if len(text) >= 2 and text[0] == text[-1] and text[0] in {'"', "'"}:
        text = text[1:-1].strip()
    return text


class PromptEngine:
    """
    Wraps a TextGenerator with a hard timeout and deterministic fallbacks.
    Collaborator failures are logged here and never reach the caller.
    """

    def __init__(
        self,
        generator: TextGenerator,
        timeout_seconds: Optional[float] = None,
        max_workers: int = 4,
    ) -> None:
        self.generator = generator
        self.timeout_seconds = config.LLM_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="checkin-llm")

    def run(self, messages: Sequence[BaseMessage], max_tokens: int = 350, temperature: float = 0.2) -> str:
        """Call the generator under the timeout. Raises GenerationError on any failure."""
        future = self._pool.submit(self.generator.chat, list(messages), max_tokens, temperature)
        try:
            raw = future.result(timeout=self.timeout_seconds)
        except FutureTimeout as exc:
            future.cancel()
            raise GenerationError(f"Text generation timed out after {self.timeout_seconds}s") from exc
        except GenerationError:
            raise
        except Exception as exc:
            raise GenerationError(f"Text generation failed: {exc}") from exc

        cleaned = cleanup_response(raw if isinstance(raw, str) else "")
        if not cleaned:
            raise GenerationError("Text generation returned nothing usable")
        return cleaned

    def build_messages(
        self,
        node: Node,
        user_input: Any,
        delta: ReasoningDelta,
        history: Sequence[Dict[str, Any]] = (),
    ) -> List[BaseMessage]:
        messages: List[BaseMessage] = [SystemMessage(content=SYSTEM_PROMPT)]
        for turn in list(history)[-HISTORY_TURNS:]:
            messages.append(HumanMessage(content=input_text(turn.get("input"))))
            messages.append(AIMessage(content=turn.get("generated_response", "")))
        messages.append(
            HumanMessage(
                content=fill_prompt(
                    STEP_USER_TMPL,
                    node_id=node.id,
                    topic=node.topic,
                    prompt=node.prompt,
                    user_input=input_text(user_input),
                    reasoning=json.dumps(delta.to_dict(), sort_keys=True),
                )
            )
        )
        return messages

    def respond(
        self,
        node: Node,
        user_input: Any,
        delta: ReasoningDelta,
        history: Sequence[Dict[str, Any]] = (),
    ) -> str:
        topic = "escalation" if delta.requires_escalation else node.topic
        try:
            return self.run(self.build_messages(node, user_input, delta, history))
        except GenerationError as exc:
            logger.warning("Generation failed at node %s, using '%s' fallback: %s", node.id, topic, exc)
            return fallback_response(topic)

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
