from __future__ import annotations

import json
import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import boto3
from botocore.config import Config
from dotenv import load_dotenv
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

load_dotenv()

logger = logging.getLogger(__name__)

# -------- Paths --------
PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_GRAPH_PATH = PACKAGE_DIR / "graphs" / "checkin.json"
GRAPH_PATH = Path(os.getenv("CHECKIN_GRAPH_PATH", str(DEFAULT_GRAPH_PATH)))

# -------- AWS / model config --------
AWS_REGION = os.getenv("AWS_REGION", "us-west-2")
MODEL_ID = os.getenv("BEDROCK_MODEL_ID", "anthropic.claude-3-5-sonnet-20240620-v1:0")
AWS_PROFILE = os.getenv("AWS_PROFILE")  # optional named profile
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))

# -------- Persistence --------
DATABASE_URL = os.getenv("DATABASE_URL", "")

# -------- Logging --------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
DEBUG_MODE = os.getenv("DEBUG_MODE", "false").strip().lower() in {"1", "true", "yes"}


def configure_logging() -> None:
    level = logging.DEBUG if DEBUG_MODE else getattr(logging, LOG_LEVEL, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@lru_cache
def bedrock_client():
    boto_config = Config(
        read_timeout=LLM_TIMEOUT_SECONDS,
        connect_timeout=min(LLM_TIMEOUT_SECONDS, 10),
        retries={"max_attempts": 1},
    )
    if AWS_PROFILE:
        session = boto3.Session(profile_name=AWS_PROFILE, region_name=AWS_REGION)
        return session.client("bedrock-runtime", region_name=AWS_REGION, config=boto_config)
    return boto3.client("bedrock-runtime", region_name=AWS_REGION, config=boto_config)


def _anthropic_turns(messages: Sequence[BaseMessage]) -> Tuple[str, List[Dict[str, str]]]:
    """
    Split LangChain messages into Bedrock's Anthropic shape: system text is
    a top-level field, the turn list only carries "user" and "assistant".
    """
    system_parts: List[str] = []
    turns: List[Dict[str, str]] = []
    for m in messages:
        content = m.content if isinstance(m.content, str) else json.dumps(m.content)
        if isinstance(m, SystemMessage):
            if content.strip():
                system_parts.append(content)
        elif isinstance(m, HumanMessage):
            turns.append({"role": "user", "content": content})
        else:
            # AIMessage, or any other role, is sent as assistant text
            turns.append({"role": "assistant", "content": content})
    return "\n".join(system_parts).strip(), turns


def bedrock_chat(
    messages: Sequence[BaseMessage],
    max_tokens: int = 350,
    temperature: float = 0.2,
    model_id: Optional[str] = None,
) -> str:
    """One Messages API call; returns the joined text blocks (may be empty)."""
    system_text, turns = _anthropic_turns(messages)

    body: Dict[str, Any] = {
        "anthropic_version": "bedrock-2023-05-31",
        "max_tokens": max_tokens,
        "temperature": temperature,
        "messages": turns,
    }
    if system_text:
        body["system"] = system_text

    resp = bedrock_client().invoke_model(
        modelId=model_id or MODEL_ID,
        accept="application/json",
        contentType="application/json",
        body=json.dumps(body),
    )
    data = json.loads(resp["body"].read())

    stop_reason = data.get("stop_reason")
    if stop_reason == "max_tokens":
        logger.warning("Bedrock completion cut off at max_tokens=%d", max_tokens)
    else:
        logger.debug("Bedrock completion finished (%s)", stop_reason)

    text = "".join(b.get("text", "") for b in data.get("content", []) if b.get("type") == "text")
    return text.strip()
