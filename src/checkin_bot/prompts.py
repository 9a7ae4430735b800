from __future__ import annotations

from pathlib import Path

# checkin_bot/templates/*.txt (shipped as package data)
PROMPTS_DIR = Path(__file__).resolve().parent / "templates"


def load_prompt(name: str) -> str:
    path = PROMPTS_DIR / name
    if not path.exists():
        raise FileNotFoundError(f"Prompt file not found: {path}")
    return path.read_text(encoding="utf-8")


def fill_prompt(template: str, **values: object) -> str:
    # plain replace instead of str.format so braces in user text survive
    out = template
    for key, value in values.items():
        out = out.replace("{" + key + "}", str(value))
    return out
