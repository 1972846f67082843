"""Harness configuration and story loading.

get_config() returns defaults merged with the values stored in config.json.
Secrets never live in the file: `api_key_env` names the environment
variable holding the provider key (loaded from .env by the launcher).
"""

from __future__ import annotations

import json
import os
import re
import unicodedata
from pathlib import Path
from typing import Any

from pulse_playtest.llm import HttpLLM
from pulse_playtest.models import NarratorConfig, SessionConfig, Story

_CONFIG_DEFAULTS: dict[str, Any] = {
    "provider_url": "https://openrouter.ai/api",
    "provider_format": "openai",
    "api_key_env": "OPENROUTER_API_KEY",
    "timeout": 120,
    "data_dir": "data",
    "classifier_models": [
        "openai/gpt-5-nano",
        "openai/gpt-4o-mini",
        "google/gemini-2.5-flash",
    ],
    "auxiliary_models": ["google/gemini-2.5-flash", "openai/gpt-4o-mini"],
    "narrator_models": ["anthropic/claude-opus-4.5", "x-ai/grok-4"],
    "retries_per_model": 3,
    "max_turns": 50,
    "temperature": 0.7,
    "max_tokens": 2000,
    "language": "english",
    "pre_game": True,
}

_LIST_KEYS = ("classifier_models", "auxiliary_models", "narrator_models")


def default_config() -> dict[str, Any]:
    return json.loads(json.dumps(_CONFIG_DEFAULTS))


def get_config(path: Path | None = None) -> dict[str, Any]:
    """Read config, returning defaults merged with stored values.

    Unknown keys in the file are ignored. Model lists are replaced
    wholesale, scalars overwritten.
    """
    config = default_config()
    if path is not None and path.is_file():
        stored = json.loads(path.read_text())
        for key, value in stored.items():
            if key not in config:
                continue
            if key in _LIST_KEYS and not isinstance(value, list):
                raise ValueError(f"Config {key!r} must be a list of model ids")
            config[key] = value
    return config


def update_config(path: Path, fields: dict[str, Any]) -> dict[str, Any]:
    """Merge fields into config and persist. Returns full config."""
    config = get_config(path)
    for key, value in fields.items():
        if key in config:
            config[key] = value
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config, indent=2))
    return config


def build_llm(config: dict[str, Any]) -> HttpLLM:
    return HttpLLM(
        provider_url=config["provider_url"],
        api_key=os.getenv(config["api_key_env"], ""),
        provider_format=config["provider_format"],
        timeout=float(config["timeout"]),
    )


def session_config(
    config: dict[str, Any],
    story: Story,
    *,
    narrator_model: str | None = None,
    max_turns: int | None = None,
    seed: int | None = None,
) -> SessionConfig:
    """Build a SessionConfig from harness config plus per-run choices."""
    models = list(config["narrator_models"])
    if narrator_model is not None:
        models = [narrator_model, *(m for m in models if m != narrator_model)]
    return SessionConfig(
        story=story,
        narrator=NarratorConfig(
            model=models[0],
            fallback_models=tuple(models[1:]),
            temperature=config["temperature"],
            max_tokens=config["max_tokens"],
        ),
        max_turns=max_turns or config["max_turns"],
        language=config["language"],
        seed=seed,
        pre_game=config["pre_game"],
    )


# ── Stories ──────────────────────────────────────────────


def slugify(title: str) -> str:
    """Convert a title to a filesystem-safe slug.

    "The Cursed Tavern" → "the-cursed-tavern"
    """
    text = unicodedata.normalize("NFKD", title)
    text = text.encode("ascii", "ignore").decode("ascii")
    text = text.lower()
    text = re.sub(r"['\"]", "", text)
    text = re.sub(r"[^a-z0-9]+", "-", text)
    text = text.strip("-")
    return text or "untitled"


def load_story(path: Path) -> Story:
    """Load a story from JSON or from a markdown/text file.

    JSON files hold the Story fields directly. For text files the first
    "# " heading is the title and the whole file is the story guide.
    """
    text = path.read_text(encoding="utf-8")
    if path.suffix == ".json":
        data = json.loads(text)
        data.setdefault("id", slugify(data.get("title", path.stem)))
        return Story.model_validate(data)

    title = path.stem.replace("-", " ").replace("_", " ").title()
    for line in text.splitlines():
        if line.startswith("# "):
            title = line[2:].strip()
            break
    return Story(id=slugify(title), title=title, guide=text.strip())
