"""Narrator turn classification.

classify() asks a cheap model chain for a structured verdict on one narrator
turn: who must answer (response_type), whether the story advanced
(is_pulse) and whether it is ending (is_ending). The two boolean axes are
independent of response_type.

Failure policy: when every classifier model fails, or the model returns
output that does not fit the schema, classification degrades to the
deterministic heuristic in heuristic_classify(). This applies to every call;
there is no strict mode. Heuristic verdicts are marked source="heuristic"
with zero confidence.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence

from pydantic import BaseModel, Field, ValidationError

from pulse_playtest.errors import ClassificationError, GenerationError
from pulse_playtest.fallback import FallbackGenerator
from pulse_playtest.models import Classification, ResponseType
from pulse_playtest.prompts import CLASSIFIER_SYSTEM, CLASSIFIER_USER, render_prompt

logger = logging.getLogger(__name__)

CLASSIFIER_MODELS = (
    "openai/gpt-5-nano",
    "openai/gpt-4o-mini",
    "google/gemini-2.5-flash",
)
CLASSIFIER_TEMPERATURE = 0.3

CLASSIFICATION_SCHEMA = {
    "type": "object",
    "properties": {
        "response_type": {
            "type": "string",
            "enum": [t.value for t in ResponseType],
        },
        "is_pulse": {"type": "boolean"},
        "is_ending": {"type": "boolean"},
        "target_players": {"type": "array", "items": {"type": "string"}},
        "confidence": {"type": "number"},
        "reasoning": {"type": "string"},
    },
    "required": [
        "response_type", "is_pulse", "is_ending",
        "target_players", "confidence", "reasoning",
    ],
    "additionalProperties": False,
}


class ClassifierContext(BaseModel):
    pulse_count: int = 0
    player_names: list[str] = Field(default_factory=list)


class _ModelVerdict(BaseModel):
    response_type: ResponseType
    is_pulse: bool
    is_ending: bool
    target_players: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    reasoning: str = ""


# ---------------------------------------------------------------------------
# Heuristics
# ---------------------------------------------------------------------------

PRIVATE_PATTERNS = (
    re.compile(r"\[to ([^\]]+) only\]", re.IGNORECASE),
    re.compile(r"\[([^,\]]+), you alone", re.IGNORECASE),
    re.compile(r"([^,\s]+), only you", re.IGNORECASE),
    re.compile(r"([^,\s]+) alone notices?", re.IGNORECASE),
)

ENDING_PATTERNS = (
    re.compile(r"\bthe end\b", re.IGNORECASE),
    re.compile(r"\bfin\b\.?\s*$", re.IGNORECASE),
    re.compile(r"\bepilogue\b", re.IGNORECASE),
    re.compile(r"\bour story (?:ends|concludes)\b", re.IGNORECASE),
    re.compile(r"\bthanks for playing\b", re.IGNORECASE),
)

CHOICE_PATTERNS = (
    re.compile(r"\b(?:left|right)\s+or\s+(?:left|right)\b", re.IGNORECASE),
    re.compile(r"\bwho are you\b", re.IGNORECASE),
    re.compile(r"\btell me who you are\b", re.IGNORECASE),
    re.compile(r"\bwhat do you (?:carry|bring)\b", re.IGNORECASE),
    re.compile(r"\bdo you (?:accept|enter|agree)\b", re.IGNORECASE),
    re.compile(r"\b(?:decide|choose) together\b", re.IGNORECASE),
    re.compile(r"\bwhich (?:way|path|door)\b", re.IGNORECASE),
)

PULSE_INDICATORS = (
    "you find yourself",
    "you arrive",
    "suddenly",
    "you notice",
    "before you",
    "in front of you",
    "you hear",
    "you see",
    "the room",
    "the door",
    "ahead of you",
)

RECAP_PHRASES = (
    "to recap",
    "as you recall",
    "so far you have",
    "previously",
    "let me remind you",
    "to summarize",
)

PULSE_MIN_LENGTH = 50


def detect_private_target(text: str) -> str | None:
    """Return the name addressed by a private marker, if any."""
    for pattern in PRIVATE_PATTERNS:
        match = pattern.search(text)
        if match and match.group(1).strip():
            return match.group(1).strip()
    return None


def detect_pulse(text: str) -> bool:
    lower = text.lower()
    if len(text.strip()) < PULSE_MIN_LENGTH:
        return False
    if any(phrase in lower for phrase in RECAP_PHRASES):
        return False
    return any(indicator in lower for indicator in PULSE_INDICATORS)


def _addressed_players(text: str, player_names: Sequence[str]) -> list[str]:
    """Players addressed by name in a sentence that asks them something, in the order addressed."""
    addressed: list[str] = []
    for sentence in re.split(r"(?<=[.!?])\s+|\n+", text):
        if "?" not in sentence:
            continue
        found = []
        for name in player_names:
            if name in addressed:
                continue
            match = re.search(rf"\b{re.escape(name)}\b", sentence, re.IGNORECASE)
            if match:
                found.append((match.start(), name))
        addressed.extend(name for _, name in sorted(found))
    return addressed


def heuristic_classify(text: str, player_names: Sequence[str]) -> Classification:
    """Deterministic classification used when the model path is unavailable."""
    is_pulse = detect_pulse(text)

    def _verdict(response_type: ResponseType, targets=(), ending=False, why="") -> Classification:
        return Classification(
            response_type=response_type,
            is_pulse=is_pulse,
            is_ending=ending,
            target_players=tuple(targets),
            confidence=0.0,
            rationale=f"heuristic: {why}",
            source="heuristic",
        )

    if any(p.search(text) for p in ENDING_PATTERNS):
        return _verdict(ResponseType.NONE, ending=True, why="ending phrase")

    target = detect_private_target(text)
    if target is not None:
        targets = validate_targets([target], player_names)
        if targets:
            return _verdict(ResponseType.PRIVATE, targets[:1], why="private marker")

    addressed = _addressed_players(text, player_names)
    if addressed:
        return _verdict(ResponseType.DIRECTED, addressed, why="players asked by name")

    if any(p.search(text) for p in CHOICE_PATTERNS):
        return _verdict(ResponseType.DISCUSSION, why="group choice")

    return _verdict(ResponseType.GROUP, why="default")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_targets(targets: Sequence[str], player_names: Sequence[str]) -> list[str]:
    """Keep targets that name a known player, in roster spelling, once each."""
    by_lower = {name.lower(): name for name in player_names}
    valid: list[str] = []
    for target in targets:
        name = by_lower.get(target.strip().lower())
        if name is not None and name not in valid:
            valid.append(name)
    return valid


def _finalize(verdict: _ModelVerdict, text: str, player_names: Sequence[str]) -> Classification:
    response_type = verdict.response_type
    targets = validate_targets(verdict.target_players, player_names)
    rationale = verdict.reasoning

    if response_type == ResponseType.PRIVATE and not targets:
        marker = detect_private_target(text)
        if marker is not None:
            targets = validate_targets([marker], player_names)

    if response_type in (ResponseType.DIRECTED, ResponseType.PRIVATE):
        if not targets:
            logger.warning(
                "Classifier returned %s with no known target (%s), routing to group",
                response_type, verdict.target_players,
            )
            response_type = ResponseType.GROUP
            rationale = f"{rationale} [no valid target; downgraded to group]".strip()
        elif response_type == ResponseType.PRIVATE:
            targets = targets[:1]
    else:
        targets = []

    return Classification(
        response_type=response_type,
        is_pulse=verdict.is_pulse,
        is_ending=verdict.is_ending,
        target_players=tuple(targets),
        confidence=verdict.confidence,
        rationale=rationale,
        source="model",
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def _parse_verdict(data: dict | None) -> _ModelVerdict:
    if data is None:
        raise ClassificationError("Classifier returned no structured output")
    try:
        return _ModelVerdict.model_validate(data)
    except ValidationError as e:
        raise ClassificationError(f"Classifier output does not fit schema: {e}") from e


async def classify(
    narrator_text: str,
    context: ClassifierContext,
    generator: FallbackGenerator,
    models: Sequence[str] = CLASSIFIER_MODELS,
) -> Classification:
    """Classify one narrator turn."""
    prompt = render_prompt(CLASSIFIER_USER, {
        "player_list": ", ".join(context.player_names) or "Unknown",
        "pulse_count": context.pulse_count,
        "narrator_text": narrator_text,
    })
    try:
        generation = await generator.generate(
            "classifier",
            models,
            system=CLASSIFIER_SYSTEM,
            messages=[{"role": "user", "content": prompt}],
            schema=CLASSIFICATION_SCHEMA,
            temperature=CLASSIFIER_TEMPERATURE,
            max_tokens=400,
            label="classifier",
        )
        verdict = _parse_verdict(generation.data)
    except (GenerationError, ClassificationError) as e:
        logger.warning("Classifier unavailable, using heuristic: %s", e)
        return heuristic_classify(narrator_text, context.player_names)

    classification = _finalize(verdict, narrator_text, context.player_names)
    logger.debug(
        "classified turn type=%s pulse=%s ending=%s targets=%s",
        classification.response_type, classification.is_pulse,
        classification.is_ending, classification.target_players,
    )
    return classification
