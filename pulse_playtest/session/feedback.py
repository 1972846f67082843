"""Post-session player interviews.

After a completed session every agent steps out of character and rates the
story and the narrator. Individual answers are aggregated into a
SessionFeedback. This is enrichment only: an interview that fails is logged
and skipped, and never changes the session outcome.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Sequence

from pydantic import ValidationError

from pulse_playtest.errors import GenerationError
from pulse_playtest.fallback import FallbackGenerator
from pulse_playtest.models import Message, PlayerAgent, PlayerFeedback, SessionFeedback
from pulse_playtest.prompts import FEEDBACK_INTERVIEW, render_prompt

logger = logging.getLogger(__name__)

FEEDBACK_MODELS = ("google/gemini-2.5-flash", "openai/gpt-4o-mini")

FEEDBACK_MODE = """

MODE CHANGE: FEEDBACK COLLECTION
The game is over. Do not roleplay as your character and do not treat fictional memories as real.
Evaluate the story and the narrator analytically. Refer to what actually happened. Be specific and critical."""

_STRINGS = {"type": "array", "items": {"type": "string"}}

FEEDBACK_SCHEMA = {
    "type": "object",
    "properties": {
        "highlight": {
            "type": "object",
            "properties": {"moment": {"type": "string"}, "reason": {"type": "string"}},
            "required": ["moment", "reason"],
            "additionalProperties": False,
        },
        "agency": {
            "type": "object",
            "properties": {"felt_meaningful": {"type": "boolean"}, "example": {"type": "string"}},
            "required": ["felt_meaningful", "example"],
            "additionalProperties": False,
        },
        "frustrations": _STRINGS,
        "missed_opportunities": _STRINGS,
        "pacing": {
            "type": "object",
            "properties": {
                "rating": {"type": "string", "enum": ["too-fast", "too-slow", "good"]},
                "notes": {"type": "string"},
            },
            "required": ["rating", "notes"],
            "additionalProperties": False,
        },
        "narrator_rating": {
            "type": "object",
            "properties": {
                "score": {"type": "number"},
                "positives": _STRINGS,
                "negatives": _STRINGS,
            },
            "required": ["score", "positives", "negatives"],
            "additionalProperties": False,
        },
        "group_dynamics": {"type": "string"},
    },
    "required": [
        "highlight", "agency", "frustrations", "missed_opportunities",
        "pacing", "narrator_rating", "group_dynamics",
    ],
    "additionalProperties": False,
}

LOW_SCORE = 7.0


def _to_feedback(agent: PlayerAgent, data: dict) -> PlayerFeedback:
    highlight = data.get("highlight") or {}
    agency = data.get("agency") or {}
    pacing = data.get("pacing") or {}
    rating = data.get("narrator_rating") or {}
    return PlayerFeedback(
        agent_name=agent.name,
        archetype=agent.archetype,
        highlight=highlight.get("moment", ""),
        highlight_reason=highlight.get("reason", ""),
        agency_meaningful=agency.get("felt_meaningful", True),
        agency_example=agency.get("example", ""),
        frustrations=data.get("frustrations") or [],
        missed_opportunities=data.get("missed_opportunities") or [],
        pacing=pacing.get("rating", "good"),
        pacing_notes=pacing.get("notes", ""),
        narrator_score=rating.get("score"),
        narrator_positives=rating.get("positives") or [],
        narrator_negatives=rating.get("negatives") or [],
        group_dynamics=data.get("group_dynamics", ""),
    )


async def interview(
    agent: PlayerAgent,
    transcript: Sequence[Message],
    title: str,
    generator: FallbackGenerator,
    models: Sequence[str] = FEEDBACK_MODELS,
) -> PlayerFeedback | None:
    """Interview one agent. Returns None when the interview fails."""
    lines = [
        {
            "speaker": "Narrator" if m.role == "narrator" else m.author,
            "content": m.content,
        }
        for m in transcript if m.visible_to(agent.name) and m.turn > 0
    ]
    prompt = render_prompt(FEEDBACK_INTERVIEW, {"title": title, "name": agent.name, "transcript": lines})
    try:
        generation = await generator.generate(
            "feedback",
            models,
            system=agent.system_prompt + FEEDBACK_MODE,
            messages=[{"role": "user", "content": prompt}],
            schema=FEEDBACK_SCHEMA,
            temperature=0.7,
            max_tokens=1200,
            label=f"{agent.name} feedback",
        )
        feedback = _to_feedback(agent, generation.data or {})
    except (GenerationError, ValidationError) as e:
        logger.warning("Feedback interview with %s failed: %s", agent.name, e)
        return None
    logger.info("%s rated the narrator %.0f/10", agent.name, feedback.narrator_score)
    return feedback


async def collect_feedback(
    session_id: str,
    agents: Sequence[PlayerAgent],
    transcript: Sequence[Message],
    title: str,
    generator: FallbackGenerator,
    models: Sequence[str] = FEEDBACK_MODELS,
) -> SessionFeedback:
    players: list[PlayerFeedback] = []
    for agent in agents:
        feedback = await interview(agent, transcript, title, generator, models)
        if feedback is not None:
            players.append(feedback)
    return synthesize_feedback(session_id, players)


def synthesize_feedback(session_id: str, players: Sequence[PlayerFeedback]) -> SessionFeedback:
    """Aggregate individual interviews into session-level findings."""
    if not players:
        return SessionFeedback(
            session_id=session_id,
            pacing_verdict="No feedback collected",
            recommendations=["No player feedback was collected"],
        )

    score = sum(p.narrator_score for p in players) / len(players)

    # Moments that more than one player picked, by shared 20-char prefix
    highlights = [p.highlight for p in players if p.highlight.strip()]
    lowered = [h.lower() for h in highlights]
    top_moments = [
        highlight for i, highlight in enumerate(highlights)
        if any(
            i != j and (other.startswith(lowered[i][:20]) or lowered[i].startswith(other[:20]))
            for j, other in enumerate(lowered)
        )
    ] or highlights

    # Frustrations raised by more than one player, keyed on a 30-char prefix
    first_seen: dict[str, str] = {}
    raised_by: Counter[str] = Counter()
    for player in players:
        keys: dict[str, None] = {}
        for frustration in player.frustrations:
            key = frustration.lower()[:30]
            first_seen.setdefault(key, frustration)
            keys.setdefault(key)
        raised_by.update(list(keys))
    shared = [first_seen[key] for key, count in raised_by.items() if count > 1]

    strengths = list(dict.fromkeys(x for p in players for x in p.narrator_positives))
    weaknesses = list(dict.fromkeys(x for p in players for x in p.narrator_negatives))

    votes = Counter(p.pacing for p in players)
    tally = [(rating, votes[rating]) for rating in ("too-fast", "too-slow", "good")]
    winner, count = max(tally, key=lambda item: item[1])
    verdict = f"{winner} ({count}/{len(players)} agents)"

    recommendations: list[str] = []
    if score < LOW_SCORE:
        recommendations.append("Narrator quality needs improvement - review negative feedback")
    if shared:
        recommendations.append(f"Address shared frustrations: {', '.join(shared[:2])}")
    if sum(1 for p in players if not p.agency_meaningful) > len(players) / 2:
        recommendations.append("Improve player agency - choices feel meaningless to most players")
    if votes["too-fast"] > votes["good"]:
        recommendations.append("Slow down pacing - too rushed for most players")
    elif votes["too-slow"] > votes["good"]:
        recommendations.append("Speed up pacing - too slow for most players")
    missed = list(dict.fromkeys(x for p in players for x in p.missed_opportunities))
    if len(missed) > 3:
        recommendations.append(f"Consider enabling: {', '.join(missed[:3])}")

    logger.info("Feedback: narrator %.1f/10, pacing %s", score, verdict)
    return SessionFeedback(
        session_id=session_id,
        players=list(players),
        top_moments=top_moments,
        shared_pain_points=shared,
        narrator_score=score,
        narrator_strengths=strengths,
        narrator_weaknesses=weaknesses,
        pacing_verdict=verdict,
        recommendations=recommendations,
    )
