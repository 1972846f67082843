"""Handlebars prompt templates for every generation stage."""

from collections.abc import Callable
from typing import Any

import pybars


_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_take(this, options, items, count):
    """{{#take array N}}...{{/take}}: iterate over the first N items."""
    result = []
    for item in list(items)[:int(count)]:
        result.extend(options["fn"](item))
    return result


def _helper_last(this, options, items, count):
    """{{#last array N}}...{{/last}}: iterate over the last N items."""
    result = []
    for item in list(items)[-int(count):]:
        result.extend(options["fn"](item))
    return result


_HELPERS: dict[str, Callable] = {
    "take": _helper_take,
    "last": _helper_last,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Narrator ─────────────────────────────────────────────

NARRATOR_OPENING = "Hi"

NARRATOR_SYSTEM = """\
You are the narrator of "{{{title}}}", a story played by a group of friends in a shared chat.
{{#if description}}

{{{description}}}
{{/if}}
{{#if guide}}

STORY GUIDE:
{{{guide}}}
{{/if}}

The players are: {{{player_list}}}.
Narrate in {{{language}}}. Keep each turn focused and end on something the players can respond to.
When only one player should learn something, mark it as "[to NAME only] ...".
When you want specific players to answer, address them by name."""

# Stand-in user turn between two consecutive narrator turns
NARRATOR_CONTINUE = "[The players acknowledge and wait for the narrator to continue.]"

PLAYERS_PREFIX = "Players: "


# ── Players ──────────────────────────────────────────────

PLAYER_SYSTEM = """\
You are {{{name}}}, a player in a multiplayer interactive story game played over chat with friends.

PLAY STYLE: {{{style}}}

Typical things you do:
{{#take patterns 5}}- {{{this}}}
{{/take}}
Let these quirks show in roughly {{{quirk_percent}}}% of your messages.
Write the way people actually type in a group chat: short, casual, 1-3 sentences.
Respond in {{{language}}}."""

CHARACTER_LOCK = """

## YOUR CHARACTER (LOCKED)
Name: {{{name}}}
{{#if role}}Role: {{{role}}}
{{/if}}{{#if backstory}}Backstory: {{{backstory}}}
{{/if}}{{#if inventory}}Inventory: {{{inventory}}}
{{/if}}Play this character for the rest of the session. Do not change who you are."""

PLAYER_REACTION = "{{{name}}}, what is your reaction to this? Respond in character."

PLAYER_DIRECTED = (
    "{{{name}}}, the narrator is speaking to you directly. "
    "Answer only the questions addressed to you. Respond in character."
)

PLAYER_PRIVATE = (
    "{{{name}}}, this was shown to you alone. The other players cannot see it "
    "or your answer. Respond in character."
)

SPOKESPERSON_SYNTHESIS = """\
You are speaking for the whole group this turn. The narrator said:

{{{narrator_text}}}

Your friends reacted:
{{#each reactions}}- {{{author}}}: {{{content}}}
{{/each}}
Add your own view, then relay what the group wants to say or do as one concise message to the narrator (2-4 sentences). Write only the message."""

PREGAME_CHATTER = (
    "You're about to play \"{{{title}}}\" with your friends. "
    "Chat for a moment before starting."
)


# ── Discussion ───────────────────────────────────────────

DISCUSSION_TURN = """\
The group must agree before anyone answers the narrator.

The narrator said:
{{{topic}}}
{{#if character_creation}}

Everyone needs to settle on a character: a name, a role, a short backstory, a few inventory items and how you relate to the others.
{{/if}}
{{#if discussion}}

Discussion so far:
{{#last discussion 12}}- {{{author}}}: {{{content}}}
{{/last}}{{/if}}
{{#if settled}}

Already settled:
{{#each settled}}- {{{name}}}: {{{position}}}
{{/each}}{{/if}}

{{{name}}}, add one short comment to the discussion.
Set "decision" to "settled" when you are happy with your choice, "needs-input" when you need the others to weigh in, otherwise "discussing".
Put your current choice in "position"{{#if character_creation}} and fill in "character"{{/if}}."""

DISCUSSION_SYNTHESIS = """\
You are speaking for the whole group. The narrator said:

{{{topic}}}

The group talked it over and settled on:
{{#each positions}}- {{{name}}}: {{{position}}}
{{/each}}
Relay the group's decision to the narrator as one message. Introduce every player's choice. Write only the message."""


# ── Classifier ───────────────────────────────────────────

CLASSIFIER_SYSTEM = """\
You classify one turn of a narrator running a multiplayer interactive story.

response_type, who must answer:
- "group": everyone reacts and one spokesperson answers for the group
- "discussion": the group must agree on something first (a choice between options, creating characters)
- "directed": the narrator asks specific named players to answer
- "private": the narrator tells one player something the others must not see
- "none": nobody needs to answer

is_pulse: true when the story situation materially advances (new location, new event, new information), false when the narrator only responds to the players.
is_ending: true when the story is concluding.
target_players: the players who must answer for "directed" or "private", using names from the player list. Empty otherwise.
confidence: 0 to 1.
reasoning: one sentence."""

CLASSIFIER_USER = """\
Players: {{{player_list}}}
Story pulses so far: {{{pulse_count}}}

Narrator turn:
{{{narrator_text}}}"""


# ── Private payoff ───────────────────────────────────────

PAYOFF_CHECK = """\
Earlier in the story {{{target}}} privately learned:
{{{content}}}

{{{target}}} replied privately:
{{{response}}}

Current narration:
{{{narration}}}

Does the current narration reference, build on or resolve that private moment? Answer with JSON {"payoff": true} or {"payoff": false}."""


# ── Feedback ─────────────────────────────────────────────

FEEDBACK_INTERVIEW = """\
The session of "{{{title}}}" is over. Here is how it ended:

{{#last transcript 30}}{{{speaker}}}: {{{content}}}
{{/last}}
{{{name}}}, step out of the story for a moment and tell us honestly how it went for you as a player:
the moment you liked most and why, whether your choices felt meaningful, what frustrated you, what you wish the narrator had picked up on, how the pacing felt, a 1-10 rating of the narrator with what worked and what did not, and how the group played together."""
