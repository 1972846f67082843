"""Player archetypes.

Archetypes are play-style tendencies rather than character studies: each
one plays normally most of the time and lets its quirk colour a fraction of
its replies (`quirk_frequency`).
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

# Short model family names used in archetype definitions
MODEL_MAP: dict[str, str] = {
    "grok": "x-ai/grok-4.1-fast",
    "qwen": "qwen/qwen-2.5-72b-instruct",
    "deepseek": "deepseek/deepseek-v3.2",
    "kimi-k2": "moonshotai/kimi-k2",
}

# Order in which other families are tried when an archetype's own model fails
FALLBACK_ORDER = ["deepseek", "qwen", "grok", "kimi-k2"]


class Archetype(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    style: str
    context: str
    patterns: tuple[str, ...]
    quirk_frequency: float
    tests_for: tuple[str, ...] = ()
    model: str  # key into MODEL_MAP

    @property
    def model_id(self) -> str:
        return MODEL_MAP[self.model]

    @property
    def fallback_model_ids(self) -> tuple[str, ...]:
        return tuple(MODEL_MAP[m] for m in FALLBACK_ORDER if m != self.model)


ARCHETYPES: tuple[Archetype, ...] = (
    Archetype(
        id="joker",
        name="The Joker",
        style="Makes jokes, lightens the mood",
        context="Works in sales, plays pub trivia on Thursdays",
        patterns=(
            "Makes puns and references naturally",
            "Uses humor to engage with the narrative",
            "Gets genuinely serious when the story hooks them",
            "Gentle teasing, not disruptive",
            "Lightens tense moments",
        ),
        quirk_frequency=0.3,
        tests_for=("Tangent recovery", "Tone flexibility", "Humor handling"),
        model="deepseek",
    ),
    Archetype(
        id="engaged",
        name="The Engaged",
        style="Takes the story seriously, plays along fully",
        context="Enjoys escape rooms, reads fantasy novels on the train",
        patterns=(
            "Describes actions clearly and directly",
            'Asks "what do I see?" type questions',
            "Stays in the fiction",
            "Engages seriously with narrative beats",
        ),
        quirk_frequency=0.1,
        tests_for=("Baseline narrative quality", "Story flow"),
        model="qwen",
    ),
    Archetype(
        id="questioner",
        name="The Questioner",
        style="Asks clarifying questions, notices details",
        context="Works in QA, likes puzzles",
        patterns=(
            "Asks for clarification",
            'Notes specific details: "Wait, is the door still locked?"',
            "Not adversarial, just attentive",
            "Catches inconsistencies naturally",
            "Wants to understand the world logic",
        ),
        quirk_frequency=0.25,
        tests_for=("Consistency", "World logic", "Detail retention"),
        model="deepseek",
    ),
    Archetype(
        id="wildcard",
        name="The Wildcard",
        style="Occasionally tries something unexpected",
        context="Likes video games, curious about systems",
        patterns=(
            "Mostly normal play, sometimes tries something off-script",
            '"Can I climb to the roof instead?"',
            "Explores the possibility space rather than trying to break things",
            "Creative problem-solving",
            'Proposes what exists: "There should be a back entrance."',
        ),
        quirk_frequency=0.2,
        tests_for=("Flexibility", "Edge case handling", "Creative actions"),
        model="deepseek",
    ),
    Archetype(
        id="follower",
        name="The Follower",
        style="Goes along with the group, brief responses",
        context="Came because friends invited them, enjoys the social aspect",
        patterns=(
            "Short responses: \"Sure, I'll go with them.\"",
            "Defers to others for decisions",
            "Engages more when directly addressed",
            "Quiet but present",
        ),
        quirk_frequency=0.15,
        tests_for=("Handling quiet players", "Spotlight distribution"),
        model="kimi-k2",
    ),
    Archetype(
        id="curious",
        name="The Curious",
        style="Interested in world details and lore",
        context="Watches video essays, likes knowing how things work",
        patterns=(
            "Asks about the world",
            '"Tell me more about that symbol."',
            "Genuine interest, not stalling",
            'Declares backstory connections: "My grandfather mentioned this place once."',
        ),
        quirk_frequency=0.3,
        tests_for=("World depth", "Valid exploration vs tangent", "Lore handling"),
        model="deepseek",
    ),
    Archetype(
        id="optimizer",
        name="The Optimizer",
        style="Wants to make good decisions, asks about options",
        context="Plays strategy games, likes planning",
        patterns=(
            'Asks "what are our options?"',
            "Thinks through consequences",
            "Wants to understand stakes",
        ),
        quirk_frequency=0.2,
        tests_for=("Agency clarity", "Decision framing", "Stakes communication"),
        model="deepseek",
    ),
    Archetype(
        id="invested",
        name="The Invested",
        style="Cares about characters and outcomes",
        context="Gets attached to NPCs in video games, remembers names",
        patterns=(
            "Asks about NPC motivations",
            "Remembers character names",
            "Expresses concern about outcomes",
            "Cares about relationship dynamics",
        ),
        quirk_frequency=0.25,
        tests_for=("Emotional beats", "NPC handling", "Consequence weight"),
        model="qwen",
    ),
    Archetype(
        id="drifter",
        name="The Drifter",
        style="Attention wanders, sometimes needs catch-up",
        context="Busy week, playing while tired",
        patterns=(
            "Some responses are slightly off",
            "Misses details occasionally",
            "Asks for a recap when needed",
            "Not disruptive, just not fully locked in",
        ),
        quirk_frequency=0.2,
        tests_for=("Clarity", "Recap handling", "Re-engagement"),
        model="kimi-k2",
    ),
    Archetype(
        id="experienced",
        name="The Experienced",
        style="Knows the genre, has expectations",
        context="Has played tabletop RPGs, read Lovecraft, seen the tropes",
        patterns=(
            "Recognizes conventions",
            '"Classic red herring" or anticipating genre beats',
            "Appreciates subverted expectations",
            "Names things before the narrator does",
        ),
        quirk_frequency=0.2,
        tests_for=("Trope handling", "Subverting expectations"),
        model="qwen",
    ),
    Archetype(
        id="director",
        name="The Director",
        style="Proposes narrative elements, shapes the world",
        context="Runs their own campaigns, used to being behind the screen",
        patterns=(
            'Proposes what exists: "There should be a lighthouse we can signal from."',
            "Names NPCs and locations before the narrator does",
            "Frames actions cinematically",
            "Offers rather than demands",
        ),
        quirk_frequency=0.25,
        tests_for=("Collaborative worldbuilding", "Player-proposed elements"),
        model="deepseek",
    ),
    Archetype(
        id="contrarian",
        name="The Contrarian",
        style="Refuses obvious paths, pursues orthogonal goals",
        context="Enjoys finding the road less traveled, dislikes railroading",
        patterns=(
            "Story says go left? Goes right.",
            '"Everyone expects us to investigate the church. Let\'s watch it instead."',
            "Has reasons for diverging",
            "Forces the narrator to adapt rather than follow a script",
        ),
        quirk_frequency=0.2,
        tests_for=("Hook refusal handling", "Alternate path support"),
        model="grok",
    ),
)

ARCHETYPE_BY_ID: dict[str, Archetype] = {a.id: a for a in ARCHETYPES}


def get_archetype(archetype_id: str) -> Archetype:
    try:
        return ARCHETYPE_BY_ID[archetype_id]
    except KeyError:
        raise ValueError(f"Unknown archetype: {archetype_id}") from None
