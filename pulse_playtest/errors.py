"""Typed failures raised by the harness.

Anything deriving from HarnessError aborts the current turn and marks the
session failed. Transport-level failures (LLMError) live in llm.py and are
retried by the fallback chain before they surface as GenerationError.
"""


class HarnessError(RuntimeError):
    """Base class for turn-level failures."""


class GenerationError(HarnessError):
    """Every model in a fallback chain failed for one call."""

    def __init__(self, label: str, models: list[str]) -> None:
        super().__init__(f"All models failed for {label}: {', '.join(models)}")
        self.label = label
        self.models = models


class ClassificationError(HarnessError):
    """The classifier returned output that does not fit the schema."""


class DegenerateOutputError(HarnessError):
    """Narrator output stayed empty or garbage after every retry."""


class CheckpointError(HarnessError):
    """A checkpoint could not be written or read."""
