"""Next-Shot Advisor: suggests the camera angle for the following shot.

Advisory only; it never gates generation. Variety is intentional, so the
suggestion is drawn from a small candidate set through an injectable random
source (pass a seeded `random.Random` for reproducible output).
"""

from __future__ import annotations

import random
from typing import Any, Protocol, Sequence

from schemas.continuity import NextShotAdvice, ProjectSnapshot, ShotSuggestion

ADVICE_TITLE = "DOP advice"

CLOSE_UP = ShotSuggestion(
    label="Close-up",
    angle="close-up",
    reason="Emphasize emotion or the prop detail after the previous action.",
)
WIDE_SHOT = ShotSuggestion(
    label="Wide Shot",
    angle="wide-shot",
    reason="Re-establish the space and where characters stand in it.",
)
POV = ShotSuggestion(
    label="POV",
    angle="pov",
    reason="Show exactly what the character is looking at (for example, the prop).",
)
OVER_THE_SHOULDER = ShotSuggestion(
    label="Over-the-shoulder (OTS)",
    angle="over-the-shoulder",
    reason="Add depth and connect the character with the subject or object.",
)
REACTION = ShotSuggestion(
    label="Reaction",
    angle="medium-shot",
    reason="Capture the character's reaction right after an important beat.",
)

SUGGESTIONS: tuple[ShotSuggestion, ...] = (CLOSE_UP, WIDE_SHOT, POV, OVER_THE_SHOULDER, REACTION)

# Candidate sets per rule.
AFTER_WIDE_CANDIDATES = (CLOSE_UP, POV)
PACING_CANDIDATES = (WIDE_SHOT, POV)


class ChoiceSource(Protocol):
    def choice(self, seq: Sequence[Any]) -> Any: ...


class NextShotAdvisor:
    def __init__(self, project: ProjectSnapshot, rng: ChoiceSource | None = None):
        self.project = project
        self.rng = rng or random.Random()

    def suggest(self, last_scene_id: str) -> NextShotAdvice | None:
        scene = self.project.scene(last_scene_id)
        if scene is None:
            return None

        if "wide" in scene.resolved_camera_angle:
            return NextShotAdvice(
                title=ADVICE_TITLE,
                action="Move closer or go POV",
                recommendation=self.rng.choice(AFTER_WIDE_CANDIDATES),
            )

        if scene.product_ids:
            return NextShotAdvice(
                title=ADVICE_TITLE,
                action="Emphasize the prop",
                recommendation=POV,
            )

        return NextShotAdvice(
            title=ADVICE_TITLE,
            action="Change the rhythm",
            recommendation=self.rng.choice(PACING_CANDIDATES),
        )
