"""Raccord Analyzer: metadata-only continuity checks between consecutive shots.

Compares a scene with its predecessor in the project sequence and flags the
continuity risks that can be predicted before any image exists:
- location changes (or the need to hold the background fixed)
- props that vanish or appear without a pickup action
- characters leaving frame
- body-state changes with no transition action

Insights are advisory and recomputed from the snapshot on every call.
"""

from __future__ import annotations

import logging

from pipeline.vocabulary import KeywordMatcher, Vocabulary
from schemas.continuity import ProjectSnapshot, RaccordInsight, Scene

logger = logging.getLogger(__name__)

_FALLBACK_PROP_NAME = "Prop"
_FALLBACK_CHARACTER_NAME = "Character"
_FALLBACK_LOCATION_NAME = "unknown location"


def _missing_from(source: list[str], target: list[str]) -> list[str]:
    """Ids in `source` (order kept, duplicates dropped) that `target` lacks."""
    present = set(target)
    missing: list[str] = []
    for item in source:
        if item not in present and item not in missing:
            missing.append(item)
    return missing


class RaccordAnalyzer:
    def __init__(self, project: ProjectSnapshot, vocabulary: Vocabulary | None = None):
        self.project = project
        self.matcher = KeywordMatcher(vocabulary)

    def analyze(self, scene_id: str) -> list[RaccordInsight]:
        current = self.project.scene(scene_id)
        if current is None:
            logger.debug("Raccord: unknown scene id %s", scene_id)
            return []
        previous = self.project.predecessor(scene_id)
        if previous is None:
            return []

        insights: list[RaccordInsight] = [self._location_insight(previous, current)]
        insights.extend(self._prop_insights(previous, current))
        departure = self._character_insight(previous, current)
        if departure:
            insights.append(departure)
        transition = self._state_insight(previous, current)
        if transition:
            insights.append(transition)

        logger.debug("Raccord: %s vs %s -> %d insights", previous.id, current.id, len(insights))
        return insights

    # -- rules -------------------------------------------------------------

    def _group_label(self, group_id: str | None) -> str:
        return self.project.group_name(group_id) or group_id or _FALLBACK_LOCATION_NAME

    def _location_insight(self, previous: Scene, current: Scene) -> RaccordInsight:
        if previous.group_id == current.group_id:
            return RaccordInsight(
                type="environment",
                severity="info",
                message=(
                    f"Same group: both shots take place in \"{self._group_label(current.group_id)}\"."
                ),
                suggestion=(
                    "Keep background details fixed: wall art, furniture placement "
                    "and set dressing must not move between shots."
                ),
            )
        return RaccordInsight(
            type="flow",
            severity="info",
            message=(
                f"Transition: from \"{self._group_label(previous.group_id)}\" "
                f"to \"{self._group_label(current.group_id)}\"."
            ),
            suggestion="Use a clear establishing shot to introduce the new location.",
        )

    def _prop_names(self, product_ids: list[str]) -> str:
        return ", ".join(self.project.product_name(pid) or _FALLBACK_PROP_NAME for pid in product_ids)

    def _prop_insights(self, previous: Scene, current: Scene) -> list[RaccordInsight]:
        insights: list[RaccordInsight] = []

        disappeared = _missing_from(previous.product_ids, current.product_ids)
        if disappeared:
            insights.append(
                RaccordInsight(
                    type="prop",
                    severity="warning",
                    message=(
                        f"Disappearing prop: {self._prop_names(disappeared)} appeared in the "
                        "previous shot but not in this one."
                    ),
                    suggestion=(
                        "If the character is still holding it, add it back to this scene's products."
                    ),
                    affected_ids=disappeared,
                )
            )

        appeared = _missing_from(current.product_ids, previous.product_ids)
        if appeared and not self.matcher.has_pickup_action(previous.context_description):
            insights.append(
                RaccordInsight(
                    type="prop",
                    severity="critical",
                    message=f"Prop jump: {self._prop_names(appeared)} suddenly appears.",
                    suggestion=(
                        "The previous shot has no action picking this up. Add a setup shot "
                        "or rewrite the previous scene's action."
                    ),
                    affected_ids=appeared,
                )
            )
        return insights

    def _character_insight(self, previous: Scene, current: Scene) -> RaccordInsight | None:
        departed = _missing_from(previous.character_ids, current.character_ids)
        if not departed:
            return None
        names = ", ".join(
            self.project.character_name(cid) or _FALLBACK_CHARACTER_NAME for cid in departed
        )
        return RaccordInsight(
            type="character",
            severity="info",
            message=f"{names} left the frame or is no longer the focus.",
            affected_ids=departed,
        )

    def _state_insight(self, previous: Scene, current: Scene) -> RaccordInsight | None:
        before = self.matcher.body_state(previous.context_description)
        after = self.matcher.body_state(current.context_description)
        if not before or not after or before == after:
            return None
        return RaccordInsight(
            type="flow",
            severity="info",
            message=f"State change: the character goes from {before} to {after}.",
            suggestion="Make sure a transition action bridges these two states.",
        )


def analyze_raccord(project: ProjectSnapshot, scene_id: str, vocabulary: Vocabulary | None = None) -> list[RaccordInsight]:
    """Functional shorthand for `RaccordAnalyzer(project).analyze(scene_id)`."""
    return RaccordAnalyzer(project, vocabulary).analyze(scene_id)
