"""Vision Continuity Validator: compares two rendered shots with a vision model.

Sends the previous and current shot, plus what each scene is supposed to
contain, to a vision-capable model and reads back a structured verdict.

Validation informs the generation pipeline but must never block it: missing
inputs and every failure (transport, auth, quota, malformed output) degrade
to a clean "valid, no errors" verdict.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from pipeline.images import ImageLoadError, ImagePayload, load_image
from pipeline.llm import (
    JSONExtractionError,
    LLMError,
    ModelCredentials,
    VisionClient,
    build_vision_client,
    coerce_credentials,
    parse_model_json,
)
from schemas.continuity import GateDecision, ProjectSnapshot, Scene, VisionVerdict

logger = logging.getLogger(__name__)

ImageSource = str | Path | ImagePayload

SYSTEM_PROMPT = (
    "You are a professional Director of Photography (DOP) checking for RACCORD "
    "(continuity) errors between two consecutive shots. You are a strict JSON-only evaluator."
)

RESPONSE_FORMAT = """RESPOND IN JSON ONLY:
{
  "isValid": true/false,
  "errors": [{"type": "prop|character|lighting|spatial", "description": "specific issue"}],
  "correctionPrompt": "If errors found, provide the EXACT instruction to add to the prompt to fix it",
  "score": 0.0-1.0
}
score: overall continuity match between the two shots, 1.0 = perfect raccord, below 0.6 = must regenerate."""


def _fail_open() -> VisionVerdict:
    return VisionVerdict(is_valid=True, errors=[])


class VisionContinuityValidator:
    def __init__(
        self,
        project: ProjectSnapshot,
        client_factory: Callable[[ModelCredentials, str], VisionClient] = build_vision_client,
    ):
        self.project = project
        self.client_factory = client_factory

    def _names(self, ids: list[str], lookup: Callable[[str], str | None]) -> str:
        names = [name for name in (lookup(i) for i in ids) if name]
        return ", ".join(names) or "None"

    def build_prompt(self, current_scene: Scene, previous_scene: Scene) -> str:
        same_location = previous_scene.group_id == current_scene.group_id
        location_rule = (
            "SAME LOCATION: Background must be strictly consistent."
            if same_location
            else "DIFFERENT LOCATION: Transition allowed."
        )
        p = self.project
        return (
            "SCENE CONTEXT:\n"
            f"- Previous Scene: \"{previous_scene.context_description or 'N/A'}\"\n"
            f"- Characters in previous: {self._names(previous_scene.character_ids, p.character_name)}\n"
            f"- Props in previous: {self._names(previous_scene.product_ids, p.product_name)}\n"
            "\n"
            f"- Current Scene: \"{current_scene.context_description or 'N/A'}\"\n"
            f"- Characters expected: {self._names(current_scene.character_ids, p.character_name)}\n"
            f"- Props expected: {self._names(current_scene.product_ids, p.product_name)}\n"
            "\n"
            f"{location_rule}\n"
            "\n"
            "CHECK FOR:\n"
            "1. PROP CONTINUITY: Are props that should appear actually visible? Check position "
            "consistency (same hand, same table position).\n"
            "2. CHARACTER IDENTITY: Do faces match between shots? Same costume?\n"
            "3. LIGHTING: Is the lighting direction and color temperature consistent?\n"
            "4. SPATIAL: Are background elements consistent (furniture, walls, etc.)?\n"
            "\n"
            f"{RESPONSE_FORMAT}"
        )

    async def validate(
        self,
        current_image: ImageSource | None,
        previous_image: ImageSource | None,
        current_scene: Scene,
        previous_scene: Scene,
        credentials: ModelCredentials | dict | str | None,
    ) -> VisionVerdict:
        creds = coerce_credentials(credentials)
        if creds is None or not current_image or not previous_image:
            return _fail_open()

        try:
            previous_payload = await load_image(previous_image)
            current_payload = await load_image(current_image)
        except ImageLoadError as exc:
            logger.warning("DOP vision: image unavailable (%s); skipping validation", exc)
            return _fail_open()

        parts = [
            "PREVIOUS SHOT:",
            previous_payload,
            "CURRENT SHOT:",
            current_payload,
            self.build_prompt(current_scene, previous_scene),
        ]
        try:
            client = self.client_factory(creds, "vision")
            raw = await client.generate(SYSTEM_PROMPT, parts)
            verdict = parse_model_json(raw, VisionVerdict)
        except (LLMError, JSONExtractionError, ValidationError) as exc:
            logger.warning(
                "DOP vision: validation degraded to pass for %s -> %s: %s",
                previous_scene.id, current_scene.id, exc,
            )
            return _fail_open()
        except Exception as exc:
            logger.warning(
                "DOP vision: unexpected failure for %s -> %s: %s",
                previous_scene.id, current_scene.id, exc,
            )
            return _fail_open()

        logger.info(
            "DOP vision: %s -> %s valid=%s errors=%d",
            previous_scene.id, current_scene.id, verdict.is_valid, len(verdict.errors),
        )
        return verdict


# ---------------------------------------------------------------------------
# Verdict gating (score-aware)
# ---------------------------------------------------------------------------

def assess_verdict(
    verdict: VisionVerdict,
    *,
    strict: bool = False,
    auto_retry_threshold: float = 0.6,
    ask_user_threshold: float = 0.8,
) -> GateDecision:
    """Map a verdict onto continue / retry / ask_user.

    With a score: below `auto_retry_threshold` retries, below
    `ask_user_threshold` asks the user. Without one, an invalid verdict that
    carries errors retries. Strict mode retries on any character error.
    """
    if strict and any(e.type == "character" for e in verdict.errors):
        return "retry"
    if verdict.score is None:
        return "retry" if (not verdict.is_valid and verdict.errors) else "continue"
    if verdict.score < auto_retry_threshold:
        return "retry"
    if verdict.score < ask_user_threshold:
        return "ask_user"
    return "continue"


def format_verdict(verdict: VisionVerdict) -> str:
    score = f" ({round(verdict.score * 100)}%)" if verdict.score is not None else ""
    if verdict.is_valid and not verdict.errors:
        return f"Raccord OK{score}"
    issues = "; ".join(f"[{e.type}] {e.description}" for e in verdict.errors)
    return f"Raccord issues{score}: {issues or 'minor issues detected'}"
