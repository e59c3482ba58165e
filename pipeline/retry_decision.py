"""Retry Decision Agent: decides whether a failed shot is worth regenerating.

Offline classification always runs first; a `skip` verdict returns right
away without touching the network. Otherwise, when credentials and both
images are available, a reasoning-capable vision model weighs the failed
shot against its reference and may propose a prompt addendum. Any failure in
that step falls back to the offline classification. `decide()` never raises.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

import config
from pipeline.corrections import corrections_for_errors
from pipeline.error_classifier import classify_errors
from pipeline.images import ImageLoadError, load_image
from pipeline.llm import (
    JSONExtractionError,
    LLMError,
    ModelCredentials,
    VisionClient,
    build_vision_client,
    coerce_credentials,
    parse_model_json,
)
from pipeline.vision_validator import ImageSource
from pipeline.vocabulary import Vocabulary
from schemas.continuity import DecisionResult, DopError, ErrorClassification

logger = logging.getLogger(__name__)

QUICK_SKIP_CONFIDENCE = 0.9
FALLBACK_CONFIDENCE = 0.7
DEFAULT_MODEL_CONFIDENCE = 0.5

SYSTEM_PROMPT = (
    "You are a DOP Decision Agent. You decide whether regenerating an image "
    "will fix its continuity errors. You are a strict JSON-only evaluator."
)


class _ModelDecision(BaseModel):
    """Schema the reasoning model must satisfy; optional fields get safe defaults."""

    model_config = ConfigDict(populate_by_name=True)

    action: Literal["retry", "skip", "try_once"]
    reason: str = "AI analysis"
    confidence: float = DEFAULT_MODEL_CONFIDENCE
    enhanced_prompt: str | None = Field(default=None, alias="enhancedPrompt")

    @field_validator("action", mode="before")
    @classmethod
    def _normalize_action(cls, value):
        return str(value or "").strip().lower().replace("-", "_").replace(" ", "_")

    @field_validator("reason", mode="before")
    @classmethod
    def _default_reason(cls, value):
        text = str(value or "").strip()
        return text or "AI analysis"

    @field_validator("confidence", mode="before")
    @classmethod
    def _default_confidence(cls, value):
        if value is None or value == "":
            return DEFAULT_MODEL_CONFIDENCE
        return value


def build_decision_prompt(original_prompt: str, errors: Iterable[DopError]) -> str:
    error_lines = "\n".join(f"- [{e.type}] {e.description}" for e in errors) or "- (none reported)"
    return (
        "Analyze if retrying image generation will FIX the errors.\n"
        "\n"
        "ERRORS DETECTED:\n"
        f"{error_lines}\n"
        "\n"
        "ORIGINAL PROMPT:\n"
        f"\"{original_prompt}\"\n"
        "\n"
        "ANALYSIS TASK:\n"
        "1. Look at the FAILED IMAGE and the REFERENCE IMAGE\n"
        "2. Determine if the errors are FIXABLE by modifying the prompt\n"
        "3. Consider: Can text instructions fix face/identity issues? (Usually NO)\n"
        "4. Consider: Can text instructions fix prop/lighting issues? (Usually YES)\n"
        "\n"
        "RESPOND IN JSON ONLY:\n"
        "{\n"
        "  \"action\": \"retry\" | \"skip\" | \"try_once\",\n"
        "  \"reason\": \"brief explanation\",\n"
        "  \"confidence\": 0.0-1.0,\n"
        "  \"enhancedPrompt\": \"if action is retry, provide SPECIFIC additions to fix the errors\"\n"
        "}"
    )


class RetryDecisionAgent:
    def __init__(
        self,
        client_factory: Callable[[ModelCredentials, str], VisionClient] = build_vision_client,
        vocabulary: Vocabulary | None = None,
        offline_corrections: bool | None = None,
    ):
        self.client_factory = client_factory
        self.vocabulary = vocabulary
        self.offline_corrections = (
            config.DOP_OFFLINE_CORRECTIONS if offline_corrections is None else offline_corrections
        )

    async def decide(
        self,
        failed_image: ImageSource | None,
        reference_image: ImageSource | None,
        original_prompt: str,
        errors: Iterable[DopError | dict],
        credentials: ModelCredentials | dict | str | None,
    ) -> DecisionResult:
        try:
            error_list = [e if isinstance(e, DopError) else DopError.model_validate(e) for e in errors or []]
        except ValidationError as exc:
            logger.warning("DOP agent: malformed error list (%s); skipping retry", exc)
            return DecisionResult(
                action="skip",
                reason=f"Malformed error list: {exc.error_count()} invalid entries",
                confidence=FALLBACK_CONFIDENCE,
            )
        classification = classify_errors(error_list, self.vocabulary)

        if classification.decision == "skip":
            unfixable = ", ".join(e.description for e in classification.unfixable)
            logger.info("DOP agent: quick skip; unfixable errors: %s", unfixable or "(none)")
            return DecisionResult(
                action="skip",
                reason=(
                    f"Unfixable errors detected: {unfixable}"
                    if unfixable
                    else "No continuity errors to fix"
                ),
                confidence=QUICK_SKIP_CONFIDENCE,
            )

        creds = coerce_credentials(credentials)
        if creds is not None and failed_image and reference_image:
            decision = await self._ask_model(
                failed_image,
                reference_image,
                original_prompt,
                error_list,
                creds,
            )
            if decision is not None:
                return decision

        return self._fallback(classification)

    async def _ask_model(
        self,
        failed_image: ImageSource,
        reference_image: ImageSource,
        original_prompt: str,
        errors: list[DopError],
        creds: ModelCredentials,
    ) -> DecisionResult | None:
        try:
            failed_payload = await load_image(failed_image)
            reference_payload = await load_image(reference_image)
            parts = [
                "FAILED IMAGE:",
                failed_payload,
                "REFERENCE IMAGE (should match):",
                reference_payload,
                build_decision_prompt(original_prompt, errors),
            ]
            client = self.client_factory(creds, "decision")
            raw = await client.generate(SYSTEM_PROMPT, parts)
            parsed = parse_model_json(raw, _ModelDecision)
            decision = DecisionResult(
                action=parsed.action,
                reason=parsed.reason,
                confidence=parsed.confidence,
                enhanced_prompt=parsed.enhanced_prompt,
            )
        except (ImageLoadError, LLMError, JSONExtractionError, ValidationError) as exc:
            logger.warning("DOP agent: model analysis unavailable, using classification: %s", exc)
            return None
        except Exception as exc:
            logger.warning("DOP agent: model analysis failed unexpectedly, using classification: %s", exc)
            return None

        logger.info(
            "DOP agent: model decision action=%s confidence=%.2f",
            decision.action, decision.confidence,
        )
        return decision

    def _fallback(self, classification: ErrorClassification) -> DecisionResult:
        enhanced = None
        if self.offline_corrections and classification.decision == "retry":
            enhanced = corrections_for_errors(classification.fixable) or None
        return DecisionResult(
            action=classification.decision,
            reason=(
                f"Based on error classification: {len(classification.fixable)} fixable, "
                f"{len(classification.unfixable)} unfixable"
            ),
            confidence=FALLBACK_CONFIDENCE,
            enhanced_prompt=enhanced,
        )


def apply_decision(original_prompt: str, decision: DecisionResult) -> str | None:
    """Prompt to reissue for a decision, or None when the shot should be dropped."""
    if decision.action == "skip":
        return None
    if decision.action == "retry" and decision.enhanced_prompt:
        return f"{original_prompt.rstrip()}\n\n{decision.enhanced_prompt.strip()}"
    return original_prompt
