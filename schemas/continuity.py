"""Continuity schemas: scene records, raccord insights, DOP verdicts and decisions."""

from __future__ import annotations

import math
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


InsightType = Literal["prop", "environment", "character", "flow"]
InsightSeverity = Literal["info", "warning", "critical"]
DecisionAction = Literal["retry", "skip", "try_once"]
VisionErrorType = Literal["prop", "character", "lighting", "spatial"]
GateDecision = Literal["continue", "retry", "ask_user"]


# ---------------------------------------------------------------------------
# Continuity model (read-only inputs)
# ---------------------------------------------------------------------------

class Character(BaseModel):
    id: str
    name: str
    description: str = ""


class Product(BaseModel):
    id: str
    name: str
    description: str = ""


class SceneGroup(BaseModel):
    id: str
    name: str
    description: str = ""


class Scene(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    ordinal: int = 0
    group_id: str | None = Field(default=None, alias="groupId")
    character_ids: list[str] = Field(default_factory=list, alias="characterIds")
    product_ids: list[str] = Field(default_factory=list, alias="productIds")
    context_description: str = Field(default="", alias="contextDescription")
    camera_angle: str | None = Field(default=None, alias="cameraAngle")
    camera_angle_override: str | None = Field(default=None, alias="cameraAngleOverride")
    generated_image: str | None = Field(default=None, alias="generatedImage")
    error: str | None = None

    @property
    def resolved_camera_angle(self) -> str:
        return (self.camera_angle or self.camera_angle_override or "").lower()


class ProjectSnapshot(BaseModel):
    """Read-only view of the project collections the engine consults."""

    model_config = ConfigDict(populate_by_name=True)

    scenes: list[Scene] = Field(default_factory=list)
    characters: list[Character] = Field(default_factory=list)
    products: list[Product] = Field(default_factory=list)
    scene_groups: list[SceneGroup] = Field(default_factory=list, alias="sceneGroups")

    def ordered_scenes(self) -> list[Scene]:
        return sorted(self.scenes, key=lambda s: s.ordinal)

    def scene(self, scene_id: str) -> Scene | None:
        return next((s for s in self.scenes if s.id == scene_id), None)

    def predecessor(self, scene_id: str) -> Scene | None:
        ordered = self.ordered_scenes()
        for idx, scene in enumerate(ordered):
            if scene.id == scene_id:
                return ordered[idx - 1] if idx > 0 else None
        return None

    def character_name(self, character_id: str) -> str | None:
        return next((c.name for c in self.characters if c.id == character_id), None)

    def product_name(self, product_id: str) -> str | None:
        return next((p.name for p in self.products if p.id == product_id), None)

    def group_name(self, group_id: str | None) -> str | None:
        if group_id is None:
            return None
        return next((g.name for g in self.scene_groups if g.id == group_id), None)


# ---------------------------------------------------------------------------
# Heuristic outputs
# ---------------------------------------------------------------------------

class RaccordInsight(BaseModel):
    type: InsightType
    severity: InsightSeverity
    message: str
    suggestion: str | None = None
    affected_ids: list[str] | None = None


class ShotSuggestion(BaseModel):
    label: str
    angle: str
    reason: str


class NextShotAdvice(BaseModel):
    title: str
    action: str
    recommendation: ShotSuggestion


# ---------------------------------------------------------------------------
# Defects, verdicts and decisions
# ---------------------------------------------------------------------------

class DopError(BaseModel):
    type: str = "unknown"
    description: str = ""

    @field_validator("type", "description", mode="before")
    @classmethod
    def _coerce_text(cls, value):
        return "" if value is None else str(value)


class ErrorClassification(BaseModel):
    fixable: list[DopError] = Field(default_factory=list)
    unfixable: list[DopError] = Field(default_factory=list)
    decision: DecisionAction


def _clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


class VisionVerdict(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_valid: bool = Field(default=True, alias="isValid")
    errors: list[DopError] = Field(default_factory=list)
    correction_prompt: str | None = Field(default=None, alias="correctionPrompt")
    score: float | None = Field(default=None, ge=0.0, le=1.0)

    @field_validator("is_valid", mode="before")
    @classmethod
    def _null_validity_as_default(cls, value):
        return True if value is None else value

    @field_validator("score", mode="before")
    @classmethod
    def _normalize_score(cls, value):
        if value is None or isinstance(value, bool):
            return None
        try:
            score = float(value)
        except (TypeError, ValueError):
            return None
        if not math.isfinite(score):
            return None
        # Percent scores (e.g. 85) are read as fractions.
        if 1.0 < score <= 100.0:
            score /= 100.0
        return _clamp_unit(score)

    @field_validator("errors", mode="before")
    @classmethod
    def _none_as_empty(cls, value):
        return [] if value is None else value

    @field_validator("correction_prompt", mode="before")
    @classmethod
    def _blank_prompt_as_none(cls, value):
        if value is None:
            return None
        text = str(value).strip()
        return text or None


class DecisionResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: DecisionAction
    reason: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    enhanced_prompt: str | None = Field(default=None, alias="enhancedPrompt")

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value):
        return _clamp_unit(value)

    @model_validator(mode="after")
    def _prompt_only_on_retry(self):
        if self.action != "retry" or not (self.enhanced_prompt or "").strip():
            self.enhanced_prompt = None
        return self
