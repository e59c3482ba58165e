"""DOP correction templates: prompt addenda for rejected shots.

Each reject reason maps to a forceful instruction block appended to the
generation prompt on retry. `{note}` is filled with the user's note, or the
template's default when there is none.
"""

from __future__ import annotations

from typing import Iterable, Literal

from schemas.continuity import DopError

RejectReason = Literal[
    "raccord_error",
    "character_mismatch",
    "wrong_outfit",
    "wrong_pose",
    "wrong_angle",
    "wrong_lighting",
    "wrong_background",
    "quality_issue",
    "prompt_ignored",
    "nsfw_content",
    "other",
]

# reason -> (template, default note)
CORRECTION_TEMPLATES: dict[str, tuple[str, str]] = {
    "wrong_angle": (
        "[CAMERA LOCK - CRITICAL]: The previous camera angle was INCORRECT.\n"
        "ACTION: IGNORE any inferred camera angles.\n"
        "FORCE ANGLE: {note}.\n"
        "Do not improvise the camera position.",
        "STRICTLY ADHERE TO SPECIFIED SHOT TYPE",
    ),
    "wrong_outfit": (
        "[OUTFIT RESET - CRITICAL]: The character is wearing the WRONG CLOTHES or ACCESSORIES.\n"
        "ACTION: DISCARD all outfit hallucinations.\n"
        "RESET appearance to: {note}.\n"
        "Ensure NO hat/glasses unless explicitly requested.",
        "The EXACT outfit in the Master Reference Image",
    ),
    "character_mismatch": (
        "[IDENTITY FAILURE - CRITICAL]: The generated face was NOT the requested person.\n"
        "FORCE IDENTITY: {note}.\n"
        "Maintain facial structure rigidly.",
        "Re-read the Face Reference Image with MAX PRIORITY",
    ),
    "wrong_pose": (
        "[POSE CORRECTION]: The character's action/pose was wrong.\n"
        "ACTION: OVERRIDE inferred pose.\n"
        "FORCE POSE: {note}.",
        "Strictly follow the action verb in the prompt",
    ),
    "wrong_lighting": (
        "[LIGHTING RESET]: The lighting matched the wrong environment.\n"
        "ACTION: RESET lighting setup.\n"
        "FORCE LIGHTING: {note}.",
        "Consistent with Scene Context and Time of Day",
    ),
    "wrong_background": (
        "[ENVIRONMENT RESET]: The background location was incorrect.\n"
        "ACTION: IGNORE previous background hallucinations.\n"
        "FORCE LOCATION: {note}.",
        "Strictly adhere to the specific location description",
    ),
    "raccord_error": (
        "[CONTINUITY ERROR]: Significant continuity failure detected.\n"
        "ACTION: CHECK previous shots.\n"
        "FIX: {note}.",
        "Maintain consistent object placement (hands, props) from previous scene",
    ),
    "prompt_ignored": (
        "[ATTENTION BOOST]: You ignored key elements of the prompt.\n"
        "ACTION: INCREASE attention to: {note}.\n"
        "EXECUTE EVERY INSTRUCTION.",
        "ALL missing details",
    ),
    "quality_issue": (
        "[QUALITY BOOST]: Previous generation had artifacts.\n"
        "ACTION: Switch to High Fidelity Mode.\n"
        "Focus on anatomy, hands, and texture details.",
        "",
    ),
    "nsfw_content": (
        "[SAFETY FILTER]: Previous image triggered safety flags.\n"
        "ACTION: Generate a SAFE, SFW version of the scene.",
        "",
    ),
    "other": (
        "[DIRECTOR CORRECTION]: {note}.",
        "Please fix the identified issues in the previous shot",
    ),
}

# Continuity error type keyword -> reject reason (first match wins).
ERROR_TYPE_REASONS: tuple[tuple[str, str], ...] = (
    ("prop", "raccord_error"),
    ("character", "character_mismatch"),
    ("outfit", "wrong_outfit"),
    ("lighting", "wrong_lighting"),
    ("spatial", "wrong_background"),
    ("background", "wrong_background"),
    ("position", "wrong_pose"),
    ("pose", "wrong_pose"),
    ("angle", "wrong_angle"),
)


def build_correction_prompt(reason: str, user_note: str | None = None) -> str:
    template, default_note = CORRECTION_TEMPLATES.get(reason, CORRECTION_TEMPLATES["other"])
    note = (user_note or "").strip() or default_note
    return template.format(note=note)


def reason_for_error(error: DopError) -> str:
    error_type = error.type.lower()
    for keyword, reason in ERROR_TYPE_REASONS:
        if keyword in error_type:
            return reason
    return "other"


def corrections_for_errors(errors: Iterable[DopError]) -> str:
    """One correction block per distinct reason, each noting its defects."""
    grouped: dict[str, list[str]] = {}
    for error in errors:
        grouped.setdefault(reason_for_error(error), []).append(error.description.strip())
    blocks = []
    for reason, descriptions in grouped.items():
        note = "; ".join(d for d in descriptions if d)
        blocks.append(build_correction_prompt(reason, note or None))
    return "\n\n".join(blocks)
