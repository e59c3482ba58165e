"""Keyword vocabularies for the continuity heuristics.

Every word list the heuristics consult lives here, keyed by locale, so a new
language can be added without touching control flow. `get_vocabulary()` merges
the requested locales into one `Vocabulary`; the default merges English and
Vietnamese, matching the scripts the tool is used with.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

import config

logger = logging.getLogger(__name__)

# Canonical body states. Locale tables map each canonical key to surface forms.
BODY_STATES = ("sitting", "standing", "lying", "running", "walking")


@dataclass(frozen=True)
class Vocabulary:
    pickup_verbs: tuple[str, ...] = ()
    body_states: dict[str, tuple[str, ...]] = field(default_factory=dict)
    unfixable_keywords: tuple[str, ...] = ()
    fixable_error_types: tuple[str, ...] = ()

    def merged_with(self, other: "Vocabulary") -> "Vocabulary":
        states: dict[str, tuple[str, ...]] = dict(self.body_states)
        for key, forms in other.body_states.items():
            states[key] = _dedupe(states.get(key, ()) + forms)
        return Vocabulary(
            pickup_verbs=_dedupe(self.pickup_verbs + other.pickup_verbs),
            body_states=states,
            unfixable_keywords=_dedupe(self.unfixable_keywords + other.unfixable_keywords),
            fixable_error_types=_dedupe(self.fixable_error_types + other.fixable_error_types),
        )


def _dedupe(values: Iterable[str]) -> tuple[str, ...]:
    seen: list[str] = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return tuple(seen)


ENGLISH = Vocabulary(
    pickup_verbs=("pick up", "picks up", "picked up", "take", "took", "grab", "grabs", "receive"),
    body_states={
        "sitting": ("sitting", "seated"),
        "standing": ("standing",),
        "lying": ("lying",),
        "running": ("running",),
        "walking": ("walking",),
    },
    unfixable_keywords=(
        "face",
        "identity",
        "completely different",
        "different person",
        "wrong person",
        "different character",
        "unrecognizable",
        "different face",
        "facial features",
        "different human",
        "another person",
    ),
    fixable_error_types=("prop", "lighting", "spatial", "position"),
)

VIETNAMESE = Vocabulary(
    pickup_verbs=("nhặt", "lấy", "cầm"),
    body_states={
        "sitting": ("ngồi",),
        "standing": ("đứng",),
        "lying": ("nằm",),
        "running": ("chạy",),
        "walking": ("đi bộ",),
    },
    unfixable_keywords=("khuôn mặt", "người khác"),
)

LOCALES: dict[str, Vocabulary] = {
    "en": ENGLISH,
    "vi": VIETNAMESE,
}


def get_vocabulary(locales: Iterable[str] | None = None) -> Vocabulary:
    """Merge the vocabularies for `locales` (default: config.DOP_LOCALES).

    Unknown locale names are logged and skipped. With no known locale left the
    English vocabulary is used.
    """
    names = list(locales) if locales is not None else list(config.DOP_LOCALES)
    merged = None
    for name in names:
        vocab = LOCALES.get(str(name).strip().lower())
        if vocab is None:
            logger.warning("Unknown vocabulary locale '%s' ignored; available: %s", name, ", ".join(LOCALES))
            continue
        merged = vocab if merged is None else merged.merged_with(vocab)
    return merged if merged is not None else ENGLISH


class KeywordMatcher:
    """Case-insensitive substring matcher over a vocabulary."""

    def __init__(self, vocabulary: Vocabulary | None = None):
        self.vocabulary = vocabulary or get_vocabulary()

    @staticmethod
    def _first(text: str, terms: Iterable[str]) -> str | None:
        lowered = (text or "").lower()
        return next((t for t in terms if t.lower() in lowered), None)

    def has_pickup_action(self, text: str) -> bool:
        return self._first(text, self.vocabulary.pickup_verbs) is not None

    def body_state(self, text: str) -> str | None:
        """Return the canonical body state named first in BODY_STATES order."""
        for state in BODY_STATES:
            if self._first(text, self.vocabulary.body_states.get(state, ())):
                return state
        return None

    def unfixable_keyword(self, text: str) -> str | None:
        return self._first(text, self.vocabulary.unfixable_keywords)

    def is_fixable_type(self, error_type: str) -> bool:
        return self._first(error_type, self.vocabulary.fixable_error_types) is not None
