"""Error Classifier: partitions continuity defects into fixable / unfixable.

Identity-level defects (a different face, an unrecognizable character) cannot
be corrected by prompt augmentation, so retrying them only burns generation
credits. Everything else gets an optimistic retry.
"""

from __future__ import annotations

import logging
from typing import Iterable

from pipeline.vocabulary import KeywordMatcher, Vocabulary
from schemas.continuity import DecisionAction, DopError, ErrorClassification

logger = logging.getLogger(__name__)


def _decide(fixable_count: int, unfixable_count: int) -> DecisionAction:
    if unfixable_count and not fixable_count:
        return "skip"
    if unfixable_count:
        return "try_once"
    if fixable_count:
        return "retry"
    return "skip"


def classify_errors(
    errors: Iterable[DopError | dict],
    vocabulary: Vocabulary | None = None,
) -> ErrorClassification:
    matcher = KeywordMatcher(vocabulary)
    fixable: list[DopError] = []
    unfixable: list[DopError] = []

    for raw in errors or []:
        error = raw if isinstance(raw, DopError) else DopError.model_validate(raw)
        keyword = matcher.unfixable_keyword(error.description)
        if keyword:
            logger.debug("Unfixable [%s] %s (keyword=%s)", error.type, error.description, keyword)
            unfixable.append(error)
        elif matcher.is_fixable_type(error.type):
            fixable.append(error)
        else:
            # Unknown type: one optimistic retry.
            fixable.append(error)

    return ErrorClassification(
        fixable=fixable,
        unfixable=unfixable,
        decision=_decide(len(fixable), len(unfixable)),
    )
