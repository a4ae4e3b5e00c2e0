# /redpen/services/grading_helpers/detail_merge.py

"""
Folds a targeted re-grade back into an existing grading result.

Only the questions the re-grade answered are touched. Every other detail is
carried over unchanged and in its original position.
"""

import math
from typing import Iterable, List, Optional, Sequence, Tuple

from redpen.models.grading_model import GradingDetail, GradingResult, derive_is_correct


def _finite_or_zero(value) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def total_of(details: Iterable[GradingDetail]) -> float:
    """Sums the detail scores, counting non-finite scores as zero."""
    return sum(_finite_or_zero(d.score) for d in details)


def _merge_detail(existing: GradingDetail, update: GradingDetail) -> GradingDetail:
    # Only the fields the re-grade actually supplied override the old detail.
    changes = {field: getattr(update, field) for field in update.model_fields_set if field != "questionId"}
    if {"reason", "comment"} & changes.keys():
        changes["reason"], changes["comment"] = update.reason, update.comment
    merged = existing.model_copy(update=changes)
    if "isCorrect" not in changes and ({"score", "maxScore"} & changes.keys()):
        object.__setattr__(merged, "isCorrect", derive_is_correct(merged.score, merged.maxScore))
    return merged


def merge_regrade_details(
    existing: Sequence[GradingDetail],
    regrade_details: Sequence[GradingDetail],
    targeted_ids: Optional[Iterable[str]] = None,
) -> Tuple[List[GradingDetail], float]:
    """
    Merges re-grade details into the existing ones.

    - an existing detail whose questionId the re-grade returned is shallow
      merged, the re-grade's fields winning;
    - details the re-grade did not return pass through in order;
    - re-grade details for ids not seen before are appended.

    `targeted_ids`, when given, protects the questions that were not asked
    about: a re-grade detail echoing one of those existing ids is ignored.
    Ids the submission does not have yet are always appended, which is how a
    question that re-analysis split into parts ("1" into "1-1" and "1-2")
    comes back.
    Returns the merged list and its new total.
    """
    existing_ids = {d.questionId for d in existing}
    allowed = set(targeted_ids) if targeted_ids is not None else None
    updates = {}
    for detail in regrade_details:
        if allowed is not None and detail.questionId in existing_ids and detail.questionId not in allowed:
            continue
        updates[detail.questionId] = detail

    merged = []
    seen = set()
    for detail in existing:
        update = updates.get(detail.questionId)
        if update is not None and detail.questionId not in seen:
            merged.append(_merge_detail(detail, update))
            seen.add(detail.questionId)
        else:
            merged.append(detail)

    for question_id, update in updates.items():
        if question_id not in seen:
            merged.append(update)

    return merged, total_of(merged)


def apply_regrade(previous: GradingResult, regrade: GradingResult, targeted_ids: Optional[Iterable[str]] = None) -> GradingResult:
    """
    Builds the stored result after a targeted re-grade. A list field the
    re-grade sent replaces the previous one, even when it is empty; a list
    field it left out is carried over. The review flag is cleared, since the
    teacher asked for exactly this correction.
    """
    details, total = merge_regrade_details(previous.details, regrade.details, targeted_ids)
    sent = regrade.model_fields_set

    def pick(name):
        return getattr(regrade if name in sent else previous, name)

    return GradingResult(
        totalScore=total,
        details=details,
        mistakes=pick("mistakes"),
        weaknesses=pick("weaknesses"),
        suggestions=pick("suggestions"),
        feedback=pick("feedback"),
        needsReview=False,
        reviewReasons=[],
    )
