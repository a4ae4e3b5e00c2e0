# /redpen/services/grading_helpers/review_triage.py

"""
Pure functions that decide which graded submissions a teacher should look at
first. Nothing here touches the database or the session state; callers pass
the details, flags and roster data in.
"""

import math
from typing import Iterable, List, Optional, Sequence

from redpen.models.grading_model import (
    UNREADABLE_ANSWER,
    ConfidenceInfo,
    GradingDetail,
    ReviewGridEntry,
    ReviewReason,
    ReviewVerdict,
    StudentRecord,
    SubmissionRecord,
)

DEFAULT_CONFIDENCE_THRESHOLD = 80


def _finite_confidence(detail: GradingDetail) -> Optional[float]:
    value = detail.confidence
    if value is None or not math.isfinite(value):
        return None
    return value


def _clamp_round(value: float) -> int:
    return int(math.floor(min(100.0, max(0.0, value)) + 0.5))


# --- Review Verdict ---

def compute_needs_review(
    details: Sequence[GradingDetail],
    has_outstanding_flags: bool = False,
    threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
) -> ReviewVerdict:
    """
    A submission needs review when any answer was read with low confidence,
    any answer could not be read at all, or the teacher still has questions
    flagged as possibly misread.
    """
    reasons: List[str] = []
    confidences = [_finite_confidence(d) for d in details]
    if any(c is not None and c < threshold for c in confidences):
        reasons.append(ReviewReason.LOW_CONFIDENCE.value)
    if any(d.studentAnswer == UNREADABLE_ANSWER for d in details):
        reasons.append(ReviewReason.QUESTION_UNREADABLE.value)
    if has_outstanding_flags:
        reasons.append(ReviewReason.ANSWER_INCONSISTENT.value)
    return ReviewVerdict(needsReview=bool(reasons), reasons=reasons)


# --- Confidence Signals ---

def min_confidence(details: Sequence[GradingDetail]) -> Optional[ConfidenceInfo]:
    """The lowest confidence among the details, with the question it belongs to."""
    lowest = None
    for index, detail in enumerate(details):
        value = _finite_confidence(detail)
        if value is None:
            continue
        if lowest is None or value < lowest[0]:
            lowest = (value, detail.questionId or f"#{index + 1}")
    if lowest is None:
        return None
    return ConfidenceInfo(value=_clamp_round(lowest[0]), questionId=lowest[1], kind="minimum")


def average_confidence(details: Sequence[GradingDetail]) -> Optional[ConfidenceInfo]:
    values = [v for v in (_finite_confidence(d) for d in details) if v is not None]
    if not values:
        return None
    return ConfidenceInfo(value=_clamp_round(sum(values) / len(values)), kind="average")


def confidence_signal(details: Sequence[GradingDetail]) -> Optional[ConfidenceInfo]:
    return min_confidence(details) or average_confidence(details)


# --- Grid Entries & Ordering ---

def build_grid_entry(
    submission: SubmissionRecord,
    student: Optional[StudentRecord],
    flagged_question_ids: Iterable[str] = (),
) -> ReviewGridEntry:
    """
    Assembles one row of the review grid. The stored verdict decides, except
    that outstanding flags always put the submission back in the queue.
    """
    flagged = sorted(set(flagged_question_ids))
    result = submission.grading_result
    details = result.details if result else []

    needs_review, reasons = False, []
    if result is not None:
        reasons = list(result.reviewReasons) if result.needsReview else []
        if flagged and ReviewReason.ANSWER_INCONSISTENT.value not in reasons:
            reasons.append(ReviewReason.ANSWER_INCONSISTENT.value)
        needs_review = bool(result.needsReview or flagged)

    return ReviewGridEntry(
        submissionId=submission.id,
        studentId=submission.student_id,
        seatNumber=student.seat_number if student else 0,
        studentName=student.name if student else "",
        status=submission.status,
        score=submission.score,
        needsReview=needs_review,
        reviewReasons=reasons,
        confidence=confidence_signal(details),
        flaggedQuestionIds=flagged,
    )


def order_submissions_for_grid(entries: Sequence[ReviewGridEntry]) -> List[ReviewGridEntry]:
    """
    Needs-review entries come first, the least confident at the top (entries
    with no confidence signal last within the group, then by seat). The rest
    follow in seat order.
    """
    def _review_key(entry: ReviewGridEntry):
        has_signal = entry.confidence is not None
        return (0 if has_signal else 1, entry.confidence.value if has_signal else 0, entry.seatNumber)

    flagged = sorted((e for e in entries if e.needsReview), key=_review_key)
    rest = sorted((e for e in entries if not e.needsReview), key=lambda e: e.seatNumber)
    return flagged + rest


def review_queue(entries: Sequence[ReviewGridEntry]) -> List[ReviewGridEntry]:
    """The needs-review entries in seat order, which is the order the teacher steps through."""
    return sorted((e for e in entries if e.needsReview), key=lambda e: e.seatNumber)


# --- Queue Navigation ---

def next_review_index(queue_length: int, current: Optional[int]) -> Optional[int]:
    """Index of the next queue entry; stays on the last one instead of wrapping."""
    if queue_length <= 0:
        return None
    if current is None or current < 0:
        return 0
    return min(current + 1, queue_length - 1)


def previous_review_index(queue_length: int, current: Optional[int]) -> Optional[int]:
    """Index of the previous queue entry; stays on the first one instead of wrapping."""
    if queue_length <= 0:
        return None
    if current is None or current >= queue_length:
        return queue_length - 1
    return max(current - 1, 0)
