# /tests/test_review_triage.py

import pytest

from redpen.models.grading_model import (
    UNREADABLE_ANSWER,
    ConfidenceInfo,
    GradingDetail,
    GradingResult,
    ReviewGridEntry,
    StudentRecord,
    SubmissionRecord,
)
from redpen.services.grading_helpers.review_triage import (
    average_confidence,
    build_grid_entry,
    compute_needs_review,
    confidence_signal,
    min_confidence,
    next_review_index,
    order_submissions_for_grid,
    previous_review_index,
    review_queue,
)

# --- Test Data Fixtures ---

def _entry(sid, seat, needs_review=False, confidence=None):
    info = ConfidenceInfo(value=confidence) if confidence is not None else None
    return ReviewGridEntry(
        submissionId=sid, studentId=f"stu_{sid}", seatNumber=seat, status="graded",
        needsReview=needs_review, confidence=info,
    )


@pytest.fixture
def grid_entries():
    return [
        _entry("a", seat=4),
        _entry("b", seat=2, needs_review=True, confidence=70),
        _entry("c", seat=1, needs_review=True),
        _entry("d", seat=3, needs_review=True, confidence=40),
        _entry("e", seat=5, needs_review=True, confidence=70),
        _entry("f", seat=1),
    ]


# --- Verdict Tests ---

def test_low_confidence_triggers_review():
    details = [GradingDetail(questionId="1", confidence=95), GradingDetail(questionId="2", confidence=60)]

    verdict = compute_needs_review(details)

    assert verdict.needsReview is True
    assert "low confidence" in verdict.reasons
    assert min_confidence(details).value == 60
    assert min_confidence(details).questionId == "2"


def test_unreadable_answer_and_flags_add_reasons():
    details = [GradingDetail(questionId="1", studentAnswer=UNREADABLE_ANSWER, confidence=99)]
    verdict = compute_needs_review(details, has_outstanding_flags=True)
    assert verdict.reasons == ["question unreadable", "answer possibly inconsistent"]


def test_confident_readable_result_needs_no_review():
    details = [GradingDetail(questionId="1", confidence=80), GradingDetail(questionId="2")]
    verdict = compute_needs_review(details)
    assert verdict.needsReview is False
    assert verdict.reasons == []


def test_threshold_is_configurable():
    details = [GradingDetail(questionId="1", confidence=85)]
    assert compute_needs_review(details, threshold=90).needsReview is True


# --- Confidence Signal Tests ---

def test_min_confidence_clamps_rounds_and_labels_missing_ids():
    details = [GradingDetail(questionId="", confidence=-12.4), GradingDetail(questionId="2", confidence=50)]
    info = min_confidence(details)
    assert info.value == 0
    assert info.questionId == "#1"


def test_average_and_signal():
    details = [GradingDetail(questionId="1", confidence=90), GradingDetail(questionId="2", confidence=71)]
    assert average_confidence(details).value == 81
    assert confidence_signal(details).value == 71
    assert confidence_signal([GradingDetail(questionId="1")]) is None


# --- Ordering Tests ---

def test_grid_orders_review_first_by_confidence_then_seat(grid_entries):
    ordered = order_submissions_for_grid(grid_entries)
    assert [e.submissionId for e in ordered] == ["d", "b", "e", "c", "f", "a"]


def test_review_queue_is_in_seat_order(grid_entries):
    assert [e.submissionId for e in review_queue(grid_entries)] == ["c", "b", "d", "e"]


def test_navigation_clamps_at_both_ends():
    assert next_review_index(4, None) == 0
    assert next_review_index(4, 1) == 2
    assert next_review_index(4, 3) == 3
    assert previous_review_index(4, None) == 3
    assert previous_review_index(4, 2) == 1
    assert previous_review_index(4, 0) == 0
    assert next_review_index(0, None) is None
    assert previous_review_index(0, 2) is None


# --- Grid Entry Tests ---

def test_grid_entry_reflects_outstanding_flags():
    submission = SubmissionRecord(
        id="sub_1", assignment_id="asg_1", student_id="stu_1", status="graded", score=5,
        grading_result=GradingResult(details=[GradingDetail(questionId="1", score=5, confidence=92)]),
    )
    student = StudentRecord(id="stu_1", classroom_id="cls_1", seat_number=7, name="Lin")

    clean = build_grid_entry(submission, student)
    flagged = build_grid_entry(submission, student, ["1"])

    assert clean.needsReview is False and clean.seatNumber == 7
    assert flagged.needsReview is True
    assert flagged.reviewReasons == ["answer possibly inconsistent"]
    assert flagged.confidence.value == 92
