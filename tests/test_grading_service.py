# /tests/test_grading_service.py

import asyncio
import io

import pytest
from unittest.mock import AsyncMock
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from redpen.core.config import Settings
from redpen.db.base import Base
from redpen.models.grading_model import UNREADABLE_ANSWER, GradingDetail, GradingResult
from redpen.services.database_service import DatabaseService
from redpen.services.grading_helpers.batch_grading import CancellationToken
from redpen.services.grading_helpers.errors import (
    GradingServiceError,
    GradingServiceUnavailable,
    ImageUnavailable,
    OverwriteConfirmationRequired,
)
from redpen.services.grading_service import GradingService
from redpen.services.review_session import ReviewSessionRegistry

ANSWER_KEY = {"questions": [
    {"id": "1", "category": 1, "answer": "A", "maxScore": 5},
    {"id": "2", "category": 1, "answer": "C", "maxScore": 5},
]}


class FakeGradingClient:
    """Stands in for the Gemini adapter; records every call it receives."""

    def __init__(self, responder=None):
        self.calls = []
        self.responder = responder or (lambda call_number, options: _confident_result())

    async def grade_submission(self, image, prior_result, answer_key, options):
        self.calls.append({"image": image, "prior": prior_result, "answer_key": answer_key, "options": options})
        return self.responder(len(self.calls), options)

    async def extract_answer_key(self, image, domain=None):
        return {"questions": []}


def _confident_result(score_1=5, score_2=4, confidence=95):
    return GradingResult(details=[
        GradingDetail(questionId="1", studentAnswer="A", score=score_1, maxScore=5, confidence=confidence),
        GradingDetail(questionId="2", studentAnswer="B", score=score_2, maxScore=5, confidence=confidence),
    ], totalScore=score_1 + score_2)


# --- Test Data Fixtures ---

@pytest.fixture
def png_bytes():
    buffer = io.BytesIO()
    Image.new("RGB", (4, 4), color="white").save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def test_settings():
    return Settings(
        database_url="sqlite://",
        google_api_key=None,
        gemini_grading_model="gemini-test",
        supabase_url=None,
        supabase_service_key=None,
        supabase_image_bucket="homework-images",
        review_confidence_threshold=80,
        review_auto_clear_seconds=0.05,
        grading_inter_item_delay_seconds=0,
        log_level="INFO",
    )


@pytest.fixture
def session_factory():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def db(session_factory, png_bytes):
    """A seeded database: one classroom of five students, each with a scanned submission."""
    session = session_factory()
    service = DatabaseService(session)
    service.add_classroom({"id": "cls_1", "name": "5A"})
    service.add_assignment({"id": "asg_1", "classroom_id": "cls_1", "title": "Quiz", "domain": "math", "answer_key": ANSWER_KEY})
    for seat in range(1, 6):
        service.add_student({"id": f"stu_{seat}", "classroom_id": "cls_1", "seat_number": seat, "name": f"Student {seat}"})
        service.add_submission({
            "id": f"sub_{seat}", "assignment_id": "asg_1", "student_id": f"stu_{seat}",
            "status": "scanned", "image_blob": png_bytes,
        })
    yield service
    session.close()


@pytest.fixture
def remote_store():
    store = AsyncMock()
    store.download_image.side_effect = ImageUnavailable("not in remote storage")
    return store


def _service(db, client, remote_store, settings, session_factory):
    return GradingService(
        db=db, client=client, remote_store=remote_store,
        sessions=ReviewSessionRegistry(settings.review_auto_clear_seconds),
        settings=settings, session_factory=session_factory,
    )


@pytest.fixture
def make_service(db, remote_store, test_settings, session_factory):
    def _make(client=None):
        return _service(db, client or FakeGradingClient(), remote_store, test_settings, session_factory)
    return _make


def _mark_graded(db, submission_id, result: GradingResult):
    db.update_submission(submission_id, {
        "status": "graded", "score": result.totalScore, "grading_result": result.model_dump(mode="json"),
    })


# --- Single Grading Tests ---

@pytest.mark.asyncio
async def test_grade_one_persists_the_result(make_service, db):
    svc = make_service()

    result = await svc.grade_one("asg_1", "sub_1")

    stored = db.get_submission("sub_1")
    assert result.totalScore == 9
    assert result.needsReview is False
    assert stored.status == "graded"
    assert stored.score == 9
    assert stored.feedback == ""
    assert stored.graded_at is not None
    assert stored.image_base64.startswith("data:image/png;base64,")
    assert stored.grading_result["details"][1]["isCorrect"] is False


@pytest.mark.asyncio
async def test_grade_one_flags_low_confidence_for_review(make_service):
    svc = make_service(FakeGradingClient(lambda n, o: _confident_result(confidence=55)))
    result = await svc.grade_one("asg_1", "sub_1")
    assert result.needsReview is True
    assert "low confidence" in result.reviewReasons


@pytest.mark.asyncio
async def test_grade_one_without_any_image_raises(make_service, db):
    db.update_submission("sub_1", {"image_blob": None, "image_base64": None})
    with pytest.raises(ImageUnavailable):
        await make_service().grade_one("asg_1", "sub_1")
    assert db.get_submission("sub_1").status == "scanned"


@pytest.mark.asyncio
async def test_grade_one_wraps_client_failures(make_service):
    def _boom(n, o):
        raise RuntimeError("socket closed")

    with pytest.raises(GradingServiceError) as excinfo:
        await make_service(FakeGradingClient(_boom)).grade_one("asg_1", "sub_1")
    assert isinstance(excinfo.value.__cause__, RuntimeError)


@pytest.mark.asyncio
async def test_grade_one_unknown_submission(make_service):
    with pytest.raises(ValueError):
        await make_service().grade_one("asg_1", "sub_missing")


# --- Batch Grading Tests ---

@pytest.mark.asyncio
async def test_batch_stops_between_items(make_service, db):
    """Five candidates, stop requested once the second completes: items 3-5 are never sent."""
    client = FakeGradingClient()
    svc = make_service(client)
    token = CancellationToken()
    completed = []
    progress = []

    def on_item_complete(submission, result):
        completed.append(submission.id)
        if len(completed) == 2:
            token.cancel()

    submissions = svc.list_submissions("asg_1")
    report = await svc.grade_many(
        "asg_1", submissions,
        on_progress=lambda current, total: progress.append((current, total)),
        on_item_complete=on_item_complete,
        should_stop=token,
    )

    assert report.successCount == 2
    assert report.stopped is True
    assert report.candidateCount == 5
    assert len(client.calls) == 2
    assert progress == [(1, 5), (2, 5)]
    assert [db.get_submission(f"sub_{i}").status for i in range(1, 6)] == ["graded", "graded", "scanned", "scanned", "scanned"]


@pytest.mark.asyncio
async def test_stop_requested_during_pacing_pause_skips_next_item(make_service, db):
    client = FakeGradingClient()
    svc = make_service(client)
    token = CancellationToken()
    loop = asyncio.get_running_loop()

    report = await svc.grade_many(
        "asg_1", svc.list_submissions("asg_1"),
        on_item_complete=lambda submission, result: loop.call_later(0.05, token.cancel),
        should_stop=token,
        inter_item_delay=0.3,
    )

    assert len(client.calls) == 1
    assert report.successCount == 1
    assert report.stopped is True
    assert db.get_submission("sub_2").status == "scanned"


@pytest.mark.asyncio
async def test_grade_all_stops_on_request(make_service, db):
    svc = None

    def _responder(n, options):
        assert svc.request_stop("asg_1")["stopRequested"] is True
        return _confident_result()

    client = FakeGradingClient(_responder)
    svc = make_service(client)

    report = await svc.grade_all("asg_1")

    assert len(client.calls) == 1
    assert report.stopped is True
    assert svc.sessions.get("asg_1").batch_token is None
    assert svc.request_stop("asg_1")["stopRequested"] is False


@pytest.mark.asyncio
async def test_batch_records_item_failures_and_continues(make_service):
    def _responder(n, options):
        if n == 2:
            raise GradingServiceError("malformed output")
        return _confident_result()

    svc = make_service(FakeGradingClient(_responder))
    report = await svc.grade_many("asg_1", svc.list_submissions("asg_1"))

    assert report.successCount == 4
    assert report.stopped is False
    assert [f.submissionId for f in report.gradingFailures] == ["sub_2"]
    assert report.gradingFailures[0].stage == "grade"


@pytest.mark.asyncio
async def test_batch_preparation_failure_can_abort(make_service, db):
    db.update_submission("sub_3", {"image_blob": None})
    client = FakeGradingClient()
    svc = make_service(client)
    seen = []

    report = await svc.grade_many(
        "asg_1", svc.list_submissions("asg_1"),
        confirm_continue=lambda failures: seen.extend(failures) or False,
    )

    assert report.aborted is True
    assert report.successCount == 0
    assert [f.submissionId for f in seen] == ["sub_3"]
    assert client.calls == []


@pytest.mark.asyncio
async def test_batch_continues_after_preparation_failure_by_default(make_service, db):
    db.update_submission("sub_3", {"image_blob": None})
    svc = make_service()
    report = await svc.grade_many("asg_1", svc.list_submissions("asg_1"))
    assert report.preparedCount == 4
    assert report.successCount == 4
    assert report.preparationFailures[0].stage == "prepare"


@pytest.mark.asyncio
async def test_unavailable_service_aborts_the_batch(make_service):
    def _responder(n, options):
        raise GradingServiceUnavailable("model not found")

    client = FakeGradingClient(_responder)
    svc = make_service(client)
    with pytest.raises(GradingServiceUnavailable):
        await svc.grade_many("asg_1", svc.list_submissions("asg_1"))
    assert len(client.calls) == 1


@pytest.mark.asyncio
async def test_grade_all_requires_confirmation_for_full_regrade(make_service, db):
    svc = make_service()
    first = await svc.grade_all("asg_1")
    assert first.isRegrade is False and first.successCount == 5

    with pytest.raises(OverwriteConfirmationRequired) as excinfo:
        await svc.grade_all("asg_1")
    assert excinfo.value.candidate_count == 5

    again = await svc.grade_all("asg_1", confirm_overwrite=True)
    assert again.isRegrade is True and again.successCount == 5


# --- Targeted Re-Grade Tests ---

@pytest.mark.asyncio
async def test_regrade_flagged_merges_only_targeted_questions(make_service, db):
    _mark_graded(db, "sub_1", GradingResult(totalScore=5, details=[
        GradingDetail(questionId="1", studentAnswer="B", score=0, maxScore=5),
        GradingDetail(questionId="2", studentAnswer="C", score=5, maxScore=5),
    ], needsReview=True, reviewReasons=["low confidence"]))
    client = FakeGradingClient(lambda n, o: GradingResult(details=[GradingDetail(questionId="1", studentAnswer="A", score=3)]))
    svc = make_service(client)
    svc.set_flag("asg_1", "sub_1", "1", flagged=True)

    merged = await svc.regrade_flagged("asg_1", "sub_1")

    assert [(d.questionId, d.score) for d in merged.details] == [("1", 3), ("2", 5)]
    assert merged.totalScore == 8
    assert merged.needsReview is False and merged.reviewReasons == []
    assert client.calls[0]["options"].regrade.questionIds == ["1"]
    assert db.get_submission("sub_1").score == 8
    session = svc.sessions.get("asg_1")
    assert session.flagged_questions("sub_1") == []
    assert session.attempt_count("sub_1", "1") == 1


@pytest.mark.asyncio
async def test_regrade_keeps_parts_of_a_split_question(make_service, db):
    _mark_graded(db, "sub_1", GradingResult(totalScore=4, details=[
        GradingDetail(questionId="1", studentAnswer="?", score=0, maxScore=5),
        GradingDetail(questionId="2", studentAnswer="C", score=4, maxScore=5),
    ]))
    client = FakeGradingClient(lambda n, o: GradingResult(details=[
        GradingDetail(questionId="1-1", studentAnswer="x=2", score=2, maxScore=3),
        GradingDetail(questionId="1-2", studentAnswer="y=1", score=1, maxScore=2),
    ]))
    svc = make_service(client)
    svc.set_flag("asg_1", "sub_1", "1", flagged=True)

    merged = await svc.regrade_flagged("asg_1", "sub_1")

    assert [d.questionId for d in merged.details] == ["1", "2", "1-1", "1-2"]
    assert merged.totalScore == 7
    assert db.get_submission("sub_1").score == 7


@pytest.mark.asyncio
async def test_reflagging_after_regrade_forces_unreadable(make_service, db):
    _mark_graded(db, "sub_1", _confident_result(score_1=0))
    client = FakeGradingClient(lambda n, o: GradingResult(details=[GradingDetail(questionId="1", studentAnswer="D", score=0)]))
    svc = make_service(client)
    svc.set_flag("asg_1", "sub_1", "1", flagged=True)
    await svc.regrade_flagged("asg_1", "sub_1")

    response = svc.set_flag("asg_1", "sub_1", "1", flagged=True)

    assert response.forcedUnreadable is True
    stored = GradingResult.model_validate(db.get_submission("sub_1").grading_result)
    assert stored.details[0].studentAnswer == UNREADABLE_ANSWER

    await svc.regrade_flagged("asg_1", "sub_1")
    assert client.calls[-1]["options"].regrade.forceUnrecognizableQuestionIds == ["1"]


@pytest.mark.asyncio
async def test_regrade_without_targets_is_rejected(make_service, db):
    _mark_graded(db, "sub_1", _confident_result())
    with pytest.raises(ValueError):
        await make_service().regrade_flagged("asg_1", "sub_1")


# --- Manual Correction Tests ---

def test_manual_score_edit_recomputes_and_clears_review(make_service, db):
    _mark_graded(db, "sub_1", GradingResult(totalScore=4, details=[
        GradingDetail(questionId="1", score=0, maxScore=5, confidence=40),
        GradingDetail(questionId="2", score=4, maxScore=5),
    ], needsReview=True, reviewReasons=["low confidence"]))
    svc = make_service()

    updated = svc.update_detail_score("asg_1", "sub_1", "1", 12)

    assert updated.details[0].score == 5
    assert updated.details[0].isCorrect is True
    assert updated.totalScore == 9
    assert updated.needsReview is False
    assert db.get_submission("sub_1").score == 9


def test_manual_comment_edit(make_service, db):
    _mark_graded(db, "sub_1", _confident_result())
    updated = make_service().update_detail_comment("asg_1", "sub_1", "2", "Check your spelling.")
    assert updated.details[1].comment == "Check your spelling."
    assert updated.details[1].reason == "Check your spelling."


# --- Review Board Tests ---

def test_review_board_and_navigation(make_service, db):
    _mark_graded(db, "sub_1", _confident_result())
    _mark_graded(db, "sub_2", GradingResult(details=[GradingDetail(questionId="1", confidence=70)], needsReview=True))
    _mark_graded(db, "sub_4", GradingResult(details=[GradingDetail(questionId="1", confidence=30)], needsReview=True))
    svc = make_service()

    board = svc.get_review_board("asg_1")

    assert board.reviewQueue == ["sub_2", "sub_4"]
    assert board.needsReviewCount == 2
    assert [e.submissionId for e in board.entries][:2] == ["sub_4", "sub_2"]

    assert svc.navigate_review("asg_1", "next").submissionId == "sub_2"
    assert svc.navigate_review("asg_1", "next").submissionId == "sub_4"
    last = svc.navigate_review("asg_1", "next")
    assert (last.submissionId, last.position, last.total) == ("sub_4", 1, 2)
    assert svc.navigate_review("asg_1", "previous").submissionId == "sub_2"
    assert svc.navigate_review("asg_1", "previous").submissionId == "sub_2"


@pytest.mark.asyncio
async def test_opening_a_flagged_submission_auto_clears_it(make_service, db):
    _mark_graded(db, "sub_2", GradingResult(details=[GradingDetail(questionId="1", confidence=70)], needsReview=True, reviewReasons=["low confidence"]))
    svc = make_service()

    opened = svc.open_submission("asg_1", "sub_2")
    assert opened["autoClearScheduled"] is True
    await asyncio.sleep(0.15)

    db.grading_repo.db.expire_all()
    stored = svc.get_submission("asg_1", "sub_2")
    assert stored.grading_result.needsReview is False
    assert stored.grading_result.reviewReasons == []
