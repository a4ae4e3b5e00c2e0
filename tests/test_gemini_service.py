# /tests/test_gemini_service.py

import pytest
from unittest.mock import AsyncMock

from redpen.core.config import Settings
from redpen.models.grading_model import UNREADABLE_ANSWER, GradeOptions, GradingDetail, GradingResult, RegradeRequest
from redpen.services.answer_key_helpers.normalizer import normalize_answer_key
from redpen.services.gemini_service import (
    GeminiGradingClient,
    build_grading_prompt,
    fill_missing_questions,
    force_unreadable,
)
from redpen.services.grading_helpers.errors import GradingServiceError, GradingServiceUnavailable
from redpen.services.grading_helpers.image_acquisition import ImageRef

# --- Test Data Fixtures ---

@pytest.fixture
def answer_key():
    return normalize_answer_key({"questions": [
        {"id": "1", "category": 1, "answer": "A", "maxScore": 2},
        {"id": "2", "category": 1, "answer": "B", "maxScore": 3},
        {"id": "3", "category": 2, "referenceAnswer": "water", "maxScore": 5},
    ]})


@pytest.fixture
def settings_without_key():
    return Settings(
        database_url="sqlite://", google_api_key=None, gemini_grading_model="gemini-test",
        supabase_url=None, supabase_service_key=None, supabase_image_bucket="homework-images",
        review_confidence_threshold=80, review_auto_clear_seconds=5, grading_inter_item_delay_seconds=0,
        log_level="INFO",
    )


@pytest.fixture
def image():
    return ImageRef(data=b"\x89PNG\r\n\x1a\nfake")


def _partial_result():
    return GradingResult(details=[
        GradingDetail(questionId="3", studentAnswer="water", score=5, maxScore=5, confidence=90),
        GradingDetail(questionId="1", studentAnswer="A", score=2, maxScore=2, confidence=99),
    ])


# --- Post-Processing Tests ---

def test_fill_missing_questions_backfills_in_key_order(answer_key):
    result, missing = fill_missing_questions(_partial_result(), answer_key)

    assert missing == ["2"]
    assert [d.questionId for d in result.details] == ["1", "2", "3"]
    filled = result.details[1]
    assert filled.studentAnswer == UNREADABLE_ANSWER
    assert (filled.score, filled.maxScore, filled.confidence, filled.isCorrect) == (0, 3, 0, False)
    assert result.totalScore == 7
    assert result.needsReview is True
    assert "question unreadable" in result.reviewReasons


def test_fill_missing_questions_leaves_complete_results_alone(answer_key):
    complete = GradingResult(details=[GradingDetail(questionId=q) for q in ("1", "2", "3")])
    result, missing = fill_missing_questions(complete, answer_key)
    assert missing == []
    assert result is complete


def test_force_unreadable_overrides_disputed_answers():
    result = GradingResult(details=[GradingDetail(questionId="1", studentAnswer="B", score=2, maxScore=2)])
    forced = force_unreadable(result, ["1"])
    assert forced.details[0].studentAnswer == UNREADABLE_ANSWER
    assert forced.details[0].score == 0
    assert forced.totalScore == 0


# --- Prompt Assembly Tests ---

def test_regrade_prompt_lists_targets_and_forced_ids(answer_key):
    options = GradeOptions(domain="science", regrade=RegradeRequest(
        questionIds=["2"],
        previousDetails=[GradingDetail(questionId="2", studentAnswer="C")],
        forceUnrecognizableQuestionIds=["2"],
        mode="correction",
    ))
    prompt = build_grading_prompt(answer_key, None, options)
    assert "RE-GRADE MODE" in prompt
    assert "- 2: C" in prompt
    assert "already re-read and still disputed: 2" in prompt
    assert "science" in prompt


def test_plain_prompt_has_no_regrade_section(answer_key):
    prompt = build_grading_prompt(answer_key, None, GradeOptions(strict=False))
    assert "RE-GRADE MODE" not in prompt
    assert "Grade generously" in prompt
    assert '"referenceAnswer": "water"' in prompt


# --- Client Tests ---

@pytest.mark.asyncio
async def test_missing_api_key_means_service_unavailable(settings_without_key, image, answer_key):
    client = GeminiGradingClient(settings_without_key)
    with pytest.raises(GradingServiceUnavailable):
        await client.grade_submission(image, None, answer_key, GradeOptions())


@pytest.mark.asyncio
async def test_skipped_questions_are_retried_once(mocker, settings_without_key, image, answer_key):
    client = GeminiGradingClient(settings_without_key)
    retry = GradingResult(details=[GradingDetail(questionId="2", studentAnswer="B", score=3, maxScore=3, confidence=88)])
    grade_once = mocker.patch.object(client, "_grade_once", new=AsyncMock(side_effect=[_partial_result(), retry]))

    result = await client.grade_submission(image, None, answer_key, GradeOptions())

    assert grade_once.await_count == 2
    retry_options = grade_once.await_args_list[1].args[3]
    assert retry_options.regrade.mode == "missing"
    assert retry_options.regrade.questionIds == ["2"]
    assert result.details[1].studentAnswer == "B"
    assert result.totalScore == 10


@pytest.mark.asyncio
async def test_failed_retry_keeps_backfilled_answers(mocker, settings_without_key, image, answer_key):
    client = GeminiGradingClient(settings_without_key)
    mocker.patch.object(client, "_grade_once", new=AsyncMock(side_effect=[_partial_result(), GradingServiceError("bad json")]))

    result = await client.grade_submission(image, None, answer_key, GradeOptions())

    assert result.details[1].studentAnswer == UNREADABLE_ANSWER


@pytest.mark.asyncio
async def test_skip_missing_retry_option(mocker, settings_without_key, image, answer_key):
    client = GeminiGradingClient(settings_without_key)
    grade_once = mocker.patch.object(client, "_grade_once", new=AsyncMock(return_value=_partial_result()))

    await client.grade_submission(image, None, answer_key, GradeOptions(skipMissingRetry=True))

    assert grade_once.await_count == 1
