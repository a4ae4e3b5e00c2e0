# /redpen/routers/grading_router.py

"""
API endpoints for grading submissions and reviewing the results.

The router maps the grading error taxonomy onto HTTP status codes:
`ImageUnavailable` -> 422, `GradingServiceError` -> 502,
`GradingServiceUnavailable` -> 503 and an unconfirmed full re-grade -> 409.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from ..models.grading_model import (
    BatchGradeReport,
    DetailCommentUpdate,
    DetailScoreUpdate,
    FlagToggleResponse,
    GradeAllRequest,
    GradingResult,
    RegradeFlaggedRequest,
    ReviewBoardResponse,
    ReviewNavigationResponse,
)
from ..services.grading_helpers.errors import (
    GradingError,
    GradingServiceError,
    GradingServiceUnavailable,
    ImageUnavailable,
    OverwriteConfirmationRequired,
)
from ..services.grading_service import GradingService, get_grading_service

logger = logging.getLogger(__name__)

router = APIRouter()


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, ImageUnavailable):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    if isinstance(e, GradingServiceUnavailable):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    if isinstance(e, GradingServiceError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    if isinstance(e, OverwriteConfirmationRequired):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(e), "candidateCount": e.candidate_count},
        )
    if isinstance(e, ValueError):
        code = status.HTTP_404_NOT_FOUND if "not found" in str(e) else status.HTTP_400_BAD_REQUEST
        return HTTPException(status_code=code, detail=str(e))
    logger.error("Unexpected grading error: %s", e)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="An unexpected grading error occurred.")


# --- Grading ---

@router.post("/grade-all", response_model=BatchGradeReport, summary="Grade every submission waiting for a grade")
async def grade_all(
    assignment_id: str,
    request: GradeAllRequest = GradeAllRequest(),
    svc: GradingService = Depends(get_grading_service),
):
    """
    Grades scanned and synced submissions. When everything is already graded,
    the call re-grades all of them, which requires `confirmOverwrite`.
    """
    try:
        return await svc.grade_all(
            assignment_id,
            confirm_overwrite=request.confirmOverwrite,
            continue_on_preparation_failure=request.continueOnPreparationFailure,
        )
    except (GradingError, ValueError) as e:
        raise _http_error(e)


@router.post("/stop", summary="Stop the running grade-all before its next submission")
async def stop_grading(assignment_id: str, svc: GradingService = Depends(get_grading_service)):
    # The submission being graded when the stop arrives still finishes and is saved.
    try:
        return svc.request_stop(assignment_id)
    except ValueError as e:
        raise _http_error(e)


@router.post("/submissions/{submission_id}/grade", response_model=GradingResult, summary="Grade one submission")
async def grade_submission(assignment_id: str, submission_id: str, svc: GradingService = Depends(get_grading_service)):
    try:
        return await svc.grade_one(assignment_id, submission_id)
    except (GradingError, ValueError) as e:
        raise _http_error(e)


@router.post("/submissions/{submission_id}/regrade", response_model=GradingResult, summary="Re-grade one submission from scratch")
async def regrade_submission(assignment_id: str, submission_id: str, svc: GradingService = Depends(get_grading_service)):
    try:
        return await svc.regrade_single(assignment_id, submission_id)
    except (GradingError, ValueError) as e:
        raise _http_error(e)


@router.post(
    "/submissions/{submission_id}/regrade-flagged",
    response_model=GradingResult,
    summary="Re-grade only the flagged questions of a submission",
)
async def regrade_flagged(
    assignment_id: str,
    submission_id: str,
    request: RegradeFlaggedRequest = RegradeFlaggedRequest(),
    svc: GradingService = Depends(get_grading_service),
):
    try:
        return await svc.regrade_flagged(assignment_id, submission_id, request.questionIds)
    except (GradingError, ValueError) as e:
        raise _http_error(e)


# --- Answer-Extraction Flags ---

@router.post(
    "/submissions/{submission_id}/flags/{question_id}",
    response_model=FlagToggleResponse,
    summary="Flag an answer as possibly misread",
)
def flag_question(assignment_id: str, submission_id: str, question_id: str, svc: GradingService = Depends(get_grading_service)):
    try:
        return svc.set_flag(assignment_id, submission_id, question_id, flagged=True)
    except ValueError as e:
        raise _http_error(e)


@router.delete(
    "/submissions/{submission_id}/flags/{question_id}",
    response_model=FlagToggleResponse,
    summary="Remove a misread flag",
)
def unflag_question(assignment_id: str, submission_id: str, question_id: str, svc: GradingService = Depends(get_grading_service)):
    try:
        return svc.set_flag(assignment_id, submission_id, question_id, flagged=False)
    except ValueError as e:
        raise _http_error(e)


# --- Manual Corrections ---

@router.patch(
    "/submissions/{submission_id}/details/{question_id}/score",
    response_model=GradingResult,
    summary="Override one question's score",
)
def update_detail_score(
    assignment_id: str,
    submission_id: str,
    question_id: str,
    request: DetailScoreUpdate,
    svc: GradingService = Depends(get_grading_service),
):
    try:
        return svc.update_detail_score(assignment_id, submission_id, question_id, request.score)
    except ValueError as e:
        raise _http_error(e)


@router.patch(
    "/submissions/{submission_id}/details/{question_id}/comment",
    response_model=GradingResult,
    summary="Replace one question's comment",
)
def update_detail_comment(
    assignment_id: str,
    submission_id: str,
    question_id: str,
    request: DetailCommentUpdate,
    svc: GradingService = Depends(get_grading_service),
):
    try:
        return svc.update_detail_comment(assignment_id, submission_id, question_id, request.comment)
    except ValueError as e:
        raise _http_error(e)


# --- Review Board ---

@router.get("/review", response_model=ReviewBoardResponse, summary="Get the review grid and queue")
def get_review_board(assignment_id: str, svc: GradingService = Depends(get_grading_service)):
    try:
        return svc.get_review_board(assignment_id)
    except ValueError as e:
        raise _http_error(e)


@router.get("/review/next", response_model=ReviewNavigationResponse, summary="Move to the next submission needing review")
def review_next(assignment_id: str, svc: GradingService = Depends(get_grading_service)):
    try:
        return svc.navigate_review(assignment_id, "next")
    except ValueError as e:
        raise _http_error(e)


@router.get("/review/previous", response_model=ReviewNavigationResponse, summary="Move to the previous submission needing review")
def review_previous(assignment_id: str, svc: GradingService = Depends(get_grading_service)):
    try:
        return svc.navigate_review(assignment_id, "previous")
    except ValueError as e:
        raise _http_error(e)


@router.post("/submissions/{submission_id}/open", summary="Open a submission for review")
async def open_submission(assignment_id: str, submission_id: str, svc: GradingService = Depends(get_grading_service)):
    # Async so the auto-clear countdown is scheduled on the running event loop.
    try:
        return svc.open_submission(assignment_id, submission_id)
    except ValueError as e:
        raise _http_error(e)


@router.post("/submissions/{submission_id}/close", summary="Close the open submission")
async def close_submission(assignment_id: str, submission_id: str, svc: GradingService = Depends(get_grading_service)):
    return svc.close_submission(assignment_id, submission_id)
