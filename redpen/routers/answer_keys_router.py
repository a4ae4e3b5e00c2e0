# /redpen/routers/answer_keys_router.py

"""
API endpoints for reading and editing the answer key of an assignment.

All writes accept loosely shaped JSON. The service normalizes every payload,
so a malformed key is coerced rather than rejected.
"""

from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, File, HTTPException, UploadFile, status

from ..models.answer_key_model import AnswerKey, AnswerKeyMergeResponse, CategoryChangeRequest, MaxScoreChangeRequest
from ..services.answer_key_service import AnswerKeyService, get_answer_key_service
from ..services.grading_helpers.errors import GradingServiceError, GradingServiceUnavailable, ImageUnavailable

router = APIRouter()


def _not_found(e: ValueError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("", response_model=AnswerKey, summary="Get the normalized answer key")
def get_answer_key(assignment_id: str, svc: AnswerKeyService = Depends(get_answer_key_service)):
    try:
        return svc.get_answer_key(assignment_id)
    except ValueError as e:
        raise _not_found(e)


@router.get("/sorted", response_model=AnswerKey, summary="Get the answer key in question-id order")
def get_sorted_answer_key(assignment_id: str, svc: AnswerKeyService = Depends(get_answer_key_service)):
    try:
        return svc.get_sorted_answer_key(assignment_id)
    except ValueError as e:
        raise _not_found(e)


@router.put("", response_model=AnswerKey, summary="Replace the answer key")
def replace_answer_key(
    assignment_id: str,
    payload: Dict[str, Any] = Body(...),
    svc: AnswerKeyService = Depends(get_answer_key_service),
):
    try:
        return svc.replace_answer_key(assignment_id, payload)
    except ValueError as e:
        raise _not_found(e)


@router.post("/merge", response_model=AnswerKeyMergeResponse, summary="Append questions to the answer key")
def merge_answer_key(
    assignment_id: str,
    payload: Dict[str, Any] = Body(...),
    svc: AnswerKeyService = Depends(get_answer_key_service),
):
    """Duplicate ids are renamed, never overwritten; the response notice lists the renames."""
    try:
        return svc.merge_into_answer_key(assignment_id, payload)
    except ValueError as e:
        raise _not_found(e)


@router.post("/import", response_model=AnswerKeyMergeResponse, summary="Extract an answer key from an answer sheet")
async def import_answer_key(
    assignment_id: str,
    answer_sheet: UploadFile = File(..., description="A photo or PDF of the teacher's answer sheet."),
    svc: AnswerKeyService = Depends(get_answer_key_service),
):
    file_bytes = await answer_sheet.read()
    try:
        return await svc.import_from_sheet(assignment_id, file_bytes, answer_sheet.content_type)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ImageUnavailable as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except GradingServiceUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except GradingServiceError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


@router.patch("/questions/{index}/category", response_model=AnswerKey, summary="Change a question's category")
def change_question_category(
    assignment_id: str,
    index: int,
    request: CategoryChangeRequest,
    svc: AnswerKeyService = Depends(get_answer_key_service),
):
    try:
        return svc.change_category(assignment_id, index, request.category)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.patch("/questions/{index}/max-score", response_model=AnswerKey, summary="Change a question's maximum score")
def change_question_max_score(
    assignment_id: str,
    index: int,
    request: MaxScoreChangeRequest,
    svc: AnswerKeyService = Depends(get_answer_key_service),
):
    try:
        return svc.change_max_score(assignment_id, index, request.maxScore)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
