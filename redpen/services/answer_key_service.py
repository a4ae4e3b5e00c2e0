# /redpen/services/answer_key_service.py

"""
This module defines the AnswerKeyService, which reads and writes the answer
key stored on an assignment. Every key that enters or leaves the service goes
through the normalizer, so callers always see the same clean shape whatever
was stored.
"""

import logging
from typing import List, Optional

import fitz  # PyMuPDF
from fastapi import Depends

from redpen.models.answer_key_model import AnswerKey, AnswerKeyMergeResponse
from .answer_key_helpers.merger import merge_answer_keys, sort_questions_by_id
from .answer_key_helpers.normalizer import (
    change_question_category,
    normalize_answer_key,
    update_question_max_score,
)
from .database_service import DatabaseService, get_db_service
from .gemini_service import GradingClient, get_grading_client
from .grading_helpers.image_acquisition import ImageRef

logger = logging.getLogger(__name__)


def _pages_from_upload(file_bytes: bytes, content_type: Optional[str]) -> List[ImageRef]:
    """
    Specialist for file ingestion.
    Turns an uploaded answer sheet into one image per page, rendering PDFs with PyMuPDF.
    """
    if not file_bytes:
        raise ValueError("The uploaded answer sheet is empty.")
    if content_type and "pdf" in content_type:
        pages = []
        try:
            with fitz.open(stream=file_bytes, filetype="pdf") as pdf_document:
                for page in pdf_document:
                    pix = page.get_pixmap(dpi=150)
                    pages.append(ImageRef(data=pix.tobytes("png"), mime_type="image/png"))
        except RuntimeError as e:
            # PyMuPDF raises FileDataError, a RuntimeError, for damaged documents.
            raise ValueError(f"The uploaded PDF could not be read: {e}") from e
        if not pages:
            raise ValueError("The uploaded PDF has no pages.")
        return pages
    return [ImageRef(data=file_bytes)]


class AnswerKeyService:
    def __init__(self, db: DatabaseService, client: Optional[GradingClient] = None):
        self.db = db
        self.client = client

    def _get_assignment(self, assignment_id: str):
        assignment = self.db.get_assignment(assignment_id)
        if assignment is None:
            raise ValueError(f"Assignment with ID {assignment_id} not found.")
        return assignment

    def _save(self, assignment_id: str, answer_key: AnswerKey) -> AnswerKey:
        self.db.update_assignment_answer_key(assignment_id, answer_key.model_dump(mode="json", exclude={"totalScore"}))
        return answer_key

    def get_answer_key(self, assignment_id: str) -> AnswerKey:
        return normalize_answer_key(self._get_assignment(assignment_id).answer_key)

    def get_sorted_answer_key(self, assignment_id: str) -> AnswerKey:
        """The stored key with its questions in hierarchical id order. Nothing is written."""
        answer_key = self.get_answer_key(assignment_id)
        return AnswerKey(questions=sort_questions_by_id(answer_key.questions))

    def replace_answer_key(self, assignment_id: str, raw) -> AnswerKey:
        self._get_assignment(assignment_id)
        return self._save(assignment_id, normalize_answer_key(raw))

    def merge_into_answer_key(self, assignment_id: str, raw) -> AnswerKeyMergeResponse:
        current = self._get_assignment(assignment_id).answer_key
        merged, notice = merge_answer_keys(current, raw)
        if notice:
            logger.info("Answer key merge for assignment %s: %s", assignment_id, notice)
        return AnswerKeyMergeResponse(answerKey=self._save(assignment_id, merged), notice=notice)

    async def import_from_sheet(self, assignment_id: str, file_bytes: bytes, content_type: Optional[str]) -> AnswerKeyMergeResponse:
        """
        Reads an answer sheet with the grading model and merges what it found
        into the assignment's key. Pages are read one at a time, in order.
        """
        if self.client is None:
            raise ValueError("No grading client is configured for answer-key import.")
        assignment = self._get_assignment(assignment_id)
        extracted: AnswerKey = AnswerKey()
        for page in _pages_from_upload(file_bytes, content_type):
            raw = await self.client.extract_answer_key(page, assignment.domain or None)
            extracted, _ = merge_answer_keys(extracted, raw)
        logger.info("Extracted %d question(s) for assignment %s.", len(extracted.questions), assignment_id)
        return self.merge_into_answer_key(assignment_id, extracted)

    def _edit_question(self, assignment_id: str, index: int, edit) -> AnswerKey:
        answer_key = self.get_answer_key(assignment_id)
        if index < 0 or index >= len(answer_key.questions):
            raise ValueError(f"Question index {index} is out of range.")
        questions = list(answer_key.questions)
        questions[index] = edit(questions[index])
        return self._save(assignment_id, AnswerKey(questions=questions))

    def change_category(self, assignment_id: str, index: int, category) -> AnswerKey:
        return self._edit_question(assignment_id, index, lambda q: change_question_category(q, category))

    def change_max_score(self, assignment_id: str, index: int, max_score: float) -> AnswerKey:
        return self._edit_question(assignment_id, index, lambda q: update_question_max_score(q, max_score))


def get_answer_key_service(
    db: DatabaseService = Depends(get_db_service),
    client: GradingClient = Depends(get_grading_client),
) -> AnswerKeyService:
    """Dependency provider for the AnswerKeyService."""
    return AnswerKeyService(db=db, client=client)
