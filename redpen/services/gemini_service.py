# /redpen/services/gemini_service.py

"""
Adapter between the grading engine and the Gemini vision model.

The engine only depends on the `GradingClient` protocol below. The Gemini
implementation turns a submission image plus answer key into a prompt, calls
the model in JSON mode, and hands back a validated `GradingResult`.

The API key is checked the first time the adapter is used, not at import, so
the rest of the application keeps working without one.
"""

import json
import logging
from typing import Dict, List, Optional, Protocol, Tuple

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from google.generativeai.types import GenerationConfig
from fastapi import Request
from pydantic import ValidationError

from redpen.core.config import Settings, get_settings
from redpen.models.answer_key_model import AnswerKey
from redpen.models.grading_model import (
    UNREADABLE_ANSWER,
    GradeOptions,
    GradingDetail,
    GradingResult,
    RegradeRequest,
    ReviewReason,
)
from .grading_helpers.detail_merge import total_of
from .grading_helpers.errors import GradingServiceError, GradingServiceUnavailable
from .grading_helpers.image_acquisition import ImageRef
from .prompt_library import (
    ANSWER_KEY_EXTRACTION_PROMPT,
    DOMAIN_SECTION,
    FORCED_UNREADABLE_SECTION,
    LENIENT_GRADING_NOTE,
    MISSING_RETRY_SECTION,
    PRIOR_RESULT_SECTION,
    REGRADE_SECTION,
    STRICT_GRADING_NOTE,
    SUBMISSION_GRADING_PROMPT,
)

logger = logging.getLogger(__name__)

_UNAVAILABLE_ERRORS = (
    google_exceptions.NotFound,
    google_exceptions.PermissionDenied,
    google_exceptions.Unauthenticated,
)


# --- The Contract the Engine Depends On ---

class GradingClient(Protocol):
    async def grade_submission(
        self,
        image: ImageRef,
        prior_result: Optional[GradingResult],
        answer_key: Optional[AnswerKey],
        options: GradeOptions,
    ) -> GradingResult:
        ...

    async def extract_answer_key(self, image: ImageRef, domain: Optional[str] = None) -> Dict:
        ...


# --- Result Post-Processing ---

def _is_empty_answer(answer: str) -> bool:
    return not (answer or "").strip() or answer == UNREADABLE_ANSWER


def fill_missing_questions(result: GradingResult, answer_key: AnswerKey) -> Tuple[GradingResult, List[str]]:
    """
    Adds an unreadable zero-score detail for every answer-key question the
    model skipped, puts details back in answer-key order and recomputes the
    total. Returns the patched result and the ids that were missing.
    """
    present = {d.questionId for d in result.details}
    missing = [q.id for q in answer_key.questions if q.id not in present]
    if not missing:
        return result, []

    logger.warning("Grading model skipped %d question(s): %s", len(missing), ", ".join(missing))
    filled = list(result.details)
    for question_id in missing:
        question = answer_key.get_question(question_id)
        filled.append(GradingDetail(
            questionId=question_id,
            studentAnswer=UNREADABLE_ANSWER,
            score=0,
            maxScore=question.maxScore if question else 0,
            isCorrect=False,
            reason="The answer could not be found on the page; scored 0 pending review.",
            confidence=0,
        ))

    order = {qid: index for index, qid in enumerate(answer_key.question_ids())}
    filled.sort(key=lambda d: order.get(d.questionId, len(order)))

    reasons = list(result.reviewReasons)
    if ReviewReason.QUESTION_UNREADABLE.value not in reasons:
        reasons.append(ReviewReason.QUESTION_UNREADABLE.value)
    patched = result.model_copy(update={
        "details": filled,
        "totalScore": total_of(filled),
        "needsReview": True,
        "reviewReasons": reasons,
    })
    return patched, missing


def force_unreadable(result: GradingResult, question_ids: List[str]) -> GradingResult:
    """Overrides the answers of questions the teacher has disputed repeatedly."""
    if not question_ids:
        return result
    forced = set(question_ids)
    details = [
        d.model_copy(update={"studentAnswer": UNREADABLE_ANSWER, "score": 0.0, "isCorrect": False})
        if d.questionId in forced else d
        for d in result.details
    ]
    return result.model_copy(update={"details": details, "totalScore": total_of(details)})


# --- Prompt Assembly ---

def build_grading_prompt(answer_key: Optional[AnswerKey], prior_result: Optional[GradingResult], options: GradeOptions) -> str:
    if answer_key is not None and answer_key.questions:
        answer_key_json = json.dumps(answer_key.model_dump(mode="json"), ensure_ascii=False, indent=2)
    else:
        answer_key_json = "(No answer key was provided. Transcribe every answer and grade by your own judgement.)"

    domain_section = DOMAIN_SECTION.format(domain=options.domain) if options.domain else ""

    prior_section = ""
    if prior_result is not None and prior_result.details and options.regrade is None:
        prior_json = json.dumps([d.model_dump(mode="json") for d in prior_result.details], ensure_ascii=False)
        prior_section = PRIOR_RESULT_SECTION.format(prior_json=prior_json)

    regrade_section = ""
    regrade = options.regrade
    if regrade is not None and regrade.questionIds:
        question_ids = ", ".join(regrade.questionIds)
        if regrade.mode == "missing":
            regrade_section = MISSING_RETRY_SECTION.format(question_ids=question_ids)
        else:
            targeted = set(regrade.questionIds)
            previous_answers = "\n".join(
                f"    - {d.questionId}: {d.studentAnswer}" for d in regrade.previousDetails if d.questionId in targeted
            ) or "    - (none recorded)"
            forced_section = ""
            if regrade.forceUnrecognizableQuestionIds:
                forced_section = FORCED_UNREADABLE_SECTION.format(
                    question_ids=", ".join(regrade.forceUnrecognizableQuestionIds), unreadable=UNREADABLE_ANSWER
                )
            regrade_section = REGRADE_SECTION.format(
                question_ids=question_ids, previous_answers=previous_answers, forced_section=forced_section
            )

    return SUBMISSION_GRADING_PROMPT.format(
        unreadable=UNREADABLE_ANSWER,
        strictness=STRICT_GRADING_NOTE if options.strict else LENIENT_GRADING_NOTE,
        answer_key_json=answer_key_json,
        domain_section=domain_section,
        prior_section=prior_section,
        regrade_section=regrade_section,
    )


# --- Gemini Implementation ---

class GeminiGradingClient:
    """`GradingClient` backed by Gemini's multimodal JSON mode."""

    def __init__(self, settings: Optional[Settings] = None, temperature: float = 0.1):
        self.settings = settings or get_settings()
        self.temperature = temperature
        self._model = None

    def _get_model(self):
        if self._model is None:
            if not self.settings.google_api_key:
                raise GradingServiceUnavailable("GOOGLE_API_KEY is not set; the grading service cannot be used.")
            genai.configure(api_key=self.settings.google_api_key)
            self._model = genai.GenerativeModel(self.settings.gemini_grading_model)
        return self._model

    async def _generate_json(self, prompt: str, image: ImageRef) -> Dict:
        model = self._get_model()
        config = GenerationConfig(temperature=self.temperature, response_mime_type="application/json")
        try:
            response = await model.generate_content_async([prompt, image.to_pil_image()], generation_config=config)
        except _UNAVAILABLE_ERRORS as e:
            logger.error("Gemini model %s is unavailable: %s", self.settings.gemini_grading_model, e)
            raise GradingServiceUnavailable(f"Grading model '{self.settings.gemini_grading_model}' is unavailable: {e}") from e
        except google_exceptions.GoogleAPIError as e:
            logger.error("Gemini request failed: %s", e)
            raise GradingServiceError(f"The grading service rejected the request: {e}") from e

        try:
            text = response.text
        except ValueError as e:
            raise GradingServiceError(f"The grading service returned no usable content: {e}") from e
        if not text:
            raise GradingServiceError("The grading service returned an empty response.")

        cleaned = text.replace("```json", "").replace("```", "").strip()
        try:
            payload = json.loads(cleaned)
        except json.JSONDecodeError as e:
            raise GradingServiceError(f"The grading service returned malformed JSON: {e}") from e
        if not isinstance(payload, dict):
            raise GradingServiceError("The grading service returned JSON that is not an object.")
        return payload

    async def _grade_once(self, image, prior_result, answer_key, options) -> GradingResult:
        payload = await self._generate_json(build_grading_prompt(answer_key, prior_result, options), image)
        try:
            result = GradingResult.model_validate(payload)
        except ValidationError as e:
            raise GradingServiceError(f"The grading service returned an unexpected result shape: {e}") from e
        if result.details:
            result = result.model_copy(update={"totalScore": total_of(result.details)})
        return result

    async def grade_submission(
        self,
        image: ImageRef,
        prior_result: Optional[GradingResult],
        answer_key: Optional[AnswerKey],
        options: GradeOptions,
    ) -> GradingResult:
        """
        Grades one page. Outside of re-grade mode, questions the model skipped
        are back-filled as unreadable and then retried once on their own.
        """
        result = await self._grade_once(image, prior_result, answer_key, options)

        regrade = options.regrade
        if regrade is not None:
            return force_unreadable(result, regrade.forceUnrecognizableQuestionIds)
        if answer_key is None or not answer_key.questions:
            return result

        result, missing = fill_missing_questions(result, answer_key)
        if not missing or options.skipMissingRetry:
            return result

        retry_options = options.model_copy(update={
            "skipMissingRetry": True,
            "regrade": RegradeRequest(questionIds=missing, previousDetails=result.details, mode="missing"),
        })
        try:
            retry = await self._grade_once(image, None, answer_key, retry_options)
        except GradingServiceError as e:
            logger.warning("Retry for skipped questions failed; keeping the back-filled answers: %s", e)
            return result

        recovered = {d.questionId: d for d in retry.details if d.questionId in missing and not _is_empty_answer(d.studentAnswer)}
        if not recovered:
            return result
        logger.info("Recovered %d skipped question(s) on retry.", len(recovered))
        details = [recovered.get(d.questionId, d) for d in result.details]
        return result.model_copy(update={"details": details, "totalScore": total_of(details)})

    async def extract_answer_key(self, image: ImageRef, domain: Optional[str] = None) -> Dict:
        """Reads an answer sheet into a raw answer-key dict. The caller normalizes it."""
        domain_section = DOMAIN_SECTION.format(domain=domain) if domain else ""
        return await self._generate_json(ANSWER_KEY_EXTRACTION_PROMPT.format(domain_section=domain_section), image)


def get_grading_client(request: Request) -> GradingClient:
    """The client created in the application lifespan, shared by all requests."""
    return request.app.state.grading_client
