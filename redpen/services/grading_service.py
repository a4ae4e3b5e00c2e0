# /redpen/services/grading_service.py

"""
This module defines the GradingService, the orchestrator that takes stored
submissions through the grading model and keeps their results and the
teacher's review state consistent.

The service loads records through the DatabaseService, resolves images via
the image-acquisition helpers, calls the grading model through the
`GradingClient` protocol, and persists each outcome as soon as it exists.
Batch runs are strictly sequential: one model call at a time, in order.
"""

import asyncio
import datetime
import logging
from typing import Callable, Dict, List, Optional, Sequence

from fastapi import Depends, Request

from redpen.core.config import Settings, get_settings
from redpen.db.database import SessionLocal
from redpen.models.answer_key_model import AnswerKey
from redpen.models.grading_model import (
    UNREADABLE_ANSWER,
    BatchGradeReport,
    FlagToggleResponse,
    GradeOptions,
    GradingResult,
    ItemFailure,
    RegradeRequest,
    ReviewBoardResponse,
    ReviewNavigationResponse,
    StudentRecord,
    SubmissionRecord,
    derive_is_correct,
)
from .answer_key_helpers.normalizer import normalize_answer_key
from .database_service import DatabaseService, get_db_service
from .gemini_service import GradingClient, get_grading_client
from .grading_helpers import review_triage
from .grading_helpers.batch_grading import (
    ProgressCallback,
    StopPredicate,
    call_hook,
    prepare_batch,
    select_grade_all_candidates,
)
from .grading_helpers.detail_merge import apply_regrade, total_of
from .grading_helpers.errors import (
    GradingError,
    GradingServiceError,
    GradingServiceUnavailable,
    ImageUnavailable,
    OverwriteConfirmationRequired,
)
from .grading_helpers.image_acquisition import ImageRef, acquire_image
from .remote_image_store import RemoteImageStore, get_remote_image_store
from .review_session import ReviewSession, ReviewSessionRegistry

logger = logging.getLogger(__name__)

ItemCompleteCallback = Callable[[SubmissionRecord, GradingResult], object]
ConfirmContinueCallback = Callable[[List[ItemFailure]], object]


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def clear_review_flag_in_new_session(submission_id: str, session_factory=SessionLocal) -> None:
    """
    Auto-clear callback. It runs after the request that opened the submission
    has finished, so it works in a session of its own.
    """
    db_session = session_factory()
    try:
        db = DatabaseService(db_session)
        row = db.get_submission(submission_id)
        if row is None or not row.grading_result:
            return
        result = GradingResult.model_validate(row.grading_result)
        if not result.needsReview:
            return
        cleared = result.model_copy(update={"needsReview": False, "reviewReasons": []})
        db.update_submission(submission_id, {"grading_result": cleared.model_dump(mode="json")})
    finally:
        db_session.close()


class GradingService:
    def __init__(
        self,
        db: DatabaseService,
        client: GradingClient,
        remote_store: Optional[RemoteImageStore] = None,
        sessions: Optional[ReviewSessionRegistry] = None,
        settings: Optional[Settings] = None,
        session_factory=SessionLocal,
    ):
        self.db = db
        self.client = client
        self.remote_store = remote_store
        self.settings = settings or get_settings()
        self.sessions = sessions or ReviewSessionRegistry(self.settings.review_auto_clear_seconds)
        self.session_factory = session_factory

    # --- Record Loading ---

    def _get_assignment(self, assignment_id: str):
        assignment = self.db.get_assignment(assignment_id)
        if assignment is None:
            raise ValueError(f"Assignment with ID {assignment_id} not found.")
        return assignment

    def get_answer_key(self, assignment_id: str) -> AnswerKey:
        return normalize_answer_key(self._get_assignment(assignment_id).answer_key)

    def get_submission(self, assignment_id: str, submission_id: str) -> SubmissionRecord:
        row = self.db.get_submission(submission_id)
        if row is None or row.assignment_id != assignment_id:
            raise ValueError(f"Submission with ID {submission_id} not found in assignment {assignment_id}.")
        return SubmissionRecord.model_validate(row)

    def list_submissions(self, assignment_id: str) -> List[SubmissionRecord]:
        return [SubmissionRecord.model_validate(row) for row in self.db.get_submissions_by_assignment(assignment_id)]

    def _students_by_id(self, classroom_id: str) -> Dict[str, StudentRecord]:
        return {
            student.id: StudentRecord.model_validate(student)
            for student in self.db.get_students_by_classroom(classroom_id)
        }

    def _session(self, assignment_id: str) -> ReviewSession:
        return self.sessions.get(assignment_id)

    def _default_options(self, assignment) -> GradeOptions:
        return GradeOptions(strict=True, domain=assignment.domain or None)

    # --- Single-Item Pipeline ---

    async def _call_client(
        self,
        submission: SubmissionRecord,
        image: ImageRef,
        answer_key: Optional[AnswerKey],
        options: GradeOptions,
        prior_result: Optional[GradingResult] = None,
    ) -> GradingResult:
        try:
            return await self.client.grade_submission(image, prior_result, answer_key, options)
        except GradingError as e:
            if e.submission_id is None:
                e.submission_id = submission.id
            raise
        except Exception as e:
            logger.error("Grading client failed for submission %s: %s", submission.id, e)
            raise GradingServiceError(f"Grading failed for submission {submission.id}: {e}", submission_id=submission.id) from e

    def _with_review_verdict(self, assignment_id: str, submission_id: str, result: GradingResult) -> GradingResult:
        verdict = review_triage.compute_needs_review(
            result.details,
            has_outstanding_flags=self._session(assignment_id).has_flags(submission_id),
            threshold=self.settings.review_confidence_threshold,
        )
        reasons = list(result.reviewReasons)
        for reason in verdict.reasons:
            if reason not in reasons:
                reasons.append(reason)
        return result.model_copy(update={"needsReview": result.needsReview or verdict.needsReview, "reviewReasons": reasons})

    def _persist_graded(self, submission: SubmissionRecord, result: GradingResult, image: Optional[ImageRef] = None) -> None:
        data = {
            "status": "graded",
            "score": result.totalScore,
            "feedback": "",
            "graded_at": _utcnow(),
            "grading_result": result.model_dump(mode="json"),
        }
        if image is not None:
            data["image_blob"] = image.to_bytes()
            data["image_base64"] = image.to_base64()
        self.db.update_submission(submission.id, data)

    async def _grade_prepared(self, assignment_id, submission, image, answer_key, options) -> GradingResult:
        result = await self._call_client(submission, image, answer_key, options)
        result = self._with_review_verdict(assignment_id, submission.id, result)
        self._persist_graded(submission, result, image)
        return result

    async def grade_one(self, assignment_id: str, submission_id: str, options: Optional[GradeOptions] = None) -> GradingResult:
        """
        Grades a single submission and persists the outcome.

        Raises:
            ImageUnavailable: no cached blob, decodable base64 or remote copy.
            GradingServiceError / GradingServiceUnavailable: the model call failed.
        """
        assignment = self._get_assignment(assignment_id)
        answer_key = normalize_answer_key(assignment.answer_key)
        submission = self.get_submission(assignment_id, submission_id)
        image, source = await acquire_image(submission, self.remote_store)
        logger.info("Grading submission %s (image from %s).", submission_id, source)
        return await self._grade_prepared(
            assignment_id, submission, image, answer_key, options or self._default_options(assignment)
        )

    async def regrade_single(self, assignment_id: str, submission_id: str) -> GradingResult:
        """Re-grades a whole submission from scratch, replacing its previous result."""
        result = await self.grade_one(assignment_id, submission_id)
        self._session(assignment_id).flags.pop(submission_id, None)
        return result

    # --- Batch Grading ---

    async def grade_many(
        self,
        assignment_id: str,
        submissions: Sequence[SubmissionRecord],
        answer_key: Optional[AnswerKey] = None,
        options: Optional[GradeOptions] = None,
        on_download_progress: Optional[ProgressCallback] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_item_complete: Optional[ItemCompleteCallback] = None,
        should_stop: Optional[StopPredicate] = None,
        confirm_continue: Optional[ConfirmContinueCallback] = None,
        inter_item_delay: Optional[float] = None,
        is_regrade: bool = False,
    ) -> BatchGradeReport:
        """
        Grades the given submissions one after another.

        Preparation resolves every image first. If some could not be
        prepared, `confirm_continue(failures)` decides whether to go on with
        the rest (the default) or abort. Grading then processes the prepared
        items in order, checking `should_stop` before each one. A failure of
        one item is recorded and the batch moves on, except for
        `GradingServiceUnavailable`, which propagates.
        """
        assignment = self._get_assignment(assignment_id)
        if answer_key is None:
            answer_key = normalize_answer_key(assignment.answer_key)
        options = options or self._default_options(assignment)
        delay = self.settings.grading_inter_item_delay_seconds if inter_item_delay is None else inter_item_delay

        report = BatchGradeReport(candidateCount=len(submissions), isRegrade=is_regrade)
        preparation = await prepare_batch(submissions, self.remote_store, should_stop, on_download_progress)
        report.preparedCount = len(preparation.prepared)
        report.preparationFailures = preparation.failures
        if preparation.stopped:
            report.stopped = True
            logger.info("Batch for assignment %s stopped during preparation.", assignment_id)
            return report

        if preparation.failures and confirm_continue is not None:
            proceed = await call_hook(confirm_continue, preparation.failures)
            if proceed is False:
                report.aborted = True
                logger.info("Batch for assignment %s aborted after %d preparation failure(s).", assignment_id, len(preparation.failures))
                return report

        total = len(preparation.prepared)
        for index, item in enumerate(preparation.prepared):
            if index > 0 and delay > 0:
                await asyncio.sleep(delay)
            # The stop check follows the pacing pause.
            if should_stop is not None and should_stop():
                report.stopped = True
                break
            await call_hook(on_progress, index + 1, total)
            try:
                result = await self._grade_prepared(assignment_id, item.submission, item.image, answer_key, options)
            except GradingServiceUnavailable:
                logger.error("Grading service unavailable; aborting batch for assignment %s.", assignment_id)
                raise
            except (ImageUnavailable, GradingServiceError) as e:
                logger.warning("Grading failed for submission %s: %s", item.submission.id, e)
                report.gradingFailures.append(ItemFailure(
                    submissionId=item.submission.id, studentId=item.submission.student_id, stage="grade", message=str(e),
                ))
                continue
            report.successCount += 1
            await call_hook(on_item_complete, item.submission, result)

        logger.info(
            "Batch for assignment %s finished: %d/%d graded, stopped=%s.",
            assignment_id, report.successCount, report.candidateCount, report.stopped,
        )
        return report

    async def grade_all(
        self,
        assignment_id: str,
        confirm_overwrite: bool = False,
        continue_on_preparation_failure: bool = True,
        should_stop: Optional[StopPredicate] = None,
    ) -> BatchGradeReport:
        """
        Grades every submission still waiting for a grade. When nothing is
        waiting, re-grades everything already graded, but only once the caller
        has confirmed the overwrite.

        The run can be stopped through `request_stop`; an extra `should_stop`
        predicate is honoured as well.
        """
        candidates, is_regrade = select_grade_all_candidates(self.list_submissions(assignment_id))
        if is_regrade and not confirm_overwrite:
            raise OverwriteConfirmationRequired(
                f"All {len(candidates)} submission(s) are already graded; confirm to re-grade them.",
                candidate_count=len(candidates),
            )
        session = self._session(assignment_id)
        token = session.begin_batch()
        stop = token if should_stop is None else (lambda: token() or should_stop())
        try:
            return await self.grade_many(
                assignment_id,
                candidates,
                should_stop=stop,
                confirm_continue=lambda failures: continue_on_preparation_failure,
                is_regrade=is_regrade,
            )
        finally:
            session.end_batch(token)

    def request_stop(self, assignment_id: str) -> Dict:
        """Stops the running grade-all of an assignment before its next item."""
        self._get_assignment(assignment_id)
        requested = self._session(assignment_id).request_stop()
        if requested:
            logger.info("Stop requested for the batch of assignment %s.", assignment_id)
        return {"assignmentId": assignment_id, "stopRequested": requested}

    # --- Targeted Re-Grade ---

    def _regrade_targets(self, assignment_id: str, submission_id: str, answer_key: AnswerKey, question_ids: Optional[List[str]]) -> List[str]:
        if question_ids:
            targets = list(dict.fromkeys(question_ids))
        else:
            targets = self._session(assignment_id).flagged_questions(submission_id)
            targets += [q.id for q in answer_key.questions if q.needsReanalysis and q.id not in targets]
        if not targets:
            raise ValueError("There are no flagged questions to re-grade.")
        return targets

    async def regrade_flagged(self, assignment_id: str, submission_id: str, question_ids: Optional[List[str]] = None) -> GradingResult:
        """
        Re-grades only the targeted questions and folds the answers back into
        the stored result; every other question keeps its previous grading.
        """
        assignment = self._get_assignment(assignment_id)
        answer_key = normalize_answer_key(assignment.answer_key)
        submission = self.get_submission(assignment_id, submission_id)
        previous = submission.grading_result or GradingResult()
        targets = self._regrade_targets(assignment_id, submission_id, answer_key, question_ids)

        forced = [d.questionId for d in previous.details if d.questionId in targets and d.studentAnswer == UNREADABLE_ANSWER]
        options = self._default_options(assignment).model_copy(update={
            "regrade": RegradeRequest(
                questionIds=targets,
                previousDetails=previous.details,
                forceUnrecognizableQuestionIds=forced,
                mode="correction",
            ),
        })

        image, _ = await acquire_image(submission, self.remote_store)
        regrade = await self._call_client(submission, image, answer_key, options, prior_result=previous)
        merged = apply_regrade(previous, regrade, targets)
        self._persist_graded(submission, merged, image)

        session = self._session(assignment_id)
        session.complete_regrade(submission_id, targets)
        logger.info("Re-graded %d question(s) of submission %s; new total %.2f.", len(targets), submission_id, merged.totalScore)
        return merged

    # --- Answer-Extraction Flags ---

    def set_flag(self, assignment_id: str, submission_id: str, question_id: str, flagged: bool) -> FlagToggleResponse:
        submission = self.get_submission(assignment_id, submission_id)
        result = submission.grading_result
        if result is None or not any(d.questionId == question_id for d in result.details):
            raise ValueError(f"Question {question_id} has no grading detail on submission {submission_id}.")

        session = self._session(assignment_id)
        change = session.flag(submission_id, question_id) if flagged else session.unflag(submission_id, question_id)
        if change.forced_unreadable:
            details = [
                d.model_copy(update={"studentAnswer": UNREADABLE_ANSWER}) if d.questionId == question_id else d
                for d in result.details
            ]
            self.db.update_submission(submission_id, {"grading_result": result.model_copy(update={"details": details}).model_dump(mode="json")})
            logger.info("Question %s of submission %s forced to unreadable after repeated flagging.", question_id, submission_id)

        return FlagToggleResponse(
            submissionId=submission_id,
            questionId=question_id,
            flagged=change.flagged,
            forcedUnreadable=change.forced_unreadable,
            flaggedQuestionIds=session.flagged_questions(submission_id),
        )

    # --- Manual Corrections ---

    def _apply_manual_edit(self, assignment_id: str, submission_id: str, question_id: str, changes: Dict) -> GradingResult:
        submission = self.get_submission(assignment_id, submission_id)
        result = submission.grading_result
        if result is None:
            raise ValueError(f"Submission {submission_id} has not been graded yet.")

        details, found = [], False
        for detail in result.details:
            if detail.questionId == question_id:
                found = True
                detail = detail.model_copy(update=changes)
                object.__setattr__(detail, "isCorrect", derive_is_correct(detail.score, detail.maxScore))
            details.append(detail)
        if not found:
            raise ValueError(f"Question {question_id} has no grading detail on submission {submission_id}.")

        total = total_of(details)
        updated = result.model_copy(update={
            "details": details, "totalScore": total, "needsReview": False, "reviewReasons": [],
        })
        self.db.update_submission(submission_id, {"score": total, "grading_result": updated.model_dump(mode="json")})
        self._session(assignment_id).note_manual_edit(submission_id)
        return updated

    def update_detail_score(self, assignment_id: str, submission_id: str, question_id: str, score: float) -> GradingResult:
        """Teacher override of one question's score. Clamped to [0, maxScore] when the question has a maximum."""
        submission = self.get_submission(assignment_id, submission_id)
        detail = next((d for d in (submission.grading_result.details if submission.grading_result else []) if d.questionId == question_id), None)
        value = max(0.0, float(score))
        if detail is not None and detail.maxScore > 0:
            value = min(value, detail.maxScore)
        return self._apply_manual_edit(assignment_id, submission_id, question_id, {"score": value})

    def update_detail_comment(self, assignment_id: str, submission_id: str, question_id: str, comment: str) -> GradingResult:
        return self._apply_manual_edit(assignment_id, submission_id, question_id, {"reason": comment, "comment": comment})

    # --- Review Board & Navigation ---

    def get_review_board(self, assignment_id: str) -> ReviewBoardResponse:
        assignment = self._get_assignment(assignment_id)
        students = self._students_by_id(assignment.classroom_id)
        session = self._session(assignment_id)
        entries = [
            review_triage.build_grid_entry(s, students.get(s.student_id), session.flagged_questions(s.id))
            for s in self.list_submissions(assignment_id)
        ]
        ordered = review_triage.order_submissions_for_grid(entries)
        queue = review_triage.review_queue(entries)
        return ReviewBoardResponse(
            entries=ordered,
            reviewQueue=[e.submissionId for e in queue],
            needsReviewCount=len(queue),
        )

    def navigate_review(self, assignment_id: str, direction: str) -> ReviewNavigationResponse:
        """Moves the selection to the next or previous submission in the review queue."""
        queue = self.get_review_board(assignment_id).reviewQueue
        session = self._session(assignment_id)
        current = queue.index(session.current_submission_id) if session.current_submission_id in queue else None
        if direction == "next":
            position = review_triage.next_review_index(len(queue), current)
        elif direction == "previous":
            position = review_triage.previous_review_index(len(queue), current)
        else:
            raise ValueError(f"Unknown navigation direction '{direction}'.")

        if position is None:
            return ReviewNavigationResponse(total=0)
        session.select(queue[position])
        return ReviewNavigationResponse(submissionId=queue[position], position=position, total=len(queue))

    def open_submission(self, assignment_id: str, submission_id: str) -> Dict:
        """Opens a submission; a flagged one gets its needs-review flag auto-cleared after the dwell time."""
        submission = self.get_submission(assignment_id, submission_id)
        needs_review = bool(submission.grading_result and submission.grading_result.needsReview)
        factory = self.session_factory
        scheduled = self._session(assignment_id).open(
            submission_id,
            needs_review,
            lambda sid: clear_review_flag_in_new_session(sid, factory),
        )
        return {"submissionId": submission_id, "autoClearScheduled": scheduled}

    def close_submission(self, assignment_id: str, submission_id: str) -> Dict:
        self._session(assignment_id).close(submission_id)
        return {"submissionId": submission_id, "closed": True}


# --- DEPENDENCY PROVIDERS ---

def get_review_sessions(request: Request) -> ReviewSessionRegistry:
    """The registry created in the application lifespan."""
    return request.app.state.review_sessions


def get_grading_service(
    db: DatabaseService = Depends(get_db_service),
    client: GradingClient = Depends(get_grading_client),
    remote_store: RemoteImageStore = Depends(get_remote_image_store),
    sessions: ReviewSessionRegistry = Depends(get_review_sessions),
) -> GradingService:
    """Dependency provider for the GradingService."""
    return GradingService(db=db, client=client, remote_store=remote_store, sessions=sessions)
