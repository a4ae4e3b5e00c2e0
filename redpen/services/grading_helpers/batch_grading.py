# /redpen/services/grading_helpers/batch_grading.py

"""
Building blocks for grading many submissions in one run.

A batch runs in two phases. Preparation makes sure every candidate has its
image bytes in hand (decoding stored base64 or downloading), and grading then
walks the prepared items one at a time. Both phases check the stop predicate
only between items, so an item that has started always finishes and is
committed.
"""

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple

from redpen.models.grading_model import ItemFailure, SubmissionRecord, SubmissionStatus
from .errors import GradingError, GradingServiceUnavailable
from .image_acquisition import ImageRef, acquire_image

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], Any]
StopPredicate = Callable[[], bool]


class CancellationToken:
    """A stop flag the UI sets and the batch polls between items."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def __call__(self) -> bool:
        return self._cancelled


async def call_hook(hook: Optional[Callable], *args) -> Any:
    """Invokes an optional callback, awaiting it when it is a coroutine function."""
    if hook is None:
        return None
    outcome = hook(*args)
    if inspect.isawaitable(outcome):
        outcome = await outcome
    return outcome


def select_grade_all_candidates(submissions: Sequence[SubmissionRecord]) -> Tuple[List[SubmissionRecord], bool]:
    """
    Picks the submissions "grade all" should process. Scanned and synced
    submissions come first; when there are none, every graded submission is
    returned for a full re-grade, flagged by the second tuple element.
    """
    pending = [s for s in submissions if s.status in (SubmissionStatus.SCANNED, SubmissionStatus.SYNCED)]
    if pending:
        return pending, False
    graded = [s for s in submissions if s.status == SubmissionStatus.GRADED]
    return graded, bool(graded)


@dataclass
class PreparedItem:
    submission: SubmissionRecord
    image: ImageRef
    source: str


@dataclass
class PreparationOutcome:
    prepared: List[PreparedItem]
    failures: List[ItemFailure]
    stopped: bool = False


async def prepare_batch(
    submissions: Sequence[SubmissionRecord],
    remote_store=None,
    should_stop: Optional[StopPredicate] = None,
    on_download_progress: Optional[ProgressCallback] = None,
) -> PreparationOutcome:
    """
    Resolves the image of every candidate, in order. A failed item is recorded
    and skipped; only `GradingServiceUnavailable` would abort, and image
    acquisition never raises it.
    """
    outcome = PreparationOutcome(prepared=[], failures=[])
    total = len(submissions)
    for index, submission in enumerate(submissions):
        if should_stop is not None and should_stop():
            outcome.stopped = True
            break
        await call_hook(on_download_progress, index + 1, total)
        try:
            image, source = await acquire_image(submission, remote_store)
        except GradingServiceUnavailable:
            raise
        except GradingError as e:
            logger.warning("Could not prepare submission %s: %s", submission.id, e)
            outcome.failures.append(ItemFailure(
                submissionId=submission.id, studentId=submission.student_id, stage="prepare", message=str(e),
            ))
            continue
        outcome.prepared.append(PreparedItem(submission=submission, image=image, source=source))
    return outcome
