# /redpen/services/review_session.py

"""
In-memory review state for the teacher's grading session.

This is the state that belongs to the person reviewing rather than to the
stored submissions: which answers they flagged as misread, how many times
each question has already been re-graded, which submission is open, and the
pending auto-clear of an opened submission's review flag. It also holds the
stop token of a batch that is running for the assignment.

State is held per assignment in a `ReviewSessionRegistry` created at
application start-up and handed to the services that need it.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from .grading_helpers.batch_grading import CancellationToken

logger = logging.getLogger(__name__)

ClearCallback = Callable[[str], Union[None, Awaitable[None]]]


@dataclass
class FlagChange:
    submission_id: str
    question_id: str
    flagged: bool
    forced_unreadable: bool = False


class ReviewAutoClearTimer:
    """
    Clears a submission's needs-review flag after it has been open for a
    dwell time. Only one submission can be pending at a time: opening another
    one, or reopening the same one, starts the countdown over.
    """

    def __init__(self, dwell_seconds: float = 5.0):
        self.dwell_seconds = dwell_seconds
        self._task: Optional[asyncio.Task] = None
        self._submission_id: Optional[str] = None

    @property
    def pending_submission_id(self) -> Optional[str]:
        if self._task is None or self._task.done():
            return None
        return self._submission_id

    def start(self, submission_id: str, on_clear: ClearCallback) -> None:
        self.cancel()
        self._submission_id = submission_id
        self._task = asyncio.get_running_loop().create_task(self._run(submission_id, on_clear))

    def cancel(self, submission_id: Optional[str] = None) -> bool:
        """Cancels the pending clear. With an id, only if that submission is the pending one."""
        if self._task is None or self._task.done():
            return False
        if submission_id is not None and submission_id != self._submission_id:
            return False
        self._task.cancel()
        self._task = None
        self._submission_id = None
        return True

    async def _run(self, submission_id: str, on_clear: ClearCallback) -> None:
        await asyncio.sleep(self.dwell_seconds)
        outcome = on_clear(submission_id)
        if inspect.isawaitable(outcome):
            await outcome
        logger.info("Auto-cleared review flag of submission %s after %.1fs.", submission_id, self.dwell_seconds)


@dataclass
class ReviewSession:
    """Review state for a single assignment."""
    assignment_id: str
    dwell_seconds: float = 5.0
    flags: Dict[str, Set[str]] = field(default_factory=dict)
    attempts: Dict[Tuple[str, str], int] = field(default_factory=dict)
    current_submission_id: Optional[str] = None
    timer: Optional[ReviewAutoClearTimer] = None
    batch_token: Optional[CancellationToken] = None

    def __post_init__(self):
        if self.timer is None:
            self.timer = ReviewAutoClearTimer(self.dwell_seconds)

    # --- Answer-Extraction Flags ---

    def flagged_questions(self, submission_id: str) -> List[str]:
        return sorted(self.flags.get(submission_id, set()))

    def has_flags(self, submission_id: str) -> bool:
        return bool(self.flags.get(submission_id))

    def attempt_count(self, submission_id: str, question_id: str) -> int:
        return self.attempts.get((submission_id, question_id), 0)

    def flag(self, submission_id: str, question_id: str) -> FlagChange:
        """
        Marks an answer as possibly misread. Flagging a question again after
        it has already been re-graded means the model keeps getting it wrong,
        so its answer is forced to unreadable.
        """
        current = self.flags.setdefault(submission_id, set())
        if question_id in current:
            return FlagChange(submission_id, question_id, flagged=True)
        forced = self.attempt_count(submission_id, question_id) > 0
        current.add(question_id)
        return FlagChange(submission_id, question_id, flagged=True, forced_unreadable=forced)

    def unflag(self, submission_id: str, question_id: str) -> FlagChange:
        current = self.flags.get(submission_id)
        if current is not None:
            current.discard(question_id)
            if not current:
                del self.flags[submission_id]
        return FlagChange(submission_id, question_id, flagged=False)

    def toggle(self, submission_id: str, question_id: str) -> FlagChange:
        if question_id in self.flags.get(submission_id, set()):
            return self.unflag(submission_id, question_id)
        return self.flag(submission_id, question_id)

    def complete_regrade(self, submission_id: str, question_ids: Iterable[str]) -> None:
        """Records a finished re-grade: the submission's flags go, the attempt counters go up."""
        self.flags.pop(submission_id, None)
        for question_id in question_ids:
            key = (submission_id, question_id)
            self.attempts[key] = self.attempts.get(key, 0) + 1

    # --- Open Submission & Auto-Clear ---

    def open(self, submission_id: str, needs_review: bool, on_clear: ClearCallback) -> bool:
        """
        Makes `submission_id` the open submission. Returns True when an
        auto-clear countdown was started for it.
        """
        if self.current_submission_id != submission_id:
            self.timer.cancel()
        self.current_submission_id = submission_id
        if not needs_review:
            self.timer.cancel()
            return False
        self.timer.start(submission_id, on_clear)
        return True

    def close(self, submission_id: Optional[str] = None) -> None:
        if submission_id is None or submission_id == self.current_submission_id:
            self.current_submission_id = None
        self.timer.cancel(submission_id)

    def select(self, submission_id: Optional[str]) -> None:
        """Moves the selection without opening; leaving a submission cancels its countdown."""
        if submission_id != self.current_submission_id:
            self.timer.cancel()
        self.current_submission_id = submission_id

    def note_manual_edit(self, submission_id: str) -> None:
        self.timer.cancel(submission_id)

    # --- Running Batch ---

    def begin_batch(self) -> CancellationToken:
        """Hands out a fresh stop token for a batch that is about to start."""
        self.batch_token = CancellationToken()
        return self.batch_token

    def end_batch(self, token: CancellationToken) -> None:
        if self.batch_token is token:
            self.batch_token = None

    def request_stop(self) -> bool:
        """Asks the running batch to stop before its next item. False when nothing is running."""
        if self.batch_token is None or self.batch_token.is_cancelled:
            return False
        self.batch_token.cancel()
        return True


class ReviewSessionRegistry:
    """Owns one `ReviewSession` per assignment for the lifetime of the app."""

    def __init__(self, dwell_seconds: float = 5.0):
        self.dwell_seconds = dwell_seconds
        self._sessions: Dict[str, ReviewSession] = {}

    def get(self, assignment_id: str) -> ReviewSession:
        session = self._sessions.get(assignment_id)
        if session is None:
            session = ReviewSession(assignment_id=assignment_id, dwell_seconds=self.dwell_seconds)
            self._sessions[assignment_id] = session
        return session

    def shutdown(self) -> None:
        for session in self._sessions.values():
            session.timer.cancel()
            session.request_stop()
        self._sessions.clear()
