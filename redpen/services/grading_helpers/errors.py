# /redpen/services/grading_helpers/errors.py

"""
Error taxonomy of the grading engine.

Inside a batch, `ImageUnavailable` and `GradingServiceError` are recorded
against the one submission and the batch moves on. `GradingServiceUnavailable`
means no further call can succeed, so it always propagates.
"""

from typing import Optional


class GradingError(Exception):
    """Base class for every failure raised by the grading engine."""

    def __init__(self, message: str, submission_id: Optional[str] = None):
        super().__init__(message)
        self.submission_id = submission_id


class ImageUnavailable(GradingError):
    """No usable image could be obtained from cache, base64 or remote storage."""


class GradingServiceError(GradingError):
    """The grading service rejected the request or returned malformed output."""


class GradingServiceUnavailable(GradingError):
    """The grading service cannot be used at all (missing credentials, unknown model)."""


class OverwriteConfirmationRequired(GradingError):
    """A "grade all" would re-grade already graded work and the caller has not confirmed it."""

    def __init__(self, message: str, candidate_count: int):
        super().__init__(message)
        self.candidate_count = candidate_count
