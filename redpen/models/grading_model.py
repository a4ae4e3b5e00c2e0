# /redpen/models/grading_model.py

import datetime
import math
from enum import Enum
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# The fixed studentAnswer marker meaning "the AI could not read this answer".
UNREADABLE_ANSWER = "AI_UNREADABLE"


# --- Core Enumerations ---
class SubmissionStatus(str, Enum):
    MISSING = "missing"
    SCANNED = "scanned"
    SYNCED = "synced"
    GRADED = "graded"


class ReviewReason(str, Enum):
    LOW_CONFIDENCE = "low confidence"
    QUESTION_UNREADABLE = "question unreadable"
    ANSWER_INCONSISTENT = "answer possibly inconsistent"


# --- Grading Result Models (stored as JSON on the submission) ---
def _coerce_number(value: Any, default: Optional[float]) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class Mistake(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str = ""
    question: str = ""
    reason: str = ""


class GradingDetail(BaseModel):
    """One question's outcome inside a GradingResult."""
    model_config = ConfigDict(from_attributes=True)
    questionId: str = ""
    studentAnswer: str = ""
    score: float = 0
    maxScore: float = 0
    isCorrect: Optional[bool] = None
    reason: str = ""
    comment: str = ""
    confidence: Optional[float] = None

    @field_validator("questionId", "studentAnswer", "reason", "comment", mode="before")
    @classmethod
    def _text_or_empty(cls, v):
        return "" if v is None else str(v)

    @field_validator("score", "maxScore", mode="before")
    @classmethod
    def _number_or_zero(cls, v):
        return _coerce_number(v, 0.0)

    @field_validator("confidence", mode="before")
    @classmethod
    def _optional_confidence(cls, v):
        value = _coerce_number(v, None)
        if value is None or not math.isfinite(value):
            return None
        return value

    @model_validator(mode="after")
    def _derive_missing_fields(self):
        # Derived values bypass __setattr__ so they stay out of model_fields_set;
        # the re-grade merge relies on that set to know what the AI actually sent.
        if self.isCorrect is None:
            object.__setattr__(self, "isCorrect", derive_is_correct(self.score, self.maxScore))
        if not self.reason and self.comment:
            object.__setattr__(self, "reason", self.comment)
        elif not self.comment and self.reason:
            object.__setattr__(self, "comment", self.reason)
        return self


def derive_is_correct(score: float, max_score: float) -> bool:
    """A detail is correct when it earns full marks on a question worth something."""
    if not (math.isfinite(score) and math.isfinite(max_score)):
        return False
    return max_score > 0 and score >= max_score


class GradingResult(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    totalScore: float = 0
    details: List[GradingDetail] = Field(default_factory=list)
    mistakes: List[Mistake] = Field(default_factory=list)
    weaknesses: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    feedback: List[str] = Field(default_factory=list)
    needsReview: bool = False
    reviewReasons: List[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _drop_null_lists(cls, data):
        # A null list counts as not sent, so it stays out of model_fields_set.
        if isinstance(data, dict):
            return {
                k: v for k, v in data.items()
                if not (v is None and k in ("mistakes", "weaknesses", "suggestions", "feedback"))
            }
        return data

    @field_validator("totalScore", mode="before")
    @classmethod
    def _total_or_zero(cls, v):
        return _coerce_number(v, 0.0)

    @field_validator("weaknesses", "suggestions", "feedback", "reviewReasons", mode="before")
    @classmethod
    def _string_list(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [v] if v.strip() else []
        return [str(item) for item in v if item is not None]

    @field_validator("mistakes", mode="before")
    @classmethod
    def _mistake_list(cls, v):
        if v is None:
            return []
        return [{"reason": item} if isinstance(item, str) else item for item in v]


# --- Adapter Contract Models ---
class RegradeRequest(BaseModel):
    questionIds: List[str]
    previousDetails: List[GradingDetail] = Field(default_factory=list)
    forceUnrecognizableQuestionIds: List[str] = Field(default_factory=list)
    mode: Optional[Literal["correction", "missing"]] = None


class GradeOptions(BaseModel):
    strict: bool = True
    domain: Optional[str] = None
    skipMissingRetry: bool = False
    regrade: Optional[RegradeRequest] = None


# --- Persistent Record Views ---
class SubmissionRecord(BaseModel):
    """A submission as the orchestrator sees it, read straight off the ORM row."""
    model_config = ConfigDict(from_attributes=True)
    id: str
    assignment_id: str
    student_id: str
    status: SubmissionStatus = SubmissionStatus.MISSING
    image_blob: Optional[bytes] = None
    image_base64: Optional[str] = None
    score: Optional[float] = None
    feedback: Optional[str] = None
    grading_result: Optional[GradingResult] = None
    graded_at: Optional[datetime.datetime] = None
    created_at: Optional[datetime.datetime] = None


class StudentRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    classroom_id: str
    seat_number: int
    name: str


# --- Review Triage Models ---
class ReviewVerdict(BaseModel):
    needsReview: bool
    reasons: List[str] = Field(default_factory=list)


class ConfidenceInfo(BaseModel):
    value: int
    questionId: Optional[str] = None
    kind: Literal["minimum", "average"] = "minimum"


class ReviewGridEntry(BaseModel):
    submissionId: str
    studentId: str
    seatNumber: int
    studentName: str = ""
    status: SubmissionStatus
    score: Optional[float] = None
    needsReview: bool = False
    reviewReasons: List[str] = Field(default_factory=list)
    confidence: Optional[ConfidenceInfo] = None
    flaggedQuestionIds: List[str] = Field(default_factory=list)


class ReviewBoardResponse(BaseModel):
    entries: List[ReviewGridEntry]
    reviewQueue: List[str]
    needsReviewCount: int


class ReviewNavigationResponse(BaseModel):
    submissionId: Optional[str] = None
    position: Optional[int] = None
    total: int


# --- Batch Grading Models ---
class ItemFailure(BaseModel):
    submissionId: str
    studentId: str
    stage: Literal["prepare", "grade"]
    message: str


class BatchGradeReport(BaseModel):
    candidateCount: int
    preparedCount: int = 0
    successCount: int = 0
    stopped: bool = False
    aborted: bool = False
    isRegrade: bool = False
    preparationFailures: List[ItemFailure] = Field(default_factory=list)
    gradingFailures: List[ItemFailure] = Field(default_factory=list)


# --- API Request Models ---
class GradeAllRequest(BaseModel):
    confirmOverwrite: bool = False
    continueOnPreparationFailure: bool = True


class RegradeFlaggedRequest(BaseModel):
    questionIds: Optional[List[str]] = None


class DetailScoreUpdate(BaseModel):
    score: float


class DetailCommentUpdate(BaseModel):
    comment: str


class FlagToggleResponse(BaseModel):
    submissionId: str
    questionId: str
    flagged: bool
    forcedUnreadable: bool
    flaggedQuestionIds: List[str]
