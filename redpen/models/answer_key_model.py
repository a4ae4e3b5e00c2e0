# /redpen/models/answer_key_model.py

"""
Pydantic models for the answer key of an assignment.

A question's category decides which payload fields exist, so questions are a
discriminated union on `category`:

* 1 - Exact-Match: a single expected answer (optionally a "matching" format).
* 2 - Multi-Acceptable: a reference answer plus acceptable textual variants.
* 3 - Rubric-Scored: a reference answer plus EITHER a 4-level rubric OR a list
  of weighted rubric dimensions, never both.

`AnswerKey.totalScore` is a computed field. It is always the sum of the
questions' `maxScore` and is never stored on its own.
"""

from enum import Enum, IntEnum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator


# --- Core Enumerations ---
class QuestionCategory(IntEnum):
    EXACT_MATCH = 1
    MULTI_ACCEPTABLE = 2
    RUBRIC_SCORED = 3


class RubricLevelLabel(str, Enum):
    EXCELLENT = "Excellent"
    GOOD = "Good"
    FAIR = "Fair"
    NEEDS_WORK = "NeedsWork"


RUBRIC_LEVEL_ORDER = [
    RubricLevelLabel.EXCELLENT,
    RubricLevelLabel.GOOD,
    RubricLevelLabel.FAIR,
    RubricLevelLabel.NEEDS_WORK,
]


# --- Rubric Building Blocks ---
class RubricLevel(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    label: RubricLevelLabel
    min: float
    max: float
    criteria: str = ""


class Rubric(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    levels: List[RubricLevel]


class RubricDimension(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    name: str
    maxScore: float = Field(default=0, ge=0)
    criteria: str = ""


# --- Question Variants ---
class _QuestionBase(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    maxScore: float = Field(default=0, ge=0)
    needsReanalysis: bool = False


class ExactMatchQuestion(_QuestionBase):
    category: Literal[1] = 1
    answer: str = ""
    answerFormat: Optional[Literal["matching"]] = None


class MultiAcceptableQuestion(_QuestionBase):
    category: Literal[2] = 2
    referenceAnswer: str = ""
    acceptableAnswers: List[str] = Field(default_factory=list)


class RubricScoredQuestion(_QuestionBase):
    category: Literal[3] = 3
    referenceAnswer: str = ""
    rubric: Optional[Rubric] = None
    rubricsDimensions: Optional[List[RubricDimension]] = None

    @model_validator(mode="after")
    def exactly_one_scoring_scheme(self):
        if (self.rubric is None) == (self.rubricsDimensions is None):
            raise ValueError("A rubric-scored question needs exactly one of 'rubric' or 'rubricsDimensions'.")
        return self


Question = Annotated[
    Union[ExactMatchQuestion, MultiAcceptableQuestion, RubricScoredQuestion],
    Field(discriminator="category"),
]


class AnswerKey(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    questions: List[Question] = Field(default_factory=list)

    @computed_field
    @property
    def totalScore(self) -> float:
        return sum(q.maxScore for q in self.questions)

    def question_ids(self) -> List[str]:
        return [q.id for q in self.questions]

    def get_question(self, question_id: str) -> Optional[Question]:
        return next((q for q in self.questions if q.id == question_id), None)


# --- API Contract Models ---
class AnswerKeyMergeResponse(BaseModel):
    answerKey: AnswerKey
    notice: Optional[str] = None


class CategoryChangeRequest(BaseModel):
    category: QuestionCategory


class MaxScoreChangeRequest(BaseModel):
    maxScore: float = Field(..., ge=0)
