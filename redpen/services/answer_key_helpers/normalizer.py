# /redpen/services/answer_key_helpers/normalizer.py

"""
Turns whatever answer-key structure we are handed (hand-edited JSON, legacy
records, raw AI extraction output) into a clean `AnswerKey`.

The normalizer never raises on malformed input. Anything it cannot make sense
of is coerced to a safe default, and running it on its own output changes
nothing.
"""

import math
import re
from typing import Any, Dict, List, Optional, Tuple

from redpen.models.answer_key_model import (
    AnswerKey,
    ExactMatchQuestion,
    MultiAcceptableQuestion,
    QuestionCategory,
    Rubric,
    RubricDimension,
    RubricLevel,
    RubricLevelLabel,
    RubricScoredQuestion,
    RUBRIC_LEVEL_ORDER,
)

_LEADING_Q = re.compile(r"^[qQ](?=\d)")

_LEGACY_TYPE_TO_CATEGORY = {
    "truefalse": QuestionCategory.EXACT_MATCH,
    "choice": QuestionCategory.EXACT_MATCH,
    "fill": QuestionCategory.MULTI_ACCEPTABLE,
    "short": QuestionCategory.MULTI_ACCEPTABLE,
    "short_sentence": QuestionCategory.MULTI_ACCEPTABLE,
}


# --- Scalar Coercion ---

def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _finite_number(value: Any, default: Optional[float] = 0.0) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def _text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _as_dict(value: Any) -> Dict:
    if isinstance(value, dict):
        return value
    if hasattr(value, "model_dump"):
        return value.model_dump()
    return {}


def sanitize_question_id(raw_id: Any, index: int) -> str:
    """Trims the id, defaults empty ids to their 1-based position and drops a leading 'q' before a digit."""
    text = _text(raw_id).strip() or str(index + 1)
    return _LEADING_Q.sub("", text)


def resolve_category(raw_question: Dict) -> QuestionCategory:
    """
    Resolves a question's category from either the numeric `category` tag or
    the legacy string `type` tag. Unrecognized tags fall back to rubric-scored.
    """
    for key in ("category", "type"):
        tag = raw_question.get(key)
        if tag is None or isinstance(tag, bool):
            continue
        if isinstance(tag, (int, float)) and tag in (1, 2, 3):
            return QuestionCategory(int(tag))
        text = str(tag).strip().lower()
        if text in ("1", "2", "3"):
            return QuestionCategory(int(text))
        if text in _LEGACY_TYPE_TO_CATEGORY:
            return _LEGACY_TYPE_TO_CATEGORY[text]
        if text:
            return QuestionCategory.RUBRIC_SCORED
    return QuestionCategory.RUBRIC_SCORED


# --- Rubric Construction ---

def build_rubric_ranges(max_score: Any) -> Dict[RubricLevelLabel, Tuple[int, int]]:
    """
    Computes the default 4-level score bands for a rubric-scored question.
    The bands partition [1, safeMax] with floors at 90%, 70% and 50% of
    safeMax, each rounded up.
    """
    safe_max = max(1, _round_half_up(_finite_number(max_score) or 0.0))
    excellent = max(1, -(-safe_max * 9 // 10))
    good = max(1, -(-safe_max * 7 // 10))
    fair = max(1, -(-safe_max * 5 // 10))
    return {
        RubricLevelLabel.EXCELLENT: (excellent, safe_max),
        RubricLevelLabel.GOOD: (good, max(good, excellent - 1)),
        RubricLevelLabel.FAIR: (fair, max(fair, good - 1)),
        RubricLevelLabel.NEEDS_WORK: (1, max(1, fair - 1)),
    }


def _level_label(raw_label: Any) -> Optional[RubricLevelLabel]:
    text = _text(raw_label).strip().replace(" ", "").lower()
    for label in RUBRIC_LEVEL_ORDER:
        if label.value.lower() == text:
            return label
    return None


def normalize_rubric(raw_rubric: Any, max_score: Any) -> Rubric:
    """
    Builds a complete 4-level rubric. Levels already present (matched by label)
    keep their own min, max and criteria; missing levels get the computed band.
    """
    ranges = build_rubric_ranges(max_score)
    existing: Dict[RubricLevelLabel, Dict] = {}
    for raw_level in _as_dict(raw_rubric).get("levels") or []:
        raw_level = _as_dict(raw_level)
        label = _level_label(raw_level.get("label"))
        if label is not None and label not in existing:
            existing[label] = raw_level

    levels = []
    for label in RUBRIC_LEVEL_ORDER:
        default_min, default_max = ranges[label]
        raw_level = existing.get(label, {})
        levels.append(RubricLevel(
            label=label,
            min=_finite_number(raw_level.get("min"), default_min),
            max=_finite_number(raw_level.get("max"), default_max),
            criteria=_text(raw_level.get("criteria")),
        ))
    return Rubric(levels=levels)


def _normalize_dimensions(raw_dimensions: Any) -> List[RubricDimension]:
    dimensions = []
    if not isinstance(raw_dimensions, list):
        return dimensions
    for raw_dimension in raw_dimensions:
        raw_dimension = _as_dict(raw_dimension)
        dimensions.append(RubricDimension(
            name=_text(raw_dimension.get("name")).strip(),
            maxScore=max(0.0, _finite_number(raw_dimension.get("maxScore"))),
            criteria=_text(raw_dimension.get("criteria")),
        ))
    return dimensions


def _string_list(value: Any) -> List[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [text for text in (_text(item).strip() for item in value) if text]


# --- Question / Key Normalization ---

def normalize_question(raw_question: Any, index: int):
    """Normalizes one question. Only the resolved category's payload survives."""
    raw = _as_dict(raw_question)
    category = resolve_category(raw)
    base = {
        "id": sanitize_question_id(raw.get("id"), index),
        "maxScore": max(0.0, _finite_number(raw.get("maxScore"))),
        "needsReanalysis": bool(raw.get("needsReanalysis", False)),
    }

    if category == QuestionCategory.EXACT_MATCH:
        answer_format = "matching" if raw.get("answerFormat") == "matching" else None
        return ExactMatchQuestion(**base, answer=_text(raw.get("answer")), answerFormat=answer_format)

    reference = _text(raw.get("referenceAnswer")) or _text(raw.get("answer"))
    if category == QuestionCategory.MULTI_ACCEPTABLE:
        return MultiAcceptableQuestion(
            **base,
            referenceAnswer=reference,
            acceptableAnswers=_string_list(raw.get("acceptableAnswers")),
        )

    dimensions = _normalize_dimensions(raw.get("rubricsDimensions"))
    if dimensions:
        return RubricScoredQuestion(**base, referenceAnswer=reference, rubricsDimensions=dimensions)
    return RubricScoredQuestion(
        **base,
        referenceAnswer=reference,
        rubric=normalize_rubric(raw.get("rubric"), base["maxScore"]),
    )


def normalize_answer_key(raw: Any) -> AnswerKey:
    """
    Produces a valid AnswerKey from any input. Accepts an AnswerKey, a dict
    with a `questions` list, a bare list of questions, or nothing at all.
    """
    if isinstance(raw, list):
        raw_questions = raw
    else:
        raw_questions = _as_dict(raw).get("questions") or []
        if not isinstance(raw_questions, list):
            raw_questions = []
    return AnswerKey(questions=[normalize_question(q, i) for i, q in enumerate(raw_questions)])


# --- Editor Mutations ---

def change_question_category(question: Any, category: Any):
    """
    Switches a question to a new category. All category-specific fields are
    dropped and the question is marked for re-analysis.
    """
    raw = _as_dict(question)
    stripped = {
        "id": raw.get("id"),
        "maxScore": raw.get("maxScore"),
        "needsReanalysis": True,
        "category": int(category),
    }
    return normalize_question(stripped, 0)


def update_question_max_score(question: Any, value: Any):
    """
    Sets a new maxScore. A rubric question with a 4-level rubric gets its
    bands recomputed for the new ceiling, keeping the level criteria.
    """
    raw = dict(_as_dict(question))
    raw["maxScore"] = max(0.0, _finite_number(value))
    rubric = raw.get("rubric")
    if rubric:
        ranges = build_rubric_ranges(raw["maxScore"])
        raw["rubric"] = {"levels": [
            {"label": label, "min": ranges[label][0], "max": ranges[label][1], "criteria": level.get("criteria", "")}
            for label, level in (
                (_level_label(_as_dict(lv).get("label")), _as_dict(lv)) for lv in _as_dict(rubric).get("levels") or []
            )
            if label is not None
        ]}
    return normalize_question(raw, 0)
