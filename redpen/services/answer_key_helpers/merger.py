# /redpen/services/answer_key_helpers/merger.py

import functools
import re
from typing import Any, List, Optional, Sequence, Tuple

from redpen.models.answer_key_model import AnswerKey
from .normalizer import normalize_answer_key

_DIGITS = re.compile(r"(\d+)")


# --- Hierarchical Question-Id Ordering ---

def _natural_key(segment: str) -> List:
    """Digit-aware, case-insensitive collation key for a non-numeric segment."""
    return [(0, int(part), "") if part.isdigit() else (1, 0, part.lower()) for part in _DIGITS.split(segment) if part]


def _compare_segments(a: str, b: str) -> int:
    a_numeric, b_numeric = a.isdigit(), b.isdigit()
    if a_numeric and b_numeric:
        if int(a) != int(b):
            return -1 if int(a) < int(b) else 1
        if len(a) != len(b):
            return -1 if len(a) < len(b) else 1
        return 0
    if a_numeric != b_numeric:
        return -1 if a_numeric else 1
    a_key, b_key = _natural_key(a), _natural_key(b)
    if a_key != b_key:
        return -1 if a_key < b_key else 1
    return 0


def compare_question_ids(a: str, b: str) -> int:
    """
    Three-way comparison of hierarchical ids such as "2-1-a".
    Numeric segments compare by value (shorter text first on equal value) and
    sort before non-numeric ones; a path that prefixes another sorts first.
    """
    a_parts, b_parts = str(a).split("-"), str(b).split("-")
    for a_seg, b_seg in zip(a_parts, b_parts):
        result = _compare_segments(a_seg, b_seg)
        if result:
            return result
    if len(a_parts) != len(b_parts):
        return -1 if len(a_parts) < len(b_parts) else 1
    return 0


def sort_questions_by_id(questions: Sequence[Any]) -> List[Any]:
    """Stable sort of questions (models or dicts) by hierarchical id."""
    def _id_of(question):
        return question.get("id", "") if isinstance(question, dict) else question.id

    return sorted(questions, key=functools.cmp_to_key(lambda x, y: compare_question_ids(_id_of(x), _id_of(y))))


# --- Merging ---

def _unique_id(base_id: str, used: set) -> str:
    suffix = 2
    while f"{base_id}-{suffix}" in used:
        suffix += 1
    return f"{base_id}-{suffix}"


def merge_answer_keys(current: Optional[Any], incoming: Any) -> Tuple[AnswerKey, Optional[str]]:
    """
    Appends the incoming key's questions after the current ones.

    Nothing is overwritten or dropped: a question whose id is
    already taken is renamed with the first free `-2`, `-3`, ... suffix.
    The returned notice is set only when at least one rename happened.
    """
    base = normalize_answer_key(current)
    extra = normalize_answer_key(incoming)

    used = set()
    merged = []
    renamed = []
    for question in [*base.questions, *extra.questions]:
        if question.id in used:
            new_id = _unique_id(question.id, used)
            renamed.append((question.id, new_id))
            question = question.model_copy(update={"id": new_id})
        used.add(question.id)
        merged.append(question)

    notice = None
    if renamed:
        pairs = ", ".join(f"{old} -> {new}" for old, new in renamed)
        notice = f"{len(renamed)} duplicate question id(s) were renamed during merge: {pairs}."
    return AnswerKey(questions=merged), notice
