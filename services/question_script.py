from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping, Sequence

from pydantic import ValidationError

from models.question import END, QuestionDef, ScriptIntegrityError, check_script_integrity


logger = logging.getLogger(__name__)


def find_next_question_index(
    questions: Sequence[QuestionDef],
    from_index: int,
    answers: Mapping[str, Any],
) -> int | None:
    """First index at or after ``from_index`` whose ``requires`` predicates all hold."""
    index = max(0, from_index)
    while index < len(questions):
        if questions[index].requirements_met(answers):
            return index
        index += 1
    return None


def resolve_skip(
    questions: Sequence[QuestionDef],
    target_id: str,
    from_index: int,
    answers: Mapping[str, Any],
) -> int | None:
    if target_id == END:
        return None
    for index, question in enumerate(questions):
        if question.id == target_id:
            return find_next_question_index(questions, index, answers)
    # unreachable for scripts that passed the integrity check
    raise ScriptIntegrityError(f"Skip target '{target_id}' is not part of the script")


def upcoming_prompts(
    questions: Sequence[QuestionDef],
    from_index: int | None,
    answers: Mapping[str, Any],
    limit: int,
) -> list[str]:
    prompts: list[str] = []
    if from_index is None:
        return prompts
    index = find_next_question_index(questions, from_index, answers)
    while index is not None and len(prompts) < limit:
        prompts.append(questions[index].prompt)
        index = find_next_question_index(questions, index + 1, answers)
    return prompts


class QuestionScript:
    def __init__(self, questions: Sequence[QuestionDef]):
        self.questions: tuple[QuestionDef, ...] = tuple(questions)
        check_script_integrity(self.questions)
        self._index_by_id = {question.id: idx for idx, question in enumerate(self.questions)}

    def __len__(self) -> int:
        return len(self.questions)

    def __getitem__(self, index: int) -> QuestionDef:
        return self.questions[index]

    def index_of(self, question_id: str) -> int:
        return self._index_by_id[question_id]

    def find_next(self, from_index: int, answers: Mapping[str, Any]) -> int | None:
        return find_next_question_index(self.questions, from_index, answers)

    def resolve_skip(self, target_id: str, from_index: int, answers: Mapping[str, Any]) -> int | None:
        return resolve_skip(self.questions, target_id, from_index, answers)

    def upcoming(self, from_index: int | None, answers: Mapping[str, Any], limit: int) -> list[str]:
        return upcoming_prompts(self.questions, from_index, answers, limit)

    @classmethod
    def from_payload(cls, payload: Any) -> QuestionScript:
        items = payload.get("questions") if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            raise ScriptIntegrityError("Question script must be a list of questions")

        questions: list[QuestionDef] = []
        for position, item in enumerate(items):
            if not isinstance(item, dict):
                raise ScriptIntegrityError(f"Question #{position} is not an object")
            try:
                questions.append(QuestionDef.model_validate(item))
            except ValidationError as err:
                raise ScriptIntegrityError(
                    f"Question #{position} ({item.get('id', '?')}) is malformed: {err}"
                ) from err
        return cls(questions)


def load_script(path: Path) -> QuestionScript:
    if not path.exists():
        raise ScriptIntegrityError(f"Question script not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as f:
            payload = json.load(f)
    except json.JSONDecodeError as err:
        raise ScriptIntegrityError(f"Question script {path} is not valid JSON") from err

    script = QuestionScript.from_payload(payload)
    logger.info("Loaded question script %s with %d questions", path, len(script))
    return script
