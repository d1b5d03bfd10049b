from __future__ import annotations

from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


END = "END"

QuestionType = Literal["yes_no", "date", "number", "open", "choice"]
QUESTION_TYPES = ("yes_no", "date", "number", "open", "choice")


class ScriptIntegrityError(ValueError):
    """The question script is inconsistent and no session may start from it."""


class ExactMatch(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    id: str
    value: str = Field(alias="answer")

    def is_met(self, answers: dict[str, Any]) -> bool:
        answer = _normalized_answer(answers, self.id)
        return answer is not None and answer == self.value


class ContainsMatch(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    id: str
    substring: str = Field(alias="contains")

    def is_met(self, answers: dict[str, Any]) -> bool:
        answer = _normalized_answer(answers, self.id)
        return answer is not None and self.substring.lower() in answer.lower()


Predicate = Union[ExactMatch, ContainsMatch]


def _normalized_answer(answers: dict[str, Any], question_id: str) -> str | None:
    record = answers.get(question_id)
    if record is None:
        return None
    if isinstance(record, str):
        return record
    normalized = getattr(record, "normalized", None)
    if normalized is None and isinstance(record, dict):
        normalized = record.get("normalized")
    return normalized if isinstance(normalized, str) else None


class FollowupConfig(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    max: int = Field(default=1, ge=0)
    when: Literal["after_valid"] = "after_valid"
    topic: str | None = None
    guidance: str | None = None
    retry_limit: int = Field(default=2, ge=1, alias="retryLimit")
    stop_on_no_response: bool = Field(default=True, alias="stopOnNoResponse")


class QuestionDef(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    id: str = Field(min_length=1)
    section: str = ""
    prompt: str = Field(min_length=1)
    type: QuestionType
    choices: tuple[str, ...] = ()
    on_no: str | None = Field(default=None, alias="onNo")
    requires: tuple[Predicate, ...] = ()
    followups: FollowupConfig | None = None

    @field_validator("requires", mode="before")
    @classmethod
    def _normalize_requires(cls, value: Any) -> Any:
        if value is None:
            return ()
        if isinstance(value, (dict, ExactMatch, ContainsMatch)):
            return (value,)
        return value

    @field_validator("choices", mode="before")
    @classmethod
    def _normalize_choices(cls, value: Any) -> Any:
        if value is None:
            return ()
        return value

    def requirements_met(self, answers: dict[str, Any]) -> bool:
        return all(predicate.is_met(answers) for predicate in self.requires)


def check_script_integrity(questions: list[QuestionDef] | tuple[QuestionDef, ...]) -> None:
    if not questions:
        raise ScriptIntegrityError("Question script is empty")

    known_ids: set[str] = set()
    for question in questions:
        if question.id == END:
            raise ScriptIntegrityError(f"'{END}' is reserved and cannot be a question id")
        if question.id in known_ids:
            raise ScriptIntegrityError(f"Duplicate question id '{question.id}'")
        known_ids.add(question.id)

    for question in questions:
        if question.type == "choice" and not question.choices:
            raise ScriptIntegrityError(f"Question '{question.id}' is a choice question without choices")
        if question.type != "choice" and question.choices:
            raise ScriptIntegrityError(f"Question '{question.id}' has choices but type '{question.type}'")
        if question.on_no is not None:
            if question.type != "yes_no":
                raise ScriptIntegrityError(f"Question '{question.id}' uses onNo but is not a yes_no question")
            if question.on_no != END and question.on_no not in known_ids:
                raise ScriptIntegrityError(
                    f"Question '{question.id}' onNo references unknown id '{question.on_no}'"
                )
        for predicate in question.requires:
            if predicate.id not in known_ids:
                raise ScriptIntegrityError(
                    f"Question '{question.id}' requires unknown id '{predicate.id}'"
                )
