from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field


T = TypeVar("T")


class ValidationResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    valid: bool
    normalized: str | None = None
    explanation: str | None = None
    repeat: bool = False

    @classmethod
    def invalid(cls, explanation: str | None = None) -> ValidationResult:
        return cls(valid=False, normalized=None, explanation=explanation)

    @classmethod
    def accepted(cls, normalized: str) -> ValidationResult:
        return cls(valid=True, normalized=normalized)

    @classmethod
    def repeat_request(cls) -> ValidationResult:
        return cls(valid=False, normalized=None, explanation=None, repeat=True)


class FollowupResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    ask: str | None = None
    done: bool = False

    @classmethod
    def finished(cls) -> FollowupResult:
        return cls(ask=None, done=True)

    def as_payload(self) -> dict[str, object]:
        if self.done or not self.ask:
            return {"done": True}
        return {"ask": self.ask}


class OverlapResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    allow: bool


class WhyResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    explanation: str


class FollowupContext(BaseModel):
    """Everything the follow-up generator may see about the conversation."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    context: str | None = None
    section: str
    question_text: str = Field(alias="questionText")
    last_answer: str = Field(alias="lastAnswer")
    prior_answers: list[str] = Field(default_factory=list, alias="priorAnswers")
    topic: str | None = None
    guidance: str | None = None
    previous_followups: list[str] = Field(default_factory=list, alias="previousFollowups")
    upcoming_questions: list[str] = Field(default_factory=list, alias="upcomingQuestions")
    section_answers: dict[str, str] = Field(default_factory=dict, alias="sectionAnswers")
    recent_qa_pairs: list[dict[str, str]] = Field(default_factory=list, alias="recentQAPairs")
    primary_context: dict[str, str] | None = Field(default=None, alias="primaryContext")


@dataclass(frozen=True)
class Decoded(Generic[T]):
    """Outcome of decoding a backend response: the parsed value, or the contract default."""

    value: T
    ok: bool

    @classmethod
    def success(cls, value: T) -> Decoded[T]:
        return cls(value=value, ok=True)

    @classmethod
    def default(cls, value: T) -> Decoded[T]:
        return cls(value=value, ok=False)
