from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


FlowPhase = Literal[
    "idle",
    "speaking",
    "listening",
    "validating",
    "followup_check",
    "followup_speaking",
    "followup_listening",
    "followup_validating",
    "advancing",
    "retry",
    "terminal",
]
TranscriptRole = Literal["assistant", "user"]

NO_VALID_RESPONSE = "NO_VALID_RESPONSE"


class AnswerRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    normalized: str
    raw_transcript: str = ""
    section: str = ""


class TranscriptEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: TranscriptRole
    text: str


class QAPair(BaseModel):
    model_config = ConfigDict(extra="ignore")

    q: str
    a: str


class FollowupProgress(BaseModel):
    model_config = ConfigDict(extra="ignore")

    parent_id: str
    resume_index: int | None = None
    candidate: str | None = None
    retry_count: int = 0
    asked: list[str] = Field(default_factory=list)
    last_answer: str = ""


class FlowState(BaseModel):
    model_config = ConfigDict(extra="ignore")

    session_id: str
    current_index: int | None = 0
    retry_count: int = 0
    followup_count: int = 0
    phase: FlowPhase = "idle"
    answers: dict[str, AnswerRecord] = Field(default_factory=dict)
    transcript: list[TranscriptEntry] = Field(default_factory=list)
    followups_enabled: bool = False
    followup: FollowupProgress | None = None
    section_pairs: dict[str, list[QAPair]] = Field(default_factory=dict)
    language: str = "en-US"
    abandoned: bool = False
    version: int = 0
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.phase == "terminal"

    def say(self, text: str) -> None:
        self.transcript.append(TranscriptEntry(role="assistant", text=text))

    def heard(self, text: str) -> None:
        self.transcript.append(TranscriptEntry(role="user", text=text))

    def record_answer(
        self,
        question_id: str,
        normalized: str,
        raw_transcript: str,
        section: str = "",
    ) -> None:
        # a revisit overwrites and becomes the most recent answer
        self.answers.pop(question_id, None)
        self.answers[question_id] = AnswerRecord(
            normalized=normalized,
            raw_transcript=raw_transcript,
            section=section,
        )

    def answer_map(self) -> dict[str, str]:
        return {question_id: record.normalized for question_id, record in self.answers.items()}

    def prior_answers(self, limit: int, exclude: str | None = None) -> list[str]:
        values = [
            record.normalized
            for question_id, record in self.answers.items()
            if question_id != exclude and record.normalized != NO_VALID_RESPONSE
        ]
        return values[-limit:] if limit > 0 else []

    def section_answers(self, section: str) -> dict[str, str]:
        """Normalized answers recorded for one section, oldest first."""
        return {
            question_id: record.normalized
            for question_id, record in self.answers.items()
            if record.section == section
        }


class FlowStep(BaseModel):
    """Result of one transition: the new state and what must be spoken next."""

    model_config = ConfigDict(extra="ignore")

    state: FlowState
    utterances: list[str] = Field(default_factory=list)
    question_id: str | None = None
    is_followup: bool = False

    @property
    def done(self) -> bool:
        return self.state.is_terminal

    @property
    def awaiting_input(self) -> bool:
        return self.state.phase in {"listening", "followup_listening"}
