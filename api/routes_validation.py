from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from agents.explainer import ExplainerAgent
from agents.followup import FollowupAgent
from agents.validator import ValidatorAgent
from api.deps import (
    get_elevenlabs_service,
    get_explainer_agent,
    get_followup_agent,
    get_settings,
    get_validator_agent,
)
from config import Settings
from models.question import QUESTION_TYPES
from models.results import FollowupContext
from services.elevenlabs_service import ElevenLabsService


router = APIRouter(tags=["validation"])


class ValidateRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    question: str | None = None
    question_type: str | None = Field(default=None, alias="questionType")
    transcript: str | None = None
    choices: list[str] | None = None


class WhyRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    question: str | None = None
    section: str | None = None
    explain_level: int = Field(default=1, alias="explainLevel")
    previous_explanation: str | None = Field(default=None, alias="previousExplanation")


class FollowupRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    context: str | None = None
    section: str | None = None
    question_text: str | None = Field(default=None, alias="questionText")
    last_answer: str | None = Field(default=None, alias="lastAnswer")
    prior_answers: list[Any] = Field(default_factory=list, alias="priorAnswers")
    topic: str | None = None
    guidance: str | None = None
    previous_followups: list[Any] = Field(default_factory=list, alias="previousFollowups")
    upcoming_questions: list[Any] = Field(default_factory=list, alias="upcomingQuestions")
    section_answers: dict[str, Any] = Field(default_factory=dict, alias="sectionAnswers")
    recent_qa_pairs: list[Any] = Field(default_factory=list, alias="recentQAPairs")
    primary_context: dict[str, Any] | None = Field(default=None, alias="primaryContext")


class FollowupCheckRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    candidate_question: str | None = Field(default=None, alias="candidateQuestion")
    upcoming_questions: list[Any] = Field(default_factory=list, alias="upcomingQuestions")


def _strings(values: list[Any]) -> list[str]:
    return [str(v) for v in values if v is not None and str(v).strip()]


def _qa_pairs(values: list[Any]) -> list[dict[str, str]]:
    pairs: list[dict[str, str]] = []
    for item in values:
        if isinstance(item, dict) and item.get("q") is not None and item.get("a") is not None:
            pairs.append({"q": str(item["q"]), "a": str(item["a"])})
    return pairs


@router.get("/config")
def get_config(
    settings: Settings = Depends(get_settings),
    validator: ValidatorAgent = Depends(get_validator_agent),
    followups: FollowupAgent = Depends(get_followup_agent),
    tts: ElevenLabsService = Depends(get_elevenlabs_service),
) -> dict[str, Any]:
    return {
        "ttsEnabled": tts.configured,
        "validationEnabled": validator.is_configured,
        "validationProvider": validator.provider or settings.validation_provider,
        "followupsEnabled": followups.is_configured,
    }


@router.post("/validate")
async def validate_answer(
    body: ValidateRequest,
    validator: ValidatorAgent = Depends(get_validator_agent),
) -> dict[str, Any]:
    if not body.question or not body.question_type or body.transcript is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required fields")

    question_type = body.question_type if body.question_type in QUESTION_TYPES else "open"
    result = await validator.validate(body.question, question_type, body.transcript, body.choices)
    return result.model_dump()


@router.post("/why")
async def explain_question(
    body: WhyRequest,
    explainer: ExplainerAgent = Depends(get_explainer_agent),
) -> dict[str, str]:
    if not body.question or not body.section:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required fields")

    result = await explainer.explain(
        question=body.question,
        section=body.section,
        explain_level=body.explain_level,
        previous_explanation=body.previous_explanation,
    )
    return result.model_dump()


@router.post("/followup")
async def generate_followup(
    body: FollowupRequest,
    followups: FollowupAgent = Depends(get_followup_agent),
) -> dict[str, Any]:
    if not body.section or not body.question_text or body.last_answer is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required fields")

    primary = body.primary_context or None
    context = FollowupContext(
        context=body.context,
        section=body.section,
        question_text=body.question_text,
        last_answer=body.last_answer,
        prior_answers=_strings(body.prior_answers),
        topic=body.topic,
        guidance=body.guidance,
        previous_followups=_strings(body.previous_followups),
        upcoming_questions=_strings(body.upcoming_questions),
        section_answers={str(k): str(v) for k, v in body.section_answers.items() if v is not None},
        recent_qa_pairs=_qa_pairs(body.recent_qa_pairs),
        primary_context={str(k): str(v) for k, v in primary.items() if v is not None} if primary else None,
    )
    result = await followups.generate_followup(context)
    return result.as_payload()


@router.post("/followup-check")
async def check_followup_overlap(
    body: FollowupCheckRequest,
    followups: FollowupAgent = Depends(get_followup_agent),
) -> dict[str, bool]:
    if not body.candidate_question:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required fields")

    result = await followups.check_overlap(body.candidate_question, _strings(body.upcoming_questions))
    return result.model_dump()
