from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, ConfigDict

from api.deps import get_session_manager, get_settings
from config import Settings
from models.session import FlowState, FlowStep
from services.flow_controller import FlowTransitionError
from services.session_manager import SessionGoneError, SessionManager, SessionNotFoundError


router = APIRouter(prefix="/sessions", tags=["sessions"])


class StartSessionRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    language: str | None = None


class TranscriptRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    transcript: str | None = None


def _state_payload(state: FlowState) -> dict[str, Any]:
    return {
        "sessionId": state.session_id,
        "phase": state.phase,
        "currentIndex": state.current_index,
        "retryCount": state.retry_count,
        "followupCount": state.followup_count,
        "followupsEnabled": state.followups_enabled,
        "answers": {
            question_id: record.model_dump(mode="json") for question_id, record in state.answers.items()
        },
        "transcript": [entry.model_dump(mode="json") for entry in state.transcript],
    }


def _step_payload(step: FlowStep) -> dict[str, Any]:
    return {
        "sessionId": step.state.session_id,
        "utterances": step.utterances,
        "questionId": step.question_id,
        "isFollowup": step.is_followup,
        "awaitingInput": step.awaiting_input,
        "done": step.done,
        "phase": step.state.phase,
        "answers": {
            question_id: record.normalized for question_id, record in step.state.answers.items()
        },
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def start_session(
    body: StartSessionRequest | None = None,
    settings: Settings = Depends(get_settings),
    sessions: SessionManager = Depends(get_session_manager),
) -> dict[str, Any]:
    language = (body.language if body else None) or settings.default_language
    step = await sessions.start(language=language)
    return _step_payload(step)


@router.get("/{session_id}")
def get_session(
    session_id: str,
    sessions: SessionManager = Depends(get_session_manager),
) -> dict[str, Any]:
    try:
        state = sessions.get(session_id)
    except SessionNotFoundError as err:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found") from err
    return _state_payload(state)


@router.post("/{session_id}/transcript")
async def submit_transcript(
    session_id: str,
    body: TranscriptRequest,
    sessions: SessionManager = Depends(get_session_manager),
) -> dict[str, Any]:
    try:
        step = await sessions.submit_transcript(session_id, body.transcript)
    except SessionNotFoundError as err:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found") from err
    except SessionGoneError as err:
        raise HTTPException(status_code=status.HTTP_410_GONE, detail="Session was abandoned") from err
    except FlowTransitionError as err:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(err)) from err
    return _step_payload(step)


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def abandon_session(
    session_id: str,
    sessions: SessionManager = Depends(get_session_manager),
) -> Response:
    if not await sessions.abandon(session_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
