from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict

from api.deps import get_elevenlabs_service, get_settings
from config import Settings
from services.elevenlabs_service import ElevenLabsService, TTSUnavailableError


logger = logging.getLogger(__name__)

router = APIRouter(tags=["speech"])


class TTSRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    text: str | None = None
    language: str | None = None


@router.post("/tts")
async def text_to_speech(
    body: TTSRequest,
    settings: Settings = Depends(get_settings),
    tts: ElevenLabsService = Depends(get_elevenlabs_service),
) -> StreamingResponse:
    if not body.text:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Text is required")
    if not tts.configured:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="ElevenLabs API key not configured",
        )

    try:
        audio = await tts.stream_speech(body.text, body.language or settings.default_language)
    except TTSUnavailableError as err:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(err)) from err
    except RuntimeError as err:
        logger.error("TTS request failed: %s", err)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="TTS API error") from err

    return StreamingResponse(audio, media_type="audio/mpeg")
