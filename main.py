from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from agents.explainer import ExplainerAgent
from agents.followup import FollowupAgent
from agents.llm_client import build_llm_client
from agents.validator import ValidatorAgent
from api.routes_sessions import router as sessions_router
from api.routes_speech import router as speech_router
from api.routes_stream import router as stream_router
from api.routes_validation import router as validation_router
from config import get_settings
from services.elevenlabs_service import ElevenLabsService
from services.flow_controller import FlowController
from services.question_script import load_script
from services.session_manager import SessionManager
from services.sse_manager import SSEManager


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # a broken script must stop startup
    script = load_script(settings.script_path)

    llm = build_llm_client(settings)
    validator_agent = ValidatorAgent(llm=llm, language=settings.default_language)
    followup_agent = FollowupAgent(
        llm=llm,
        max_chars=settings.followup_max_chars,
        language=settings.default_language,
    )
    explainer_agent = ExplainerAgent(llm=llm, language=settings.default_language)

    elevenlabs_service = ElevenLabsService(
        api_key=settings.elevenlabs_api_key,
        voice_id=settings.elevenlabs_voice_id,
        model_id=settings.elevenlabs_model_id,
        timeout_seconds=settings.tts_timeout_seconds,
    )

    controller = FlowController(
        script=script,
        validator=validator_agent,
        followups=followup_agent,
        retry_limit=settings.retry_limit,
        call_timeout_seconds=settings.backend_call_timeout_seconds,
    )
    sse_manager = SSEManager()
    session_manager = SessionManager(
        controller=controller,
        sse=sse_manager,
        idle_seconds=settings.session_idle_seconds,
    )

    logger.info(
        "ElevenLabs TTS: %s; validation: %s",
        "configured" if elevenlabs_service.configured else "not configured (client-side speech)",
        validator_agent.provider or "rule-based fallback",
    )

    app.state.settings = settings
    app.state.script = script
    app.state.validator_agent = validator_agent
    app.state.followup_agent = followup_agent
    app.state.explainer_agent = explainer_agent
    app.state.elevenlabs_service = elevenlabs_service
    app.state.flow_controller = controller
    app.state.sse_manager = sse_manager
    app.state.session_manager = session_manager

    yield


app = FastAPI(title="Voice Questionnaire API", version="0.1.0", lifespan=lifespan)

app.include_router(validation_router, prefix="/api")
app.include_router(speech_router, prefix="/api")
app.include_router(sessions_router, prefix="/api")
app.include_router(stream_router, prefix="/api")


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}
