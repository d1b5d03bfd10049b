from __future__ import annotations

from fastapi import Request

from agents.explainer import ExplainerAgent
from agents.followup import FollowupAgent
from agents.validator import ValidatorAgent
from config import Settings
from services.elevenlabs_service import ElevenLabsService
from services.session_manager import SessionManager
from services.sse_manager import SSEManager


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_validator_agent(request: Request) -> ValidatorAgent:
    return request.app.state.validator_agent


def get_followup_agent(request: Request) -> FollowupAgent:
    return request.app.state.followup_agent


def get_explainer_agent(request: Request) -> ExplainerAgent:
    return request.app.state.explainer_agent


def get_elevenlabs_service(request: Request) -> ElevenLabsService:
    return request.app.state.elevenlabs_service


def get_session_manager(request: Request) -> SessionManager:
    return request.app.state.session_manager


def get_sse_manager(request: Request) -> SSEManager:
    return request.app.state.sse_manager
