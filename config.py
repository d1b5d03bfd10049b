from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv


load_dotenv()

SUPPORTED_PROVIDERS = {"anthropic", "openai"}


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    script_path: Path
    default_language: str
    log_level: str

    elevenlabs_api_key: str
    elevenlabs_voice_id: str
    elevenlabs_model_id: str
    tts_timeout_seconds: float

    anthropic_api_key: str
    anthropic_api_base: str
    anthropic_model: str

    openai_api_key: str
    openai_api_base: str
    openai_model: str

    validation_provider: str

    llm_timeout_seconds: float
    llm_max_retries: int
    llm_retry_backoff_seconds: float
    backend_call_timeout_seconds: float

    retry_limit: int
    followup_max_chars: int
    session_idle_seconds: float

    @property
    def tts_enabled(self) -> bool:
        return bool(self.elevenlabs_api_key)

    @property
    def active_provider(self) -> str | None:
        """Provider used for validation, follow-ups and explanations, or None."""
        if self.validation_provider == "openai" and self.openai_api_key:
            return "openai"
        if self.anthropic_api_key:
            return "anthropic"
        return None

    @property
    def validation_enabled(self) -> bool:
        return bool(self.anthropic_api_key or self.openai_api_key)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    provider = os.getenv("VALIDATION_PROVIDER", "anthropic").strip().lower()
    if provider not in SUPPORTED_PROVIDERS:
        provider = "anthropic"
    return Settings(
        script_path=Path(os.getenv("SCRIPT_PATH", "./data/questionnaire.json")),
        default_language=os.getenv("DEFAULT_LANGUAGE", "en-US"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        elevenlabs_api_key=os.getenv("ELEVENLABS_API_KEY", ""),
        elevenlabs_voice_id=os.getenv("ELEVENLABS_VOICE_ID", "EXAVITQu4vr4xnSDxMaL"),
        elevenlabs_model_id=os.getenv("ELEVENLABS_MODEL_ID", "eleven_turbo_v2_5"),
        tts_timeout_seconds=_env_float("TTS_TIMEOUT_SECONDS", 20.0),
        anthropic_api_key=os.getenv("ANTHROPIC_API_KEY", ""),
        anthropic_api_base=os.getenv("ANTHROPIC_API_BASE", "https://api.anthropic.com/v1"),
        anthropic_model=os.getenv("ANTHROPIC_MODEL", "claude-sonnet-4-20250514"),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_api_base=os.getenv("OPENAI_API_BASE", "https://api.openai.com/v1"),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        validation_provider=provider,
        llm_timeout_seconds=_env_float("LLM_TIMEOUT_SECONDS", 20.0),
        llm_max_retries=max(1, _env_int("LLM_MAX_RETRIES", 1)),
        llm_retry_backoff_seconds=_env_float("LLM_RETRY_BACKOFF_SECONDS", 0.8),
        backend_call_timeout_seconds=_env_float("BACKEND_CALL_TIMEOUT_SECONDS", 25.0),
        retry_limit=max(1, _env_int("RETRY_LIMIT", 3)),
        followup_max_chars=max(1, _env_int("FOLLOWUP_MAX_CHARS", 200)),
        session_idle_seconds=_env_float("SESSION_IDLE_SECONDS", 1800.0),
    )
