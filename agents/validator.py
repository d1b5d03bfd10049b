from __future__ import annotations

import json
import logging
from typing import Sequence

from agents.fallback_validator import fallback_validation
from agents.llm_client import LLMClient
from agents.prompt_loader import validation_prompt
from agents.response_parsing import parse_validation_response
from models.results import ValidationResult


logger = logging.getLogger(__name__)


class ValidatorAgent:
    """Checks a spoken answer against its question and normalizes it.

    With no LLM configured, or when the provider call fails, the rule-based
    fallback answers instead. A malformed model reply is treated as an invalid
    answer. No exception ever reaches the caller.
    """

    def __init__(self, llm: LLMClient | None, language: str = "en"):
        self.llm = llm if llm is not None and llm.configured else None
        self.language = language

    @property
    def is_configured(self) -> bool:
        return self.llm is not None

    @property
    def provider(self) -> str | None:
        return self.llm.provider if self.llm is not None else None

    async def validate(
        self,
        question: str,
        question_type: str,
        transcript: str | None,
        choices: Sequence[str] | None = None,
    ) -> ValidationResult:
        text = str(transcript or "")
        if self.llm is None:
            return fallback_validation(question_type, text, choices)

        user_payload = {
            "question": question,
            "questionType": question_type,
            "transcript": text,
        }
        if question_type == "choice":
            user_payload["choices"] = list(choices or [])

        try:
            content = await self.llm.chat(
                messages=[{"role": "user", "content": json.dumps(user_payload, ensure_ascii=False)}],
                system=validation_prompt(question_type, self.language),
                temperature=0.0,
                max_tokens=100,
            )
        except Exception as err:
            logger.warning("Validation backend failed, using rule-based fallback: %s", err)
            return fallback_validation(question_type, text, choices)

        decoded = parse_validation_response(content, question_type, choices)
        if not decoded.ok:
            logger.debug("Malformed validation reply: %r", content)
        return decoded.value
