from __future__ import annotations

import json
import logging

from agents.llm_client import LLMClient
from agents.prompt_loader import load_prompt
from agents.response_parsing import DEFAULT_WHY_EXPLANATION, parse_why_response
from models.results import WhyResult


logger = logging.getLogger(__name__)


class ExplainerAgent:
    def __init__(self, llm: LLMClient | None, language: str = "en"):
        self.llm = llm if llm is not None and llm.configured else None
        self.language = language

    async def explain(
        self,
        question: str,
        section: str,
        explain_level: int = 1,
        previous_explanation: str | None = None,
    ) -> WhyResult:
        if self.llm is None:
            return WhyResult(explanation=DEFAULT_WHY_EXPLANATION)

        payload = {
            "section": section,
            "question": question,
            "explainLevel": max(1, explain_level),
            "previousExplanation": previous_explanation,
        }
        try:
            content = await self.llm.chat(
                messages=[{"role": "user", "content": json.dumps(payload, ensure_ascii=False)}],
                system=load_prompt("why_system.txt", self.language),
                temperature=0.4,
                max_tokens=120,
            )
        except Exception as err:
            logger.warning("Explanation backend failed: %s", err)
            return WhyResult(explanation=DEFAULT_WHY_EXPLANATION)

        return parse_why_response(content).value
