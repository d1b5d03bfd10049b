from __future__ import annotations

import json
import logging
from typing import Sequence

from agents.llm_client import LLMClient
from agents.prompt_loader import load_prompt
from agents.response_parsing import parse_followup_response, parse_overlap_response
from models.results import FollowupContext, FollowupResult, OverlapResult


logger = logging.getLogger(__name__)

PRIOR_ANSWERS_WINDOW = 3
PREVIOUS_FOLLOWUPS_WINDOW = 3
UPCOMING_WINDOW = 4
QA_PAIRS_WINDOW = 4
OVERLAP_UPCOMING_WINDOW = 6


class FollowupAgent:
    """Generates optional follow-up questions and screens them against the script.

    Every ambiguity falls toward asking nothing: generation failures mean
    ``done`` and overlap failures mean ``allow=False``. The only exception is a
    missing backend, where overlap checking cannot be enforced and is skipped.
    """

    def __init__(self, llm: LLMClient | None, max_chars: int = 200, language: str = "en"):
        self.llm = llm if llm is not None and llm.configured else None
        self.max_chars = max_chars
        self.language = language

    @property
    def is_configured(self) -> bool:
        return self.llm is not None

    async def generate_followup(self, context: FollowupContext) -> FollowupResult:
        if self.llm is None:
            return FollowupResult.finished()

        payload = {
            "context": context.context,
            "section": context.section,
            "questionText": context.question_text,
            "lastAnswer": context.last_answer,
            "priorAnswers": context.prior_answers[-PRIOR_ANSWERS_WINDOW:],
            "previousFollowups": context.previous_followups[-PREVIOUS_FOLLOWUPS_WINDOW:],
            "upcomingQuestions": context.upcoming_questions[:UPCOMING_WINDOW],
            "primaryContext": context.primary_context if (context.primary_context or {}).get("answer") else None,
            "sectionAnswers": context.section_answers,
            "recentQAPairs": context.recent_qa_pairs[-QA_PAIRS_WINDOW:],
            "topic": context.topic,
            "guidance": context.guidance,
        }
        try:
            content = await self.llm.chat(
                messages=[{"role": "user", "content": json.dumps(payload, ensure_ascii=False)}],
                system=load_prompt("followup_system.txt", self.language),
                temperature=0.3,
                max_tokens=120,
            )
        except Exception as err:
            logger.warning("Follow-up backend failed, skipping follow-up: %s", err)
            return FollowupResult.finished()

        decoded = parse_followup_response(content, self.max_chars)
        if not decoded.ok:
            logger.info("Follow-up reply rejected, treating as done")
        return decoded.value

    async def check_overlap(self, candidate: str, upcoming: Sequence[str]) -> OverlapResult:
        if self.llm is None:
            return OverlapResult(allow=True)

        payload = {
            "candidateQuestion": candidate,
            "upcomingQuestions": list(upcoming)[:OVERLAP_UPCOMING_WINDOW],
        }
        try:
            content = await self.llm.chat(
                messages=[{"role": "user", "content": json.dumps(payload, ensure_ascii=False)}],
                system=load_prompt("overlap_system.txt", self.language),
                temperature=0.0,
                max_tokens=20,
            )
        except Exception as err:
            logger.warning("Overlap backend failed, dropping follow-up: %s", err)
            return OverlapResult(allow=False)

        decoded = parse_overlap_response(content)
        if not decoded.ok:
            logger.info("Overlap reply malformed, dropping follow-up")
        return decoded.value
