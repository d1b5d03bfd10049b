from __future__ import annotations

import json
import logging
import re
from typing import Any, Sequence

from agents.fallback_validator import detect_yes_no, match_choice
from models.results import Decoded, FollowupResult, OverlapResult, ValidationResult, WhyResult


logger = logging.getLogger(__name__)

DEFAULT_WHY_EXPLANATION = "This helps us understand your medical history for your application."
MAX_EXPLANATION_CHARS = 200

_FENCE = re.compile(r"```(?:json)?\s*|\s*```", re.IGNORECASE)
_VALIDATION_KEYS = {"valid", "normalized", "explanation", "repeat"}


def decode_json_object(content: str | None) -> dict[str, Any] | None:
    """Parse a model reply into a JSON object, tolerating markdown fences."""
    if not content:
        return None
    text = _FENCE.sub("", str(content)).strip()
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        start, end = text.find("{"), text.rfind("}")
        if start < 0 or end <= start:
            return None
        try:
            payload = json.loads(text[start : end + 1])
        except json.JSONDecodeError:
            return None
    return payload if isinstance(payload, dict) else None


def _clean_text(value: Any, limit: int) -> str | None:
    if not isinstance(value, str):
        return None
    text = re.sub(r"\s+", " ", value).strip()
    if not text:
        return None
    return text[:limit].rstrip()


def parse_validation_response(
    content: str | None,
    question_type: str,
    choices: Sequence[str] | None = None,
) -> Decoded[ValidationResult]:
    default = Decoded.default(ValidationResult.invalid())
    payload = decode_json_object(content)
    if payload is None:
        logger.warning("Validation reply is not a JSON object")
        return default
    if not isinstance(payload.get("valid"), bool):
        logger.warning("Validation reply has no boolean 'valid'")
        return default
    extra = set(payload) - _VALIDATION_KEYS
    if extra:
        logger.warning("Validation reply carries out-of-contract keys: %s", sorted(extra))
        return default

    explanation = _clean_text(payload.get("explanation"), MAX_EXPLANATION_CHARS)
    repeat = payload.get("repeat") is True

    if payload["valid"] and repeat:
        logger.warning("Validation reply is both valid and a repeat request")
        return default

    if not payload["valid"]:
        if repeat:
            return Decoded.success(ValidationResult.repeat_request())
        return Decoded.success(ValidationResult.invalid(explanation))

    normalized = payload.get("normalized")
    if isinstance(normalized, (int, float)) and not isinstance(normalized, bool):
        normalized = str(normalized)
    if not isinstance(normalized, str) or not normalized.strip():
        logger.warning("Validation reply is valid but has no normalized value")
        return default
    normalized = normalized.strip()

    if question_type == "yes_no":
        upper = normalized.upper()
        coerced = upper if upper in {"YES", "NO"} else detect_yes_no(normalized)
        if coerced is None:
            logger.warning("Validation reply has non yes/no literal for yes_no question")
            return default
        normalized = coerced
    elif question_type == "choice":
        exact = next((c for c in choices or [] if c.lower() == normalized.lower()), None)
        coerced = exact or match_choice(normalized, choices or [])
        if coerced is None:
            logger.warning("Validation reply does not map to any choice")
            return default
        normalized = coerced

    return Decoded.success(ValidationResult.accepted(normalized))


def parse_followup_response(content: str | None, max_chars: int = 200) -> Decoded[FollowupResult]:
    default = Decoded.default(FollowupResult.finished())
    payload = decode_json_object(content)
    if payload is None:
        return default
    if payload.get("done") is True:
        return Decoded.success(FollowupResult.finished())
    ask = payload.get("ask")
    if not isinstance(ask, str):
        return default
    trimmed = ask.strip()
    if not trimmed or len(trimmed) > max_chars:
        return default
    return Decoded.success(FollowupResult(ask=trimmed))


def parse_overlap_response(content: str | None) -> Decoded[OverlapResult]:
    default = Decoded.default(OverlapResult(allow=False))
    payload = decode_json_object(content)
    if payload is None or not isinstance(payload.get("allow"), bool):
        return default
    return Decoded.success(OverlapResult(allow=payload["allow"]))


def parse_why_response(content: str | None) -> Decoded[WhyResult]:
    default = Decoded.default(WhyResult(explanation=DEFAULT_WHY_EXPLANATION))
    payload = decode_json_object(content)
    if payload is None:
        return default
    explanation = _clean_text(payload.get("explanation"), 400)
    if explanation is None:
        return default
    return Decoded.success(WhyResult(explanation=explanation))
