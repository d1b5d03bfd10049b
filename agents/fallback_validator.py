from __future__ import annotations

import re
from typing import Sequence

from models.results import ValidationResult


REPEAT_PHRASES = (
    "repeat",
    "say that again",
    "say it again",
    "can you repeat",
    "could you repeat",
    "please repeat",
    "repeat that",
    "what was that",
    "pardon",
    "come again",
    "say again",
)

YES_KEYWORDS = ("yes", "yeah", "yep", "yup", "correct", "right", "i do", "i have", "sure", "absolutely")
NO_KEYWORDS = (
    "no",
    "nope",
    "nah",
    "negative",
    "don't",
    "do not",
    "haven't",
    "have not",
    "never",
    "not really",
)

_ACKNOWLEDGEMENT_PATTERNS = [
    re.compile(r"^ok\b[\s,.-]*", re.IGNORECASE),
    re.compile(r"^okay\b[\s,.-]*", re.IGNORECASE),
    re.compile(r"^alright\b[\s,.-]*", re.IGNORECASE),
    re.compile(r"^all right\b[\s,.-]*", re.IGNORECASE),
    re.compile(r"^sure\b[\s,.-]*", re.IGNORECASE),
    re.compile(r"^got it\b[\s,.-]*", re.IGNORECASE),
    re.compile(r"^i get it\b[\s,.-]*", re.IGNORECASE),
    re.compile(r"^i understand\b[\s,.-]*", re.IGNORECASE),
    re.compile(r"^that makes sense\b[\s,.-]*", re.IGNORECASE),
]

_DATE_HINT = re.compile(
    r"\d|\b("
    r"jan(uary)?|feb(ruary)?|mar(ch)?|apr(il)?|may|june?|july?|aug(ust)?|sep(t(ember)?)?|"
    r"oct(ober)?|nov(ember)?|dec(ember)?|"
    r"monday|tuesday|wednesday|thursday|friday|saturday|sunday|"
    r"years?|months?|weeks?|days?|decades?|ago|last|since|yesterday|today|recently|"
    r"spring|summer|autumn|fall|winter|childhood|when i was"
    r")\b",
    re.IGNORECASE,
)

_NUMBER_HINT = re.compile(
    r"\d|\b("
    r"zero|none|one|two|three|four|five|six|seven|eight|nine|ten|eleven|twelve|"
    r"thirteen|fourteen|fifteen|sixteen|seventeen|eighteen|nineteen|twenty|thirty|forty|"
    r"fifty|sixty|seventy|eighty|ninety|hundred|thousand|dozen|"
    r"once|twice|couple|few|several|many|some|a lot|no times"
    r")\b",
    re.IGNORECASE,
)

GENERIC_EXPLANATIONS = {
    "yes_no": "Please answer with a clear yes or no.",
    "date": "Please provide a date.",
    "number": "Please provide a number.",
    "choice": "Please choose one of the options.",
    "open": "Please provide a valid response.",
}


def generic_explanation(question_type: str, choices: Sequence[str] | None = None) -> str:
    if question_type == "choice" and choices:
        return f"Please choose one of the options: {', '.join(choices)}."
    return GENERIC_EXPLANATIONS.get(question_type, GENERIC_EXPLANATIONS["open"])


def _keyword_pattern(keywords: Sequence[str]) -> re.Pattern[str]:
    alternatives = "|".join(re.escape(keyword) for keyword in keywords)
    return re.compile(rf"(?<![\w'])({alternatives})(?![\w'])", re.IGNORECASE)


_YES_PATTERN = _keyword_pattern(YES_KEYWORDS)
_NO_PATTERN = _keyword_pattern(NO_KEYWORDS)


def is_repeat_request(transcript: str) -> bool:
    normalized = str(transcript or "").lower().strip()
    return any(phrase in normalized for phrase in REPEAT_PHRASES)


def strip_acknowledgement_prefix(text: str) -> str:
    trimmed = str(text or "").strip()
    for pattern in _ACKNOWLEDGEMENT_PATTERNS:
        if pattern.search(trimmed):
            updated = pattern.sub("", trimmed, count=1).strip()
            return updated or trimmed
    return trimmed


def detect_yes_no(text: str) -> str | None:
    """``YES``/``NO`` when exactly one polarity is present, otherwise None.

    Negatives are matched first and blanked out, so "I do not" and "I have
    not" are not also read as the affirmatives "I do" and "I have".
    """
    value = str(text or "")
    has_no = bool(_NO_PATTERN.search(value))
    has_yes = bool(_YES_PATTERN.search(_NO_PATTERN.sub(" ", value)))
    if has_yes == has_no:
        return None
    return "YES" if has_yes else "NO"


def match_choice(text: str, choices: Sequence[str]) -> str | None:
    lowered = str(text or "").lower()
    for choice in choices:
        if choice and choice.lower() in lowered:
            return choice
    return None


def fallback_validation(
    question_type: str,
    transcript: str | None,
    choices: Sequence[str] | None = None,
) -> ValidationResult:
    text = str(transcript or "")
    trimmed = text.strip()

    if is_repeat_request(text):
        return ValidationResult.repeat_request()

    if question_type == "yes_no":
        answer = detect_yes_no(trimmed)
        if answer is None:
            return ValidationResult.invalid(generic_explanation("yes_no"))
        return ValidationResult.accepted(answer)

    if question_type == "choice":
        choice = match_choice(trimmed, choices or [])
        if choice is None:
            return ValidationResult.invalid(generic_explanation("choice", choices))
        return ValidationResult.accepted(choice)

    if not trimmed:
        return ValidationResult.invalid(generic_explanation(question_type))

    if question_type == "date" and not _DATE_HINT.search(trimmed):
        return ValidationResult.invalid(generic_explanation("date"))

    if question_type == "number" and not _NUMBER_HINT.search(trimmed):
        return ValidationResult.invalid(generic_explanation("number"))

    if question_type == "open":
        return ValidationResult.accepted(strip_acknowledgement_prefix(trimmed))
    return ValidationResult.accepted(trimmed)
