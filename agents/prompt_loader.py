from __future__ import annotations

from functools import lru_cache
from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parents[1] / "prompts"


@lru_cache(maxsize=64)
def load_prompt(filename: str, language: str = "en") -> str:
    """Load a prompt file, resolving a language-specific version first.

    Lookup order:
      1. prompts/{language}/{filename}
      2. prompts/{filename}

    ``language`` may be a full tag such as ``en-US``; only the primary subtag is used.
    """
    primary = language.split("-")[0].lower() if language else "en"
    lang_path = PROMPTS_DIR / primary / filename
    if lang_path.exists():
        return lang_path.read_text(encoding="utf-8").strip()

    root_path = PROMPTS_DIR / filename
    if root_path.exists():
        return root_path.read_text(encoding="utf-8").strip()

    raise FileNotFoundError(
        f"Prompt file not found: tried {lang_path} and {root_path}"
    )


def validation_prompt(question_type: str, language: str = "en") -> str:
    """System prompt for answer validation: shared contract plus the per-type rules."""
    try:
        rules = load_prompt(f"validation_{question_type}.txt", language)
    except FileNotFoundError:
        rules = load_prompt("validation_open.txt", language)
    return f"{load_prompt('validation_system.txt', language)}\n\n{rules}"
