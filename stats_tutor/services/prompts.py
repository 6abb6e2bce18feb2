from functools import lru_cache
from pathlib import Path

import yaml

PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"


@lru_cache(maxsize=None)
def load_prompt(name: str) -> dict:
    """Load a YAML prompt file from stats_tutor/prompts/."""
    with open(PROMPTS_DIR / name, encoding="utf-8") as fh:
        return yaml.safe_load(fh)


def language_name(lang: str) -> str:
    return "Arabic" if lang == "ar" else "English"
