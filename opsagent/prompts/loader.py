"""Prompt loader."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

PROMPT_DIR = Path(__file__).resolve().parent


class PromptNotFoundError(RuntimeError):
    pass


@lru_cache(maxsize=None)
def load_prompt(name: str) -> str:
    """Load a system prompt by name.

    Args:
        name: Prompt file stem (e.g. "calendar").

    Returns:
        Prompt text.

    Raises:
        PromptNotFoundError: If the prompt file is missing.
    """
    prompt_path = PROMPT_DIR / f'{name}.md'
    if not prompt_path.is_file():
        raise PromptNotFoundError(f'Prompt not found: {name}')
    return prompt_path.read_text(encoding='utf-8').strip()
