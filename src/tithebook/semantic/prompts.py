"""Prompt templates for semantic name matching.

Prompts are versioned to support cache invalidation.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

# Prompt version for cache invalidation
PROMPT_VERSION = "v1.0"


@dataclass
class NameMatchPrompt:
    """Prompt template for picking the roster member a written name refers to.

    Attributes:
        version: Prompt version for cache invalidation.
        system_prompt: System message setting LLM behavior.
        user_template: Template for user message with placeholders.
    """

    version: str = PROMPT_VERSION

    system_prompt: str = """You match handwritten names from a church tithe register
to members of the congregation roster. Names were read by OCR and may be
misspelled, abbreviated, written surname first, or carry titles such as
Elder, Deacon, Mrs or Opanyin. Ghanaian day names and their spellings
(Kwame/Kwamena, Akosua/Akos) refer to the same person.

Rules:
1. Only answer with a member_id from the candidate list
2. If no candidate is clearly the same person, answer null
3. Include a confidence score from 0.0 to 1.0

Respond in JSON format:
{"member_id": "ID or null", "confidence": 0.0}"""

    user_template: str = """Name on the tithe page: {raw_name}

Candidates:
{candidates}"""

    def format_user_message(self, raw_name: str, candidates: Sequence[tuple[str, str]]) -> str:
        lines = "\n".join(f"- {member_id}: {name}" for member_id, name in candidates)
        return self.user_template.format(raw_name=raw_name, candidates=lines)
