"""Semantic (LLM) fallback for name matching."""

from tithebook.semantic.prompts import PROMPT_VERSION, NameMatchPrompt
from tithebook.semantic.service import (
    RequestSlots,
    SemanticError,
    SemanticMatcher,
    SemanticRateLimitedError,
    SemanticVerdict,
)

__all__ = [
    "PROMPT_VERSION",
    "NameMatchPrompt",
    "RequestSlots",
    "SemanticError",
    "SemanticMatcher",
    "SemanticRateLimitedError",
    "SemanticVerdict",
]
