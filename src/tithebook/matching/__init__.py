"""Name matching of extracted tithe-page names against an assembly roster."""

from tithebook.matching.engine import (
    FuzzyMatchResult,
    MatchSource,
    NameMatcher,
    name_permutations,
    position_boost,
)

__all__ = ["FuzzyMatchResult", "MatchSource", "NameMatcher", "name_permutations", "position_boost"]
