"""Name matching engine for correlating tithe-page names with roster members.

A name read from a page is matched against every member of the assembly
roster. Learned aliases win outright; otherwise each member's name is
scored in several field orders (given name first, surname first, with and
without other names and title) and the best variant counts. A semantic
matcher can be consulted when no member scores in the HIGH tier.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..config import MatchingConfig
from ..schemas.member_record import MemberRecord, split_id_parts
from ..semantic.service import SemanticError
from ..similarity import ConfidenceTier, confidence_tier, name_similarity

if TYPE_CHECKING:
    from ..learning.aliases import NameAliasLearner
    from ..semantic.service import SemanticMatcher

logger = logging.getLogger(__name__)

# Boost by distance between the row number and the member's custom order
POSITION_BOOSTS = ((0, 0.15), (2, 0.08), (5, 0.03))

MIN_SEMANTIC_QUERY_LENGTH = 3
SEMANTIC_CANDIDATES = 10


class MatchSource(str, Enum):
    ALIAS = "alias"
    FUZZY = "fuzzy"
    SEMANTIC = "semantic"


@dataclass
class FuzzyMatchResult:
    """Result of matching one extracted name to a roster member."""

    member: MemberRecord
    score: float
    matched_variant: str
    tier: ConfidenceTier
    source: MatchSource = MatchSource.FUZZY
    alternatives: list[FuzzyMatchResult] = field(default_factory=list)

    @property
    def member_id(self) -> str:
        return self.member.primary_id

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "member_id": self.member_id,
            "member_name": self.member.display_name,
            "score": round(self.score, 4),
            "matched_variant": self.matched_variant,
            "tier": self.tier.value,
            "source": self.source.value,
            "alternatives": [a.to_dict() for a in self.alternatives],
        }


def name_permutations(member: MemberRecord) -> list[str]:
    """Name variants a member may be written as on a tithe page."""
    first, surname, other, title = (
        member.first_name,
        member.surname,
        member.other_names,
        member.title,
    )
    variants = [f"{first} {surname}", f"{surname} {first}"]
    if other:
        variants += [
            f"{first} {other} {surname}",
            f"{surname} {first} {other}",
            f"{first} {surname} {other}",
        ]
    if title:
        variants += [f"{title} {v}" for v in list(variants)]

    cleaned = [" ".join(v.split()) for v in variants]
    if not any(cleaned) and member.full_name:
        cleaned = [member.full_name]
    return [v for v in dict.fromkeys(cleaned) if v]


def position_boost(position: int | None, member: MemberRecord) -> float:
    if position is None or member.custom_order is None:
        return 0.0
    distance = abs(position - member.custom_order)
    for max_distance, boost in POSITION_BOOSTS:
        if distance <= max_distance:
            return boost
    return 0.0


@dataclass
class _Scored:
    index: int
    score: float
    variant: str


class NameMatcher:
    """Matches extracted names against one assembly roster.

    Members are identified by their position in ``members``; the roster is
    not modified.
    """

    def __init__(
        self,
        members: Sequence[MemberRecord],
        alias_learner: NameAliasLearner | None = None,
        semantic: SemanticMatcher | None = None,
        matching_config: MatchingConfig | None = None,
    ) -> None:
        self.members = list(members)
        self.alias_learner = alias_learner
        self.semantic = semantic
        self.config = matching_config or MatchingConfig()
        self._variants = [name_permutations(m) for m in self.members]

    def _tier(self, score: float) -> ConfidenceTier:
        return confidence_tier(score, self.config.high_threshold, self.config.medium_threshold)

    def _find_by_id(self, member_id: str) -> int | None:
        wanted = {p.lower() for p in split_id_parts(member_id)}
        for idx, member in enumerate(self.members):
            parts = split_id_parts(member.current_id) + split_id_parts(member.old_id)
            if any(p.lower() in wanted for p in parts):
                return idx
        return None

    def _alias_hit(self, name: str, scope: str | None) -> _Scored | None:
        if self.alias_learner is None or scope is None:
            return None
        alias = self.alias_learner.lookup(scope, name)
        if alias is None:
            return None
        idx = self._find_by_id(alias.member_id)
        if idx is None:
            logger.debug("Alias points to member %s which is not on the roster", alias.member_id)
            return None
        return _Scored(index=idx, score=self.config.alias_score, variant=alias.member_name)

    def rank(self, name: str, position: int | None = None) -> list[_Scored]:
        """All members scored against ``name``, best first (stable on ties)."""
        scored = []
        for idx, member in enumerate(self.members):
            best_score = 0.0
            best_variant = ""
            for variant in self._variants[idx]:
                score = name_similarity(name, variant)
                if score > best_score:
                    best_score, best_variant = score, variant
            if not best_variant:
                continue
            total = min(1.0, best_score + position_boost(position, member))
            scored.append(_Scored(index=idx, score=total, variant=best_variant))
        scored.sort(key=lambda s: -s.score)
        return scored

    def _result(
        self,
        hit: _Scored,
        source: MatchSource,
        ranked: list[_Scored] | None = None,
    ) -> FuzzyMatchResult:
        alternatives = []
        for other in ranked or []:
            if len(alternatives) >= self.config.max_alternatives:
                break
            if other.index == hit.index or other.score < self.config.alternative_threshold:
                continue
            alternatives.append(
                FuzzyMatchResult(
                    member=self.members[other.index],
                    score=other.score,
                    matched_variant=other.variant,
                    tier=self._tier(other.score),
                )
            )
        return FuzzyMatchResult(
            member=self.members[hit.index],
            score=hit.score,
            matched_variant=hit.variant,
            tier=self._tier(hit.score),
            source=source,
            alternatives=alternatives,
        )

    def _semantic_hit(
        self, name: str, ranked: list[_Scored], exclude: set[int] | None = None
    ) -> _Scored | None:
        if self.semantic is None or len(name.strip()) <= MIN_SEMANTIC_QUERY_LENGTH:
            return None

        pool = [s for s in ranked if not exclude or s.index not in exclude][:SEMANTIC_CANDIDATES]
        candidates = [
            (self.members[s.index].primary_id, self.members[s.index].display_name)
            for s in pool
            if self.members[s.index].primary_id
        ]
        if not candidates:
            return None

        try:
            verdict = self.semantic.match(name, candidates)
        except SemanticError as e:
            logger.warning("Semantic matching unavailable, using fuzzy result: %s", e)
            return None

        if verdict is None or not verdict.member_id:
            return None
        if verdict.confidence < self.config.match_threshold:
            return None
        idx = self._find_by_id(verdict.member_id)
        if idx is None or (exclude and idx in exclude):
            return None
        return _Scored(index=idx, score=verdict.confidence, variant=self.members[idx].full_name)

    def match(
        self, name: str, scope: str | None = None, position: int | None = None
    ) -> FuzzyMatchResult | None:
        """
        Best roster member for an extracted name.

        Args:
            name: Name as read from the page
            scope: Assembly whose learned aliases apply
            position: Row number on the page, compared with custom order

        Returns:
            FuzzyMatchResult, or None when nothing reaches the match threshold
        """
        if not name or not name.strip() or not self.members:
            return None

        alias = self._alias_hit(name, scope)
        ranked = self.rank(name, position)
        if alias is not None:
            return self._result(alias, MatchSource.ALIAS, ranked)

        best = ranked[0] if ranked else None
        if best is None or best.score < self.config.high_threshold:
            semantic = self._semantic_hit(name, ranked)
            if semantic is not None and (best is None or semantic.score > best.score):
                logger.debug("Semantic match for row %s", position)
                return self._result(semantic, MatchSource.SEMANTIC, ranked)

        if best is None or best.score < self.config.match_threshold:
            return None
        return self._result(best, MatchSource.FUZZY, ranked)

    def match_batch(
        self,
        names: Sequence[str],
        scope: str | None = None,
        positions: Sequence[int | None] | None = None,
    ) -> list[FuzzyMatchResult | None]:
        """Match many names so that no member is claimed twice.

        Pairs are taken highest score first; a name whose best member is
        taken falls back to its next best free candidate.
        """
        results: list[FuzzyMatchResult | None] = [None] * len(names)
        rankings: list[list[_Scored]] = []
        pairs: list[tuple[float, int, int, _Scored, MatchSource]] = []

        for i, name in enumerate(names):
            position = positions[i] if positions is not None and i < len(positions) else None
            if not name or not name.strip():
                rankings.append([])
                continue
            ranked = self.rank(name, position)
            rankings.append(ranked)
            alias = self._alias_hit(name, scope)
            if alias is not None:
                pairs.append((alias.score, i, -1, alias, MatchSource.ALIAS))
            for order, scored in enumerate(ranked):
                if scored.score < self.config.match_threshold:
                    break
                pairs.append((scored.score, i, order, scored, MatchSource.FUZZY))

        # Highest score first, then earlier name, then better rank
        pairs.sort(key=lambda p: (-p[0], p[1], p[2]))
        claimed: set[int] = set()
        for _, i, _, scored, source in pairs:
            if results[i] is not None or scored.index in claimed:
                continue
            claimed.add(scored.index)
            results[i] = self._result(scored, source, rankings[i])

        for i, name in enumerate(names):
            if results[i] is not None or not rankings[i]:
                continue
            semantic = self._semantic_hit(name, rankings[i], exclude=claimed)
            if semantic is not None:
                claimed.add(semantic.index)
                results[i] = self._result(semantic, MatchSource.SEMANTIC, rankings[i])

        matched = sum(1 for r in results if r is not None)
        logger.info("Matched %d of %d names", matched, len(names))
        return results
