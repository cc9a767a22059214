"""
SQLGuard - Identifier Similarity Engine
=======================================

Pure-function module. No side effects, no state, no database access.

Matches a candidate identifier emitted by the NL-SQL model (e.g. "CIT",
"cities", "revenue") against the names that actually exist in the schema.

STRATEGIES (strict priority, first hit wins):
1. Exact (case-insensitive or normalized)      score=1.0
2. Plural/singular variant                      score=0.95
3. Substring containment + similarity > 0.5     score=0.85
4. Semantic synonym                             score=0.8
5. Edit-distance similarity >= 0.6              score=similarity (< 1.0)

INVARIANTS:
- matched is None if and only if score == 0
- score == 1.0 if and only if the match was exact
- Deterministic: ties are resolved by the order of `known`
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

SUBSTRING_MIN_SIMILARITY = 0.5
EDIT_DISTANCE_THRESHOLD = 0.6
CONTEXT_BOOST = 0.1
# Non-exact scores never reach 1.0
MAX_FUZZY_SCORE = 0.99

SEMANTIC_GROUPS: Dict[str, List[str]] = {
    'city': ['town', 'cities', 'towns', 'urban', 'municipality'],
    'name': ['title', 'label', 'identifier'],
    'amount': ['total', 'sum', 'value', 'price', 'cost', 'revenue'],
    'date': ['time', 'timestamp', 'created', 'updated', 'when'],
    'count': ['number', 'quantity', 'num'],
    'id': ['identifier', 'key', 'pk'],
}


@dataclass
class FuzzyMatchResult:
    """
    Result of matching one identifier against known names.

    Attributes:
        matched: The known name that matched (None when nothing matched)
        score: Match confidence (0.0-1.0)
        reason: Human-readable explanation naming the strategy used
        strategy: exact | plural_singular | substring | semantic | edit_distance
    """
    matched: Optional[str]
    score: float
    reason: str
    strategy: Optional[str] = None

    @property
    def is_exact(self) -> bool:
        return self.matched is not None and self.score == 1.0


# =============================================================================
# PRIMITIVES
# =============================================================================

def levenshtein_distance(a: str, b: str) -> int:
    """Classic edit distance (insert, delete, substitute; all cost 1)."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(
                previous[j] + 1,         # deletion
                current[j - 1] + 1,      # insertion
                previous[j - 1] + cost,  # substitution
            ))
        previous = current
    return previous[-1]


def similarity_score(a: str, b: str) -> float:
    """1 - distance / max(len), compared case-insensitively."""
    max_len = max(len(a), len(b))
    if max_len == 0:
        return 1.0
    distance = levenshtein_distance(a.lower(), b.lower())
    return 1.0 - (distance / max_len)


def normalize_identifier(name: str) -> str:
    """Lowercase and strip everything except a-z and 0-9."""
    return re.sub(r'[^a-z0-9]', '', name.lower())


def is_plural_singular(a: str, b: str) -> bool:
    """
    True when one normalized name is an English plural of the other.

    Handles: +s, +es, y -> ies (city/cities), f -> ves (shelf/shelves)
    """
    n1 = normalize_identifier(a)
    n2 = normalize_identifier(b)
    if not n1 or not n2 or n1 == n2:
        return False

    for short, long in ((n1, n2), (n2, n1)):
        if long == short + 's' or long == short + 'es':
            return True
        if short.endswith('y') and long.endswith('ies') and short[:-1] == long[:-3]:
            return True
        if short.endswith('f') and long.endswith('ves') and short[:-1] == long[:-3]:
            return True
    return False


def _semantic_group(name: str) -> List[str]:
    normalized = normalize_identifier(name)
    group: List[str] = []
    for key, synonyms in SEMANTIC_GROUPS.items():
        members = [key] + synonyms
        if normalized in (normalize_identifier(m) for m in members):
            group.extend(members)
    return [normalize_identifier(m) for m in group]


def _format_available(known: Sequence[str]) -> str:
    sample = ", ".join(known[:5])
    return sample + ("..." if len(known) > 5 else "")


# =============================================================================
# MATCHING
# =============================================================================

def match_name(
    candidate: str,
    known: Sequence[str],
    context: Optional[str] = None,
) -> FuzzyMatchResult:
    """
    Match a candidate identifier against known schema names.

    Args:
        candidate: Identifier as written by the model (e.g. "CIT")
        known: Real schema names, in schema order
        context: Optional surrounding text (SQL or the user's question);
            a known name that appears in it gets a +0.1 edit-distance boost

    Returns:
        FuzzyMatchResult (never raises)
    """
    known = list(known or [])
    if not candidate or not known:
        return FuzzyMatchResult(matched=None, score=0.0, reason="No input or no available names")

    normalized = normalize_identifier(candidate)
    candidate_lower = candidate.lower()

    # Strategy 1: Exact. A case-sensitive hit wins over a case-folded one.
    exact = next((name for name in known if name == candidate), None)
    if exact is None:
        exact = next(
            (name for name in known
             if name.lower() == candidate_lower
             or (normalized and normalize_identifier(name) == normalized)),
            None,
        )
    if exact is not None:
        return FuzzyMatchResult(matched=exact, score=1.0, reason="Exact match", strategy="exact")

    # Strategy 2: Plural/singular
    plural = next((name for name in known if is_plural_singular(candidate, name)), None)
    if plural is not None:
        return FuzzyMatchResult(
            matched=plural,
            score=0.95,
            reason=f'Plural/singular variant: "{candidate}" -> "{plural}"',
            strategy="plural_singular",
        )

    # Strategy 3: Substring containment, either direction
    if normalized:
        for name in known:
            name_normalized = normalize_identifier(name)
            if not name_normalized:
                continue
            if normalized not in name_normalized and name_normalized not in normalized:
                continue
            similarity = similarity_score(candidate, name)
            if similarity > SUBSTRING_MIN_SIMILARITY:
                return FuzzyMatchResult(
                    matched=name,
                    score=0.85,
                    reason=(
                        f"Partial fuzzy match (substring, {round(similarity * 100)}% "
                        f'edit-distance similarity): "{candidate}" -> "{name}"'
                    ),
                    strategy="substring",
                )

    # Strategy 4: Semantic synonym
    group = _semantic_group(candidate)
    if group:
        semantic = next((name for name in known if normalize_identifier(name) in group), None)
        if semantic is not None:
            return FuzzyMatchResult(
                matched=semantic,
                score=0.8,
                reason=f'Semantic match: "{candidate}" -> "{semantic}"',
                strategy="semantic",
            )

    # Strategy 5: Edit distance with optional context boost
    context_lower = context.lower() if context else ""
    best_name: Optional[str] = None
    best_score = 0.0
    for name in known:
        score = similarity_score(candidate, name)
        if context_lower and name.lower() in context_lower:
            score += CONTEXT_BOOST
        score = min(score, MAX_FUZZY_SCORE)
        # Strictly greater: earlier names win ties
        if score > best_score:
            best_score = score
            best_name = name

    if best_name is not None and best_score >= EDIT_DISTANCE_THRESHOLD:
        return FuzzyMatchResult(
            matched=best_name,
            score=round(best_score, 4),
            reason=(
                f"Fuzzy match ({round(best_score * 100)}% edit-distance similarity): "
                f'"{candidate}" -> "{best_name}"'
            ),
            strategy="edit_distance",
        )

    logger.debug(f"[FUZZY] No match for '{candidate}' among {len(known)} names")
    return FuzzyMatchResult(
        matched=None,
        score=0.0,
        reason=f'No match found for "{candidate}". Available: {_format_available(known)}',
    )
