"""Keyword + vector scoring, importance decay, and hybrid ranking.

Hybrid score for one entry:

    base  = 0.6 * semantic + 0.4 * keyword     (query vector and entry vector both present)
          = keyword                            (otherwise)
    score = base + effective_importance * 0.1 / 10

effective_importance = importance * max(0.3, 1 - age_days/365) * min(2.0, 1 + 0.1 * access_count)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import numpy as np

from memindex.codec import get_embedding_float32, parse_timestamp

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from memindex.models import MemoryEntry, MemoryIndex

CONTENT_WEIGHT = 0.4
TAG_WEIGHT = 0.3
TYPE_WEIGHT = 0.2
COMPLETENESS_BONUS = 0.1

SEMANTIC_WEIGHT = 0.6
KEYWORD_WEIGHT = 0.4
IMPORTANCE_WEIGHT = 0.1

DECAY_FLOOR = 0.3
DECAY_DAYS = 365.0
ACCESS_STEP = 0.1
ACCESS_CAP = 2.0


@dataclass
class ScoredEntry:
    entry: MemoryEntry
    score: float
    keyword_score: float
    semantic_score: float


# ---------------------------------------------------------------------------
# Keyword
# ---------------------------------------------------------------------------


def query_terms(query: str) -> list[str]:
    """Lowercased whitespace-delimited terms, single characters dropped."""
    return [t for t in query.lower().split() if len(t) > 1]


def keyword_score(entry: MemoryEntry, terms: Sequence[str]) -> float:
    """Average per-term match weight plus a completeness bonus, in [0, 1]."""
    if not terms:
        return 0.0
    content = entry.content.lower()
    tags = [t.lower() for t in entry.tags]
    etype = str(entry.type).lower()

    total = 0.0
    all_matched = True
    for term in terms:
        term_score = 0.0
        if term in content:
            term_score += CONTENT_WEIGHT
        if any(term in tag for tag in tags):
            term_score += TAG_WEIGHT
        if term in etype:
            term_score += TYPE_WEIGHT
        if term_score == 0.0:
            all_matched = False
        total += term_score

    score = total / len(terms)
    if all_matched:
        score += COMPLETENESS_BONUS
    return max(0.0, min(score, 1.0))


# ---------------------------------------------------------------------------
# Semantic
# ---------------------------------------------------------------------------


def cosine_similarity(a: Sequence[float] | NDArray[np.float32], b: Sequence[float] | NDArray[np.float32]) -> float:
    """Cosine similarity; 0.0 for mismatched lengths or zero vectors."""
    va = np.asarray(a, dtype=np.float32)
    vb = np.asarray(b, dtype=np.float32)
    if va.shape != vb.shape or va.size == 0:
        return 0.0
    denom = float(np.linalg.norm(va)) * float(np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb)) / denom


def semantic_score(entry: MemoryEntry, query_vector: NDArray[np.float32] | None) -> float | None:
    """Similarity to the query, or None when either side has no vector."""
    if query_vector is None:
        return None
    vec = get_embedding_float32(entry)
    if vec is None:
        return None
    return cosine_similarity(query_vector, vec)


# ---------------------------------------------------------------------------
# Decay
# ---------------------------------------------------------------------------


def age_days(entry: MemoryEntry, now: datetime | None = None) -> float:
    """Age from timestamp (or date) to now in days; 0 if neither parses."""
    created = parse_timestamp(entry.timestamp) or parse_timestamp(entry.date)
    if created is None:
        return 0.0
    now = now or datetime.now(UTC)
    return max(0.0, (now - created).total_seconds() / 86400.0)


def decay_factor(days: float) -> float:
    return max(DECAY_FLOOR, 1.0 - days / DECAY_DAYS)


def access_boost(access_count: int) -> float:
    return min(ACCESS_CAP, 1.0 + ACCESS_STEP * max(0, access_count))


def effective_importance(entry: MemoryEntry, now: datetime | None = None) -> float:
    """Raw importance scaled by age decay and access boost."""
    return entry.importance * decay_factor(age_days(entry, now)) * access_boost(entry.access_count)


# ---------------------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------------------


def score_entry(
    entry: MemoryEntry,
    terms: Sequence[str],
    query_vector: NDArray[np.float32] | None = None,
    now: datetime | None = None,
) -> ScoredEntry:
    kw = keyword_score(entry, terms) if terms else 0.0
    sem = semantic_score(entry, query_vector)
    base = SEMANTIC_WEIGHT * sem + KEYWORD_WEIGHT * kw if sem is not None else kw
    score = base + effective_importance(entry, now) * IMPORTANCE_WEIGHT / 10
    return ScoredEntry(entry=entry, score=score, keyword_score=kw, semantic_score=sem or 0.0)


def rank(
    index: MemoryIndex,
    query: str,
    query_vector: Sequence[float] | NDArray[np.float32] | None = None,
    *,
    max_results: int = 10,
    min_score: float = 0.1,
    now: datetime | None = None,
) -> list[ScoredEntry]:
    """Score every entry, keep those >= min_score, best first (ties keep index order)."""
    terms = query_terms(query)
    qvec = np.asarray(query_vector, dtype=np.float32) if query_vector is not None else None
    if not terms and qvec is None:
        return []
    now = now or datetime.now(UTC)

    scored = [score_entry(entry, terms, qvec, now) for entry in index.entries]
    kept = [s for s in scored if s.score >= min_score]
    kept.sort(key=lambda s: s.score, reverse=True)
    return kept[: max(0, max_results)]
