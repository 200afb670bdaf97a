"""Relation graph between memories.

Edges live on the entries themselves (``relations: [{targetId, relationType}]``).
Every edge A -[T]-> B is paired with B -[inverse(T)]-> A by link_memories and
auto_link; the file format does not enforce the pairing.

Several relation types may coexist between the same two memories; only an
exact (targetId, relationType) duplicate is collapsed.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from memindex.codec import get_embedding_float32
from memindex.models import MemoryEntry, MemoryIndex, Relation, RelationType
from memindex.scoring import cosine_similarity

if TYPE_CHECKING:
    from collections.abc import Sequence

    from memindex.scoring import ScoredEntry

AUTO_LINK_THRESHOLD = 0.65
AUTO_LINK_MAX = 3


@dataclass
class LinkResult:
    source_id: str
    target_id: str
    relation_type: RelationType
    missing: list[str] = field(default_factory=list)   # "source" and/or "target"

    @property
    def ok(self) -> bool:
        return not self.missing

    def describe(self) -> str:
        if self.ok:
            return (
                f"Linked {self.source_id} -[{self.relation_type.value}]-> {self.target_id} "
                f"(and {self.relation_type.inverse.value} back)"
            )
        ids = {"source": self.source_id, "target": self.target_id}
        parts = [f"{side} {ids[side]}" for side in self.missing]
        return "Memory not found: " + ", ".join(parts)


@dataclass
class RelatedEntry:
    entry: MemoryEntry
    relation_type: RelationType
    via: str        # id of the entry whose edge led here
    hops: int


# ---------------------------------------------------------------------------
# Mutation
# ---------------------------------------------------------------------------


def add_relation(entry: MemoryEntry, target_id: str, relation_type: RelationType) -> bool:
    """Append an edge unless the identical (target, type) edge exists. True if added."""
    for rel in entry.relations:
        if rel.target_id == target_id and rel.relation_type is relation_type:
            return False
    entry.relations.append(Relation(target_id=target_id, relation_type=relation_type))
    return True


def link_memories(
    index: MemoryIndex,
    source_id: str,
    target_id: str,
    relation_type: RelationType,
) -> LinkResult:
    """Add source -[type]-> target and target -[inverse]-> source.

    Nothing is changed unless both ids are present in the index.
    """
    entries = index.by_id()
    source = entries.get(source_id)
    target = entries.get(target_id)
    result = LinkResult(source_id=source_id, target_id=target_id, relation_type=relation_type)
    if source is None:
        result.missing.append("source")
    if target is None:
        result.missing.append("target")
    if source is None or target is None:
        return result

    add_relation(source, target_id, relation_type)
    add_relation(target, source_id, relation_type.inverse)
    return result


# ---------------------------------------------------------------------------
# Traversal
# ---------------------------------------------------------------------------


def _walk(
    entries: dict[str, MemoryEntry],
    start: MemoryEntry,
    depth: int,
    visited: set[str],
) -> list[RelatedEntry]:
    """Breadth-first walk from start over at most `depth` hops, skipping visited ids."""
    found: list[RelatedEntry] = []
    queue: deque[tuple[MemoryEntry, int]] = deque([(start, 0)])
    while queue:
        node, hops = queue.popleft()
        if hops >= depth:
            continue
        for rel in node.relations:
            if rel.target_id in visited:
                continue
            target = entries.get(rel.target_id)
            if target is None:
                continue
            visited.add(rel.target_id)
            found.append(RelatedEntry(
                entry=target, relation_type=rel.relation_type, via=node.id, hops=hops + 1,
            ))
            queue.append((target, hops + 1))
    return found


def related(index: MemoryIndex, entry_id: str, depth: int = 1) -> list[RelatedEntry]:
    """Entries reachable from entry_id within `depth` hops. Read-only."""
    entries = index.by_id()
    start = entries.get(entry_id)
    if start is None:
        return []
    return _walk(entries, start, max(0, depth), {entry_id})


def expand_with_relations(
    index: MemoryIndex,
    results: Sequence[ScoredEntry],
    depth: int = 1,
    now: datetime | None = None,
) -> dict[str, list[RelatedEntry]]:
    """Related entries for each ranked result, keyed by result id.

    Top-level result ids are never reported as related. Each expanded result
    gets access_count += 1 and last_accessed = now: the index is modified and
    must be saved by the caller.
    """
    entries = index.by_id()
    top_ids = {r.entry.id for r in results}
    stamp = (now or datetime.now(UTC)).isoformat()
    expanded: dict[str, list[RelatedEntry]] = {}
    for r in results:
        expanded[r.entry.id] = _walk(entries, r.entry, max(0, depth), set(top_ids))
        r.entry.access_count += 1
        r.entry.last_accessed = stamp
    return expanded


# ---------------------------------------------------------------------------
# Auto-linking
# ---------------------------------------------------------------------------


def auto_link(
    index: MemoryIndex,
    entry: MemoryEntry,
    threshold: float = AUTO_LINK_THRESHOLD,
    max_links: int = AUTO_LINK_MAX,
) -> list[tuple[str, float]]:
    """Link entry to its most similar embedded neighbours with symmetric `related` edges.

    Returns the (target_id, similarity) pairs that gained an edge, best first.
    Pairs that were already linked both ways are not reported again.
    """
    vec = get_embedding_float32(entry)
    if vec is None:
        return []
    candidates: list[tuple[str, float, MemoryEntry]] = []
    for other in index.entries:
        if other is entry or other.id == entry.id:
            continue
        other_vec = get_embedding_float32(other)
        if other_vec is None:
            continue
        sim = cosine_similarity(vec, other_vec)
        if sim >= threshold:
            candidates.append((other.id, sim, other))
    candidates.sort(key=lambda c: c[1], reverse=True)

    linked: list[tuple[str, float]] = []
    for other_id, sim, other in candidates[: max(0, max_links)]:
        added = add_relation(entry, other_id, RelationType.RELATED)
        added_back = add_relation(other, entry.id, RelationType.RELATED)
        if added or added_back:
            linked.append((other_id, sim))
    return linked
