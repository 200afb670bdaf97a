"""Search pipeline: rank → expand with relations → formatted results.

search() mutates the index it is given (access tracking on every expanded
result) and reports that through SearchOutcome.dirty; the caller is expected
to IndexStore.save() the same index afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from memindex.graph import RelatedEntry, expand_with_relations
from memindex.scoring import rank

if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime

    from memindex.models import MemoryEntry, MemoryIndex
    from memindex.scoring import ScoredEntry

_DAILY_PREFIX = "daily/"
_SNIPPET_CHARS = 100


@dataclass
class SearchOutcome:
    hits: list[ScoredEntry]
    related: dict[str, list[RelatedEntry]] = field(default_factory=dict)
    mode: str = "keyword"          # keyword | hybrid
    dirty: bool = False

    def format_results(self) -> list[dict[str, Any]]:
        return [format_hit(h, self.related.get(h.entry.id, [])) for h in self.hits]

    def format_text(self) -> str:
        if not self.hits:
            return f"No matching memories found ({self.mode})."
        lines = [f"Found {len(self.hits)} memories ({self.mode}):", ""]
        for i, hit in enumerate(self.hits, start=1):
            e = hit.entry
            lines.append(
                f"{i}. [{str(e.type).upper()}] (importance: {e.importance}, "
                f"score: {hit.score * 100:.0f}%) {snippet(e.content)}"
            )
            for rel in self.related.get(e.id, []):
                lines.append(f"   ↳ {rel.relation_type.value}: {snippet(rel.entry.content)} ←{rel.entry.id}")
        return "\n".join(lines)


def result_path(entry: MemoryEntry) -> str:
    """Workspace-relative path for an entry's source file ("" when it has none)."""
    file = entry.file or ""
    if file.startswith(_DAILY_PREFIX):
        return f"memory/{file}"
    return file


def snippet(text: str, limit: int = _SNIPPET_CHARS) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def format_hit(hit: ScoredEntry, related: Sequence[RelatedEntry] = ()) -> dict[str, Any]:
    e = hit.entry
    return {
        "id": e.id,
        "path": result_path(e),
        "line": e.line,
        "score": round(hit.score, 2),
        "keywordScore": round(hit.keyword_score, 2),
        "semanticScore": round(hit.semantic_score, 2),
        "type": e.type,
        "importance": e.importance,
        "tags": list(e.tags),
        "snippet": e.content,
        "hasEmbedding": e.has_embedding,
        "related": [
            {
                "id": r.entry.id,
                "relationType": r.relation_type.value,
                "hops": r.hops,
                "via": r.via,
                "snippet": snippet(r.entry.content),
            }
            for r in related
        ],
    }


def search(
    index: MemoryIndex,
    query: str,
    query_vector: Sequence[float] | None = None,
    *,
    max_results: int = 10,
    min_score: float = 0.1,
    depth: int = 1,
    now: datetime | None = None,
) -> SearchOutcome:
    hits = rank(
        index, query, query_vector,
        max_results=max_results, min_score=min_score, now=now,
    )
    mode = "hybrid" if query_vector is not None else "keyword"
    if not hits:
        return SearchOutcome(hits=[], mode=mode)
    related = expand_with_relations(index, hits, depth=depth, now=now)
    return SearchOutcome(hits=hits, related=related, mode=mode, dirty=True)
