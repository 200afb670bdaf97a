"""Data models for the memory index."""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


def new_memory_id() -> str:
    """Generate a compact memory ID: m-<12 hex chars>."""
    return "m-" + uuid.uuid4().hex[:12]


class MemoryType(str, Enum):
    LEARNING = "learning"
    DECISION = "decision"
    INTERACTION = "interaction"
    EVENT = "event"
    INSIGHT = "insight"


class RelationType(str, Enum):
    CAUSED = "caused"
    CAUSED_BY = "caused_by"
    RELATED = "related"
    SUPERSEDES = "supersedes"
    CONTRADICTS = "contradicts"
    ELABORATES = "elaborates"

    @property
    def inverse(self) -> RelationType:
        return _INVERSE[self]


_INVERSE: dict[RelationType, RelationType] = {
    RelationType.CAUSED: RelationType.CAUSED_BY,
    RelationType.CAUSED_BY: RelationType.CAUSED,
    RelationType.RELATED: RelationType.RELATED,
    RelationType.SUPERSEDES: RelationType.SUPERSEDES,
    RelationType.CONTRADICTS: RelationType.CONTRADICTS,
    RelationType.ELABORATES: RelationType.ELABORATES,
}

if set(_INVERSE) != set(RelationType) or set(_INVERSE.values()) != set(RelationType):
    msg = "relation inverse mapping must cover every RelationType"
    raise RuntimeError(msg)


def _as_int(value: Any, default: int) -> int:
    """Integer from a decoded JSON value; default for null, bools, non-numeric text and non-finite floats."""
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if isinstance(value, float) and not math.isfinite(value):
        return default
    return int(value)


def _as_str(value: Any, default: str) -> str:
    """String from a decoded JSON value. Numbers are stringified; null and containers use default."""
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return default


# Keys written by MemoryEntry.to_dict; anything else on a line is carried in `extra`.
_ENTRY_KEYS = frozenset({
    "id", "timestamp", "date", "type", "importance", "content", "file", "line",
    "tags", "context", "embedding", "relations", "accessCount", "lastAccessed",
})


@dataclass
class Relation:
    """A typed edge from the owning entry to target_id."""

    target_id: str
    relation_type: RelationType

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Relation | None:
        """Parse {targetId, relationType}; returns None for unusable edges."""
        target = d.get("targetId")
        try:
            rtype = RelationType(d.get("relationType"))
        except ValueError:
            return None
        if not isinstance(target, str) or not target:
            return None
        return cls(target_id=target, relation_type=rtype)

    def to_dict(self) -> dict[str, str]:
        return {"targetId": self.target_id, "relationType": self.relation_type.value}


@dataclass
class MemoryEntry:
    """One knowledge record (one line of the index file)."""

    id: str
    timestamp: str
    type: str                          # learning | decision | interaction | event | insight
    importance: int
    content: str
    date: str = ""
    file: str = ""
    line: int | None = None
    tags: list[str] = field(default_factory=list)
    context: str | None = None
    # Either the legacy float array or the base64 float32 blob, as stored.
    embedding: list[float] | str | None = None
    relations: list[Relation] = field(default_factory=list)
    access_count: int = 0
    last_accessed: str | None = None
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def has_embedding(self) -> bool:
        return bool(self.embedding)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> MemoryEntry:
        """Build an entry from a decoded JSON object, defaulting optional fields."""
        tags = d.get("tags")
        line = d.get("line")
        relations = [
            rel
            for raw in d.get("relations") or []
            if isinstance(raw, dict) and (rel := Relation.from_dict(raw)) is not None
        ]
        embedding = d.get("embedding")
        if not isinstance(embedding, (list, str)):
            embedding = None
        importance = _as_int(d.get("importance"), 5)
        access_count = _as_int(d.get("accessCount"), 0)
        return cls(
            id=_as_str(d.get("id"), ""),
            timestamp=_as_str(d.get("timestamp"), ""),
            type=_as_str(d.get("type"), MemoryType.LEARNING.value),
            importance=importance,
            content=_as_str(d.get("content"), ""),
            date=_as_str(d.get("date"), ""),
            file=d.get("file") if isinstance(d.get("file"), str) else "",
            line=line if isinstance(line, int) and not isinstance(line, bool) else None,
            tags=[str(t) for t in tags] if isinstance(tags, list) else [],
            context=d.get("context") if isinstance(d.get("context"), str) else None,
            embedding=embedding or None,
            relations=relations,
            access_count=access_count,
            last_accessed=_as_str(d.get("lastAccessed"), "") or None,
            extra={k: v for k, v in d.items() if k not in _ENTRY_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            **self.extra,
            "id": self.id,
            "timestamp": self.timestamp,
            "date": self.date,
            "type": self.type,
            "importance": self.importance,
            "content": self.content,
            "file": self.file,
            "tags": list(self.tags),
        }
        if self.line is not None:
            d["line"] = self.line
        if self.context is not None:
            d["context"] = self.context
        if self.embedding is not None:
            d["embedding"] = self.embedding
        if self.relations:
            d["relations"] = [r.to_dict() for r in self.relations]
        if self.access_count:
            d["accessCount"] = self.access_count
        if self.last_accessed:
            d["lastAccessed"] = self.last_accessed
        return d


@dataclass
class MemoryIndex:
    """The whole collection: header fields plus entries in insertion order."""

    version: str = ""
    last_updated: str = ""
    entries: list[MemoryEntry] = field(default_factory=list)
    embedding_model: str | None = None

    def get(self, entry_id: str) -> MemoryEntry | None:
        for entry in self.entries:
            if entry.id == entry_id:
                return entry
        return None

    def by_id(self) -> dict[str, MemoryEntry]:
        """Map of id → entry (first occurrence wins)."""
        out: dict[str, MemoryEntry] = {}
        for entry in self.entries:
            out.setdefault(entry.id, entry)
        return out
