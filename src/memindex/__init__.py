"""File-backed memory index: typed memories, hybrid search, relation graph.

Layout:
    memory/index/
        memory-index.jsonl    # header line + one memory per line (source of truth)
        memory-index.json     # legacy single-JSON index, converted on first use

memory-index.jsonl line types:
    {"_meta": true, "version": "3.0", "lastUpdated": ..., "embeddingModel": ...,
     "embeddingFormat": "base64-f32", "dimensions": 384}                  # header (line 1)
    {"id": "m-<12hex>", "timestamp": ..., "date": ..., "type": ..., "importance": N,
     "content": ..., "tags": [...], "embedding": "<base64>",
     "relations": [{"targetId": ..., "relationType": ...}], "accessCount": N}  # memory

Single writer: save() rewrites the file, append() adds one line.
"""

from memindex.config import MemoryConfig, load_config, parse_config
from memindex.models import MemoryEntry, MemoryIndex, MemoryType, Relation, RelationType
from memindex.search import SearchOutcome, search
from memindex.store import IndexStore

__all__ = [
    "IndexStore",
    "MemoryConfig",
    "MemoryEntry",
    "MemoryIndex",
    "MemoryType",
    "Relation",
    "RelationType",
    "SearchOutcome",
    "load_config",
    "parse_config",
    "search",
]
