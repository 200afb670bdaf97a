"""Memory tools exposed to a plugin host.

The host hands register() an object with:

    api.plugin_config               # arbitrary JSON, parsed by parse_config()
    api.logger                      # info / warning / error
    api.register_tool(tool_def)     # ToolDef(name, label, description, parameters, execute)

Every tool's execute(call_id, params) returns
    {"content": [{"type": "text", "text": ...}], "details": {...}}

Tools:
    memory_v2_search(query, maxResults?, minScore?, depth?)
    memory_v2_get(path, from?, lines?)
    memory_v2_add(content, type?, importance?, tags?, file?, line?, context?, id?)
    memory_v2_embed(limit?, force?)
    memory_v2_link(sourceId, targetId, relationType)
    memory_v2_related(id, depth?)
    memory_v2_migrate()
    memory_v2_stats()
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from memindex import codec
from memindex.config import MemoryConfig, parse_config
from memindex.embedder import EmbeddingProvider, create_provider
from memindex.graph import auto_link, related
from memindex.models import MemoryEntry, MemoryType, RelationType, new_memory_id
from memindex.search import result_path, search, snippet
from memindex.store import IndexStore

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

PLUGIN_ID = "memory-v2"
PLUGIN_NAME = "Memory V2"
PLUGIN_DESCRIPTION = (
    "Structured memory with typed entries, importance scores, tags, relations, and semantic search"
)

ToolResult = dict[str, Any]


class HostLogger(Protocol):
    def info(self, msg: str, *args: Any) -> None: ...
    def warning(self, msg: str, *args: Any) -> None: ...
    def error(self, msg: str, *args: Any) -> None: ...


class PluginApi(Protocol):
    plugin_config: Any
    logger: HostLogger

    def register_tool(self, tool: ToolDef) -> None: ...


@dataclass
class ToolDef:
    name: str
    label: str
    description: str
    parameters: dict[str, Any]
    execute: Callable[[str, dict[str, Any]], Awaitable[ToolResult]]

    def schema(self) -> dict[str, Any]:
        """MCP-style tool description."""
        return {"name": self.name, "description": self.description, "inputSchema": self.parameters}


def _text(text: str, **details: Any) -> ToolResult:
    return {"content": [{"type": "text", "text": text}], "details": details}


def _num(params: dict[str, Any], key: str, default: float) -> float:
    """Finite number param, or default."""
    value = params.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if not math.isfinite(value):
        return default
    return value


def _str(params: dict[str, Any], key: str, default: str = "") -> str:
    value = params.get(key)
    return value if isinstance(value, str) else default


def _importance_bucket(importance: int) -> str:
    if importance >= 8:
        return "high (8-10)"
    if importance >= 5:
        return "medium (5-7)"
    return "low (1-4)"


class MemoryTools:
    """Tool handlers bound to one configuration."""

    def __init__(
        self,
        cfg: MemoryConfig,
        logger: HostLogger,
        provider: EmbeddingProvider | None = None,
    ) -> None:
        self.cfg = cfg
        self.logger = logger
        self.provider = provider

    def store(self) -> IndexStore:
        store = IndexStore(self.cfg.index_path)
        if store.migrated_legacy:
            self.logger.info("memory-v2: migrated legacy index to %s", store.path)
        return store

    # ------------------------------------------------------------------
    # memory_v2_search
    # ------------------------------------------------------------------

    async def search(self, _call_id: str, params: dict[str, Any]) -> ToolResult:
        query = _str(params, "query")
        max_results = int(_num(params, "maxResults", self.cfg.search.max_results))
        min_score = float(_num(params, "minScore", self.cfg.search.min_score))
        depth = int(_num(params, "depth", self.cfg.search.relation_depth))

        query_vector = None
        if self.provider is not None and query.strip():
            query_vector = await self.provider.embed(query)

        store = self.store()
        index = store.load()
        outcome = search(
            index, query, query_vector,
            max_results=max_results, min_score=min_score, depth=depth,
        )
        if outcome.dirty:
            store.save(index)

        return _text(
            outcome.format_text(),
            results=outcome.format_results(),
            searchMode=outcome.mode,
        )

    # ------------------------------------------------------------------
    # memory_v2_get
    # ------------------------------------------------------------------

    def _resolve(self, rel_path: str) -> Path:
        if rel_path.startswith("~"):
            return Path(rel_path).expanduser()
        path = Path(rel_path)
        if not path.is_absolute():
            return self.cfg.workspace_dir / path
        return path

    async def get(self, _call_id: str, params: dict[str, Any]) -> ToolResult:
        rel_path = _str(params, "path")
        start = params.get("from")
        count = params.get("lines")
        try:
            content = self._resolve(rel_path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return _text(f"Could not read file: {rel_path}", path=rel_path, error=True)

        if isinstance(start, int) or isinstance(count, int):
            lines = content.split("\n")
            first = max(0, (start if isinstance(start, int) else 1) - 1)
            last = first + count if isinstance(count, int) and count > 0 else len(lines)
            content = "\n".join(lines[first:last])
        return _text(content, path=rel_path)

    # ------------------------------------------------------------------
    # memory_v2_add
    # ------------------------------------------------------------------

    async def add(self, _call_id: str, params: dict[str, Any]) -> ToolResult:
        content = _str(params, "content").strip()
        if not content:
            return _text("Memory content is required.", error=True)
        mtype = _str(params, "type", MemoryType.LEARNING.value)
        if mtype not in {t.value for t in MemoryType}:
            valid = ", ".join(t.value for t in MemoryType)
            return _text(f"Unknown memory type: {mtype} (expected one of {valid})", error=True)
        tags = params.get("tags")
        line = params.get("line")
        context = params.get("context")
        timestamp = codec.now_iso()
        entry = MemoryEntry(
            id=_str(params, "id") or new_memory_id(),
            timestamp=timestamp,
            type=mtype,
            importance=max(1, min(10, int(_num(params, "importance", 5)))),
            content=content,
            file=_str(params, "file"),
            line=line if isinstance(line, int) and not isinstance(line, bool) else None,
            tags=[str(t) for t in tags] if isinstance(tags, list) else [],
            context=context if isinstance(context, str) else None,
        )
        store = self.store()
        store.append(entry)
        return _text(f"Stored memory {entry.id} ({entry.type}, importance {entry.importance})", id=entry.id)

    # ------------------------------------------------------------------
    # memory_v2_embed
    # ------------------------------------------------------------------

    async def embed(self, _call_id: str, params: dict[str, Any]) -> ToolResult:
        if self.provider is None:
            return _text(
                "Embeddings not configured. Set embedding.provider to 'local' in plugin config.",
                error=True,
            )
        if not await self.provider.initialize():
            return _text(
                "Failed to load embedding model. Check that fastembed is installed.",
                error=True,
            )

        limit = int(_num(params, "limit", 100))
        force = params.get("force") is True

        store = self.store()
        index = store.load()
        embedded = skipped = failed = 0
        fresh: list[MemoryEntry] = []

        for entry in index.entries:
            if embedded >= limit:
                break
            if entry.has_embedding and not force:
                skipped += 1
                continue
            vector = await self.provider.embed(entry.content)
            if vector is None:
                failed += 1
                continue
            if len(vector) != codec.DIMENSIONS:
                self.logger.warning(
                    "memory-v2: %s produced a %d-dim vector for %s, expected %d",
                    self.cfg.embedding.model_name, len(vector), entry.id, codec.DIMENSIONS,
                )
                failed += 1
                continue
            codec.set_embedding(entry, vector)
            fresh.append(entry)
            embedded += 1

        links = 0
        if self.cfg.auto_link.enabled:
            for entry in fresh:
                links += len(auto_link(
                    index, entry,
                    threshold=self.cfg.auto_link.threshold,
                    max_links=self.cfg.auto_link.max_links,
                ))

        if embedded:
            index.embedding_model = self.cfg.embedding.model_name
            store.save(index)

        state = "enabled" if embedded or skipped else "disabled"
        return _text(
            f"Embedding complete: {embedded} embedded, {skipped} already had embeddings, "
            f"{failed} failed, {links} auto-links.\nSemantic search is now {state}.",
            embedded=embedded,
            skipped=skipped,
            failed=failed,
            autoLinks=links,
            model=self.cfg.embedding.model_name,
        )

    # ------------------------------------------------------------------
    # memory_v2_link / memory_v2_related
    # ------------------------------------------------------------------

    async def link(self, _call_id: str, params: dict[str, Any]) -> ToolResult:
        source_id = _str(params, "sourceId")
        target_id = _str(params, "targetId")
        try:
            rtype = RelationType(_str(params, "relationType", RelationType.RELATED.value))
        except ValueError:
            valid = ", ".join(t.value for t in RelationType)
            return _text(f"Unknown relation type (expected one of {valid})", error=True)

        result = self.store().link(source_id, target_id, rtype)
        if not result.ok:
            return _text(result.describe(), error=True, missing=result.missing)
        return _text(
            result.describe(),
            sourceId=source_id,
            targetId=target_id,
            relationType=rtype.value,
            inverseType=rtype.inverse.value,
        )

    async def related(self, _call_id: str, params: dict[str, Any]) -> ToolResult:
        entry_id = _str(params, "id")
        depth = int(_num(params, "depth", self.cfg.search.relation_depth))
        index = self.store().load()
        if index.get(entry_id) is None:
            return _text(f"Memory not found: {entry_id}", error=True)
        found = related(index, entry_id, depth=max(1, depth))
        items = [
            {
                "id": r.entry.id,
                "relationType": r.relation_type.value,
                "hops": r.hops,
                "via": r.via,
                "path": result_path(r.entry),
                "snippet": snippet(r.entry.content),
            }
            for r in found
        ]
        if not items:
            return _text(f"No related memories for {entry_id}.", related=[])
        lines = [f"{len(items)} related to {entry_id}:"]
        lines += [f"- ({i['relationType']}, {i['hops']} hop) {i['snippet']} ←{i['id']}" for i in items]
        return _text("\n".join(lines), related=items)

    # ------------------------------------------------------------------
    # memory_v2_migrate / memory_v2_stats
    # ------------------------------------------------------------------

    async def migrate(self, _call_id: str, _params: dict[str, Any]) -> ToolResult:
        result = self.store().migrate_binary()
        return _text(
            f"Binary migration: {result.migrated} converted, {result.already_binary} already binary, "
            f"{result.without_embedding} without embedding ({result.total} total).",
            migrated=result.migrated,
            alreadyBinary=result.already_binary,
            withoutEmbedding=result.without_embedding,
            total=result.total,
        )

    async def stats(self, _call_id: str, _params: dict[str, Any]) -> ToolResult:
        store = self.store()
        index = store.load()
        total = len(index.entries)
        by_type: dict[str, int] = {}
        by_importance: dict[str, int] = {}
        with_embeddings = binary = relations = 0
        for e in index.entries:
            by_type[e.type] = by_type.get(e.type, 0) + 1
            bucket = _importance_bucket(e.importance)
            by_importance[bucket] = by_importance.get(bucket, 0) + 1
            if e.has_embedding:
                with_embeddings += 1
                if codec.is_binary_embedding(e):
                    binary += 1
            relations += len(e.relations)
        pct = round(with_embeddings / total * 100) if total else 0
        provider = self.cfg.embedding.provider.value

        lines = [
            "Memory V2 Stats:",
            "-" * 30,
            f"Index: {store.path}",
            f"Total memories: {total}",
            f"With embeddings: {with_embeddings}/{total} ({pct}%), {binary} binary",
            f"Relations: {relations}",
            f"Embedding model: {index.embedding_model or 'none'}",
            f"Provider: {provider}",
            "",
            "By type: " + ", ".join(f"{k}:{v}" for k, v in by_type.items()),
            "By importance: " + ", ".join(f"{k}:{v}" for k, v in by_importance.items()),
        ]
        if pct < 100 and self.cfg.embedding.enabled:
            lines += ["", "Run memory_v2_embed to enable semantic search for all memories."]
        return _text(
            "\n".join(lines),
            total=total,
            withEmbeddings=with_embeddings,
            binaryEmbeddings=binary,
            relations=relations,
            embeddingModel=index.embedding_model,
            provider=provider,
            byType=by_type,
            byImportance=by_importance,
            version=index.version,
        )

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def tool_defs(self) -> list[ToolDef]:
        types = [t.value for t in MemoryType]
        relations = [t.value for t in RelationType]
        return [
            ToolDef(
                name="memory_v2_search",
                label="Memory Search (V2)",
                description=(
                    "Search structured memories. Uses hybrid keyword + semantic search when "
                    "embeddings are enabled, and lists related memories for each hit."
                ),
                parameters={
                    "type": "object",
                    "properties": {
                        "query": {"type": "string", "description": "Search query"},
                        "maxResults": {"type": "number", "description": "Max results (default: 10)"},
                        "minScore": {"type": "number", "description": "Min score threshold (default: 0.1)"},
                        "depth": {"type": "number", "description": "Relation hops per result (default: 1)"},
                    },
                    "required": ["query"],
                },
                execute=self.search,
            ),
            ToolDef(
                name="memory_v2_get",
                label="Memory Get (V2)",
                description="Read content from a memory file.",
                parameters={
                    "type": "object",
                    "properties": {
                        "path": {"type": "string", "description": "Path to memory file"},
                        "from": {"type": "number", "description": "Starting line number"},
                        "lines": {"type": "number", "description": "Number of lines to read"},
                    },
                    "required": ["path"],
                },
                execute=self.get,
            ),
            ToolDef(
                name="memory_v2_add",
                label="Memory Add (V2)",
                description="Store a new typed memory.",
                parameters={
                    "type": "object",
                    "properties": {
                        "content": {"type": "string"},
                        "type": {"type": "string", "enum": types, "default": "learning"},
                        "importance": {"type": "number", "description": "1-10 (default: 5)"},
                        "tags": {"type": "array", "items": {"type": "string"}},
                        "file": {"type": "string", "description": "Source file, e.g. daily/2026-02-11.md"},
                        "line": {"type": "number"},
                        "context": {"type": "string"},
                        "id": {"type": "string", "description": "Explicit id (generated if omitted)"},
                    },
                    "required": ["content"],
                },
                execute=self.add,
            ),
            ToolDef(
                name="memory_v2_embed",
                label="Memory Embed (V2)",
                description="Generate embeddings for memories. Run this to enable semantic search.",
                parameters={
                    "type": "object",
                    "properties": {
                        "limit": {"type": "number", "description": "Max memories to embed (default: 100)"},
                        "force": {"type": "boolean", "description": "Re-embed even if embedding exists"},
                    },
                },
                execute=self.embed,
            ),
            ToolDef(
                name="memory_v2_link",
                label="Memory Link (V2)",
                description="Create a typed relation between two memories (the inverse edge is added too).",
                parameters={
                    "type": "object",
                    "properties": {
                        "sourceId": {"type": "string"},
                        "targetId": {"type": "string"},
                        "relationType": {"type": "string", "enum": relations, "default": "related"},
                    },
                    "required": ["sourceId", "targetId"],
                },
                execute=self.link,
            ),
            ToolDef(
                name="memory_v2_related",
                label="Memory Related (V2)",
                description="List memories related to a memory through the relation graph.",
                parameters={
                    "type": "object",
                    "properties": {
                        "id": {"type": "string"},
                        "depth": {"type": "number", "description": "Hops to follow (default: 1)"},
                    },
                    "required": ["id"],
                },
                execute=self.related,
            ),
            ToolDef(
                name="memory_v2_migrate",
                label="Memory Migrate (V2)",
                description="Convert legacy float-array embeddings to the compact binary encoding.",
                parameters={"type": "object", "properties": {}},
                execute=self.migrate,
            ),
            ToolDef(
                name="memory_v2_stats",
                label="Memory Stats (V2)",
                description="Show memory index statistics.",
                parameters={"type": "object", "properties": {}},
                execute=self.stats,
            ),
        ]


def register(api: PluginApi, cfg: MemoryConfig | None = None) -> MemoryTools:
    """Register all memory tools with the host. Returns the bound handlers.

    cfg overrides api.plugin_config when the host has already resolved it.
    """
    cfg = cfg or parse_config(api.plugin_config)
    provider = create_provider(cfg.embedding)
    tools = MemoryTools(cfg, api.logger, provider)

    if provider is not None:
        _prewarm(provider, api.logger)

    api.logger.info("memory-v2: plugin loaded (embeddings: %s)", cfg.embedding.provider.value)
    for tool in tools.tool_defs():
        api.register_tool(tool)
    return tools


_background: set[asyncio.Task[Any]] = set()


def _prewarm(provider: EmbeddingProvider, logger: HostLogger) -> None:
    """Start loading the model in the background if an event loop is running."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return

    async def warm() -> None:
        if await provider.initialize():
            logger.info("memory-v2: embedding model loaded")
        else:
            logger.warning("memory-v2: embedding model failed to load, falling back to keyword search")

    task = loop.create_task(warm())
    _background.add(task)
    task.add_done_callback(_background.discard)
