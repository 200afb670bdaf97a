"""
Tests for the memory tools as a plugin host sees them.
"""

import json

import numpy as np
import pytest

from memindex import codec
from memindex.config import MemoryConfig
from memindex.embedder import EmbeddingProvider
from memindex.models import MemoryIndex, RelationType
from memindex.store import IndexStore
from memindex.tools import MemoryTools, register

from conftest import BrokenBackend, FakeApi, FakeBackend, RecordingLogger, basis, make_entry, mix, write_jsonl

TOOL_NAMES = {
    "memory_v2_search",
    "memory_v2_get",
    "memory_v2_add",
    "memory_v2_embed",
    "memory_v2_link",
    "memory_v2_related",
    "memory_v2_migrate",
    "memory_v2_stats",
}


@pytest.fixture
def cfg(tmp_path, index_path):
    return MemoryConfig(index_path=index_path, workspace_dir=tmp_path)


@pytest.fixture
def tools(cfg):
    return MemoryTools(cfg, RecordingLogger())


def _text(result):
    return result["content"][0]["text"]


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegister:

    def test_registers_every_tool(self, index_path):
        api = FakeApi({"indexPath": str(index_path)})
        register(api)
        assert set(api.tools) == TOOL_NAMES
        assert ("info", "memory-v2: plugin loaded (embeddings: none)") in api.logger.records

    def test_garbage_config_uses_defaults(self):
        api = FakeApi("not a dict")
        tools = register(api)
        assert tools.provider is None
        assert tools.cfg.search.max_results == 10

    def test_local_provider_configured(self, index_path):
        api = FakeApi({"indexPath": str(index_path), "embedding": {"provider": "local"}})
        tools = register(api)
        assert tools.provider is not None
        assert ("info", "memory-v2: plugin loaded (embeddings: local)") in api.logger.records

    def test_schemas(self, tools):
        defs = {d.name: d.schema() for d in tools.tool_defs()}
        assert defs["memory_v2_search"]["inputSchema"]["required"] == ["query"]
        assert "caused_by" in defs["memory_v2_link"]["inputSchema"]["properties"]["relationType"]["enum"]


# ---------------------------------------------------------------------------
# memory_v2_search
# ---------------------------------------------------------------------------


class TestSearchTool:

    @pytest.mark.asyncio
    async def test_entry_without_file_has_empty_path(self, tools, index_path):
        write_jsonl(index_path, [
            {"id": "m1", "timestamp": "2026-02-11T12:00:00Z", "type": "learning",
             "importance": 7, "content": "calendar api enabled", "tags": ["calendar"]},
        ])
        result = await tools.search("c1", {"query": "calendar"})
        [hit] = result["details"]["results"]
        assert hit["path"] == ""
        assert result["details"]["searchMode"] == "keyword"

    @pytest.mark.asyncio
    async def test_json_config_reads_jsonl_sibling(self, tmp_path):
        index_dir = tmp_path / "memory" / "index"
        index_dir.mkdir(parents=True)
        (index_dir / "memory-index.json").write_text("")
        write_jsonl(index_dir / "memory-index.jsonl", [
            {"id": "m3", "timestamp": "2026-02-11T14:00:00Z", "type": "decision", "importance": 8,
             "content": "calendar sync moved to nightly", "file": "daily/2026-02-11.md", "line": 3},
        ])
        api = FakeApi({"indexPath": str(index_dir / "memory-index.json"), "workspaceDir": str(tmp_path)})
        register(api)
        result = await api.tools["memory_v2_search"].execute("c1", {"query": "calendar"})
        [hit] = result["details"]["results"]
        assert hit["id"] == "m3"
        assert hit["path"] == "memory/daily/2026-02-11.md"
        assert hit["line"] == 3

    @pytest.mark.asyncio
    async def test_search_persists_access(self, tools, index_path):
        store = IndexStore(index_path)
        store.save(MemoryIndex(entries=[make_entry("m1", "deploy checklist"), make_entry("m2", "other")]))
        await tools.search("c1", {"query": "deploy"})
        index = store.load()
        assert index.get("m1").access_count == 1
        assert index.get("m2").access_count == 0

    @pytest.mark.asyncio
    async def test_no_results_leaves_file_alone(self, tools, index_path):
        IndexStore(index_path).save(MemoryIndex(entries=[make_entry("m1", "deploy checklist")]))
        before = index_path.read_text()
        result = await tools.search("c1", {"query": "zebra"})
        assert _text(result) == "No matching memories found (keyword)."
        assert result["details"]["results"] == []
        assert index_path.read_text() == before

    @pytest.mark.asyncio
    async def test_non_finite_params_use_defaults(self, tools, index_path):
        IndexStore(index_path).save(MemoryIndex(entries=[make_entry("m1", "deploy checklist")]))
        result = await tools.search("c1", {
            "query": "deploy", "maxResults": float("inf"), "minScore": float("nan"), "depth": float("-inf"),
        })
        assert [hit["id"] for hit in result["details"]["results"]] == ["m1"]

    @pytest.mark.asyncio
    async def test_hybrid_search(self, cfg, index_path):
        backend = FakeBackend(vectors={"calendar": basis(0)})
        provider = EmbeddingProvider("fake", backend_factory=lambda name: backend)
        tools = MemoryTools(cfg, RecordingLogger(), provider)
        IndexStore(index_path).save(MemoryIndex(entries=[
            make_entry("m1", "meeting schedule", embedding=basis(0).tolist()),
            make_entry("m2", "grocery list", embedding=basis(5).tolist()),
        ]))
        result = await tools.search("c1", {"query": "calendar"})
        assert result["details"]["searchMode"] == "hybrid"
        assert [h["id"] for h in result["details"]["results"]] == ["m1"]

    @pytest.mark.asyncio
    async def test_failed_model_falls_back_to_keyword_scores(self, cfg, index_path):
        provider = EmbeddingProvider("broken", backend_factory=lambda name: BrokenBackend())
        tools = MemoryTools(cfg, RecordingLogger(), provider)
        IndexStore(index_path).save(MemoryIndex(entries=[make_entry("m1", "deploy checklist")]))
        result = await tools.search("c1", {"query": "deploy"})
        assert result["details"]["searchMode"] == "keyword"
        assert [h["id"] for h in result["details"]["results"]] == ["m1"]


# ---------------------------------------------------------------------------
# memory_v2_get
# ---------------------------------------------------------------------------


class TestGetTool:

    @pytest.mark.asyncio
    async def test_reads_workspace_file(self, tools, tmp_path):
        daily = tmp_path / "memory" / "daily"
        daily.mkdir(parents=True)
        (daily / "2026-02-11.md").write_text("l1\nl2\nl3\nl4")
        result = await tools.get("c1", {"path": "memory/daily/2026-02-11.md"})
        assert _text(result) == "l1\nl2\nl3\nl4"

    @pytest.mark.asyncio
    async def test_line_window(self, tools, tmp_path):
        (tmp_path / "notes.md").write_text("l1\nl2\nl3\nl4")
        result = await tools.get("c1", {"path": "notes.md", "from": 2, "lines": 2})
        assert _text(result) == "l2\nl3"
        result = await tools.get("c1", {"path": "notes.md", "from": 3})
        assert _text(result) == "l3\nl4"

    @pytest.mark.asyncio
    async def test_missing_file_is_error(self, tools):
        result = await tools.get("c1", {"path": "nope.md"})
        assert result["details"]["error"] is True
        assert _text(result) == "Could not read file: nope.md"


# ---------------------------------------------------------------------------
# memory_v2_add
# ---------------------------------------------------------------------------


class TestAddTool:

    @pytest.mark.asyncio
    async def test_add_appends_entry(self, tools, index_path):
        result = await tools.add("c1", {
            "content": "  Switched CI to nightly builds  ",
            "type": "decision",
            "importance": 42,
            "tags": ["ci"],
            "file": "daily/2026-02-11.md",
            "line": 8,
        })
        entry_id = result["details"]["id"]
        assert entry_id.startswith("m-")
        entry = IndexStore(index_path).load().get(entry_id)
        assert entry.content == "Switched CI to nightly builds"
        assert entry.type == "decision"
        assert entry.importance == 10
        assert entry.tags == ["ci"]
        assert entry.line == 8
        assert entry.date == codec.normalize_date(entry.timestamp)

    @pytest.mark.asyncio
    async def test_infinite_importance_uses_default(self, tools, index_path):
        result = await tools.add("c1", {"content": "x", "importance": float("inf")})
        assert IndexStore(index_path).load().get(result["details"]["id"]).importance == 5

    @pytest.mark.asyncio
    async def test_explicit_id(self, tools, index_path):
        await tools.add("c1", {"content": "x", "id": "custom-1"})
        assert IndexStore(index_path).load().get("custom-1") is not None

    @pytest.mark.asyncio
    async def test_rejects_empty_content(self, tools, index_path):
        result = await tools.add("c1", {"content": "   "})
        assert result["details"]["error"] is True
        assert not index_path.exists()

    @pytest.mark.asyncio
    async def test_rejects_unknown_type(self, tools):
        result = await tools.add("c1", {"content": "x", "type": "gossip"})
        assert result["details"]["error"] is True
        assert "gossip" in _text(result)


# ---------------------------------------------------------------------------
# memory_v2_embed
# ---------------------------------------------------------------------------


class TestEmbedTool:

    @pytest.mark.asyncio
    async def test_not_configured(self, tools):
        result = await tools.embed("c1", {})
        assert result["details"]["error"] is True
        assert _text(result).startswith("Embeddings not configured.")

    @pytest.mark.asyncio
    async def test_model_failure(self, cfg):
        provider = EmbeddingProvider("broken", backend_factory=lambda name: BrokenBackend())
        tools = MemoryTools(cfg, RecordingLogger(), provider)
        result = await tools.embed("c1", {})
        assert result["details"]["error"] is True
        assert _text(result) == "Failed to load embedding model. Check that fastembed is installed."

    @pytest.mark.asyncio
    async def test_embeds_and_auto_links(self, cfg, index_path):
        backend = FakeBackend(vectors={
            "alpha": basis(0),
            "alpha again": mix(basis(0), basis(1), 0.1),
            "unrelated": basis(7),
        })
        provider = EmbeddingProvider("fake", backend_factory=lambda name: backend)
        tools = MemoryTools(cfg, RecordingLogger(), provider)
        store = IndexStore(index_path)
        store.save(MemoryIndex(entries=[
            make_entry("a", "alpha"),
            make_entry("b", "alpha again"),
            make_entry("c", "unrelated"),
        ]))

        result = await tools.embed("c1", {})
        details = result["details"]
        assert (details["embedded"], details["skipped"], details["failed"]) == (3, 0, 0)
        assert details["autoLinks"] == 1
        assert "Semantic search is now enabled." in _text(result)

        index = store.load()
        assert index.embedding_model == cfg.embedding.model_name
        assert all(isinstance(e.embedding, str) for e in index.entries)
        assert [(r.target_id, r.relation_type) for r in index.get("a").relations] == [("b", RelationType.RELATED)]
        assert [(r.target_id, r.relation_type) for r in index.get("b").relations] == [("a", RelationType.RELATED)]
        assert index.get("c").relations == []

        again = await tools.embed("c1", {})
        assert (again["details"]["embedded"], again["details"]["skipped"]) == (0, 3)

    @pytest.mark.asyncio
    async def test_limit_and_force(self, cfg, index_path, fake_provider):
        tools = MemoryTools(cfg, RecordingLogger(), fake_provider)
        tools.cfg.auto_link.enabled = False
        store = IndexStore(index_path)
        store.save(MemoryIndex(entries=[make_entry(f"m{i}", f"text {i}") for i in range(4)]))

        first = await tools.embed("c1", {"limit": 2})
        assert first["details"]["embedded"] == 2
        assert sum(e.has_embedding for e in store.load().entries) == 2

        forced = await tools.embed("c1", {"force": True})
        assert forced["details"]["embedded"] == 4
        assert forced["details"]["autoLinks"] == 0

    @pytest.mark.asyncio
    async def test_wrong_dimension_vector_counts_as_failed(self, cfg, index_path):
        backend = FakeBackend(vectors={"wide text": np.ones(768, dtype=np.float32)})
        provider = EmbeddingProvider("fake", backend_factory=lambda name: backend)
        logger = RecordingLogger()
        tools = MemoryTools(cfg, logger, provider)
        store = IndexStore(index_path)
        store.save(MemoryIndex(entries=[make_entry("w", "wide text"), make_entry("n", "normal text")]))

        result = await tools.embed("c1", {})
        details = result["details"]
        assert (details["embedded"], details["failed"]) == (1, 1)
        index = store.load()
        assert not index.get("w").has_embedding
        assert index.get("n").has_embedding
        assert any(level == "warning" and "768-dim" in msg for level, msg in logger.records)

    @pytest.mark.asyncio
    async def test_infinite_limit_uses_default(self, cfg, index_path, fake_provider):
        tools = MemoryTools(cfg, RecordingLogger(), fake_provider)
        IndexStore(index_path).save(MemoryIndex(entries=[make_entry("m1", "text")]))
        result = await tools.embed("c1", {"limit": float("inf")})
        assert result["details"]["embedded"] == 1


# ---------------------------------------------------------------------------
# memory_v2_link / memory_v2_related
# ---------------------------------------------------------------------------


class TestLinkTools:

    @pytest.mark.asyncio
    async def test_link_and_related(self, tools, index_path):
        IndexStore(index_path).save(MemoryIndex(entries=[make_entry("a", "cause"), make_entry("b", "effect")]))
        result = await tools.link("c1", {"sourceId": "a", "targetId": "b", "relationType": "caused"})
        assert result["details"]["inverseType"] == "caused_by"

        rel = await tools.related("c2", {"id": "b"})
        assert rel["details"]["related"] == [{
            "id": "a", "relationType": "caused_by", "hops": 1, "via": "b", "path": "", "snippet": "cause",
        }]

    @pytest.mark.asyncio
    async def test_link_missing_id(self, tools, index_path):
        IndexStore(index_path).save(MemoryIndex(entries=[make_entry("a")]))
        before = index_path.read_text()
        result = await tools.link("c1", {"sourceId": "a", "targetId": "ghost", "relationType": "related"})
        assert result["details"]["error"] is True
        assert _text(result) == "Memory not found: target ghost"
        assert index_path.read_text() == before

    @pytest.mark.asyncio
    async def test_link_unknown_type(self, tools):
        result = await tools.link("c1", {"sourceId": "a", "targetId": "b", "relationType": "likes"})
        assert result["details"]["error"] is True

    @pytest.mark.asyncio
    async def test_related_unknown_id(self, tools):
        result = await tools.related("c1", {"id": "ghost"})
        assert result["details"]["error"] is True


# ---------------------------------------------------------------------------
# memory_v2_migrate / memory_v2_stats
# ---------------------------------------------------------------------------


class TestMaintenanceTools:

    @pytest.mark.asyncio
    async def test_migrate(self, tools, index_path):
        write_jsonl(index_path, [
            {"id": "a", "timestamp": "2026-01-01T00:00:00Z", "content": "x", "embedding": [0.5] * 384},
            {"id": "b", "timestamp": "2026-01-01T00:00:00Z", "content": "y"},
        ])
        result = await tools.migrate("c1", {})
        assert result["details"] == {"migrated": 1, "alreadyBinary": 0, "withoutEmbedding": 1, "total": 2}
        line = json.loads(index_path.read_text().splitlines()[1])
        assert np.allclose(codec.decode_embedding(line["embedding"]), 0.5)

    @pytest.mark.asyncio
    async def test_stats(self, tools, index_path):
        write_jsonl(index_path, [
            {"id": "a", "timestamp": "2026-02-11T12:00:00Z", "type": "decision", "importance": 9,
             "content": "x", "embedding": codec.encode_embedding(basis(0)),
             "relations": [{"targetId": "b", "relationType": "related"}]},
            {"id": "b", "timestamp": "2026-02-11T12:00:00Z", "type": "event", "importance": 6,
             "content": "y", "embedding": basis(1).tolist()},
            {"id": "c", "timestamp": "2026-02-11T12:00:00Z", "type": "event", "importance": 2,
             "content": "z"},
        ])
        details = (await tools.stats("c1", {}))["details"]
        assert details["total"] == 3
        assert details["withEmbeddings"] == 2
        assert details["binaryEmbeddings"] == 1
        assert details["relations"] == 1
        assert details["byType"] == {"decision": 1, "event": 2}
        assert details["byImportance"] == {"high (8-10)": 1, "medium (5-7)": 1, "low (1-4)": 1}
        assert details["provider"] == "none"
        assert details["version"] == "3.0"

    @pytest.mark.asyncio
    async def test_stats_empty_index(self, tools):
        result = await tools.stats("c1", {})
        assert result["details"]["total"] == 0
        assert "Total memories: 0" in _text(result)
