"""memindex CLI: typed memories in a JSONL index with hybrid search and relations.

Commands:
    memindex init                    create memindex.toml in the current directory
    memindex add TEXT                append a memory
    memindex search QUERY            hybrid keyword + semantic search (records access)
    memindex show ID                 dump one memory
    memindex embed                   generate missing embeddings and auto-link
    memindex link SRC DST            add a typed relation (and its inverse)
    memindex related ID              walk the relation graph from a memory
    memindex migrate                 convert legacy float-array embeddings to base64
    memindex stats                   index statistics
    memindex serve                   start stdio MCP server
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click

from memindex.config import MemoryConfig, init_config, load_config
from memindex.embedder import create_provider
from memindex.mcp import run_server
from memindex.models import MemoryType, RelationType
from memindex.store import IndexStore
from memindex.tools import MemoryTools

if TYPE_CHECKING:
    from collections.abc import Coroutine

logger = logging.getLogger("memindex.cli")

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_cfg() -> MemoryConfig:
    try:
        return load_config()
    except Exception as exc:
        raise click.ClickException(str(exc)) from exc


def _tools(cfg: MemoryConfig) -> MemoryTools:
    return MemoryTools(cfg, logger, create_provider(cfg.embedding))


def _run(coro: Coroutine[Any, Any, dict[str, Any]], as_json: bool = False) -> dict[str, Any]:
    """Run a tool handler, echo its output, and fail on error results."""
    result = asyncio.run(coro)
    details = result.get("details", {})
    if details.get("error"):
        text = result["content"][0]["text"] if result.get("content") else "failed"
        raise click.ClickException(text)
    if as_json:
        click.echo(json.dumps(details, indent=2, ensure_ascii=False))
    else:
        for part in result.get("content", []):
            click.echo(part.get("text", ""))
    return result


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(package_name="memindex")
@click.option("-v", "--verbose", is_flag=True, help="Log to stderr")
def cli(verbose: bool) -> None:
    """memindex: local memory index with hybrid search."""
    if verbose:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(message)s")


# ---------------------------------------------------------------------------
# memindex init
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--dir", "root", default=".", show_default=True, help="Project root")
@click.option("--index", "index_path", default=None, help="Index path (relative to root)")
def init(root: str, index_path: str | None) -> None:
    """Create memindex.toml in the given directory."""
    root_path = Path(root).resolve()
    try:
        config_path = init_config(root_path, index_path=index_path)
        click.echo(f"Created {config_path}")
    except FileExistsError:
        click.echo("memindex.toml already exists, skipping init")
    cfg = load_config(root_path)
    click.echo(f"Index : {IndexStore(cfg.index_path).path}")


# ---------------------------------------------------------------------------
# memindex add / show
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("text")
@click.option(
    "--type", "memory_type",
    type=click.Choice([t.value for t in MemoryType]),
    default=MemoryType.LEARNING.value, show_default=True,
)
@click.option("--importance", "-i", type=click.IntRange(1, 10), default=5, show_default=True)
@click.option("--tag", "-t", "tags", multiple=True, help="Tag (repeatable)")
@click.option("--file", "source_file", default="", help="Source file, e.g. daily/2026-02-11.md")
@click.option("--line", type=int, default=None)
@click.option("--context", default=None)
@click.option("--id", "memory_id", default=None, help="Explicit id (generated if omitted)")
def add(
    text: str,
    memory_type: str,
    importance: int,
    tags: tuple[str, ...],
    source_file: str,
    line: int | None,
    context: str | None,
    memory_id: str | None,
) -> None:
    """Append a memory to the index."""
    cfg = _load_cfg()
    params: dict[str, Any] = {
        "content": text,
        "type": memory_type,
        "importance": importance,
        "tags": list(tags),
        "file": source_file,
    }
    if line is not None:
        params["line"] = line
    if context:
        params["context"] = context
    if memory_id:
        params["id"] = memory_id
    _run(_tools(cfg).add("cli", params))


@cli.command()
@click.argument("memory_id")
def show(memory_id: str) -> None:
    """Show one memory and its relations."""
    cfg = _load_cfg()
    index = IndexStore(cfg.index_path).load()
    entry = index.get(memory_id)
    if entry is None:
        msg = f"Memory not found: {memory_id}"
        raise click.ClickException(msg)
    click.echo(f"# {entry.id}  [{entry.type}]  importance={entry.importance}  date={entry.date}")
    if entry.file:
        loc = f"{entry.file}:{entry.line}" if entry.line is not None else entry.file
        click.echo(f"source: {loc}")
    if entry.tags:
        click.echo("tags: " + ", ".join(entry.tags))
    click.echo(f"accessed: {entry.access_count}x" + (f" (last {entry.last_accessed})" if entry.last_accessed else ""))
    click.echo(f"embedding: {'yes' if entry.has_embedding else 'no'}")
    click.echo("")
    click.echo(entry.content)
    if entry.context:
        click.echo("")
        click.echo(f"context: {entry.context}")
    if entry.relations:
        click.echo("")
        for rel in entry.relations:
            click.echo(f"- {rel.relation_type.value} → {rel.target_id}")


# ---------------------------------------------------------------------------
# memindex search
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("query")
@click.option("--limit", "-n", type=int, default=None, help="Max results")
@click.option("--min-score", type=float, default=None, help="Min score threshold")
@click.option("--depth", type=int, default=None, help="Relation hops per result")
@click.option("--json", "as_json", is_flag=True, help="Print result details as JSON")
def search(query: str, limit: int | None, min_score: float | None, depth: int | None, as_json: bool) -> None:
    """Search memories (keyword, or hybrid when embeddings are configured)."""
    cfg = _load_cfg()
    params: dict[str, Any] = {"query": query}
    if limit is not None:
        params["maxResults"] = limit
    if min_score is not None:
        params["minScore"] = min_score
    if depth is not None:
        params["depth"] = depth
    _run(_tools(cfg).search("cli", params), as_json=as_json)


# ---------------------------------------------------------------------------
# memindex embed / migrate
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--limit", type=int, default=100, show_default=True, help="Max memories to embed")
@click.option("--force", is_flag=True, help="Re-embed memories that already have embeddings")
def embed(limit: int, force: bool) -> None:
    """Generate embeddings for memories and auto-link similar ones."""
    cfg = _load_cfg()
    _run(_tools(cfg).embed("cli", {"limit": limit, "force": force}))


@cli.command()
def migrate() -> None:
    """Convert legacy float-array embeddings to the compact base64 encoding."""
    cfg = _load_cfg()
    _run(_tools(cfg).migrate("cli", {}))


# ---------------------------------------------------------------------------
# memindex link / related
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("source_id")
@click.argument("target_id")
@click.option(
    "--type", "relation_type",
    type=click.Choice([t.value for t in RelationType]),
    default=RelationType.RELATED.value, show_default=True,
)
def link(source_id: str, target_id: str, relation_type: str) -> None:
    """Link SOURCE_ID to TARGET_ID (the inverse edge is added to the target)."""
    cfg = _load_cfg()
    _run(_tools(cfg).link("cli", {
        "sourceId": source_id,
        "targetId": target_id,
        "relationType": relation_type,
    }))


@cli.command()
@click.argument("memory_id")
@click.option("--depth", type=int, default=1, show_default=True)
def related(memory_id: str, depth: int) -> None:
    """List memories related to MEMORY_ID."""
    cfg = _load_cfg()
    _run(_tools(cfg).related("cli", {"id": memory_id, "depth": depth}))


# ---------------------------------------------------------------------------
# memindex stats / serve
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print details as JSON")
def stats(as_json: bool) -> None:
    """Show index statistics."""
    cfg = _load_cfg()
    _run(_tools(cfg).stats("cli", {}), as_json=as_json)


@cli.command()
@click.option("--dir", "root", default=None, help="Directory to search for memindex.toml")
def serve(root: str | None) -> None:
    """Start the stdio MCP server."""
    run_server(Path(root) if root else None)
