"""MemoryConfig: typed view over the plugin config / memindex.toml.

The host passes arbitrary JSON; parse_config() reads it field by field and
falls back to the default for anything missing or of the wrong type.

memindex.toml example (same keys as the plugin config):

    indexPath = "~/.memindex/workspace/memory/index/memory-index.jsonl"
    workspaceDir = "~/.memindex/workspace"

    [embedding]
    provider = "local"          # local | none
    modelName = "sentence-transformers/all-MiniLM-L6-v2"
    cacheDir = "~/.cache/memindex/embeddings"

    [search]
    maxResults = 10
    minScore = 0.1
    relationDepth = 1

    [autoLink]
    enabled = true
    threshold = 0.65
    maxLinks = 3
"""

from __future__ import annotations

import math
import tomllib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

_CONFIG_FILENAME = "memindex.toml"
_DEFAULT_WORKSPACE = Path.home() / ".memindex" / "workspace"
_DEFAULT_INDEX_PATH = _DEFAULT_WORKSPACE / "memory" / "index" / "memory-index.json"
_DEFAULT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
_DEFAULT_CACHE_DIR = Path.home() / ".cache" / "memindex" / "embeddings"


class EmbeddingProviderKind(str, Enum):
    NONE = "none"
    LOCAL = "local"


@dataclass
class EmbeddingConfig:
    provider: EmbeddingProviderKind = EmbeddingProviderKind.NONE
    model_name: str = _DEFAULT_MODEL
    cache_dir: Path = field(default_factory=lambda: _DEFAULT_CACHE_DIR)

    @property
    def enabled(self) -> bool:
        return self.provider is EmbeddingProviderKind.LOCAL


@dataclass
class SearchConfig:
    max_results: int = 10
    min_score: float = 0.1
    relation_depth: int = 1


@dataclass
class AutoLinkConfig:
    enabled: bool = True
    threshold: float = 0.65
    max_links: int = 3


@dataclass
class MemoryConfig:
    """Resolved configuration for one memory index."""

    index_path: Path = field(default_factory=lambda: _DEFAULT_INDEX_PATH)
    workspace_dir: Path = field(default_factory=lambda: _DEFAULT_WORKSPACE)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    auto_link: AutoLinkConfig = field(default_factory=AutoLinkConfig)


# ---------------------------------------------------------------------------
# Defensive field readers
# ---------------------------------------------------------------------------


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    value = raw.get(key)
    return value if isinstance(value, dict) else {}


def _str(raw: dict[str, Any], key: str, default: str) -> str:
    value = raw.get(key)
    return value if isinstance(value, str) and value else default


def _path(raw: dict[str, Any], key: str, default: Path) -> Path:
    value = raw.get(key)
    if isinstance(value, str) and value:
        return Path(value).expanduser()
    return default


def _int(raw: dict[str, Any], key: str, default: int, minimum: int = 0) -> int:
    value = raw.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if not math.isfinite(value):
        return default
    return max(minimum, int(value))


def _float(raw: dict[str, Any], key: str, default: float) -> float:
    value = raw.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if not math.isfinite(value):
        return default
    return float(value)


def _bool(raw: dict[str, Any], key: str, default: bool) -> bool:
    value = raw.get(key)
    return value if isinstance(value, bool) else default


def parse_config(value: Any) -> MemoryConfig:
    """Build a MemoryConfig from untrusted config data. Never raises."""
    if not isinstance(value, dict):
        return MemoryConfig()

    emb = _section(value, "embedding")
    srch = _section(value, "search")
    link = _section(value, "autoLink")

    provider = EmbeddingProviderKind.NONE
    if emb.get("provider") == EmbeddingProviderKind.LOCAL.value:
        provider = EmbeddingProviderKind.LOCAL

    return MemoryConfig(
        index_path=_path(value, "indexPath", _DEFAULT_INDEX_PATH),
        workspace_dir=_path(value, "workspaceDir", _DEFAULT_WORKSPACE),
        embedding=EmbeddingConfig(
            provider=provider,
            model_name=_str(emb, "modelName", _DEFAULT_MODEL),
            cache_dir=_path(emb, "cacheDir", _DEFAULT_CACHE_DIR),
        ),
        search=SearchConfig(
            max_results=_int(srch, "maxResults", 10, minimum=1),
            min_score=_float(srch, "minScore", 0.1),
            relation_depth=_int(srch, "relationDepth", 1),
        ),
        auto_link=AutoLinkConfig(
            enabled=_bool(link, "enabled", True),
            threshold=_float(link, "threshold", 0.65),
            max_links=_int(link, "maxLinks", 3),
        ),
    )


# ---------------------------------------------------------------------------
# memindex.toml
# ---------------------------------------------------------------------------


def _find_root(start: Path) -> Path:
    """Walk upward from start looking for memindex.toml."""
    for directory in (start, *start.parents):
        if (directory / _CONFIG_FILENAME).exists():
            return directory
    return start


def find_config_file(root: Path | str | None = None) -> Path | None:
    root_path = _find_root(Path(root) if root else Path.cwd())
    path = root_path / _CONFIG_FILENAME
    return path if path.exists() else None


def load_config(root: Path | str | None = None) -> MemoryConfig:
    """Load memindex.toml from root (or search upward from cwd if root is None).

    Relative indexPath/workspaceDir values are resolved against the file's directory.
    """
    config_path = find_config_file(root)
    if config_path is None:
        return MemoryConfig()
    with config_path.open("rb") as f:
        raw = tomllib.load(f)
    cfg = parse_config(raw)
    base = config_path.parent
    if not cfg.index_path.is_absolute():
        cfg.index_path = base / cfg.index_path
    if not cfg.workspace_dir.is_absolute():
        cfg.workspace_dir = base / cfg.workspace_dir
    return cfg


def init_config(root: Path, index_path: str | None = None) -> Path:
    """Write a default memindex.toml at root. Raises if already exists."""
    config_path = root / _CONFIG_FILENAME
    if config_path.exists():
        msg = f"memindex.toml already exists at {config_path}"
        raise FileExistsError(msg)

    content = f"""\
indexPath = "{index_path or 'memory/index/memory-index.jsonl'}"
workspaceDir = "."

[embedding]
provider = "none"   # "local" to enable fastembed embeddings
# modelName = "{_DEFAULT_MODEL}"
# cacheDir = "~/.cache/memindex/embeddings"

# [search]
# maxResults = 10
# minScore = 0.1
# relationDepth = 1      # hops of related memories shown per result

# [autoLink]
# enabled = true
# threshold = 0.65       # min cosine similarity for an automatic `related` edge
# maxLinks = 3
"""
    config_path.write_text(content)
    return config_path
