"""
Shared pytest fixtures for memindex tests.

Provides a deterministic embedding backend so no ML model is downloaded.
"""

import hashlib
import json
from pathlib import Path
from typing import Any

import numpy as np
import pytest

from memindex.embedder import EmbeddingProvider
from memindex.models import MemoryEntry


DIM = 384


class FakeBackend:
    """
    Deterministic embedding backend for testing.

    Texts listed in `vectors` get that exact vector; anything else gets a
    hash-derived vector.
    """

    dimensions = DIM

    def __init__(self, model: str = "fake-model", vectors: dict[str, np.ndarray] | None = None):
        self.model = model
        self.vectors = vectors or {}
        self.load_calls = 0
        self.embed_calls = 0

    def load(self) -> None:
        self.load_calls += 1

    def embed(self, texts: list[str]) -> list[np.ndarray]:
        self.embed_calls += 1
        return [self._vector(t) for t in texts]

    def _vector(self, text: str) -> np.ndarray:
        if text in self.vectors:
            return np.asarray(self.vectors[text], dtype=np.float32)
        h = hashlib.md5(text.encode()).digest()
        base = np.frombuffer(h, dtype=np.uint8).astype(np.float32) / 255.0
        return np.resize(base, DIM).astype(np.float32)


class BrokenBackend(FakeBackend):
    def load(self) -> None:
        self.load_calls += 1
        raise RuntimeError("model download failed")


def basis(i: int, dim: int = DIM) -> np.ndarray:
    """Unit vector along axis i."""
    v = np.zeros(dim, dtype=np.float32)
    v[i] = 1.0
    return v


def mix(a: np.ndarray, b: np.ndarray, weight: float) -> np.ndarray:
    """Unit vector `weight` of the way from a toward b (cosine to a decreases with weight)."""
    v = (1.0 - weight) * a + weight * b
    return (v / np.linalg.norm(v)).astype(np.float32)


def make_entry(entry_id: str, content: str = "", **kwargs: Any) -> MemoryEntry:
    defaults: dict[str, Any] = {
        "timestamp": "2026-02-11T12:00:00Z",
        "type": "learning",
        "importance": 5,
    }
    defaults.update(kwargs)
    return MemoryEntry(id=entry_id, content=content or f"memory {entry_id}", **defaults)


def write_jsonl(path: Path, entries: list[dict[str, Any]], meta: dict[str, Any] | None = None) -> Path:
    """Write a line-oriented index file with a current-format header."""
    header = meta if meta is not None else {
        "_meta": True,
        "version": "3.0",
        "lastUpdated": "2026-02-11T12:00:00Z",
        "embeddingModel": "sentence-transformers/all-MiniLM-L6-v2",
        "embeddingFormat": "base64-f32",
        "dimensions": 384,
    }
    lines = [json.dumps(header)] + [json.dumps(e) for e in entries]
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n")
    return path


class RecordingLogger:
    def __init__(self):
        self.records: list[tuple[str, str]] = []

    def info(self, msg: str, *args: Any) -> None:
        self.records.append(("info", msg % args if args else msg))

    def warning(self, msg: str, *args: Any) -> None:
        self.records.append(("warning", msg % args if args else msg))

    def error(self, msg: str, *args: Any) -> None:
        self.records.append(("error", msg % args if args else msg))


class FakeApi:
    """Minimal plugin host."""

    def __init__(self, plugin_config: Any):
        self.plugin_config = plugin_config
        self.logger = RecordingLogger()
        self.tools: dict[str, Any] = {}

    def register_tool(self, tool: Any) -> None:
        self.tools[tool.name] = tool


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def fake_provider(fake_backend):
    return EmbeddingProvider("fake-model", backend_factory=lambda name: fake_backend)


@pytest.fixture
def index_path(tmp_path):
    return tmp_path / "memory" / "index" / "memory-index.jsonl"
