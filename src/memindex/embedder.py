"""Embedding generation: local fastembed model with diskcache, behind an async provider.

EmbeddingProvider is what the tools talk to:

    provider = EmbeddingProvider("sentence-transformers/all-MiniLM-L6-v2")
    ok = await provider.initialize()      # single-flight: concurrent callers share one load
    vec = await provider.embed("text")    # list[float] | None

Model load and inference are blocking and run on a worker thread. A failed
load is remembered; embed() then returns None and search falls back to
keyword scoring.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from collections.abc import Callable

    import numpy as np
    from diskcache import Cache
    from fastembed import TextEmbedding
    from numpy.typing import NDArray

    from memindex.config import EmbeddingConfig

logger = logging.getLogger("memindex.embedder")


class EmbeddingBackend(Protocol):
    model: str
    dimensions: int

    def load(self) -> None: ...

    def embed(self, texts: list[str]) -> list[NDArray[np.float32]]: ...


def _safe_model_name(model: str) -> str:
    """Sanitize a model string for use as a filesystem directory name."""
    return model.replace("/", "_").replace(":", "_")


# ---------------------------------------------------------------------------
# FastEmbedBackend
# ---------------------------------------------------------------------------


@dataclass
class FastEmbedBackend:
    """Local embedder using fastembed TextEmbedding (ONNX, no API key needed)."""

    model: str = "sentence-transformers/all-MiniLM-L6-v2"
    dimensions: int = 384  # all-MiniLM-L6-v2 is 384-dim
    _fe_model: TextEmbedding | None = field(default=None, repr=False, init=False)

    def load(self) -> None:
        """Create the fastembed model (downloads it on first use)."""
        if self._fe_model is not None:
            return
        try:
            from fastembed import TextEmbedding
        except ImportError as e:
            msg = "fastembed is required for local embeddings: pip install fastembed"
            raise ImportError(msg) from e
        self._fe_model = TextEmbedding(self.model)

    def embed(self, texts: list[str]) -> list[NDArray[np.float32]]:
        import numpy as np

        if not texts:
            return []
        self.load()
        assert self._fe_model is not None
        return [np.asarray(emb, dtype=np.float32) for emb in self._fe_model.embed(texts)]


# ---------------------------------------------------------------------------
# CachedBackend
# ---------------------------------------------------------------------------


@dataclass
class CachedBackend:
    """Wraps a backend with diskcache on disk.

    Cache key: sha256 of "{text}:{dimensions}"
    Cache path: {cache_dir}/{safe_model_name}/
    Stored as raw float32 bytes (.tobytes() / np.frombuffer).
    """

    backend: EmbeddingBackend
    cache_dir: Path = field(default_factory=lambda: Path.home() / ".cache" / "memindex" / "embeddings")
    _disk_cache: Cache | None = field(default=None, repr=False, init=False)

    @property
    def model(self) -> str:
        return self.backend.model

    @property
    def dimensions(self) -> int:
        return self.backend.dimensions

    @property
    def _cache(self) -> Cache:
        """Get or create the diskcache instance (lazy, model-specific directory)."""
        if self._disk_cache is None:
            from diskcache import Cache

            model_dir = self.cache_dir / _safe_model_name(self.backend.model)
            model_dir.mkdir(parents=True, exist_ok=True)
            self._disk_cache = Cache(str(model_dir))
        return self._disk_cache

    def _cache_key(self, text: str) -> str:
        raw = f"{text}:{self.dimensions}"
        return hashlib.sha256(raw.encode()).hexdigest()

    def load(self) -> None:
        self.backend.load()

    def embed(self, texts: list[str]) -> list[NDArray[np.float32]]:
        """Embed texts, using the cache per item."""
        import numpy as np

        results: list[NDArray[np.float32] | None] = [None] * len(texts)
        missing: list[int] = []
        for i, text in enumerate(texts):
            cached = self._cache.get(self._cache_key(text))
            if cached is not None:
                results[i] = np.frombuffer(cached, dtype=np.float32)  # type: ignore[arg-type]
            else:
                missing.append(i)

        if missing:
            fresh = self.backend.embed([texts[i] for i in missing])
            for i, emb in zip(missing, fresh, strict=True):
                self._cache.set(self._cache_key(texts[i]), emb.tobytes())
                results[i] = emb

        return [r for r in results if r is not None]

    def close(self) -> None:
        if self._disk_cache is not None:
            self._disk_cache.close()
            self._disk_cache = None


# ---------------------------------------------------------------------------
# EmbeddingProvider
# ---------------------------------------------------------------------------


class EmbeddingProvider:
    """Async, single-flight wrapper around a blocking embedding backend."""

    def __init__(
        self,
        model_name: str,
        backend_factory: Callable[[str], EmbeddingBackend] | None = None,
    ) -> None:
        self.model_name = model_name
        self._factory = backend_factory or (lambda name: FastEmbedBackend(model=name))
        self._backend: EmbeddingBackend | None = None
        self._loading: asyncio.Task[None] | None = None
        self._failed = False

    @property
    def is_ready(self) -> bool:
        return self._backend is not None

    @property
    def failed(self) -> bool:
        return self._failed

    async def initialize(self) -> bool:
        """Load the model once. Concurrent callers await the same load."""
        if self._backend is not None:
            return True
        if self._failed:
            return False
        if self._loading is None:
            self._loading = asyncio.ensure_future(self._load())
        await asyncio.shield(self._loading)
        return self._backend is not None

    async def _load(self) -> None:
        try:
            backend = self._factory(self.model_name)
            await asyncio.to_thread(backend.load)
        except Exception:
            logger.exception("failed to load embedding model %s", self.model_name)
            self._failed = True
            return
        self._backend = backend
        logger.info("embedding model loaded: %s", self.model_name)

    async def embed(self, text: str) -> list[float] | None:
        """Embed one text. None if the model is unavailable or inference fails."""
        if not await self.initialize():
            return None
        assert self._backend is not None
        try:
            vectors = await asyncio.to_thread(self._backend.embed, [text])
        except Exception:
            logger.exception("embedding failed")
            return None
        if not vectors:
            return None
        return [float(x) for x in vectors[0]]


def create_provider(cfg: EmbeddingConfig) -> EmbeddingProvider | None:
    """Provider for the configured kind, or None when embeddings are off."""
    if not cfg.enabled:
        return None
    cache_dir = cfg.cache_dir

    def factory(name: str) -> EmbeddingBackend:
        return CachedBackend(backend=FastEmbedBackend(model=name), cache_dir=cache_dir)

    return EmbeddingProvider(cfg.model_name, backend_factory=factory)
