"""Entry codec: dates, embedding encoding, line (de)serialization, legacy upgrade.

Embeddings are stored in one of two shapes:

    "embedding": [0.0123, -0.0456, ...]        # legacy: plain JSON float array
    "embedding": "AAB4PQ...=="                 # current: base64 of 384 little-endian float32

Readers accept both; writers always emit the base64 form.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import numpy as np

from memindex.models import MemoryEntry, MemoryIndex

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

logger = logging.getLogger("memindex.codec")

DIMENSIONS = 384
EMBEDDING_FORMAT = "base64-f32"
CURRENT_VERSION = "3.0"
LEGACY_VERSION = "2.0"
META_KEY = "_meta"
LEGACY_COLLECTION_KEY = "memories"

_F32 = np.dtype("<f4")


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


def parse_timestamp(ts: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC. None on failure."""
    if not ts or not isinstance(ts, str):
        return None
    try:
        parsed = datetime.fromisoformat(ts.strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def normalize_date(ts: str | None) -> str:
    """Return the calendar day (YYYY-MM-DD, UTC) of ts, or the current UTC day if ts is unparsable."""
    parsed = parse_timestamp(ts)
    if parsed is None:
        return datetime.now(UTC).date().isoformat()
    return parsed.astimezone(UTC).date().isoformat()


def ensure_date(entry: MemoryEntry) -> MemoryEntry:
    """Attach `date` derived from `timestamp` if missing. Existing dates are kept."""
    if not entry.date:
        entry.date = normalize_date(entry.timestamp)
    return entry


# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------


def encode_embedding(vector: Sequence[float] | NDArray[np.float32]) -> str:
    """Encode a float vector as base64 of little-endian float32 bytes."""
    arr = np.asarray(vector, dtype=_F32)
    return base64.b64encode(arr.tobytes()).decode("ascii")


def decode_embedding(text: str) -> NDArray[np.float32]:
    """Decode a base64 float32 blob. Raises ValueError on malformed input."""
    try:
        raw = base64.b64decode(text, validate=True)
    except binascii.Error as exc:
        msg = f"invalid base64 embedding: {exc}"
        raise ValueError(msg) from exc
    if len(raw) % _F32.itemsize:
        msg = f"embedding byte length {len(raw)} is not a multiple of 4"
        raise ValueError(msg)
    return np.frombuffer(raw, dtype=_F32).astype(np.float32)


def get_embedding_float32(entry: MemoryEntry) -> NDArray[np.float32] | None:
    """Uniform float32 view of an entry's embedding, whichever form it is stored in."""
    emb = entry.embedding
    if not emb:
        return None
    if isinstance(emb, str):
        try:
            return decode_embedding(emb)
        except ValueError:
            logger.warning("undecodable embedding on memory %s", entry.id)
            return None
    try:
        return np.asarray(emb, dtype=np.float32)
    except (TypeError, ValueError):
        logger.warning("non-numeric embedding on memory %s", entry.id)
        return None


def is_binary_embedding(entry: MemoryEntry) -> bool:
    return isinstance(entry.embedding, str) and bool(entry.embedding)


def set_embedding(entry: MemoryEntry, vector: Sequence[float] | NDArray[np.float32]) -> None:
    """Store a vector on the entry in the current (base64) form."""
    entry.embedding = encode_embedding(vector)


def to_binary(entry: MemoryEntry) -> bool:
    """Convert a legacy array embedding in place. Returns True if converted."""
    if isinstance(entry.embedding, list) and entry.embedding:
        vec = get_embedding_float32(entry)
        if vec is not None:
            entry.embedding = encode_embedding(vec)
            return True
    return False


# ---------------------------------------------------------------------------
# Lines
# ---------------------------------------------------------------------------


def is_meta(obj: Any) -> bool:
    return isinstance(obj, dict) and obj.get(META_KEY) is True


def meta_dict(index: MemoryIndex) -> dict[str, Any]:
    d: dict[str, Any] = {
        META_KEY: True,
        "version": index.version or CURRENT_VERSION,
        "lastUpdated": index.last_updated or now_iso(),
        "embeddingFormat": EMBEDDING_FORMAT,
        "dimensions": DIMENSIONS,
    }
    if index.embedding_model:
        d["embeddingModel"] = index.embedding_model
    return d


def meta_line(index: MemoryIndex) -> str:
    return json.dumps(meta_dict(index)) + "\n"


def parse_entry(obj: dict[str, Any]) -> MemoryEntry:
    """Decoded JSON object → MemoryEntry with its date ensured."""
    return ensure_date(MemoryEntry.from_dict(obj))


def serialize_entry(entry: MemoryEntry) -> str:
    """MemoryEntry → one JSON line, embedding in the preferred encoding."""
    ensure_date(entry)
    to_binary(entry)
    return json.dumps(entry.to_dict(), ensure_ascii=False) + "\n"


# ---------------------------------------------------------------------------
# Legacy whole-file JSON ({version, lastUpdated, memories: [...]})
# ---------------------------------------------------------------------------


def is_legacy_index(raw: str) -> bool:
    return f'"{LEGACY_COLLECTION_KEY}"' in raw


def parse_legacy_index(raw: str) -> MemoryIndex | None:
    """Convert the single-JSON legacy format. Returns None if it cannot be parsed."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or not isinstance(data.get(LEGACY_COLLECTION_KEY), list):
        return None
    entries = [
        parse_entry(obj)
        for obj in data[LEGACY_COLLECTION_KEY]
        if isinstance(obj, dict)
    ]
    model = data.get("embeddingModel")
    return MemoryIndex(
        version=str(data.get("version") or LEGACY_VERSION),
        last_updated=str(data.get("lastUpdated") or ""),
        entries=entries,
        embedding_model=model if isinstance(model, str) else None,
    )
