"""Read and write the line-oriented memory index.

IndexStore is the public API:
    store = IndexStore("~/.memindex/workspace/memory/index/memory-index.jsonl")
    index = store.load()
    store.append(entry)
    store.save(index)

File layout (memory-index.jsonl):
    {"_meta": true, "version": "3.0", "lastUpdated": ..., "embeddingModel": ...,
     "embeddingFormat": "base64-f32", "dimensions": 384}          # header (line 1)
    {"id": "m-...", "timestamp": ..., "type": ..., "content": ..., ...}   # one entry per line

A configured path ending in ``.json`` names the legacy single-JSON file
({version, lastUpdated, memories: [...]}). The store redirects to the sibling
``.jsonl`` and converts the legacy file into it once, on first use.

Single writer: no locking. save() rewrites the whole file (temp + rename);
append() adds one line and never touches the header.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from memindex import codec
from memindex.graph import LinkResult, link_memories
from memindex.models import MemoryEntry, MemoryIndex

if TYPE_CHECKING:
    from memindex.models import RelationType

logger = logging.getLogger("memindex.store")

LEGACY_SUFFIX = ".json"
LINES_SUFFIX = ".jsonl"


def sibling_lines_path(path: Path) -> Path:
    """memory-index.json → memory-index.jsonl (other suffixes unchanged)."""
    if path.suffix == LEGACY_SUFFIX:
        return path.with_suffix(LINES_SUFFIX)
    return path


@dataclass
class BinaryMigration:
    migrated: int
    already_binary: int
    without_embedding: int
    total: int


class IndexStore:
    """JSONL-backed memory index."""

    def __init__(self, path: Path | str) -> None:
        self.configured_path = Path(path).expanduser()
        self.path = sibling_lines_path(self.configured_path)
        self._migrated_legacy = False
        if self.path != self.configured_path:
            self._migrate_legacy_file()

    # ------------------------------------------------------------------
    # Legacy path migration
    # ------------------------------------------------------------------

    def _migrate_legacy_file(self) -> None:
        """One-time conversion of the configured .json file into the .jsonl sibling."""
        if self.path.exists() or not self.configured_path.exists():
            return
        index = self._read(self.configured_path)
        if not index.entries:
            return
        logger.info(
            "migrating %d memories from %s to %s",
            len(index.entries), self.configured_path, self.path,
        )
        index.version = codec.CURRENT_VERSION
        self.save(index)
        self._migrated_legacy = True

    @property
    def migrated_legacy(self) -> bool:
        """True if this store converted a legacy .json file on construction."""
        return self._migrated_legacy

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> MemoryIndex:
        """Load the index. A missing file is an empty index, never an error."""
        return self._read(self.path)

    def get(self, entry_id: str) -> MemoryEntry | None:
        return self.load().get(entry_id)

    def _read(self, path: Path) -> MemoryIndex:
        if not path.exists():
            return MemoryIndex(version=codec.CURRENT_VERSION, last_updated=codec.now_iso())

        raw = path.read_text(encoding="utf-8")
        index = MemoryIndex(version=codec.CURRENT_VERSION)
        found_meta = False
        bad_lines: list[int] = []

        for lineno, line in enumerate(raw.splitlines(), start=1):
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError:
                bad_lines.append(lineno)
                continue
            if not isinstance(obj, dict):
                bad_lines.append(lineno)
                continue
            if "id" not in obj and codec.LEGACY_COLLECTION_KEY in obj:
                # single-line legacy blob, handled below
                continue
            if codec.is_meta(obj):
                if not found_meta:
                    found_meta = True
                    index.version = str(obj.get("version") or codec.CURRENT_VERSION)
                    index.last_updated = str(obj.get("lastUpdated") or "")
                    model = obj.get("embeddingModel")
                    index.embedding_model = model if isinstance(model, str) else None
                continue
            index.entries.append(codec.parse_entry(obj))

        if not found_meta and not index.entries and codec.is_legacy_index(raw):
            legacy = codec.parse_legacy_index(raw)
            if legacy is None:
                logger.warning("%s: legacy index is not valid JSON; treating as empty", path)
                return MemoryIndex(version=codec.CURRENT_VERSION, last_updated=codec.now_iso())
            return legacy

        for lineno in bad_lines:
            logger.warning("%s:%d: skipping malformed line", path, lineno)
        return index

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def save(self, index: MemoryIndex) -> None:
        """Rewrite the whole file: header line, then one line per entry."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        index.last_updated = codec.now_iso()
        if not index.version:
            index.version = codec.CURRENT_VERSION

        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            f.write(codec.meta_line(index))
            for entry in index.entries:
                f.write(codec.serialize_entry(entry))
        tmp.replace(self.path)

    def append(self, entry: MemoryEntry) -> None:
        """Append one entry. Writes a fresh header first if the file is missing or empty.

        The header of an existing file is left as is.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        line = codec.serialize_entry(entry)
        fresh = not self.path.exists() or self.path.stat().st_size == 0
        if not fresh and not self._ends_with_newline():
            line = "\n" + line
        with self.path.open("a", encoding="utf-8") as f:
            if fresh:
                f.write(codec.meta_line(MemoryIndex(version=codec.CURRENT_VERSION)))
            f.write(line)

    def _ends_with_newline(self) -> bool:
        with self.path.open("rb") as f:
            f.seek(-1, 2)
            return f.read(1) == b"\n"

    # ------------------------------------------------------------------
    # Mutations (load → mutate → save)
    # ------------------------------------------------------------------

    def link(self, source_id: str, target_id: str, relation_type: RelationType) -> LinkResult:
        """Link two memories and persist, but only if both ids exist."""
        index = self.load()
        result = link_memories(index, source_id, target_id, relation_type)
        if result.ok:
            self.save(index)
        return result

    def migrate_binary(self) -> BinaryMigration:
        """Convert every legacy float-array embedding to the base64 form."""
        index = self.load()
        migrated = already = missing = 0
        for entry in index.entries:
            if not entry.has_embedding:
                missing += 1
            elif codec.is_binary_embedding(entry):
                already += 1
            elif codec.to_binary(entry):
                migrated += 1
            else:
                missing += 1
        if migrated:
            index.version = codec.CURRENT_VERSION
            self.save(index)
            logger.info("binary migration: %d embeddings converted in %s", migrated, self.path)
        return BinaryMigration(
            migrated=migrated,
            already_binary=already,
            without_embedding=missing,
            total=len(index.entries),
        )
