"""Persistent cache of recognition results with staleness rules."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import time
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

MAX_AGE_MS = 30 * 24 * 60 * 60 * 1000


def now_ms() -> int:
    return time.time_ns() // 1_000_000


@dataclass(frozen=True, slots=True)
class ReferencingDocument:
    title: str
    path: str


@dataclass(frozen=True, slots=True)
class ReferenceContext:
    """Documents that embed an item, and the text around the embeds."""

    referencing_documents: tuple[ReferencingDocument, ...] = ()
    nearby_content: str = ""


@dataclass(frozen=True, slots=True)
class RecognitionResult:
    text: str
    timestamp: int
    confidence: float | None = None
    context: ReferenceContext | None = None


@dataclass(frozen=True, slots=True)
class IndexStats:
    total: int
    size_bytes: int


def _result_to_json(result: RecognitionResult) -> dict[str, Any]:
    # Field names match the index files written by the Obsidian plugin.
    data: dict[str, Any] = {"text": result.text, "timestamp": result.timestamp}
    if result.confidence is not None:
        data["confidence"] = result.confidence
    if result.context is not None:
        data["context"] = {
            "referencingNotes": [
                {"title": doc.title, "path": doc.path}
                for doc in result.context.referencing_documents
            ],
            "nearbyContent": result.context.nearby_content,
        }
    return data


def _context_from_json(raw: Any) -> ReferenceContext | None:
    if not isinstance(raw, Mapping):
        return None
    documents = []
    for doc in raw.get("referencingNotes") or []:
        if isinstance(doc, Mapping):
            documents.append(
                ReferencingDocument(title=str(doc.get("title", "")), path=str(doc.get("path", "")))
            )
    return ReferenceContext(
        referencing_documents=tuple(documents),
        nearby_content=str(raw.get("nearbyContent") or ""),
    )


def _result_from_json(raw: Any) -> RecognitionResult:
    if not isinstance(raw, Mapping):
        raise ValueError("Entry is not an object")
    confidence = raw.get("confidence")
    return RecognitionResult(
        text=str(raw.get("text") or ""),
        timestamp=int(raw["timestamp"]),
        confidence=float(confidence) if confidence is not None else None,
        context=_context_from_json(raw.get("context")),
    )


def build_searchable_content(result: RecognitionResult) -> str:
    """Join text, referencing titles and nearby content into one lowercase string."""

    parts = [result.text]
    if result.context is not None:
        parts.extend(doc.title for doc in result.context.referencing_documents)
        parts.append(result.context.nearby_content)
    else:
        parts.append("")
    return " ".join(parts).lower()


@dataclass(slots=True)
class RecognitionCache:
    """Map from item path to its latest :class:`RecognitionResult`.

    The map is loaded once, mutated in memory and written back as a single
    JSON document by :meth:`save`.
    """

    index_path: Path
    clock: Callable[[], int] = now_ms
    max_age_ms: int = MAX_AGE_MS
    _entries: dict[str, RecognitionResult] = field(default_factory=dict, init=False)
    _versions: dict[str, int] = field(default_factory=dict, init=False)
    _searchable: dict[str, tuple[int, str]] = field(default_factory=dict, init=False)
    _version_counter: int = field(default=0, init=False)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, path: object) -> bool:
        return path in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))

    def items(self) -> list[tuple[str, RecognitionResult]]:
        return list(self._entries.items())

    def get(self, path: str) -> RecognitionResult | None:
        return self._entries.get(path)

    def put(
        self,
        path: str,
        text: str,
        context: ReferenceContext | None = None,
        confidence: float | None = None,
    ) -> RecognitionResult:
        result = RecognitionResult(
            text=text, timestamp=self.clock(), confidence=confidence, context=context
        )
        self._store(path, result)
        return result

    def _store(self, path: str, result: RecognitionResult) -> None:
        self._version_counter += 1
        self._entries[path] = result
        self._versions[path] = self._version_counter
        self._searchable.pop(path, None)

    def is_stale(self, path: str, item_modified_time: int) -> bool:
        """Return ``True`` when *path* must be recognized again."""

        entry = self._entries.get(path)
        if entry is None:
            return True
        if self.clock() - entry.timestamp > self.max_age_ms:
            return True
        return item_modified_time > entry.timestamp

    def needs_indexing(self, path: str, item_modified_time: int) -> bool:
        """Incremental rule: absent, or modified after it was cached."""

        entry = self._entries.get(path)
        return entry is None or item_modified_time > entry.timestamp

    def searchable_content(self, path: str) -> str:
        """Return the memoized searchable text of *path* (empty when absent)."""

        entry = self._entries.get(path)
        if entry is None:
            return ""
        version = self._versions[path]
        memo = self._searchable.get(path)
        if memo is not None and memo[0] == version:
            return memo[1]
        content = build_searchable_content(entry)
        self._searchable[path] = (version, content)
        return content

    def clear(self) -> None:
        self._entries.clear()
        self._versions.clear()
        self._searchable.clear()

    def to_json(self) -> dict[str, Any]:
        return {path: _result_to_json(result) for path, result in self._entries.items()}

    def stats(self) -> IndexStats:
        payload = json.dumps(self.to_json(), ensure_ascii=False)
        return IndexStats(total=len(self._entries), size_bytes=len(payload.encode("utf-8")))

    def load(self) -> None:
        """Load the index file, falling back to an empty index on any failure."""

        self.clear()
        if not self.index_path.exists():
            logger.info("No recognition index at %s, starting empty", self.index_path)
            return
        try:
            raw = json.loads(self.index_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.error("Failed to load recognition index %s: %s", self.index_path, exc)
            return
        if not isinstance(raw, dict):
            logger.error("Recognition index %s is not an object, ignoring it", self.index_path)
            return

        for path, entry in raw.items():
            try:
                self._store(str(path), _result_from_json(entry))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed index entry %s: %s", path, exc)
        logger.info("Loaded recognition index with %d entries", len(self._entries))

    def save(self) -> bool:
        """Write the index atomically. Failures are logged, never raised."""

        return self._write(self.to_json())

    async def save_async(self) -> bool:
        """:meth:`save` with the file write done on a worker thread."""

        return await asyncio.to_thread(self._write, self.to_json())

    def _write(self, payload: dict[str, Any]) -> bool:
        try:
            self.index_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.index_path.parent, prefix=".ocr-index-", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(payload, handle, indent=2, ensure_ascii=False)
                os.replace(tmp_name, self.index_path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            logger.error("Failed to save recognition index %s: %s", self.index_path, exc)
            return False
        logger.debug("Saved recognition index with %d entries", len(payload))
        return True
