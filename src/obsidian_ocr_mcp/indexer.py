"""Bounded-concurrency recognition over collections of images."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from .cache import RecognitionCache
from .context import ContextExtractor
from .recognizer import RecognitionError, Recognizer
from .vault import DocumentHost, VaultItem

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 4
DEFAULT_TIMEOUT = 60.0

ProgressCallback = Callable[[int, int], None]


@dataclass(frozen=True, slots=True)
class IndexUpdate:
    indexed: int
    skipped: int


def chunked(items: Sequence[VaultItem], size: int) -> list[Sequence[VaultItem]]:
    size = max(1, size)
    return [items[start : start + size] for start in range(0, len(items), size)]


@dataclass(slots=True)
class ConcurrentIndexer:
    """Recognizes images chunk by chunk and stores the results in the cache.

    Every chunk of ``concurrency_limit`` items runs concurrently and must
    finish before the next chunk starts; the cache is saved after each chunk.
    """

    cache: RecognitionCache
    extractor: ContextExtractor
    host: DocumentHost
    recognize: Recognizer
    timeout: float | None = DEFAULT_TIMEOUT

    async def recognize_text(self, item: VaultItem) -> str:
        """Recognized text of *item*, or ``""`` when recognition fails or times out."""

        absolute = self.host.resolve_display_path(item.path)
        try:
            if self.timeout is None:
                return await self.recognize(absolute)
            return await asyncio.wait_for(self.recognize(absolute), self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Recognition timed out after %ss for %s", self.timeout, item.path)
        except RecognitionError as exc:
            logger.warning("Recognition failed for %s: %s", item.path, exc)
        return ""

    async def index_item(
        self, item: VaultItem, corpus: Sequence[VaultItem], force: bool = False
    ) -> bool:
        """Recognize *item* unless its cached entry is still fresh.

        Returns ``True`` when a recognition was performed.
        """

        if not force and not self.cache.is_stale(item.path, item.mtime):
            return False
        text = await self.recognize_text(item)
        context = await self.extractor.extract_context(item, corpus)
        self.cache.put(item.path, text, context)
        return True

    async def index_all(
        self,
        items: Sequence[VaultItem],
        concurrency_limit: int = DEFAULT_CONCURRENCY,
        on_progress: ProgressCallback | None = None,
        force: bool = False,
    ) -> int:
        """Index every image of *items*; returns how many were recognized."""

        images = [item for item in items if item.is_image]
        total = len(images)
        if not images:
            return 0

        corpus = await asyncio.to_thread(self.host.list_documents)
        processed = 0
        recognized = 0

        async def run(item: VaultItem) -> bool:
            nonlocal processed
            try:
                return await self.index_item(item, corpus, force=force)
            except Exception:
                logger.exception("Failed to index %s", item.path)
                return False
            finally:
                processed += 1
                if on_progress is not None:
                    on_progress(processed, total)

        for number, chunk in enumerate(chunked(images, concurrency_limit), start=1):
            outcomes = await asyncio.gather(*(run(item) for item in chunk))
            recognized += sum(outcomes)
            await self.cache.save_async()
            logger.debug("Finished chunk %d (%d/%d items)", number, processed, total)

        await self.cache.save_async()
        self.extractor.cleanup_caches()
        logger.info("Indexed %d images, recognized %d", total, recognized)
        return recognized

    async def incremental_update(
        self,
        items: Sequence[VaultItem],
        concurrency_limit: int = DEFAULT_CONCURRENCY,
        on_progress: ProgressCallback | None = None,
    ) -> IndexUpdate:
        images = [item for item in items if item.is_image]
        pending = [item for item in images if self.cache.needs_indexing(item.path, item.mtime)]
        if not pending:
            return IndexUpdate(indexed=0, skipped=len(images))

        await self.index_all(pending, concurrency_limit, on_progress)
        return IndexUpdate(indexed=len(pending), skipped=len(images) - len(pending))
