"""Search session over recognized image text and vault notes."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from .blocks import segment
from .cache import IndexStats, RecognitionCache, RecognitionResult
from .context import DEFAULT_CONTEXT_LINES, ContextExtractor
from .indexer import (
    DEFAULT_CONCURRENCY,
    DEFAULT_TIMEOUT,
    ConcurrentIndexer,
    IndexUpdate,
    ProgressCallback,
)
from .paths import is_excluded
from .query import (
    SearchTerm,
    evaluate_terms,
    match_positive_terms,
    negated_terms,
    parse_query,
    term_keywords,
    text_matches,
)
from .recognizer import Recognizer
from .scoring import (
    DEFAULT_WEIGHTS,
    ScoringWeights,
    count_occurrences,
    score_block,
    score_recognition,
)
from .vault import DocumentHost, VaultItem

logger = logging.getLogger(__name__)

DEFAULT_MAX_RESULTS = 50
MIN_QUERY_LENGTH = 2
NO_TEXT_PLACEHOLDER = "No text detected"

TASK_COMMAND = re.compile(r"^(TODO|DONE)(?:\s+|$)(.*)$", re.DOTALL)
OPEN_TASK = re.compile(r"^- \[ \]", re.IGNORECASE)
DONE_TASK = re.compile(r"^- \[x\]", re.IGNORECASE)


@dataclass(slots=True)
class SearchResult:
    item_ref: str
    matched_content: str
    start_line: int
    end_line: int
    matched_terms: list[str]
    score: int
    context: str
    is_title: bool = False
    is_image_result: bool = False
    modified_time: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def format_recognized_text(text: str) -> str:
    """Collapse recognized text onto one line."""

    lines = [line.strip() for line in text.split("\n")]
    return re.sub(r"\s+", " ", " ".join(line for line in lines if line)).strip()


def parse_task_command(query: str) -> tuple[bool, str] | None:
    """Return ``(is_done, remaining_query)`` for ``TODO``/``DONE`` queries."""

    match = TASK_COMMAND.match(query.strip())
    if match is None:
        return None
    return match.group(1) == "DONE", match.group(2).strip()


def sort_results(results: list[SearchResult]) -> list[SearchResult]:
    """Most recently modified items first, higher scores first within the same time."""

    return sorted(results, key=lambda result: (-result.modified_time, -result.score))


def _name_matches(name: str, terms: Sequence[SearchTerm], negated: Sequence[SearchTerm]) -> bool:
    lowered = name.lower()
    if not match_positive_terms(lowered, terms)[0]:
        return False
    return not any(text_matches(term, lowered) for term in negated)


class SupersededSearchError(RuntimeError):
    """A newer search started while this one was waiting on document reads."""


@dataclass(slots=True)
class SearchEngine:
    """One vault's recognition index plus the caches needed to search it.

    Call :meth:`open` before use and :meth:`close` when done; the engine is
    also a context manager.
    """

    host: DocumentHost
    index_path: Path
    recognize: Recognizer
    context_lines: int = DEFAULT_CONTEXT_LINES
    concurrency: int = DEFAULT_CONCURRENCY
    timeout: float | None = DEFAULT_TIMEOUT
    exclude_folders: tuple[str, ...] = ()
    max_results: int = DEFAULT_MAX_RESULTS
    weights: ScoringWeights = DEFAULT_WEIGHTS
    cache: RecognitionCache = field(init=False)
    extractor: ContextExtractor = field(init=False)
    indexer: ConcurrentIndexer = field(init=False)
    is_open: bool = field(default=False, init=False)
    _query_token: int = field(default=0, init=False)
    _index_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)

    def __post_init__(self) -> None:
        self.cache = RecognitionCache(Path(self.index_path))
        self.extractor = ContextExtractor(self.host, context_lines=self.context_lines)
        self.indexer = ConcurrentIndexer(
            self.cache, self.extractor, self.host, self.recognize, timeout=self.timeout
        )

    def open(self) -> SearchEngine:
        if not self.is_open:
            self.cache.load()
            self.is_open = True
        return self

    def close(self) -> None:
        if self.is_open:
            self.cache.save()
            self.extractor.clear()
            self.is_open = False

    def __enter__(self) -> SearchEngine:
        return self.open()

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # Indexing

    async def index_all(
        self,
        items: Sequence[VaultItem] | None = None,
        concurrency_limit: int | None = None,
        on_progress: ProgressCallback | None = None,
        force: bool = False,
    ) -> int:
        async with self._index_lock:
            if items is None:
                items = await asyncio.to_thread(self.host.list_images)
            return await self.indexer.index_all(
                items, concurrency_limit or self.concurrency, on_progress, force=force
            )

    async def incremental_update(
        self,
        items: Sequence[VaultItem] | None = None,
        concurrency_limit: int | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> IndexUpdate:
        async with self._index_lock:
            if items is None:
                items = await asyncio.to_thread(self.host.list_images)
            return await self.indexer.incremental_update(
                items, concurrency_limit or self.concurrency, on_progress
            )

    async def clear_index(self) -> None:
        async with self._index_lock:
            self.cache.clear()
            self.extractor.clear()
            await self.cache.save_async()

    def get_index_stats(self) -> IndexStats:
        return self.cache.stats()

    def get_cached_result(self, path: str) -> RecognitionResult | None:
        return self.cache.get(path)

    # Search

    @property
    def current_query(self) -> int:
        return self._query_token

    def _is_current(self, token: int) -> bool:
        return token == self._query_token

    def _excluded(self, path: str) -> bool:
        return is_excluded(path, self.exclude_folders)

    async def search(
        self, query: str, max_results: int | None = None, raise_superseded: bool = False
    ) -> list[SearchResult]:
        """Search images and notes for *query*.

        A call that is overtaken by a newer :meth:`search` while it waits on
        document reads returns an empty list, or raises
        :class:`SupersededSearchError` when *raise_superseded* is set.
        """

        self._query_token += 1
        token = self._query_token
        limit = self.max_results if max_results is None else max_results

        trimmed = query.strip()
        if not trimmed or limit <= 0:
            return []

        items = await asyncio.to_thread(self.host.list_items)
        documents = [item for item in items if item.is_document and not self._excluded(item.path)]

        task_command = parse_task_command(trimmed)
        if task_command is not None:
            is_done, remaining = task_command
            results = await self._search_tasks(documents, is_done, remaining, token)
        else:
            if len(trimmed) < MIN_QUERY_LENGTH:
                return []
            terms = parse_query(trimmed)
            keywords = term_keywords(terms)
            if not keywords:
                return []
            images = [item for item in items if item.is_image and not self._excluded(item.path)]
            results = self._search_images(images, terms, keywords)
            results.extend(await self._search_documents(documents, terms, token))

        if not self._is_current(token):
            logger.debug("Discarding results of superseded query %r", query)
            if raise_superseded:
                raise SupersededSearchError(f"Search for {query!r} was superseded by a newer query")
            return []
        return sort_results(results)[:limit]

    def _search_images(
        self, images: Sequence[VaultItem], terms: Sequence[SearchTerm], keywords: list[str]
    ) -> list[SearchResult]:
        negated = negated_terms(terms)
        results = []
        for image in images:
            entry = self.cache.get(image.path)
            searchable = self.cache.searchable_content(image.path)
            if any(text_matches(term, searchable) for term in negated):
                continue
            recognized = entry is not None and evaluate_terms(terms, searchable)
            name_match = _name_matches(image.name, terms, negated)
            if not (recognized or name_match):
                continue

            text = entry.text if entry is not None else ""
            score = score_recognition(text, keywords, self.weights) + self.weights.image_bonus
            if name_match:
                score += self.weights.image_filename_bonus
            context = ""
            if entry is not None and entry.context is not None:
                context = entry.context.nearby_content
            results.append(
                SearchResult(
                    item_ref=image.path,
                    matched_content=format_recognized_text(text) or NO_TEXT_PLACEHOLDER,
                    start_line=0,
                    end_line=0,
                    matched_terms=list(keywords),
                    score=score,
                    context=context,
                    is_image_result=True,
                    modified_time=image.mtime,
                )
            )
        return results

    async def _search_documents(
        self, documents: Sequence[VaultItem], terms: Sequence[SearchTerm], token: int
    ) -> list[SearchResult]:
        negated = negated_terms(terms)
        results: list[SearchResult] = []
        for document in documents:
            if _name_matches(document.basename, terms, negated):
                results.append(
                    SearchResult(
                        item_ref=document.path,
                        matched_content=f"File: {document.basename}",
                        start_line=0,
                        end_line=0,
                        matched_terms=match_positive_terms(document.basename, terms)[1],
                        score=self.weights.filename_match,
                        context=document.path,
                        is_title=True,
                        modified_time=document.mtime,
                    )
                )

            try:
                content = await self.extractor.read_document(document)
            except (OSError, UnicodeDecodeError) as exc:
                logger.warning("Error reading %s during search: %s", document.path, exc)
                continue
            if not self._is_current(token):
                return results

            lines = content.split("\n")
            for block in segment(content):
                matches, matched_terms = match_positive_terms(block.content, terms)
                if not matches:
                    continue
                lowered = block.content.lower()
                if any(text_matches(term, lowered) for term in negated):
                    continue
                start = max(0, block.start_line - 2)
                end = min(len(lines), block.end_line + 1)
                results.append(
                    SearchResult(
                        item_ref=document.path,
                        matched_content=block.content,
                        start_line=block.start_line,
                        end_line=block.end_line,
                        matched_terms=matched_terms,
                        score=score_block(
                            block.content, matched_terms, block.is_title, self.weights
                        ),
                        context="\n".join(lines[start:end]),
                        is_title=block.is_title,
                        modified_time=document.mtime,
                    )
                )
        return results

    async def _search_tasks(
        self, documents: Sequence[VaultItem], is_done: bool, remaining: str, token: int
    ) -> list[SearchResult]:
        pattern = DONE_TASK if is_done else OPEN_TASK
        needle = remaining.lower()
        results: list[SearchResult] = []
        for document in documents:
            try:
                content = await self.extractor.read_document(document)
            except (OSError, UnicodeDecodeError) as exc:
                logger.warning("Error reading %s during task search: %s", document.path, exc)
                continue
            if not self._is_current(token):
                return results

            for number, line in enumerate(content.split("\n"), start=1):
                if not pattern.match(line.strip()):
                    continue
                lowered = line.lower()
                if needle and needle not in lowered:
                    continue
                score = self.weights.task_base
                if needle:
                    score += count_occurrences(lowered, needle) * self.weights.task_occurrence
                results.append(
                    SearchResult(
                        item_ref=document.path,
                        matched_content=line,
                        start_line=number,
                        end_line=number,
                        matched_terms=[needle] if needle else [],
                        score=score,
                        context=line,
                        modified_time=document.mtime,
                    )
                )
        return results
