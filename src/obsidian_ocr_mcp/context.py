"""Find the notes that embed an item and the text written around the embeds."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field

from .cache import ReferenceContext, ReferencingDocument
from .vault import DocumentHost, VaultItem

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_LINES = 3
DEFAULT_BATCH_SIZE = 10

LINE_SEPARATOR = " | "
SITE_SEPARATOR = " || "
DOCUMENT_SEPARATOR = "\n---\n"

CONTENT_CACHE_LIMIT = 500
CONTENT_CACHE_KEEP = 250
PATTERN_CACHE_LIMIT = 100


def compile_reference_patterns(name: str, basename: str) -> tuple[re.Pattern[str], ...]:
    """Wiki embed, markdown image, HTML ``<img>`` and wiki embed by basename."""

    escaped_name = re.escape(name)
    escaped_basename = re.escape(basename)
    return (
        re.compile(rf"!\[\[(?:[^\]|]*/)?{escaped_name}(?:\|[^\]]*)?\]\]", re.IGNORECASE),
        re.compile(rf"!\[.*?\]\(.*?{escaped_name}.*?\)", re.IGNORECASE),
        re.compile(rf"<img.*?src=[\"'].*?{escaped_name}.*?[\"']", re.IGNORECASE),
        re.compile(rf"!\[\[(?:[^\]|]*/)?{escaped_basename}(?:\|[^\]]*)?\]\]", re.IGNORECASE),
    )


def should_skip_line(line: str) -> bool:
    """Lines that carry no prose: blanks, headings, embeds, rules and fences."""

    trimmed = line.strip()
    return (
        not trimmed
        or trimmed.startswith("#")
        or trimmed.startswith("![")
        or "<img" in trimmed
        or trimmed.startswith("---")
        or trimmed.startswith("```")
    )


def references_item(content: str, item: VaultItem) -> bool:
    return item.name in content or item.path in content or item.basename in content


def collect_nearby_lines(lines: Sequence[str], index: int, max_lines: int) -> list[str]:
    """Up to *max_lines* prose lines before and after ``lines[index]``."""

    before: list[str] = []
    for j in range(index - 1, -1, -1):
        if len(before) >= max_lines:
            break
        if not should_skip_line(lines[j]):
            before.append(lines[j].strip())
    before.reverse()

    after: list[str] = []
    for j in range(index + 1, len(lines)):
        if len(after) >= max_lines:
            break
        if not should_skip_line(lines[j]):
            after.append(lines[j].strip())

    return before + after


@dataclass(slots=True)
class ContextExtractor:
    """Scans the corpus for references to an item.

    Document contents are cached per path together with the modification
    time they were read at; compiled reference patterns are cached per
    ``(name, basename)``.
    """

    host: DocumentHost
    context_lines: int = DEFAULT_CONTEXT_LINES
    batch_size: int = DEFAULT_BATCH_SIZE
    _contents: dict[str, tuple[str, int]] = field(default_factory=dict, init=False)
    _patterns: dict[tuple[str, str], tuple[re.Pattern[str], ...]] = field(
        default_factory=dict, init=False
    )

    async def read_document(self, document: VaultItem) -> str:
        cached = self._contents.get(document.path)
        if cached is not None and cached[1] >= document.mtime:
            return cached[0]
        content = await self.host.read_document(document.path)
        self._contents[document.path] = (content, document.mtime)
        return content

    def patterns_for(self, item: VaultItem) -> tuple[re.Pattern[str], ...]:
        key = (item.name, item.basename)
        patterns = self._patterns.get(key)
        if patterns is None:
            patterns = compile_reference_patterns(item.name, item.basename)
            self._patterns[key] = patterns
        return patterns

    def nearby_content(self, content: str, item: VaultItem) -> str:
        lines = content.split("\n")
        patterns = self.patterns_for(item)
        sites = []
        for index, line in enumerate(lines):
            if any(pattern.search(line) for pattern in patterns):
                nearby = collect_nearby_lines(lines, index, self.context_lines)
                if nearby:
                    sites.append(LINE_SEPARATOR.join(nearby))
        return SITE_SEPARATOR.join(sites)

    async def _scan_document(
        self, item: VaultItem, document: VaultItem
    ) -> tuple[ReferencingDocument, str] | None:
        try:
            content = await self.read_document(document)
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Failed to read %s while extracting context: %s", document.path, exc)
            return None
        if not references_item(content, item):
            return None
        return (
            ReferencingDocument(title=document.basename, path=document.path),
            self.nearby_content(content, item),
        )

    async def extract_context(
        self, item: VaultItem, corpus: Sequence[VaultItem]
    ) -> ReferenceContext:
        """Build a fresh :class:`ReferenceContext` for *item*.

        Documents are read in batches of ``batch_size``: concurrently within a
        batch, one batch after another.
        """

        documents: list[ReferencingDocument] = []
        snippets: list[str] = []
        for start in range(0, len(corpus), self.batch_size):
            batch = corpus[start : start + self.batch_size]
            found = await asyncio.gather(*(self._scan_document(item, doc) for doc in batch))
            for entry in found:
                if entry is None:
                    continue
                document, snippet = entry
                documents.append(document)
                if snippet:
                    snippets.append(f"{document.title}: {snippet}")

        return ReferenceContext(
            referencing_documents=tuple(documents),
            nearby_content=DOCUMENT_SEPARATOR.join(snippets),
        )

    def cleanup_caches(self) -> None:
        if len(self._contents) > CONTENT_CACHE_LIMIT:
            newest = sorted(self._contents.items(), key=lambda entry: entry[1][1], reverse=True)
            self._contents = dict(newest[:CONTENT_CACHE_KEEP])
        if len(self._patterns) > PATTERN_CACHE_LIMIT:
            self._patterns.clear()

    def clear(self) -> None:
        self._contents.clear()
        self._patterns.clear()

    @property
    def cached_documents(self) -> int:
        return len(self._contents)
