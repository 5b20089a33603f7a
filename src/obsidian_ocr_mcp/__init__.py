"""OCR indexing and block-level search for Obsidian vaults."""

from .search import SearchEngine, SearchResult, SupersededSearchError

__all__ = ["SearchEngine", "SearchResult", "SupersededSearchError"]
