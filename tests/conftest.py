import asyncio
from collections import Counter

import pytest

from obsidian_ocr_mcp.vault import VaultItem


class MemoryHost:
    """In-memory document collection with controllable mtimes."""

    def __init__(self) -> None:
        self.files: dict[str, tuple[str, int]] = {}
        self.reads: Counter[str] = Counter()
        self.broken: set[str] = set()

    def add(self, path: str, content: str = "", mtime: int = 1_000) -> VaultItem:
        self.files[path] = (content, mtime)
        return VaultItem(path, mtime)

    def touch(self, path: str, mtime: int) -> VaultItem:
        content, _ = self.files[path]
        return self.add(path, content, mtime)

    def list_items(self) -> list[VaultItem]:
        return [VaultItem(path, mtime) for path, (_, mtime) in sorted(self.files.items())]

    def list_images(self) -> list[VaultItem]:
        return [item for item in self.list_items() if item.is_image]

    def list_documents(self) -> list[VaultItem]:
        return [item for item in self.list_items() if item.is_document]

    async def read_document(self, path: str) -> str:
        self.reads[path] += 1
        await asyncio.sleep(0)
        if path in self.broken:
            raise OSError(f"cannot read {path}")
        return self.files[path][0]

    def get_modified_time(self, path: str) -> int:
        return self.files[path][1]

    def resolve_display_path(self, path: str) -> str:
        return f"/vault/{path}"


class FakeRecognizer:
    """Returns canned text per absolute path and records every call."""

    def __init__(self, texts: dict[str, str] | None = None, delay: float = 0.0) -> None:
        self.texts = texts or {}
        self.delay = delay
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def __call__(self, path: str) -> str:
        self.calls.append(path)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            return self.texts.get(path, "")
        finally:
            self.in_flight -= 1


@pytest.fixture
def host() -> MemoryHost:
    return MemoryHost()


@pytest.fixture
def recognizer() -> FakeRecognizer:
    return FakeRecognizer()
