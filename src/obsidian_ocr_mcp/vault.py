"""Filesystem view of a vault: item enumeration, reads and timestamps."""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Protocol

from .paths import Vault, resolve_item_path, to_identifier

IMAGE_EXTENSIONS = frozenset({"png", "jpg", "jpeg", "gif", "bmp", "svg", "webp"})
DOCUMENT_EXTENSIONS = frozenset({"md"})


@dataclass(frozen=True, slots=True)
class VaultItem:
    """An image or note addressed by its vault-relative path."""

    path: str
    mtime: int = 0

    @property
    def name(self) -> str:
        return PurePosixPath(self.path).name

    @property
    def basename(self) -> str:
        return PurePosixPath(self.path).stem

    @property
    def extension(self) -> str:
        return PurePosixPath(self.path).suffix.lstrip(".").lower()

    @property
    def is_image(self) -> bool:
        return self.extension in IMAGE_EXTENSIONS

    @property
    def is_document(self) -> bool:
        return self.extension in DOCUMENT_EXTENSIONS


class DocumentHost(Protocol):
    """What the engine needs from the document collection."""

    def list_items(self) -> list[VaultItem]: ...

    def list_images(self) -> list[VaultItem]: ...

    def list_documents(self) -> list[VaultItem]: ...

    async def read_document(self, path: str) -> str: ...

    def get_modified_time(self, path: str) -> int: ...

    def resolve_display_path(self, path: str) -> str: ...


def _mtime_ms(path: Path) -> int:
    return path.stat().st_mtime_ns // 1_000_000


@dataclass(slots=True)
class VaultHost:
    """:class:`DocumentHost` backed by a vault directory on disk."""

    vault: Vault

    def list_items(self) -> list[VaultItem]:
        """Return every image and note of the vault, sorted by path.

        Hidden directories (``.obsidian``, ``.trash``, ...) are not walked.
        """

        items: list[VaultItem] = []
        for directory, dirnames, filenames in os.walk(self.vault.root):
            dirnames[:] = [name for name in dirnames if not name.startswith(".")]
            base = Path(directory)
            for filename in filenames:
                if filename.startswith("."):
                    continue
                path = base / filename
                item = VaultItem(path.relative_to(self.vault.root).as_posix())
                if not (item.is_image or item.is_document) or not path.is_file():
                    continue
                items.append(VaultItem(item.path, _mtime_ms(path)))
        return sorted(items, key=lambda item: item.path)

    def list_images(self) -> list[VaultItem]:
        return [item for item in self.list_items() if item.is_image]

    def list_documents(self) -> list[VaultItem]:
        return [item for item in self.list_items() if item.is_document]

    def get_item(self, path: str) -> VaultItem:
        target = resolve_item_path(path, self.vault)
        return VaultItem(to_identifier(target, self.vault), _mtime_ms(target))

    async def read_document(self, path: str) -> str:
        target = resolve_item_path(path, self.vault)
        return await asyncio.to_thread(target.read_text, encoding="utf-8")

    def get_modified_time(self, path: str) -> int:
        return _mtime_ms(resolve_item_path(path, self.vault))

    def resolve_display_path(self, path: str) -> str:
        return str(resolve_item_path(path, self.vault))
