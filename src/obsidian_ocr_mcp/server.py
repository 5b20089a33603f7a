"""FastMCP server exposing OCR indexing and vault search tools."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, TypeVar, cast

from dotenv import load_dotenv
from fastmcp import FastMCP
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from .context import DEFAULT_CONTEXT_LINES
from .indexer import DEFAULT_CONCURRENCY, DEFAULT_TIMEOUT
from .paths import (
    Vault,
    list_vault_names,
    parse_folder_list,
    parse_vault_paths,
    resolve_item_path,
    select_vault,
    to_identifier,
)
from .recognizer import DEFAULT_COMMAND, CommandRecognizer
from .search import DEFAULT_MAX_RESULTS, SearchEngine, SupersededSearchError
from .security import HEALTH_PATH, build_security_middleware
from .vault import VaultHost

TToolFunc = TypeVar("TToolFunc", bound=Callable[..., Any])

INDEX_FILE_NAME = "ocr-index.json"
PLUGIN_DATA_DIR = Path(".obsidian") / "plugins" / "image-gallery-plugin"

logger = logging.getLogger(__name__)

load_dotenv()


@dataclass(slots=True)
class Settings:
    vaults: Mapping[str, Vault]
    host: str
    port: int
    shared_secret: str | None
    log_level: str
    recognition_command: str = DEFAULT_COMMAND
    fallback_command: str | None = None
    recognition_timeout: float = DEFAULT_TIMEOUT
    concurrency: int = DEFAULT_CONCURRENCY
    context_lines: int = DEFAULT_CONTEXT_LINES
    exclude_folders: tuple[str, ...] = ()
    index_dir: Path | None = None

    def index_path(self, vault: Vault) -> Path:
        if self.index_dir is not None:
            return self.index_dir / f"{vault.name}-{INDEX_FILE_NAME}"
        return vault.root / PLUGIN_DATA_DIR / INDEX_FILE_NAME


@dataclass(slots=True)
class IndexService:
    """Per-vault search engines behind the MCP tools."""

    settings: Settings
    recognizer: CommandRecognizer = field(init=False)
    _engines: dict[str, SearchEngine] = field(default_factory=dict, init=False)

    def __post_init__(self) -> None:
        self.recognizer = CommandRecognizer(
            self.settings.recognition_command, self.settings.fallback_command
        )

    def engine(self, vault_name: str | None = None) -> SearchEngine:
        vault = select_vault(vault_name, self.settings.vaults)
        engine = self._engines.get(vault.name)
        if engine is None:
            engine = SearchEngine(
                host=VaultHost(vault),
                index_path=self.settings.index_path(vault),
                recognize=self.recognizer,
                context_lines=self.settings.context_lines,
                concurrency=self.settings.concurrency,
                timeout=self.settings.recognition_timeout,
                exclude_folders=self.settings.exclude_folders,
            )
            self._engines[vault.name] = engine
        return engine.open()

    def close(self) -> None:
        for engine in self._engines.values():
            engine.close()
        self._engines.clear()

    def list_available_vaults(self) -> dict[str, list[str]]:
        return {"vaults": list_vault_names(self.settings.vaults.values())}

    async def search(
        self, query: str, vault: str | None = None, max_results: int = DEFAULT_MAX_RESULTS
    ) -> dict[str, Any]:
        try:
            results = await self.engine(vault).search(query, max_results, raise_superseded=True)
            return {"ok": True, "results": [result.to_dict() for result in results]}
        except SupersededSearchError:
            return {"ok": False, "error": "superseded"}
        except Exception as exc:
            return {"ok": False, "error": str(exc)}

    async def index_all(self, vault: str | None = None, force: bool = False) -> dict[str, Any]:
        try:
            engine = self.engine(vault)

            def progress(current: int, total: int) -> None:
                logger.debug("Indexed %d/%d images", current, total)

            recognized = await engine.index_all(on_progress=progress, force=force)
            stats = engine.get_index_stats()
            return {"ok": True, "recognized": recognized, "total": stats.total}
        except Exception as exc:
            return {"ok": False, "error": str(exc)}

    async def incremental_update(self, vault: str | None = None) -> dict[str, Any]:
        try:
            update = await self.engine(vault).incremental_update()
            return {"ok": True, "indexed": update.indexed, "skipped": update.skipped}
        except Exception as exc:
            return {"ok": False, "error": str(exc)}

    async def clear_index(self, vault: str | None = None) -> dict[str, Any]:
        try:
            await self.engine(vault).clear_index()
            return {"ok": True}
        except Exception as exc:
            return {"ok": False, "error": str(exc)}

    def index_stats(self, vault: str | None = None) -> dict[str, Any]:
        try:
            stats = self.engine(vault).get_index_stats()
            return {"ok": True, "total": stats.total, "size_bytes": stats.size_bytes}
        except Exception as exc:
            return {"ok": False, "error": str(exc)}

    def _identifier(self, path: str, vault: str | None) -> str:
        selected = select_vault(vault, self.settings.vaults)
        return to_identifier(resolve_item_path(path, selected), selected)

    def cached_result(self, path: str, vault: str | None = None) -> dict[str, Any]:
        try:
            identifier = self._identifier(path, vault)
            result = self.engine(vault).get_cached_result(identifier)
            if result is None:
                return {"ok": True, "path": identifier, "exists": False}
            return {"ok": True, "path": identifier, "exists": True, "result": asdict(result)}
        except Exception as exc:
            return {"ok": False, "error": str(exc)}

    async def debug_recognition(self, path: str, vault: str | None = None) -> dict[str, Any]:
        try:
            selected = select_vault(vault, self.settings.vaults)
            target = resolve_item_path(path, selected)
            if not target.exists():
                return {"ok": False, "error": "Image does not exist"}
            debug = await self.recognizer.debug(str(target))
            return {"ok": debug.error is None, **asdict(debug)}
        except Exception as exc:
            return {"ok": False, "error": str(exc)}


def load_settings() -> Settings:
    """Load configuration from environment variables."""

    raw_vaults = os.environ.get("VAULT_PATHS", "")
    vaults = parse_vault_paths(raw_vaults)

    host = os.environ.get("HOST", "0.0.0.0")  # noqa: S104 (intentional bind)
    port = int(os.environ.get("PORT", "8000"))
    shared_secret = os.environ.get("MCP_SHARED_SECRET")

    log_level = os.environ.get("LOG_LEVEL", "info").upper()
    logging.basicConfig(level=getattr(logging, log_level, logging.INFO))

    index_dir = os.environ.get("INDEX_DIR")

    return Settings(
        vaults=vaults,
        host=host,
        port=port,
        shared_secret=shared_secret,
        log_level=log_level,
        recognition_command=os.environ.get("OCR_COMMAND", DEFAULT_COMMAND),
        fallback_command=os.environ.get("OCR_FALLBACK_COMMAND") or None,
        recognition_timeout=float(os.environ.get("OCR_TIMEOUT", str(DEFAULT_TIMEOUT))),
        concurrency=int(os.environ.get("OCR_CONCURRENCY", str(DEFAULT_CONCURRENCY))),
        context_lines=int(os.environ.get("CONTEXT_LINES", str(DEFAULT_CONTEXT_LINES))),
        exclude_folders=parse_folder_list(os.environ.get("SEARCH_EXCLUDE_FOLDERS")),
        index_dir=Path(index_dir).expanduser() if index_dir else None,
    )


def create_server(settings: Settings | None = None) -> tuple[FastMCP, list[Middleware]]:
    """Create a configured :class:`FastMCP` instance and its security middleware."""

    settings = settings or load_settings()
    server = FastMCP(
        "Obsidian OCR Search",
        instructions="Search text recognized in vault images and notes",
    )

    security_middleware = build_security_middleware(settings.shared_secret)

    service = IndexService(settings)

    def tool(*args: Any, **kwargs: Any) -> Callable[[TToolFunc], TToolFunc]:
        decorator = server.tool(*args, **kwargs)
        return cast(Callable[[TToolFunc], TToolFunc], decorator)

    @tool()
    async def list_available_vaults() -> dict[str, list[str]]:
        return service.list_available_vaults()

    @tool()
    async def search(
        query: str, vault: str | None = None, max_results: int = DEFAULT_MAX_RESULTS
    ) -> dict[str, Any]:
        return await service.search(query, vault, max_results)

    @tool()
    async def index_all(vault: str | None = None, force: bool = False) -> dict[str, Any]:
        return await service.index_all(vault, force)

    @tool()
    async def incremental_update(vault: str | None = None) -> dict[str, Any]:
        return await service.incremental_update(vault)

    @tool()
    async def clear_index(vault: str | None = None) -> dict[str, Any]:
        return await service.clear_index(vault)

    @tool()
    async def index_stats(vault: str | None = None) -> dict[str, Any]:
        return service.index_stats(vault)

    @tool()
    async def cached_result(path: str, vault: str | None = None) -> dict[str, Any]:
        return service.cached_result(path, vault)

    @tool()
    async def debug_recognition(path: str, vault: str | None = None) -> dict[str, Any]:
        return await service.debug_recognition(path, vault)

    @server.custom_route(HEALTH_PATH, methods=["GET"])
    async def health(request: Request) -> JSONResponse:
        return JSONResponse({"status": "ok"})

    return cast(FastMCP, server), security_middleware


def main() -> None:
    """Run the FastMCP server."""

    settings = load_settings()
    server, security_middleware = create_server(settings)
    server.run(
        transport="http",
        host=settings.host,
        port=settings.port,
        middleware=security_middleware,
    )


if __name__ == "__main__":
    main()
