"""Utilities for working with vault roots and item identifiers."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path, PurePosixPath


@dataclass(frozen=True)
class Vault:
    """Container representing a vault root."""

    name: str
    root: Path


class VaultConfigurationError(ValueError):
    """Raised when vault configuration is invalid."""


def parse_vault_paths(raw: str) -> dict[str, Vault]:
    """Parse a comma separated list of vault paths into :class:`Vault` objects."""

    if not raw:
        raise VaultConfigurationError("VAULT_PATHS must be provided")

    vaults: dict[str, Vault] = {}
    for chunk in raw.split(","):
        candidate = chunk.strip()
        if not candidate:
            continue
        path = Path(candidate).expanduser()
        if not path.is_absolute():
            raise VaultConfigurationError(f"Vault path must be absolute: {candidate!r}")
        root = path.resolve(strict=False)
        name = root.name or root.stem
        if name in vaults:
            raise VaultConfigurationError(f"Duplicate vault name detected: {name}")
        vaults[name] = Vault(name=name, root=root)

    if not vaults:
        raise VaultConfigurationError("No valid vault paths provided")

    return vaults


def parse_folder_list(raw: str | None) -> tuple[str, ...]:
    """Parse a comma separated list of vault-relative folders."""

    if not raw:
        return ()
    folders = []
    for chunk in raw.split(","):
        candidate = chunk.strip().strip("/")
        if candidate:
            folders.append(candidate)
    return tuple(folders)


def ensure_in_vault(path: Path, vault: Vault) -> Path:
    """Ensure *path* is inside *vault* and return it resolved."""

    resolved = path.resolve(strict=False)
    try:
        resolved.relative_to(vault.root)
    except ValueError:
        raise PermissionError(f"Path {resolved} is outside vault {vault.name}") from None
    return resolved


def to_identifier(path: Path, vault: Vault) -> str:
    """Return the stable vault-relative POSIX identifier of *path*."""

    relative = ensure_in_vault(path, vault).relative_to(vault.root)
    return relative.as_posix()


def resolve_item_path(identifier: str, vault: Vault) -> Path:
    """Resolve an item identifier back to an absolute path inside *vault*."""

    if not identifier:
        raise ValueError("Empty path provided")
    relative = PurePosixPath(identifier)
    if relative.is_absolute():
        return ensure_in_vault(Path(identifier), vault)
    return ensure_in_vault(vault.root.joinpath(*relative.parts), vault)


def is_excluded(identifier: str, folders: Iterable[str]) -> bool:
    """Return ``True`` when *identifier* lives in (or is) one of *folders*."""

    return any(identifier == folder or identifier.startswith(f"{folder}/") for folder in folders)


def select_vault(name: str | None, vaults: Mapping[str, Vault]) -> Vault:
    """Pick the vault called *name*, or the only vault when *name* is omitted."""

    if name is None:
        if len(vaults) == 1:
            return next(iter(vaults.values()))
        raise ValueError("Multiple vaults configured; specify the 'vault' parameter")
    try:
        return vaults[name]
    except KeyError:
        raise ValueError(f"Unknown vault: {name}") from None


def list_vault_names(vaults: Iterable[Vault]) -> list[str]:
    """Return vault names sorted alphabetically."""

    return sorted(v.name for v in vaults)
