"""Firmware catalog interface and a local directory implementation.

Manifests follow the ESP Web Tools layout: a JSON document with a list of
builds, each listing the binary parts and their flash offsets. Part paths are
relative to the directory containing the manifest.
"""

from __future__ import annotations

import asyncio
import logging
import posixpath
from pathlib import Path
from typing import Annotated, Protocol

import msgspec

from ..errors import CatalogError

logger = logging.getLogger("flashlink.catalog")


class ManifestPart(msgspec.Struct, frozen=True):
    path: str
    offset: Annotated[int, msgspec.Meta(ge=0)]


class ManifestBuild(msgspec.Struct, frozen=True):
    parts: list[ManifestPart]
    chip_family: str | None = msgspec.field(default=None, name="chipFamily")


class FirmwareManifest(msgspec.Struct, frozen=True):
    builds: list[ManifestBuild]
    name: str | None = None
    version: str | None = None


class VersionDescriptor(msgspec.Struct, frozen=True):
    """One selectable firmware version."""

    id: str
    name: str
    manifest_path: str


class FirmwareCatalog(Protocol):
    async def fetch_manifest(self, version: VersionDescriptor) -> FirmwareManifest: ...

    async def fetch_binary(self, path: str) -> bytes: ...


def part_location(manifest_path: str, part_path: str) -> str:
    """Resolve *part_path* against the directory holding *manifest_path*."""
    base, _, _ = manifest_path.rpartition("/")
    if not base:
        return part_path
    return posixpath.join(base, part_path)


def decode_manifest(payload: bytes, *, source: str = "<memory>") -> FirmwareManifest:
    try:
        return msgspec.json.decode(payload, type=FirmwareManifest)
    except (msgspec.ValidationError, msgspec.DecodeError) as exc:
        raise CatalogError(f"Invalid manifest {source}: {exc}") from exc


class DirectoryCatalog:
    """Catalog backed by a local directory tree."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).resolve()

    @property
    def root(self) -> Path:
        return self._root

    def _resolve(self, relative: str) -> Path:
        candidate = (self._root / relative.lstrip("/")).resolve()
        if not candidate.is_relative_to(self._root):
            raise CatalogError(f"{relative} escapes the catalog root")
        return candidate

    async def _read(self, relative: str) -> bytes:
        target = self._resolve(relative)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except OSError as exc:
            raise CatalogError(f"Cannot read {relative}: {exc}") from exc

    async def fetch_manifest(self, version: VersionDescriptor) -> FirmwareManifest:
        logger.debug("Loading manifest %s for %s", version.manifest_path, version.id)
        payload = await self._read(version.manifest_path)
        return decode_manifest(payload, source=version.manifest_path)

    async def fetch_binary(self, path: str) -> bytes:
        data = await self._read(path)
        logger.debug("Fetched %s (%d bytes)", path, len(data))
        return data


__all__ = [
    "DirectoryCatalog",
    "FirmwareCatalog",
    "FirmwareManifest",
    "ManifestBuild",
    "ManifestPart",
    "VersionDescriptor",
    "decode_manifest",
    "part_location",
]
