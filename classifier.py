"""Content classification for installed workshop items.

An item contributes at most one file: the first top-level file with an
allow-listed extension. ``.me`` packages are zip archives and are opened to
tell dance packages apart from avatar packages.
"""

from __future__ import annotations

import json
import logging
import zipfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from utils import list_top_files

MODEL_EXTENSION = ".vrm"
PACKAGE_EXTENSION = ".me"
LEGACY_BUNDLE_EXTENSION = ".unity3d"
ALLOWED_EXTENSIONS = (MODEL_EXTENSION, PACKAGE_EXTENSION, LEGACY_BUNDLE_EXTENSION)

SIDECAR_FILE_NAME = "metadata.json"
DANCE_META_ENTRY = "dance_meta.json"
MOD_TYPE_ENTRY = "mod_type.json"
MOD_INFO_ENTRY = "modinfo.json"
PACKAGE_THUMB_ENTRY = "thumb.png"
BUNDLE_ENTRY_SUFFIX = ".bundle"
THUMB_SUFFIX = "_thumb.png"

DEFAULT_AUTHOR = "Workshop"
DEFAULT_VERSION = "1.0"
MOD_TYPE_TAGS = {"mod", "sound", "particle", "animation", "misc"}
_UNKNOWN_AUTHORS = {"unknown", "author: unknown"}


class ContentKind(str, Enum):
    AVATAR = "avatar"
    DANCE = "dance"
    MOD = "mod"
    NONE = "none"

    @property
    def is_mod(self) -> bool:
        return self in (ContentKind.DANCE, ContentKind.MOD)


@dataclass
class AvatarMetadata:
    display_name: str
    author: str = DEFAULT_AUTHOR
    version: str = DEFAULT_VERSION
    file_type: str = "VRM"
    polygon_count: int = 0
    is_nsfw: bool = False


@dataclass
class PackageInfo:
    entries: List[str] = field(default_factory=list)
    is_dance: bool = False
    has_thumbnail: bool = False
    mod_type: Optional[str] = None
    author: Optional[str] = None
    description: Optional[str] = None
    readable: bool = True


@dataclass
class ClassifiedItem:
    kind: ContentKind
    source_path: Optional[Path]
    metadata: Optional[AvatarMetadata] = None
    package: Optional[PackageInfo] = None

    @property
    def file_name(self) -> str:
        return self.source_path.name if self.source_path else ""

    @property
    def is_package(self) -> bool:
        return bool(self.source_path) and self.source_path.suffix.lower() == PACKAGE_EXTENSION

    @property
    def thumbnail_source(self) -> Optional[Path]:
        if self.source_path is None:
            return None
        return self.source_path.with_name(self.source_path.stem + THUMB_SUFFIX)


def select_content_file(install_dir: Path) -> Optional[Path]:
    for path in list_top_files(install_dir):
        if path.suffix.lower() in ALLOWED_EXTENSIONS:
            return path
    return None


def _clean_author(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() in _UNKNOWN_AUTHORS:
        return None
    return text


def _read_entry_json(archive: zipfile.ZipFile, name: str) -> Optional[Dict[str, Any]]:
    try:
        with archive.open(name) as handle:
            data = json.loads(handle.read().decode("utf-8-sig"))
    except (OSError, ValueError, KeyError, zipfile.BadZipFile) as exc:
        logging.debug("Unreadable package entry %s: %s", name, exc)
        return None
    return data if isinstance(data, dict) else None


def inspect_package(path: Path) -> PackageInfo:
    """Read entry names and bundled metadata from a ``.me`` package.

    Any failure yields an unreadable, non-dance ``PackageInfo``.
    """
    try:
        with zipfile.ZipFile(path) as archive:
            names = archive.namelist()
            lookup = {name.lower(): name for name in names}
            info = PackageInfo(entries=names)
            info.is_dance = DANCE_META_ENTRY in lookup or any(
                name.lower().endswith(BUNDLE_ENTRY_SUFFIX) for name in names
            )
            info.has_thumbnail = PACKAGE_THUMB_ENTRY in lookup

            if MOD_TYPE_ENTRY in lookup:
                data = _read_entry_json(archive, lookup[MOD_TYPE_ENTRY]) or {}
                tag = str(data.get("type") or "").strip().lower()
                if tag in MOD_TYPE_TAGS:
                    info.mod_type = tag.capitalize()

            if MOD_INFO_ENTRY in lookup:
                data = _read_entry_json(archive, lookup[MOD_INFO_ENTRY]) or {}
                info.author = _clean_author(data.get("author"))
                description = str(data.get("description") or "").strip()
                info.description = description or None

            if DANCE_META_ENTRY in lookup and info.author is None:
                data = _read_entry_json(archive, lookup[DANCE_META_ENTRY]) or {}
                info.author = _clean_author(data.get("songAuthor")) or _clean_author(
                    data.get("mmdAuthor")
                )
            return info
    except (OSError, zipfile.BadZipFile, ValueError) as exc:
        logging.warning("Failed to inspect package %s: %s", path, exc)
        return PackageInfo(readable=False)


def read_package_entry(path: Path, entry_name: str) -> Optional[bytes]:
    try:
        with zipfile.ZipFile(path) as archive:
            lookup = {name.lower(): name for name in archive.namelist()}
            name = lookup.get(entry_name.lower())
            if name is None:
                return None
            with archive.open(name) as handle:
                return handle.read()
    except (OSError, zipfile.BadZipFile, ValueError, KeyError) as exc:
        logging.debug("Failed to read %s from %s: %s", entry_name, path, exc)
        return None


def read_sidecar(install_dir: Path) -> Dict[str, Any]:
    path = install_dir / SIDECAR_FILE_NAME
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8-sig"))
    except (OSError, ValueError) as exc:
        logging.warning("Ignoring malformed sidecar %s: %s", path, exc)
        return {}
    return data if isinstance(data, dict) else {}


def _sidecar_int(value: Any, default: int) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _sidecar_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "1", "yes"}:
            return True
        if lowered in {"false", "0", "no"}:
            return False
    return default


def build_metadata(source_path: Path, sidecar: Dict[str, Any]) -> AvatarMetadata:
    is_package = source_path.suffix.lower() == PACKAGE_EXTENSION
    meta = AvatarMetadata(
        display_name=source_path.stem,
        file_type=".ME" if is_package else "VRM",
    )
    for key, attr in (
        ("displayName", "display_name"),
        ("author", "author"),
        ("version", "version"),
        ("fileType", "file_type"),
    ):
        value = sidecar.get(key)
        if value is not None:
            setattr(meta, attr, str(value))
    if sidecar.get("polygonCount") is not None:
        meta.polygon_count = _sidecar_int(sidecar["polygonCount"], meta.polygon_count)
    if sidecar.get("isNSFW") is not None:
        meta.is_nsfw = _sidecar_bool(sidecar["isNSFW"], meta.is_nsfw)
    return meta


def classify(install_dir: Path) -> ClassifiedItem:
    source = select_content_file(install_dir)
    if source is None:
        return ClassifiedItem(ContentKind.NONE, None)

    ext = source.suffix.lower()
    if ext == LEGACY_BUNDLE_EXTENSION:
        return ClassifiedItem(ContentKind.MOD, source)

    package: Optional[PackageInfo] = None
    if ext == PACKAGE_EXTENSION:
        package = inspect_package(source)
        if package.is_dance:
            return ClassifiedItem(ContentKind.DANCE, source, package=package)

    metadata = build_metadata(source, read_sidecar(install_dir))
    return ClassifiedItem(ContentKind.AVATAR, source, metadata=metadata, package=package)
