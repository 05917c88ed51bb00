from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from utils import load_json, save_json

AVATARS_FILE_NAME = "avatars.json"
MODS_MAP_FILE_NAME = "mods_workshop_map.json"

_AVATAR_KEYS = (
    "displayName",
    "author",
    "version",
    "fileType",
    "filePath",
    "thumbnailPath",
    "polygonCount",
    "isNSFW",
    "isSteamWorkshop",
    "steamFileId",
    "isOwner",
)


def _as_int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return int(value)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(value)


def _as_str(value: Any, default: str = "") -> str:
    if value is None:
        return default
    return str(value)


@dataclass
class AvatarEntry:
    display_name: str = ""
    author: str = ""
    version: str = ""
    file_type: str = ""
    file_path: str = ""
    thumbnail_path: str = ""
    polygon_count: int = 0
    is_nsfw: bool = False
    is_steam_workshop: bool = False
    remote_id: int = 0
    is_owner: bool = False
    # Keys written by other library owners, carried through untouched.
    extra: Dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AvatarEntry":
        return cls(
            display_name=_as_str(data.get("displayName")),
            author=_as_str(data.get("author")),
            version=_as_str(data.get("version")),
            file_type=_as_str(data.get("fileType")),
            file_path=_as_str(data.get("filePath")),
            thumbnail_path=_as_str(data.get("thumbnailPath")),
            polygon_count=_as_int(data.get("polygonCount")),
            is_nsfw=_as_bool(data.get("isNSFW")),
            is_steam_workshop=_as_bool(data.get("isSteamWorkshop")),
            remote_id=_as_int(data.get("steamFileId")),
            is_owner=_as_bool(data.get("isOwner")),
            extra={k: v for k, v in data.items() if k not in _AVATAR_KEYS},
        )

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data.update(
            {
                "displayName": self.display_name,
                "author": self.author,
                "version": self.version,
                "fileType": self.file_type,
                "filePath": self.file_path,
                "thumbnailPath": self.thumbnail_path,
                "polygonCount": self.polygon_count,
                "isNSFW": self.is_nsfw,
                "isSteamWorkshop": self.is_steam_workshop,
                "steamFileId": self.remote_id,
                "isOwner": self.is_owner,
            }
        )
        return data


class AvatarStore:
    """Ordered avatar entries persisted as a JSON array, unique by ``file_path``."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._entries: List[AvatarEntry] = []

    def load(self) -> "AvatarStore":
        raw = load_json(self.path, list)
        entries: List[AvatarEntry] = []
        seen: set[str] = set()
        if not isinstance(raw, list):
            logging.warning("Ignoring avatar store %s: expected a list", self.path)
            raw = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            entry = AvatarEntry.from_dict(item)
            if entry.file_path in seen:
                logging.debug("Dropping duplicate avatar entry %s", entry.file_path)
                continue
            seen.add(entry.file_path)
            entries.append(entry)
        self._entries = entries
        return self

    def save(self) -> bool:
        try:
            save_json(self.path, [entry.to_dict() for entry in self._entries])
            return True
        except (OSError, TypeError, ValueError) as exc:
            logging.warning("Failed to save avatar store %s: %s", self.path, exc)
            return False

    def __iter__(self) -> Iterator[AvatarEntry]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def find(self, file_path: str) -> Optional[AvatarEntry]:
        for entry in self._entries:
            if entry.file_path == file_path:
                return entry
        return None

    def add(self, entry: AvatarEntry) -> None:
        if self.find(entry.file_path) is not None:
            raise ValueError(f"Avatar entry already exists for {entry.file_path}")
        self._entries.append(entry)

    def remove(self, entry: AvatarEntry) -> None:
        self._entries = [e for e in self._entries if e is not entry]


class ModMapStore:
    """Managed mod filename -> remote id mapping persisted as a JSON object."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._map: Dict[str, int] = {}

    def load(self) -> "ModMapStore":
        raw = load_json(self.path, dict)
        mapping: Dict[str, int] = {}
        if not isinstance(raw, dict):
            logging.warning("Ignoring mod map %s: expected an object", self.path)
            raw = {}
        for name, value in raw.items():
            remote_id = _as_int(value)
            if not name or remote_id <= 0:
                continue
            mapping[str(name)] = remote_id
        self._map = mapping
        return self

    def save(self) -> bool:
        try:
            save_json(self.path, dict(self._map))
            return True
        except (OSError, TypeError, ValueError) as exc:
            logging.warning("Failed to save mod map %s: %s", self.path, exc)
            return False

    def items(self) -> List[tuple[str, int]]:
        return list(self._map.items())

    def get(self, name: str) -> Optional[int]:
        return self._map.get(name)

    def record(self, name: str, remote_id: int) -> bool:
        """Set the mapping row, returning True if it was new or different."""
        if self._map.get(name) == remote_id:
            return False
        self._map[name] = int(remote_id)
        return True

    def remove(self, name: str) -> None:
        self._map.pop(name, None)

    def __len__(self) -> int:
        return len(self._map)

    def __contains__(self, name: object) -> bool:
        return name in self._map
