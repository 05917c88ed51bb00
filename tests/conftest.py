"""Pytest configuration and shared fixtures."""

import json
import zipfile
from pathlib import Path

import pytest

from reconciler import LibraryPaths, Reconciler
from snapshot import RemoteItem, RemoteSnapshot
from workshop import ItemState, WorkshopPlatform


class FakePlatform(WorkshopPlatform):
    """In-memory workshop: items are folders under ``install_root``."""

    def __init__(self, install_root: Path):
        self.install_root = install_root
        self.subscriptions: list[int] = []
        self.installed: dict[int, Path] = {}
        self.stale: set[int] = set()
        self.downloads: list[int] = []
        self.install_after_polls: dict[int, int] = {}
        self.polls: dict[int, int] = {}

    def subscribe(self, item_id: int, files: dict | None = None, installed: bool = True) -> Path:
        """Subscribe to an item and lay out its installed files.

        ``files`` maps file name -> bytes, str or a dict (written as JSON).
        """
        if item_id not in self.subscriptions:
            self.subscriptions.append(item_id)
        folder = self.install_root / str(item_id)
        folder.mkdir(parents=True, exist_ok=True)
        for name, content in (files or {}).items():
            path = folder / name
            if isinstance(content, dict):
                path.write_text(json.dumps(content), encoding="utf-8")
            elif isinstance(content, str):
                path.write_text(content, encoding="utf-8")
            else:
                path.write_bytes(content)
        if installed:
            self.installed[item_id] = folder
        return folder

    def unsubscribe(self, item_id: int) -> None:
        self.subscriptions = [i for i in self.subscriptions if i != item_id]
        self.stale.discard(item_id)

    def subscribed_items(self):
        return list(self.subscriptions)

    def item_state(self, item_id):
        return ItemState(item_id in self.installed, item_id in self.stale)

    def install_info(self, item_id):
        self.polls[item_id] = self.polls.get(item_id, 0) + 1
        needed = self.install_after_polls.get(item_id, 0)
        if self.polls[item_id] <= needed:
            return None
        return self.installed.get(item_id)

    def download_item(self, item_id):
        self.downloads.append(item_id)
        return True


def make_snapshot(platform: FakePlatform) -> RemoteSnapshot:
    items = tuple(
        RemoteItem(item_id, platform.installed[item_id], item_id in platform.stale)
        for item_id in platform.subscriptions
        if item_id in platform.installed
    )
    return RemoteSnapshot(items=items, subscribed_ids=frozenset(platform.subscriptions))


def make_package(path: Path, entries: dict) -> Path:
    """Write a ``.me`` zip package; dict values are stored as JSON."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w") as archive:
        for name, content in entries.items():
            if isinstance(content, dict):
                content = json.dumps(content)
            archive.writestr(name, content)
    return path


def package_bytes(tmp_path: Path, entries: dict) -> bytes:
    return make_package(tmp_path / "_pkg_build.me", entries).read_bytes()


def png_bytes(color=(255, 0, 0), size=(4, 4)) -> bytes:
    import io

    from PIL import Image

    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def read_avatars(paths: LibraryPaths) -> list[dict]:
    return json.loads(paths.avatars_store.read_text(encoding="utf-8"))


def read_mod_map(paths: LibraryPaths) -> dict:
    return json.loads(paths.mods_map_store.read_text(encoding="utf-8"))


@pytest.fixture
def library(tmp_path) -> LibraryPaths:
    paths = LibraryPaths(tmp_path / "data", tmp_path / "cache")
    paths.ensure()
    return paths


@pytest.fixture
def platform(tmp_path) -> FakePlatform:
    return FakePlatform(tmp_path / "steam" / "content")


@pytest.fixture
def reconciler(library) -> Reconciler:
    return Reconciler(library)
