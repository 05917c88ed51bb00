"""Reconciliation of a remote snapshot against the local libraries.

One pass loads both stores fresh, applies every snapshot item, evicts local
state whose subscription is gone, and writes back only the stores that
changed. Individual file failures are logged and skipped; they never abort the
pass.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional

from PIL import Image, ImageOps, UnidentifiedImageError

from classifier import (
    PACKAGE_THUMB_ENTRY,
    THUMB_SUFFIX,
    AvatarMetadata,
    ClassifiedItem,
    ContentKind,
    build_metadata,
    classify,
    read_package_entry,
)
from snapshot import RemoteItem, RemoteSnapshot
from store import AVATARS_FILE_NAME, MODS_MAP_FILE_NAME, AvatarEntry, AvatarStore, ModMapStore
from telemetry import set_attributes, start_span
from utils import copy_file, copy_file_if_needed, ensure_dir, is_inside, safe_rmtree, safe_unlink

AVATARS_DIR_NAME = "Steam Workshop"
MODS_DIR_NAME = "Mods"
THUMBNAILS_DIR_NAME = "Thumbnails"
MOD_CACHE_DIR_NAME = "ME_Cache"


@dataclass(frozen=True)
class LibraryPaths:
    data_root: Path
    cache_root: Path

    @property
    def avatars_dir(self) -> Path:
        return self.data_root / AVATARS_DIR_NAME

    @property
    def mods_dir(self) -> Path:
        return self.data_root / MODS_DIR_NAME

    @property
    def thumbnails_dir(self) -> Path:
        return self.data_root / THUMBNAILS_DIR_NAME

    @property
    def mod_cache_dir(self) -> Path:
        return self.cache_root / MOD_CACHE_DIR_NAME

    @property
    def avatars_store(self) -> Path:
        return self.data_root / AVATARS_FILE_NAME

    @property
    def mods_map_store(self) -> Path:
        return self.data_root / MODS_MAP_FILE_NAME

    def thumbnail_for(self, content_name: str) -> Path:
        return self.thumbnails_dir / f"{Path(content_name).stem}{THUMB_SUFFIX}"

    def ensure(self) -> None:
        for path in (self.avatars_dir, self.mods_dir, self.thumbnails_dir):
            ensure_dir(path)


@dataclass
class ReconcileResult:
    avatars_changed: bool = False
    mods_changed: bool = False
    created: int = 0
    updated: int = 0
    copied: int = 0
    evicted: int = 0
    demoted: int = 0
    skipped: int = 0

    @property
    def changed(self) -> bool:
        return self.avatars_changed or self.mods_changed


def write_thumbnail(data: bytes | Path, target: Path) -> bool:
    """Store an image as PNG at ``target``.

    Images Pillow cannot decode are copied through unchanged.
    """
    ensure_dir(target.parent)
    temp_path = target.with_name(f"{target.name}.part")
    try:
        source = io.BytesIO(data) if isinstance(data, bytes) else data
        with Image.open(source) as img:
            img = ImageOps.exif_transpose(img)
            if img.mode not in ("RGB", "RGBA", "L", "LA", "P"):
                img = img.convert("RGBA")
            img.save(temp_path, format="PNG")
        temp_path.replace(target)
        return True
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        logging.debug("Thumbnail %s is not a decodable image: %s", target, exc)
    finally:
        if temp_path.exists():
            safe_unlink(temp_path)

    if isinstance(data, Path):
        return copy_file(data, target)
    try:
        target.write_bytes(data)
        return True
    except OSError as exc:
        logging.warning("Failed to write thumbnail %s: %s", target, exc)
        return False


def _avatar_owner(avatars: AvatarStore, path: Path) -> Optional[int]:
    entry = avatars.find(str(path))
    return entry.remote_id if entry is not None else None


def merge_entry(
    entry: AvatarEntry,
    meta: AvatarMetadata,
    thumbnail_path: str,
    remote_id: int,
) -> bool:
    """Fold classified metadata into an existing entry.

    Locally owned fields (``is_owner``, unknown keys) are left alone and a
    populated thumbnail path is never replaced with an empty one.
    """
    changed = False
    for attr, value in (
        ("display_name", meta.display_name),
        ("author", meta.author),
        ("version", meta.version),
        ("file_type", meta.file_type),
        ("polygon_count", meta.polygon_count),
        ("is_nsfw", meta.is_nsfw),
    ):
        if getattr(entry, attr) != value:
            setattr(entry, attr, value)
            changed = True
    if thumbnail_path and entry.thumbnail_path != thumbnail_path:
        entry.thumbnail_path = thumbnail_path
        changed = True
    if entry.remote_id == 0:
        entry.remote_id = remote_id
        entry.is_steam_workshop = True
        changed = True
    return changed


class Reconciler:
    def __init__(
        self,
        paths: LibraryPaths,
        classify_fn: Callable[[Path], ClassifiedItem] = classify,
    ) -> None:
        self.paths = paths
        self.classify_fn = classify_fn

    def run(self, snapshot: RemoteSnapshot) -> ReconcileResult:
        with start_span(
            "reconcile.pass",
            {
                "snapshot.items": len(snapshot.items),
                "snapshot.subscribed": len(snapshot.subscribed_ids),
            },
        ) as span:
            self.paths.ensure()
            avatars = AvatarStore(self.paths.avatars_store).load()
            mod_map = ModMapStore(self.paths.mods_map_store).load()
            result = ReconcileResult()

            for item in snapshot.items:
                try:
                    self._reconcile_item(item, avatars, mod_map, result)
                except Exception:
                    logging.exception("Failed to reconcile workshop item %s", item.remote_id)
                    result.skipped += 1

            with start_span("reconcile.evict"):
                self._evict_avatars(snapshot.subscribed_ids, avatars, result)
                self._evict_mods(snapshot.subscribed_ids, mod_map, result)

            if result.avatars_changed:
                avatars.save()
            if result.mods_changed:
                mod_map.save()

            set_attributes(
                span,
                {
                    "reconcile.avatars_changed": result.avatars_changed,
                    "reconcile.mods_changed": result.mods_changed,
                    "reconcile.evicted": result.evicted,
                },
            )
            logging.info(
                "Reconcile pass: avatars_changed=%s mods_changed=%s created=%s "
                "updated=%s copied=%s evicted=%s demoted=%s skipped=%s",
                result.avatars_changed,
                result.mods_changed,
                result.created,
                result.updated,
                result.copied,
                result.evicted,
                result.demoted,
                result.skipped,
            )
            return result

    def _reconcile_item(
        self,
        item: RemoteItem,
        avatars: AvatarStore,
        mod_map: ModMapStore,
        result: ReconcileResult,
    ) -> None:
        classified = self.classify_fn(item.install_path)
        source = classified.source_path
        if classified.kind is ContentKind.NONE or source is None:
            logging.debug("Workshop item %s has no supported content", item.remote_id)
            result.skipped += 1
            return
        if classified.kind.is_mod:
            self._sync_mod(item, classified, source, mod_map, result)
        else:
            meta = classified.metadata or build_metadata(source, {})
            self._sync_avatar(item, classified, source, meta, avatars, result)

    def _claim_target(
        self,
        directory: Path,
        file_name: str,
        remote_id: int,
        owner_of: Callable[[Path], Optional[int]],
    ) -> Path:
        """Pick where ``remote_id`` stores ``file_name`` inside ``directory``.

        The first claimant keeps the bare name and later claimants get
        ``<id>_<name>``. A bare name is claimed when it is recorded for any
        other id (0 included) or when an unrecorded file already sits there.
        A prefixed name, once recorded for the item, is kept.
        """
        prefixed = directory / f"{remote_id}_{file_name}"
        if owner_of(prefixed) == remote_id:
            return prefixed
        bare = directory / file_name
        owner = owner_of(bare)
        if owner == remote_id or (owner is None and not bare.exists()):
            return bare
        logging.info(
            "%s already claimed by %s, storing item %s as %s",
            file_name,
            f"item {owner}" if owner is not None else "a local file",
            remote_id,
            prefixed.name,
        )
        return prefixed

    # --- mods ---

    def _sync_mod(
        self,
        item: RemoteItem,
        classified: ClassifiedItem,
        source: Path,
        mod_map: ModMapStore,
        result: ReconcileResult,
    ) -> None:
        target = self._claim_target(
            self.paths.mods_dir,
            source.name,
            item.remote_id,
            lambda path: mod_map.get(path.name),
        )
        copied = copy_file_if_needed(source, target, item.needs_update)
        if copied:
            result.copied += 1
            result.mods_changed = True
        if not target.exists():
            logging.warning("Mod %s for item %s was not copied", source.name, item.remote_id)
            result.skipped += 1
            return
        if mod_map.record(target.name, item.remote_id):
            result.mods_changed = True

        package = classified.package
        if classified.is_package and package is not None and package.has_thumbnail:
            thumb = self.paths.thumbnail_for(target.name)
            if copied or not thumb.exists():
                data = read_package_entry(source, PACKAGE_THUMB_ENTRY)
                if data:
                    write_thumbnail(data, thumb)
        if package is not None:
            logging.debug(
                "Mod %s (item %s): kind=%s type=%s author=%s",
                target.name,
                item.remote_id,
                classified.kind.value,
                package.mod_type or "-",
                package.author or "-",
            )

    # --- avatars ---

    def _sync_avatar_thumbnail(
        self, classified: ClassifiedItem, target: Path, refresh: bool
    ) -> str:
        out_path = self.paths.thumbnail_for(target.name)
        candidates = [
            classified.thumbnail_source,
            target.with_name(target.stem + THUMB_SUFFIX),
        ]
        source = next((p for p in candidates if p is not None and p.is_file()), None)
        if source is not None:
            if refresh or not out_path.exists():
                if not write_thumbnail(source, out_path):
                    return ""
            return str(out_path)

        package = classified.package
        if classified.is_package and package is not None and package.has_thumbnail:
            if refresh or not out_path.exists():
                data = read_package_entry(classified.source_path, PACKAGE_THUMB_ENTRY)
                if not data or not write_thumbnail(data, out_path):
                    return ""
            return str(out_path)
        return ""

    def _sync_avatar(
        self,
        item: RemoteItem,
        classified: ClassifiedItem,
        source: Path,
        meta: AvatarMetadata,
        avatars: AvatarStore,
        result: ReconcileResult,
    ) -> None:
        target = self._claim_target(
            self.paths.avatars_dir,
            source.name,
            item.remote_id,
            lambda path: _avatar_owner(avatars, path),
        )
        copied = copy_file_if_needed(source, target, item.needs_update)
        if copied:
            result.copied += 1
        thumbnail_path = self._sync_avatar_thumbnail(
            classified, target, refresh=copied or item.needs_update
        )

        entry = avatars.find(str(target))
        if entry is None:
            if not target.exists():
                logging.warning("Avatar %s for item %s was not copied", source.name, item.remote_id)
                result.skipped += 1
                return
            avatars.add(
                AvatarEntry(
                    display_name=meta.display_name,
                    author=meta.author,
                    version=meta.version,
                    file_type=meta.file_type,
                    file_path=str(target),
                    thumbnail_path=thumbnail_path,
                    polygon_count=meta.polygon_count,
                    is_nsfw=meta.is_nsfw,
                    is_steam_workshop=True,
                    remote_id=item.remote_id,
                    is_owner=False,
                )
            )
            result.created += 1
            result.avatars_changed = True
            logging.info("Added workshop avatar %s (item %s)", target.name, item.remote_id)
            return

        if merge_entry(entry, meta, thumbnail_path, item.remote_id):
            result.updated += 1
            result.avatars_changed = True
        if copied:
            result.avatars_changed = True

    # --- eviction ---

    def _evict_avatars(
        self,
        subscribed_ids: Iterable[int],
        avatars: AvatarStore,
        result: ReconcileResult,
    ) -> None:
        subscribed = set(subscribed_ids)
        for entry in avatars:
            if not entry.is_steam_workshop or not entry.remote_id:
                continue
            if entry.remote_id in subscribed:
                continue
            if is_inside(entry.file_path, self.paths.avatars_dir):
                safe_unlink(Path(entry.file_path))
                if is_inside(entry.thumbnail_path, self.paths.thumbnails_dir):
                    safe_unlink(Path(entry.thumbnail_path))
                avatars.remove(entry)
                result.evicted += 1
                logging.info(
                    "Removed workshop avatar %s (item %s unsubscribed)",
                    Path(entry.file_path).name,
                    entry.remote_id,
                )
            else:
                entry.is_steam_workshop = False
                result.demoted += 1
                logging.info(
                    "Kept user avatar %s, item %s is no longer subscribed",
                    entry.file_path,
                    entry.remote_id,
                )
            result.avatars_changed = True

    def _evict_mods(
        self,
        subscribed_ids: Iterable[int],
        mod_map: ModMapStore,
        result: ReconcileResult,
    ) -> None:
        subscribed = set(subscribed_ids)
        for name, remote_id in mod_map.items():
            if remote_id in subscribed:
                continue
            mod_file = self.paths.mods_dir / name
            if is_inside(mod_file, self.paths.mods_dir):
                safe_unlink(mod_file)
            stem = Path(name).stem
            cache_dir = self.paths.mod_cache_dir / stem
            if stem and is_inside(cache_dir, self.paths.mod_cache_dir):
                safe_rmtree(cache_dir)
            thumb = self.paths.thumbnail_for(name)
            if is_inside(thumb, self.paths.thumbnails_dir):
                safe_unlink(thumb)
            mod_map.remove(name)
            result.evicted += 1
            result.mods_changed = True
            logging.info("Removed workshop mod %s (item %s unsubscribed)", name, remote_id)
