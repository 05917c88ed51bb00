"""
Tests for reconciliation passes.

Each test drives the reconciler with a snapshot built from a fake workshop and
checks the managed directories and both JSON stores afterwards.
"""

import json
import os
from pathlib import Path

from PIL import Image

from classifier import AvatarMetadata, ClassifiedItem, ContentKind, classify
from reconciler import Reconciler, merge_entry
from snapshot import RemoteSnapshot
from store import AvatarEntry, AvatarStore, ModMapStore
from tests.conftest import (
    make_snapshot,
    package_bytes,
    png_bytes,
    read_avatars,
    read_mod_map,
)


def seed_avatars(library, rows):
    library.avatars_store.write_text(json.dumps(rows), encoding="utf-8")


class TestAvatarPasses:
    def test_new_avatar_is_added(self, platform, library, reconciler):
        platform.subscribe(10, {"a.vrm": b"model", "metadata.json": {"displayName": "Foo"}})

        result = reconciler.run(make_snapshot(platform))

        assert result.avatars_changed is True
        assert result.mods_changed is False
        rows = read_avatars(library)
        assert len(rows) == 1
        row = rows[0]
        assert row["filePath"] == str(library.avatars_dir / "a.vrm")
        assert row["displayName"] == "Foo"
        assert row["isSteamWorkshop"] is True
        assert row["isOwner"] is False
        assert row["steamFileId"] == 10
        assert (library.avatars_dir / "a.vrm").read_bytes() == b"model"

    def test_second_pass_is_a_no_op(self, platform, library, reconciler):
        platform.subscribe(
            10,
            {
                "a.vrm": b"model",
                "a_thumb.png": png_bytes(),
                "metadata.json": {"displayName": "Foo"},
            },
        )
        reconciler.run(make_snapshot(platform))
        before = library.avatars_store.read_text(encoding="utf-8")
        mtime = library.avatars_store.stat().st_mtime_ns

        result = reconciler.run(make_snapshot(platform))

        assert result.avatars_changed is False
        assert result.mods_changed is False
        assert result.copied == 0
        assert library.avatars_store.read_text(encoding="utf-8") == before
        assert library.avatars_store.stat().st_mtime_ns == mtime

    def test_unsubscribed_avatar_is_removed(self, platform, library, reconciler):
        platform.subscribe(10, {"a.vrm": b"model", "a_thumb.png": png_bytes()})
        reconciler.run(make_snapshot(platform))
        thumb = library.thumbnails_dir / "a_thumb.png"
        assert thumb.exists()

        platform.unsubscribe(10)
        result = reconciler.run(make_snapshot(platform))

        assert result.avatars_changed is True
        assert result.evicted == 1
        assert read_avatars(library) == []
        assert not (library.avatars_dir / "a.vrm").exists()
        assert not thumb.exists()

    def test_thumbnail_is_stored_as_png(self, platform, library, reconciler):
        platform.subscribe(10, {"a.vrm": b"model", "a_thumb.png": png_bytes((0, 255, 0))})

        reconciler.run(make_snapshot(platform))

        thumb = library.thumbnails_dir / "a_thumb.png"
        row = read_avatars(library)[0]
        assert row["thumbnailPath"] == str(thumb)
        with Image.open(thumb) as img:
            assert img.format == "PNG"
            assert img.size == (4, 4)

    def test_embedded_package_thumbnail(self, platform, library, reconciler, tmp_path):
        data = package_bytes(tmp_path, {"model.vrm": b"x", "thumb.png": png_bytes()})
        platform.subscribe(10, {"cat.me": data})

        reconciler.run(make_snapshot(platform))

        row = read_avatars(library)[0]
        assert row["fileType"] == ".ME"
        assert row["thumbnailPath"] == str(library.thumbnails_dir / "cat_thumb.png")
        assert (library.thumbnails_dir / "cat_thumb.png").exists()

    def test_stale_item_is_recopied(self, platform, library, reconciler):
        folder = platform.subscribe(10, {"a.vrm": b"v1"})
        reconciler.run(make_snapshot(platform))

        (folder / "a.vrm").write_bytes(b"v2")
        platform.stale.add(10)
        result = reconciler.run(make_snapshot(platform))

        assert result.copied == 1
        assert result.avatars_changed is True
        assert (library.avatars_dir / "a.vrm").read_bytes() == b"v2"
        assert len(read_avatars(library)) == 1

    def test_content_rewritten_in_place_is_recopied(self, platform, library, reconciler):
        folder = platform.subscribe(10, {"a.vrm": b"v1"})
        reconciler.run(make_snapshot(platform))

        source = folder / "a.vrm"
        source.write_bytes(b"v2")
        stat = source.stat()
        os.utime(source, ns=(stat.st_atime_ns, stat.st_mtime_ns + 5_000_000_000))
        result = reconciler.run(make_snapshot(platform))

        assert result.copied == 1
        assert result.avatars_changed is True
        assert (library.avatars_dir / "a.vrm").read_bytes() == b"v2"

        again = reconciler.run(make_snapshot(platform))

        assert again.copied == 0
        assert again.avatars_changed is False

    def test_missing_managed_copy_is_restored(self, platform, library, reconciler):
        platform.subscribe(10, {"a.vrm": b"v1"})
        reconciler.run(make_snapshot(platform))
        (library.avatars_dir / "a.vrm").unlink()

        result = reconciler.run(make_snapshot(platform))

        assert result.copied == 1
        assert (library.avatars_dir / "a.vrm").exists()

    def test_item_without_content_is_skipped(self, platform, library, reconciler):
        platform.subscribe(10, {"readme.txt": "hello"})

        result = reconciler.run(make_snapshot(platform))

        assert result.skipped == 1
        assert result.changed is False
        assert not library.avatars_store.exists()

    def test_avatar_without_metadata_falls_back_to_file_name(self, platform, library):
        platform.subscribe(10, {"a.vrm": b"model"})

        def bare_classify(install_dir: Path):
            return ClassifiedItem(ContentKind.AVATAR, install_dir / "a.vrm")

        result = Reconciler(library, classify_fn=bare_classify).run(make_snapshot(platform))

        assert result.created == 1
        row = read_avatars(library)[0]
        assert row["displayName"] == "a"
        assert row["fileType"] == "VRM"
        assert row["steamFileId"] == 10


class TestCollisions:
    def test_second_claimant_gets_prefixed_name(self, platform, library, reconciler):
        platform.subscribe(10, {"a.vrm": b"ten"})
        platform.subscribe(11, {"a.vrm": b"eleven"})

        reconciler.run(make_snapshot(platform))

        rows = {row["steamFileId"]: row for row in read_avatars(library)}
        assert rows[10]["filePath"] == str(library.avatars_dir / "a.vrm")
        assert rows[11]["filePath"] == str(library.avatars_dir / "11_a.vrm")
        assert (library.avatars_dir / "a.vrm").read_bytes() == b"ten"
        assert (library.avatars_dir / "11_a.vrm").read_bytes() == b"eleven"

    def test_collision_is_stable_across_passes(self, platform, library, reconciler):
        platform.subscribe(10, {"a.vrm": b"ten"})
        platform.subscribe(11, {"a.vrm": b"eleven"})
        reconciler.run(make_snapshot(platform))

        result = reconciler.run(make_snapshot(platform))

        assert result.avatars_changed is False
        assert len(read_avatars(library)) == 2

    def test_prefixed_entry_keeps_its_name_after_first_claimant_leaves(
        self, platform, library, reconciler
    ):
        platform.subscribe(10, {"a.vrm": b"ten"})
        platform.subscribe(11, {"a.vrm": b"eleven"})
        reconciler.run(make_snapshot(platform))

        platform.unsubscribe(10)
        reconciler.run(make_snapshot(platform))

        rows = read_avatars(library)
        assert [row["steamFileId"] for row in rows] == [11]
        assert rows[0]["filePath"] == str(library.avatars_dir / "11_a.vrm")
        assert not (library.avatars_dir / "a.vrm").exists()


class TestMergeAndBackfill:
    def test_local_entry_keeps_its_name_and_item_is_prefixed(
        self, platform, library, reconciler
    ):
        target = library.avatars_dir / "a.vrm"
        target.write_bytes(b"mine")
        seed_avatars(
            library,
            [
                {
                    "displayName": "Mine",
                    "filePath": str(target),
                    "thumbnailPath": "/pictures/mine.png",
                    "isOwner": True,
                    "isSteamWorkshop": False,
                    "steamFileId": 0,
                    "favorite": True,
                }
            ],
        )
        platform.subscribe(10, {"a.vrm": b"model", "metadata.json": {"displayName": "Foo"}})

        result = reconciler.run(make_snapshot(platform))

        assert result.created == 1
        rows = {row["steamFileId"]: row for row in read_avatars(library)}
        mine = rows[0]
        assert mine["filePath"] == str(target)
        assert mine["displayName"] == "Mine"
        assert mine["isOwner"] is True
        assert mine["isSteamWorkshop"] is False
        assert mine["favorite"] is True
        assert rows[10]["filePath"] == str(library.avatars_dir / "10_a.vrm")
        assert rows[10]["displayName"] == "Foo"
        assert target.read_bytes() == b"mine"
        assert (library.avatars_dir / "10_a.vrm").read_bytes() == b"model"

        again = reconciler.run(make_snapshot(platform))

        assert again.avatars_changed is False
        assert len(read_avatars(library)) == 2

    def test_unrecorded_local_file_is_not_overwritten(self, platform, library, reconciler):
        (library.avatars_dir / "a.vrm").write_bytes(b"mine")
        platform.subscribe(10, {"a.vrm": b"model"})

        reconciler.run(make_snapshot(platform))

        rows = read_avatars(library)
        assert [row["filePath"] for row in rows] == [str(library.avatars_dir / "10_a.vrm")]
        assert (library.avatars_dir / "a.vrm").read_bytes() == b"mine"

    def test_backfills_remote_id_and_keeps_local_fields(self, platform, library, reconciler):
        bare = library.avatars_dir / "a.vrm"
        bare.write_bytes(b"mine")
        target = library.avatars_dir / "10_a.vrm"
        target.write_bytes(b"model")
        seed_avatars(
            library,
            [
                {"displayName": "Other", "filePath": str(bare), "steamFileId": 0},
                {
                    "displayName": "Mine",
                    "filePath": str(target),
                    "thumbnailPath": "/pictures/mine.png",
                    "isOwner": True,
                    "isSteamWorkshop": False,
                    "steamFileId": 0,
                    "favorite": True,
                },
            ],
        )
        platform.subscribe(10, {"a.vrm": b"model", "metadata.json": {"displayName": "Foo"}})

        result = reconciler.run(make_snapshot(platform))

        assert result.avatars_changed is True
        assert result.created == 0
        rows = {row["filePath"]: row for row in read_avatars(library)}
        assert len(rows) == 2
        row = rows[str(target)]
        assert row["steamFileId"] == 10
        assert row["isSteamWorkshop"] is True
        assert row["isOwner"] is True
        assert row["displayName"] == "Foo"
        assert row["thumbnailPath"] == "/pictures/mine.png"
        assert row["favorite"] is True
        assert rows[str(bare)]["steamFileId"] == 0

    def test_merge_never_blanks_thumbnail(self):
        entry = AvatarEntry(
            display_name="a", author="Workshop", version="1.0", file_type="VRM",
            file_path="/x/a.vrm", thumbnail_path="/t/a.png", remote_id=10,
            is_steam_workshop=True,
        )
        changed = merge_entry(entry, AvatarMetadata(display_name="a"), "", 10)
        assert changed is False
        assert entry.thumbnail_path == "/t/a.png"

    def test_merge_reports_field_changes(self):
        entry = AvatarEntry(display_name="a", file_path="/x/a.vrm", remote_id=10)
        assert merge_entry(entry, AvatarMetadata(display_name="b"), "", 10) is True
        assert entry.display_name == "b"
        assert entry.author == "Workshop"


class TestEviction:
    def test_pending_items_are_not_evicted(self, platform, library, reconciler):
        platform.subscribe(10, {"a.vrm": b"model"})
        reconciler.run(make_snapshot(platform))

        # Still subscribed but absent from this snapshot's ready items.
        snapshot = RemoteSnapshot(items=(), subscribed_ids=frozenset({10}), pending_ids=(10,))
        result = reconciler.run(snapshot)

        assert result.evicted == 0
        assert len(read_avatars(library)) == 1
        assert (library.avatars_dir / "a.vrm").exists()

    def test_avatar_outside_managed_dir_is_demoted(self, tmp_path, platform, library, reconciler):
        user_file = tmp_path / "user" / "mine.vrm"
        user_file.parent.mkdir()
        user_file.write_bytes(b"mine")
        seed_avatars(
            library,
            [
                {
                    "displayName": "Mine",
                    "filePath": str(user_file),
                    "isSteamWorkshop": True,
                    "steamFileId": 99,
                },
                {
                    "displayName": "Local",
                    "filePath": str(tmp_path / "user" / "local.vrm"),
                    "isSteamWorkshop": False,
                    "steamFileId": 55,
                },
            ],
        )

        result = reconciler.run(make_snapshot(platform))

        assert result.demoted == 1
        assert result.evicted == 0
        rows = {row["displayName"]: row for row in read_avatars(library)}
        assert rows["Mine"]["isSteamWorkshop"] is False
        assert rows["Local"]["isSteamWorkshop"] is False
        assert user_file.exists()

    def test_item_failure_does_not_abort_pass(self, platform, library):
        platform.subscribe(10, {"a.vrm": b"a"})
        bad = platform.subscribe(11, {"b.vrm": b"b"})

        def flaky_classify(install_dir: Path):
            if install_dir == bad:
                raise OSError("disk gone")
            return classify(install_dir)

        result = Reconciler(library, classify_fn=flaky_classify).run(make_snapshot(platform))

        assert result.skipped == 1
        assert [row["steamFileId"] for row in read_avatars(library)] == [10]


class TestModPasses:
    def test_dance_package_goes_to_mods(self, platform, library, reconciler, tmp_path):
        data = package_bytes(
            tmp_path, {"dance_meta.json": {"songAuthor": "Singer"}, "thumb.png": png_bytes()}
        )
        platform.subscribe(20, {"move.me": data})

        result = reconciler.run(make_snapshot(platform))

        assert result.mods_changed is True
        assert result.avatars_changed is False
        assert (library.mods_dir / "move.me").read_bytes() == data
        assert read_mod_map(library) == {"move.me": 20}
        assert (library.thumbnails_dir / "move_thumb.png").exists()
        assert len(AvatarStore(library.avatars_store).load()) == 0

    def test_unity_bundle_is_mapped(self, platform, library, reconciler):
        platform.subscribe(21, {"legacy.unity3d": b"bundle"})

        reconciler.run(make_snapshot(platform))

        assert read_mod_map(library) == {"legacy.unity3d": 21}
        assert (library.mods_dir / "legacy.unity3d").exists()

    def test_mod_pass_is_idempotent(self, platform, library, reconciler, tmp_path):
        platform.subscribe(20, {"move.me": package_bytes(tmp_path, {"dance_meta.json": {}})})
        reconciler.run(make_snapshot(platform))

        result = reconciler.run(make_snapshot(platform))

        assert result.mods_changed is False
        assert result.copied == 0

    def test_mod_name_collision_is_prefixed(self, platform, library, reconciler):
        platform.subscribe(20, {"shared.unity3d": b"twenty"})
        platform.subscribe(21, {"shared.unity3d": b"twenty-one"})

        reconciler.run(make_snapshot(platform))

        assert read_mod_map(library) == {"shared.unity3d": 20, "21_shared.unity3d": 21}
        assert (library.mods_dir / "shared.unity3d").read_bytes() == b"twenty"
        assert (library.mods_dir / "21_shared.unity3d").read_bytes() == b"twenty-one"

    def test_mod_collision_is_stable_across_passes(self, platform, library, reconciler):
        platform.subscribe(20, {"shared.unity3d": b"twenty"})
        platform.subscribe(21, {"shared.unity3d": b"twenty-one"})
        reconciler.run(make_snapshot(platform))

        result = reconciler.run(make_snapshot(platform))

        assert result.mods_changed is False
        assert result.copied == 0
        assert read_mod_map(library) == {"shared.unity3d": 20, "21_shared.unity3d": 21}

    def test_prefixed_mod_survives_first_claimant_leaving(self, platform, library, reconciler):
        platform.subscribe(20, {"shared.unity3d": b"twenty"})
        platform.subscribe(21, {"shared.unity3d": b"twenty-one"})
        reconciler.run(make_snapshot(platform))

        platform.unsubscribe(20)
        reconciler.run(make_snapshot(platform))

        assert read_mod_map(library) == {"21_shared.unity3d": 21}
        assert not (library.mods_dir / "shared.unity3d").exists()
        assert (library.mods_dir / "21_shared.unity3d").read_bytes() == b"twenty-one"

    def test_unmapped_local_mod_is_not_overwritten(self, platform, library, reconciler):
        (library.mods_dir / "legacy.unity3d").write_bytes(b"mine")
        platform.subscribe(21, {"legacy.unity3d": b"bundle"})

        reconciler.run(make_snapshot(platform))

        assert read_mod_map(library) == {"21_legacy.unity3d": 21}
        assert (library.mods_dir / "legacy.unity3d").read_bytes() == b"mine"

    def test_unsubscribed_mod_is_cleaned_up(self, platform, library, reconciler, tmp_path):
        data = package_bytes(tmp_path, {"dance_meta.json": {}, "thumb.png": png_bytes()})
        platform.subscribe(20, {"move.me": data})
        reconciler.run(make_snapshot(platform))
        cache_dir = library.mod_cache_dir / "move"
        cache_dir.mkdir(parents=True)
        (cache_dir / "unpacked.bin").write_bytes(b"x")

        platform.unsubscribe(20)
        result = reconciler.run(make_snapshot(platform))

        assert result.mods_changed is True
        assert result.evicted == 1
        assert not (library.mods_dir / "move.me").exists()
        assert not cache_dir.exists()
        assert not (library.thumbnails_dir / "move_thumb.png").exists()
        assert read_mod_map(library) == {}

    def test_mapping_outside_mods_dir_is_not_deleted(self, tmp_path, library, reconciler, platform):
        outside = tmp_path / "outside.me"
        outside.write_bytes(b"keep me")
        store = ModMapStore(library.mods_map_store).load()
        store.record("../../outside.me", 30)
        store.save()

        result = reconciler.run(make_snapshot(platform))

        assert result.mods_changed is True
        assert outside.exists()
        assert read_mod_map(library) == {}
