import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Callable

COPY_CHUNK_SIZE = 128 * 1024


def ensure_dir(path: Path) -> bool:
    try:
        path.mkdir(parents=True, exist_ok=True)
        return True
    except OSError as exc:
        logging.warning("Failed to create directory %s: %s", path, exc)
        return False


def has_files(path: Path) -> bool:
    try:
        if not path.exists() or not path.is_dir():
            return False
        return any(path.iterdir())
    except OSError:
        return False


def list_top_files(path: Path) -> list[Path]:
    try:
        return sorted(child for child in path.iterdir() if child.is_file())
    except OSError as exc:
        logging.debug("Failed to list %s: %s", path, exc)
        return []


def is_inside(path: Path | str, root: Path) -> bool:
    if not path:
        return False
    try:
        resolved = Path(os.path.abspath(path))
        base = Path(os.path.abspath(root))
    except (TypeError, ValueError):
        return False
    return os.path.normcase(str(resolved)).startswith(
        os.path.normcase(str(base)) + os.sep
    )


def safe_unlink(path: Path) -> bool:
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError as exc:
        logging.warning("Failed to remove %s: %s", path, exc)
        return False


def safe_rmtree(path: Path) -> bool:
    if not path.exists():
        return False
    if not path.is_dir() or path.is_symlink():
        logging.warning("Skip folder cleanup for %s: path is not a directory", path)
        return False
    try:
        shutil.rmtree(path)
        return True
    except OSError as exc:
        logging.warning("Failed to remove folder %s: %s", path, exc)
        return False


def copy_file(source: Path, target: Path) -> bool:
    temp_path = target.with_name(f"{target.name}.part")
    try:
        ensure_dir(target.parent)
        with source.open("rb") as src, temp_path.open("wb") as dst:
            shutil.copyfileobj(src, dst, COPY_CHUNK_SIZE)
        shutil.copystat(source, temp_path)
        temp_path.replace(target)
        return True
    except OSError as exc:
        logging.warning("Failed to copy %s -> %s: %s", source, target, exc)
        return False
    finally:
        if temp_path.exists():
            safe_unlink(temp_path)


def same_file_stamp(source: Path, target: Path) -> bool:
    """True when ``target`` still has the size and mtime copied from ``source``."""
    try:
        src = source.stat()
        dst = target.stat()
    except OSError:
        return False
    return src.st_size == dst.st_size and src.st_mtime_ns == dst.st_mtime_ns


def copy_file_if_needed(source: Path, target: Path, needs_update: bool) -> bool:
    """Copy ``source`` over ``target`` when the target is missing or stale.

    A target is stale when the caller says so or when its size or mtime no
    longer match the source, so content rewritten in place is picked up even
    after the remote timestamp has been recorded.

    Returns True only when bytes were actually written.
    """
    if not needs_update and same_file_stamp(source, target):
        return False
    return copy_file(source, target)


def load_json(path: Path, default_factory: Callable[[], Any]) -> Any:
    if not path.exists():
        return default_factory()
    try:
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)
    except (OSError, ValueError) as exc:
        logging.warning("Failed to read %s, starting empty: %s", path, exc)
        return default_factory()


def save_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_suffix(f"{path.suffix}.tmp")
    with temp_path.open("w", encoding="utf-8") as handle:
        json.dump(data, handle, ensure_ascii=False, indent=2)
    temp_path.replace(path)
