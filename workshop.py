"""Remote workshop platform: the subscription/download side the mirror reads from.

``WorkshopPlatform`` is the boundary the snapshot builder talks to. The
steamcmd-backed implementation lists subscriptions through the Steam Web API
and installs items with steamcmd into a local Steam root.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

import requests

from steam_api import PublishedFile, SteamClient
from steamcmd import download_workshop_item, workshop_content_dir
from telemetry import start_span
from utils import has_files, load_json, save_json

STEAMCMD_MAX_DOWNLOAD_ATTEMPTS = 3
STEAMCMD_RETRY_BACKOFF_SECONDS = 5.0
INSTALLED_ITEMS_FILE_NAME = "installed_items.json"

DownloadCallback = Callable[[int, bool], None]


@dataclass(frozen=True)
class ItemState:
    installed: bool
    needs_update: bool


class WorkshopPlatform(ABC):
    @abstractmethod
    def subscribed_items(self) -> List[int]:
        """Subscribed item ids, in the platform's enumeration order."""

    @abstractmethod
    def item_state(self, item_id: int) -> ItemState:
        ...

    @abstractmethod
    def install_info(self, item_id: int) -> Optional[Path]:
        """Install directory of an item, or None while it is not available."""

    @abstractmethod
    def download_item(self, item_id: int) -> bool:
        """Start (re)downloading an item without waiting for it."""


class SteamCmdWorkshop(WorkshopPlatform):
    def __init__(
        self,
        client: SteamClient,
        *,
        app_id: int,
        steam_root: Path,
        steamcmd_path: Path,
        api_key: str = "",
        steam_id: str = "",
        static_ids: Optional[List[int]] = None,
        timeout: int = 60,
        on_download_complete: Optional[DownloadCallback] = None,
    ) -> None:
        self.client = client
        self.app_id = app_id
        self.steam_root = steam_root
        self.steamcmd_path = steamcmd_path
        self.api_key = api_key
        self.steam_id = steam_id
        self.static_ids = [int(item_id) for item_id in static_ids or []]
        self.timeout = timeout
        self.on_download_complete = on_download_complete
        self.installed_path = steam_root / INSTALLED_ITEMS_FILE_NAME

        self._lock = threading.Lock()
        self._steamcmd_lock = threading.Lock()
        self._downloading: set[int] = set()
        self._remote_stamps: Dict[int, int] = {}

    def subscribed_items(self) -> List[int]:
        with start_span(
            "workshop.list_subscriptions",
            {"steam.app_id": self.app_id, "workshop.api": bool(self.api_key)},
        ):
            if self.api_key and self.steam_id:
                files = self.client.get_subscribed_items(
                    self.api_key, self.steam_id, self.app_id, self.timeout
                )
            else:
                files = self._static_subscriptions()
        with self._lock:
            self._remote_stamps = {item.item_id: item.time_updated for item in files}
        logging.debug("Workshop subscriptions: %s", len(files))
        return [item.item_id for item in files]

    def _static_subscriptions(self) -> List[PublishedFile]:
        details: Dict[int, PublishedFile] = {}
        if self.static_ids:
            try:
                details = self.client.get_published_file_details(
                    self.static_ids, self.timeout
                )
            except (requests.RequestException, ValueError) as exc:
                # Without remote stamps nothing is reported stale this pass.
                logging.warning("Failed to fetch workshop item details: %s", exc)
        return [details.get(item_id) or PublishedFile(item_id, 0) for item_id in self.static_ids]

    def item_state(self, item_id: int) -> ItemState:
        installed = has_files(self._content_dir(item_id))
        if not installed:
            return ItemState(False, False)
        with self._lock:
            remote_ts = self._remote_stamps.get(int(item_id), 0)
            local_ts = self._load_installed().get(str(item_id), 0)
        return ItemState(True, remote_ts > local_ts)

    def install_info(self, item_id: int) -> Optional[Path]:
        path = self._content_dir(item_id)
        if has_files(path):
            return path
        return None

    def download_item(self, item_id: int) -> bool:
        item_id = int(item_id)
        with self._lock:
            if item_id in self._downloading:
                return False
            self._downloading.add(item_id)
        thread = threading.Thread(
            target=self._download_worker,
            args=(item_id,),
            name=f"steamcmd-{item_id}",
            daemon=True,
        )
        thread.start()
        return True

    def is_downloading(self, item_id: int) -> bool:
        with self._lock:
            return int(item_id) in self._downloading

    def _download_worker(self, item_id: int) -> None:
        ok = False
        try:
            with start_span(
                "workshop.download_item",
                {"steam.app_id": self.app_id, "steam.item_id": str(item_id)},
            ):
                with self._steamcmd_lock:
                    ok = self._download_with_retries(item_id)
            if ok:
                self._record_installed(item_id)
        except Exception:
            logging.exception("Workshop download worker failed for %s", item_id)
        finally:
            with self._lock:
                self._downloading.discard(item_id)
        if self.on_download_complete is not None:
            try:
                self.on_download_complete(item_id, ok)
            except Exception:
                logging.exception("Download completion callback failed for %s", item_id)

    def _download_with_retries(self, item_id: int) -> bool:
        for attempt in range(1, STEAMCMD_MAX_DOWNLOAD_ATTEMPTS + 1):
            result = download_workshop_item(
                self.steamcmd_path, self.steam_root, self.app_id, item_id
            )
            if result.ok:
                break
            logging.error(
                "SteamCMD download attempt %s/%s failed for %s: %s",
                attempt,
                STEAMCMD_MAX_DOWNLOAD_ATTEMPTS,
                item_id,
                result.reason or "unknown reason",
            )
            if attempt >= STEAMCMD_MAX_DOWNLOAD_ATTEMPTS or not result.retryable:
                return False
            delay = STEAMCMD_RETRY_BACKOFF_SECONDS * (2 ** (attempt - 1))
            logging.warning("Retrying SteamCMD download for %s in %.1fs", item_id, delay)
            time.sleep(delay)
        if not has_files(self._content_dir(item_id)):
            logging.error(
                "SteamCMD finished but no files found for %s at %s",
                item_id,
                self._content_dir(item_id),
            )
            return False
        return True

    def _content_dir(self, item_id: int) -> Path:
        return workshop_content_dir(self.steam_root, self.app_id, int(item_id))

    def _load_installed(self) -> Dict[str, int]:
        data = load_json(self.installed_path, dict)
        return data if isinstance(data, dict) else {}

    def _record_installed(self, item_id: int) -> None:
        with self._lock:
            stamp = self._remote_stamps.get(item_id) or int(time.time())
            installed = self._load_installed()
            installed[str(item_id)] = stamp
            try:
                save_json(self.installed_path, installed)
            except OSError as exc:
                logging.warning("Failed to record install of %s: %s", item_id, exc)
