from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, List, Optional, Tuple

from telemetry import set_attributes, start_span
from workshop import WorkshopPlatform

DEFAULT_POLL_INTERVAL = 0.1
DEFAULT_INSTALL_TIMEOUT = 10.0


@dataclass(frozen=True)
class RemoteItem:
    remote_id: int
    install_path: Path
    needs_update: bool


@dataclass(frozen=True)
class RemoteSnapshot:
    items: Tuple[RemoteItem, ...] = ()
    # Every listed subscription, including items that are not installed yet.
    subscribed_ids: FrozenSet[int] = field(default_factory=frozenset)
    pending_ids: Tuple[int, ...] = ()


class SnapshotBuilder:
    """Turns the live subscription set into an immutable ``RemoteSnapshot``.

    Each item gets a bounded wait for its install directory; items that never
    show up are left out of this snapshot and picked up on a later refresh.
    """

    def __init__(
        self,
        platform: WorkshopPlatform,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        install_timeout: float = DEFAULT_INSTALL_TIMEOUT,
    ) -> None:
        self.platform = platform
        self.poll_interval = max(0.001, float(poll_interval))
        self.install_timeout = max(0.0, float(install_timeout))

    async def build(self) -> RemoteSnapshot:
        with start_span("snapshot.build") as span:
            listed = await asyncio.to_thread(self.platform.subscribed_items)
            ordered: List[int] = []
            for remote_id in listed:
                remote_id = int(remote_id)
                if remote_id > 0 and remote_id not in ordered:
                    ordered.append(remote_id)

            items: List[RemoteItem] = []
            pending: List[int] = []
            for remote_id in ordered:
                item = await self._prepare_item(remote_id)
                if item is None:
                    pending.append(remote_id)
                else:
                    items.append(item)
                await asyncio.sleep(0)

            set_attributes(
                span,
                {
                    "snapshot.subscribed": len(ordered),
                    "snapshot.ready": len(items),
                    "snapshot.pending": len(pending),
                },
            )
            if pending:
                logging.info(
                    "Workshop snapshot: %s ready, %s not installed yet %s",
                    len(items),
                    len(pending),
                    pending,
                )
            else:
                logging.debug("Workshop snapshot: %s ready", len(items))
            return RemoteSnapshot(
                items=tuple(items),
                subscribed_ids=frozenset(ordered),
                pending_ids=tuple(pending),
            )

    async def _prepare_item(self, remote_id: int) -> Optional[RemoteItem]:
        try:
            state = self.platform.item_state(remote_id)
        except Exception as exc:
            logging.warning("Failed to read state of workshop item %s: %s", remote_id, exc)
            return None

        if not state.installed or state.needs_update:
            try:
                self.platform.download_item(remote_id)
            except Exception as exc:
                logging.warning("Failed to request download of %s: %s", remote_id, exc)

        install_path = await self._wait_for_install(remote_id)
        if install_path is None:
            logging.info(
                "Workshop item %s not installed after %.1fs, retrying next refresh",
                remote_id,
                self.install_timeout,
            )
            return None
        return RemoteItem(remote_id, install_path, state.needs_update)

    async def _wait_for_install(self, remote_id: int) -> Optional[Path]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.install_timeout
        while True:
            path = self._install_path(remote_id)
            if path is not None:
                return path
            if loop.time() >= deadline:
                return None
            await asyncio.sleep(self.poll_interval)

    def _install_path(self, remote_id: int) -> Optional[Path]:
        try:
            raw = self.platform.install_info(remote_id)
        except Exception as exc:
            logging.debug("Install info failed for %s: %s", remote_id, exc)
            return None
        if not raw:
            return None
        path = Path(raw)
        return path if path.is_dir() else None
