"""Single-flight refresh scheduling for the workshop mirror.

``refresh()`` never blocks: it either starts a run chain on the event loop or,
when a pass is already in flight, marks one rerun as pending. Any number of
overlapping requests collapse into that single rerun.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Optional

from notifier import Notifier
from reconciler import ReconcileResult, Reconciler
from snapshot import SnapshotBuilder
from telemetry import start_span


class CoordinatorState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    RUNNING_PENDING_RERUN = "running+pending"


class RefreshCoordinator:
    def __init__(
        self,
        builder: SnapshotBuilder,
        reconciler: Reconciler,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.builder = builder
        self.reconciler = reconciler
        self.notifier = notifier or Notifier()

        self._running = False
        self._pending = False
        self._task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self.had_changes_last_run = False
        self.passes_completed = 0
        self.failed_passes = 0
        self.last_result: Optional[ReconcileResult] = None

    @property
    def state(self) -> CoordinatorState:
        if not self._running:
            return CoordinatorState.IDLE
        if self._pending:
            return CoordinatorState.RUNNING_PENDING_RERUN
        return CoordinatorState.RUNNING

    def attach(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def refresh(self) -> None:
        """Request a reconciliation pass. Must be called on the loop thread."""
        if self._running:
            if not self._pending:
                logging.debug("Workshop refresh requested during a pass, queued rerun")
            self._pending = True
            return
        loop = asyncio.get_running_loop()
        self._loop = loop
        self._running = True
        self._task = loop.create_task(self._run_chain())

    def refresh_threadsafe(self) -> None:
        if self._loop is None:
            raise RuntimeError("RefreshCoordinator is not attached to an event loop")
        self._loop.call_soon_threadsafe(self.refresh)

    async def wait_idle(self) -> None:
        while self._running and self._task is not None:
            await asyncio.wait({self._task})

    # --- host lifecycle hooks ---

    def on_item_subscribed(self, item_id: int) -> None:
        try:
            self.builder.platform.download_item(item_id)
        except Exception as exc:
            logging.warning("Failed to request download of %s: %s", item_id, exc)
        self.refresh()

    def on_item_unsubscribed(self, item_id: int) -> None:
        logging.debug("Workshop item %s unsubscribed", item_id)
        self.refresh()

    def on_item_downloaded(self, item_id: int, ok: bool) -> None:
        if not ok:
            logging.debug("Workshop item %s download failed, no refresh", item_id)
            return
        self.refresh()

    def on_item_downloaded_threadsafe(self, item_id: int, ok: bool) -> None:
        if self._loop is None:
            logging.debug("Download of %s finished before the loop was attached", item_id)
            return
        self._loop.call_soon_threadsafe(self.on_item_downloaded, item_id, ok)

    # --- run chain ---

    async def _run_chain(self) -> None:
        try:
            while True:
                self._pending = False
                await self._run_pass()
                if not self._pending:
                    break
                logging.info("Starting queued workshop refresh")
        finally:
            self._running = False
            self._pending = False

    async def _run_pass(self) -> None:
        self.had_changes_last_run = False
        with start_span("refresh.pass", {"refresh.pass": self.passes_completed + 1}) as span:
            try:
                snapshot = await self.builder.build()
                result = await asyncio.to_thread(self.reconciler.run, snapshot)
            except Exception as exc:
                span.record_exception(exc)
                self.failed_passes += 1
                logging.exception("Workshop refresh pass failed")
                return
            span.set_attribute("refresh.changed", result.changed)
        self.passes_completed += 1
        self.last_result = result
        self.had_changes_last_run = result.changed
        self.notifier.notify(result.avatars_changed, result.mods_changed)
