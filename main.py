import asyncio
import logging
from pathlib import Path

from config import Config, load_config
from coordinator import RefreshCoordinator
from http_utils import RetryPolicy
from notifier import Notifier
from reconciler import Reconciler
from snapshot import SnapshotBuilder
from steam_api import SteamClient
from telemetry import init_telemetry, shutdown_telemetry
from workshop import SteamCmdWorkshop


def build_coordinator(config: Config, notifier: Notifier | None = None) -> RefreshCoordinator:
    client = SteamClient(
        policy=RetryPolicy(
            retries=config.steam_http_retries,
            backoff=config.steam_http_backoff,
            request_delay=config.steam_request_delay,
        ),
        proxies=config.steam_proxy_pool,
        log_requests=config.log_steam_requests,
    )
    platform = SteamCmdWorkshop(
        client,
        app_id=config.steam_app_id,
        steam_root=Path(config.steam_root),
        steamcmd_path=Path(config.steamcmd_path),
        api_key=config.steam_api_key,
        steam_id=config.steam_id,
        static_ids=config.subscribed_ids,
        timeout=config.timeout,
    )
    builder = SnapshotBuilder(
        platform,
        poll_interval=config.install_poll_interval,
        install_timeout=config.install_timeout,
    )
    coordinator = RefreshCoordinator(
        builder,
        Reconciler(config.library_paths()),
        notifier,
    )
    platform.on_download_complete = coordinator.on_item_downloaded_threadsafe
    return coordinator


async def main_loop(config: Config) -> None:
    coordinator = build_coordinator(config)
    coordinator.attach(asyncio.get_running_loop())
    logging.info(
        "Workshop mirror: app_id=%s data=%s refresh_interval=%ss",
        config.steam_app_id,
        config.data_root,
        config.refresh_interval,
    )
    while True:
        coordinator.refresh()
        await coordinator.wait_idle()
        if config.run_once:
            break
        await asyncio.sleep(max(1, config.refresh_interval))
        # Downloads finishing during the sleep already queued their own refresh.
        await coordinator.wait_idle()


def main() -> None:
    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    if config.steam_app_id <= 0:
        raise SystemExit("STEAM_APP_ID is required")
    init_telemetry()
    try:
        asyncio.run(main_loop(config))
    except KeyboardInterrupt:
        logging.info("Workshop mirror stopped")
    finally:
        shutdown_telemetry()


if __name__ == "__main__":
    main()
