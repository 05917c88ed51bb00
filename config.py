from dataclasses import dataclass
import os
import re
from pathlib import Path

from reconciler import LibraryPaths
from snapshot import DEFAULT_INSTALL_TIMEOUT, DEFAULT_POLL_INTERVAL

DEFAULT_DATA_DIR = "/data/mirror"
DEFAULT_STEAMCMD_PATH = "/opt/steamcmd/steamcmd.sh"
DEFAULT_REFRESH_INTERVAL = 300
DEFAULT_TIMEOUT = 60
DEFAULT_STEAM_HTTP_RETRIES = 2
DEFAULT_STEAM_HTTP_BACKOFF = 2.0
DEFAULT_STEAM_REQUEST_DELAY = 0.0
DEFAULT_LOG_LEVEL = "INFO"


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def parse_int(value: str | None, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


def parse_float(value: str | None, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        return default


def parse_list(value: str | None) -> list[str]:
    if not value:
        return []
    parts = re.split(r"[,\s]+", value.strip())
    return [part for part in (p.strip() for p in parts) if part]


def parse_id_list(value: str | None) -> list[int]:
    ids: list[int] = []
    for part in parse_list(value):
        item_id = parse_int(part, 0)
        if item_id > 0 and item_id not in ids:
            ids.append(item_id)
    return ids


@dataclass
class Config:
    data_root: str
    cache_root: str
    steam_app_id: int
    steam_root: str
    steamcmd_path: str
    steam_api_key: str
    steam_id: str
    subscribed_ids: list[int]
    install_poll_interval: float
    install_timeout: float
    refresh_interval: int
    run_once: bool
    log_level: str
    timeout: int
    log_steam_requests: bool
    steam_http_retries: int
    steam_http_backoff: float
    steam_request_delay: float
    steam_proxy_pool: list[str]

    def library_paths(self) -> LibraryPaths:
        return LibraryPaths(Path(self.data_root), Path(self.cache_root))


def load_config() -> Config:
    data_root = os.environ.get("WM_DATA_DIR", DEFAULT_DATA_DIR)
    cache_root = os.environ.get("WM_CACHE_DIR", f"{data_root}/cache")

    steam_app_id = parse_int(os.environ.get("STEAM_APP_ID"), 0)
    steam_root = os.environ.get("STEAM_ROOT", f"{data_root}/steam")
    steamcmd_path = os.environ.get("STEAMCMD_PATH", DEFAULT_STEAMCMD_PATH)
    steam_api_key = os.environ.get("STEAM_API_KEY", "")
    steam_id = os.environ.get("STEAM_ID", "")
    subscribed_ids = parse_id_list(os.environ.get("WM_SUBSCRIBED_IDS"))

    install_poll_interval = parse_float(
        os.environ.get("WM_INSTALL_POLL_INTERVAL"), DEFAULT_POLL_INTERVAL
    )
    install_timeout = parse_float(
        os.environ.get("WM_INSTALL_TIMEOUT"), DEFAULT_INSTALL_TIMEOUT
    )
    refresh_interval = parse_int(
        os.environ.get("WM_REFRESH_INTERVAL"), DEFAULT_REFRESH_INTERVAL
    )
    run_once = parse_bool(os.environ.get("WM_RUN_ONCE"), False)
    log_level = os.environ.get("WM_LOG_LEVEL", DEFAULT_LOG_LEVEL)

    timeout = parse_int(os.environ.get("WM_HTTP_TIMEOUT"), DEFAULT_TIMEOUT)
    log_steam_requests = parse_bool(os.environ.get("WM_LOG_STEAM_REQUESTS"), False)
    steam_http_retries = parse_int(
        os.environ.get("WM_STEAM_HTTP_RETRIES"), DEFAULT_STEAM_HTTP_RETRIES
    )
    steam_http_backoff = parse_float(
        os.environ.get("WM_STEAM_HTTP_BACKOFF"), DEFAULT_STEAM_HTTP_BACKOFF
    )
    steam_request_delay = parse_float(
        os.environ.get("WM_STEAM_REQUEST_DELAY"), DEFAULT_STEAM_REQUEST_DELAY
    )
    steam_proxy_pool = parse_list(os.environ.get("WM_STEAM_PROXY_POOL"))

    return Config(
        data_root=data_root,
        cache_root=cache_root,
        steam_app_id=steam_app_id,
        steam_root=steam_root,
        steamcmd_path=steamcmd_path,
        steam_api_key=steam_api_key,
        steam_id=steam_id,
        subscribed_ids=subscribed_ids,
        install_poll_interval=install_poll_interval,
        install_timeout=install_timeout,
        refresh_interval=refresh_interval,
        run_once=run_once,
        log_level=log_level,
        timeout=timeout,
        log_steam_requests=log_steam_requests,
        steam_http_retries=steam_http_retries,
        steam_http_backoff=steam_http_backoff,
        steam_request_delay=steam_request_delay,
        steam_proxy_pool=steam_proxy_pool,
    )
