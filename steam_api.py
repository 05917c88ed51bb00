from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List
from urllib.parse import urlparse

import requests

from http_utils import ProxyPool, RetryPolicy, mask_proxy, redact_url, retry_after_seconds

STEAM_API_BASE = "https://api.steampowered.com"
SUBSCRIPTIONS_PAGE_SIZE = 100
DETAILS_BATCH_SIZE = 100


@dataclass(frozen=True)
class PublishedFile:
    item_id: int
    time_updated: int
    title: str = ""


def _parse_published_file(raw: Dict[str, Any]) -> PublishedFile | None:
    try:
        item_id = int(raw.get("publishedfileid") or 0)
    except (TypeError, ValueError):
        return None
    if item_id <= 0:
        return None
    # result != 1 means the item was removed or is hidden from this account
    if raw.get("result", 1) != 1:
        return None
    try:
        time_updated = int(raw.get("time_updated") or 0)
    except (TypeError, ValueError):
        time_updated = 0
    return PublishedFile(item_id, time_updated, str(raw.get("title") or ""))


class SteamClient:
    def __init__(
        self,
        *,
        policy: RetryPolicy | None = None,
        proxies: List[str] | None = None,
        log_requests: bool = False,
    ) -> None:
        self.policy = policy or RetryPolicy(retries=2, backoff=1.0, request_delay=0.0)
        self.proxy_pool = ProxyPool(proxies)
        self.log_requests = bool(log_requests)
        self.session = requests.Session()
        self._last_request_ts = 0.0

    def _throttle(self) -> None:
        if self.policy.request_delay <= 0:
            return
        wait_for = self.policy.request_delay - (time.monotonic() - self._last_request_ts)
        if wait_for > 0:
            time.sleep(wait_for)

    def request(self, method: str, url: str, timeout: int, **kwargs: Any) -> requests.Response:
        """Send one Steam Web API call, rotating proxies and retrying per ``policy``.

        Transport errors are raised once attempts run out; a retryable status on
        the last attempt is returned to the caller as-is.
        """
        endpoint = self._endpoint_key(method, url)
        attempt = 0
        while True:
            attempt += 1
            proxy = self.proxy_pool.next()
            call_kwargs = dict(kwargs)
            if proxy:
                call_kwargs["proxies"] = {"http": proxy, "https": proxy}
            self._throttle()
            start = time.monotonic()
            try:
                response = self.session.request(method, url, timeout=timeout, **call_kwargs)
            except requests.RequestException as exc:
                if self.log_requests:
                    logging.warning(
                        "Steam %s failed after %.2fs via %s: %s",
                        endpoint,
                        time.monotonic() - start,
                        mask_proxy(proxy),
                        exc,
                    )
                if attempt >= self.policy.attempts:
                    raise
                self.policy.sleep_before_retry(attempt, exc, "Steam")
                continue
            finally:
                self._last_request_ts = time.monotonic()

            if self.log_requests:
                log_fn = logging.info if response.status_code < 400 else logging.warning
                log_fn(
                    "Steam %s -> %s in %.2fs (url=%s, proxy=%s)",
                    endpoint,
                    response.status_code,
                    time.monotonic() - start,
                    redact_url(response.url or url),
                    mask_proxy(proxy),
                )
            if not self.policy.should_retry(response.status_code, attempt):
                return response
            retry_after = retry_after_seconds(response.headers)
            if retry_after:
                time.sleep(retry_after)
            self.policy.sleep_before_retry(
                attempt, RuntimeError(f"HTTP {response.status_code}"), "Steam"
            )

    def get_subscribed_items(
        self,
        api_key: str,
        steam_id: str,
        app_id: int,
        timeout: int,
    ) -> List[PublishedFile]:
        """List the account's workshop subscriptions for ``app_id`` in Steam's order."""
        url = f"{STEAM_API_BASE}/IPublishedFileService/GetUserFiles/v1/"
        items: List[PublishedFile] = []
        seen: set[int] = set()
        page = 1
        while True:
            response = self.request(
                "get",
                url,
                params={
                    "key": api_key,
                    "steamid": steam_id,
                    "appid": app_id,
                    "type": "mysubscriptions",
                    "page": page,
                    "numperpage": SUBSCRIPTIONS_PAGE_SIZE,
                },
                timeout=timeout,
            )
            response.raise_for_status()
            payload = response.json().get("response", {})
            details = payload.get("publishedfiledetails") or []
            for raw in details:
                item = _parse_published_file(raw)
                if item is None or item.item_id in seen:
                    continue
                seen.add(item.item_id)
                items.append(item)
            total = int(payload.get("total") or 0)
            if not details or page * SUBSCRIPTIONS_PAGE_SIZE >= total:
                break
            page += 1
        return items

    def get_published_file_details(
        self, item_ids: Iterable[int], timeout: int
    ) -> Dict[int, PublishedFile]:
        url = f"{STEAM_API_BASE}/ISteamRemoteStorage/GetPublishedFileDetails/v1/"
        ids = [int(item_id) for item_id in item_ids]
        results: Dict[int, PublishedFile] = {}
        for offset in range(0, len(ids), DETAILS_BATCH_SIZE):
            batch = ids[offset : offset + DETAILS_BATCH_SIZE]
            form: Dict[str, Any] = {"itemcount": len(batch)}
            for index, item_id in enumerate(batch):
                form[f"publishedfileids[{index}]"] = item_id
            response = self.request("post", url, data=form, timeout=timeout)
            response.raise_for_status()
            details = response.json().get("response", {}).get("publishedfiledetails") or []
            for raw in details:
                item = _parse_published_file(raw)
                if item is not None:
                    results[item.item_id] = item
        return results

    @staticmethod
    def _endpoint_key(method: str, url: str) -> str:
        parsed = urlparse(url)
        return f"{method.upper()} {parsed.netloc}{parsed.path}"
