from __future__ import annotations

import itertools
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

DEFAULT_RETRY_STATUSES = frozenset({429, 500, 502, 503, 504})
_DIRECT_TOKENS = {"none", "off", "direct"}
_SECRET_PARAMS = {"key", "access_token", "webapi_key"}


def clean_proxy_list(values: Iterable[str] | None) -> list[str]:
    stripped = (value.strip() for value in values or [])
    return [value for value in stripped if value and value.lower() not in _DIRECT_TOKENS]


class ProxyPool:
    """Round-robin over configured proxies; ``next()`` is None when going direct."""

    def __init__(self, proxies: Iterable[str] | None = None) -> None:
        self._proxies = clean_proxy_list(proxies)
        self._cycle = itertools.cycle(self._proxies) if self._proxies else None

    def __len__(self) -> int:
        return len(self._proxies)

    def next(self) -> str | None:
        return next(self._cycle) if self._cycle is not None else None


@dataclass
class RetryPolicy:
    retries: int = 0
    backoff: float = 0.0
    request_delay: float = 0.0
    retry_statuses: frozenset[int] = field(default=DEFAULT_RETRY_STATUSES)

    def __post_init__(self) -> None:
        self.retries = max(0, int(self.retries))
        self.backoff = max(0.0, float(self.backoff))
        self.request_delay = max(0.0, float(self.request_delay))
        self.retry_statuses = frozenset(self.retry_statuses or DEFAULT_RETRY_STATUSES)

    @property
    def attempts(self) -> int:
        return self.retries + 1

    def should_retry(self, status_code: int, attempt: int) -> bool:
        return status_code in self.retry_statuses and attempt < self.attempts

    def delay_for_attempt(self, attempt: int) -> float:
        # exponential with up to one backoff unit of jitter
        if self.backoff <= 0:
            return 0.0
        return self.backoff * (2 ** (attempt - 1)) + random.uniform(0.0, self.backoff)

    def sleep_before_retry(self, attempt: int, exc: BaseException, label: str) -> None:
        delay = self.delay_for_attempt(attempt)
        if delay <= 0:
            return
        logging.warning(
            "%s retry %s/%s after error: %s (sleep %.1fs)",
            label,
            attempt,
            self.retries,
            exc,
            delay,
        )
        time.sleep(delay)


def retry_after_seconds(headers: Mapping[str, Any] | None) -> float | None:
    raw = (headers or {}).get("retry-after") or (headers or {}).get("Retry-After")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except (TypeError, ValueError):
        return None


def mask_proxy(proxy: str | None) -> str:
    """Proxy URL safe for log lines: credentials reduced to the user name."""
    if not proxy:
        return "-"
    try:
        parsed = urlparse(proxy)
        port = f":{parsed.port}" if parsed.port else ""
    except ValueError:
        return proxy
    if not (parsed.scheme and parsed.netloc):
        return proxy
    user = f"{parsed.username}:***@" if parsed.username else ""
    return f"{parsed.scheme}://{user}{parsed.hostname or ''}{port}"


def redact_url(url: str) -> str:
    """Hide API keys and tokens in a URL before it reaches a log line or span."""
    text = str(url or "")
    try:
        parsed = urlparse(text)
    except ValueError:
        return text
    if not parsed.query:
        return text
    pairs = [
        (key, "***" if key.lower() in _SECRET_PARAMS else value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
    ]
    return urlunparse(parsed._replace(query=urlencode(pairs)))
