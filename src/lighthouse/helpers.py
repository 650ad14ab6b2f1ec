import datetime as dt
import re
import threading
from typing import Any
from urllib.parse import urlparse

import httpx
import structlog
from httpx import Response
from tzlocal import get_localzone

from lighthouse.config import RegistryConfig, Selector

log = structlog.get_logger()


def timestamp(time_value: float | None) -> str | None:
    if time_value is None:
        return None
    try:
        return dt.datetime.fromtimestamp(time_value, tz=get_localzone()).isoformat()
    except (OverflowError, OSError, ValueError):
        return None


class Selection:
    def __init__(self, selector: Selector, value: str | None) -> None:
        self.result: bool = True
        self.matched: str | None = None
        if value is None:
            self.result = selector.include is None
            return
        if selector.exclude is not None:
            self.result = True
            if any(re.search(pat, value) for pat in selector.exclude):
                self.matched = value
                self.result = False
        if selector.include is not None:
            self.result = False
            if any(re.search(pat, value) for pat in selector.include):
                self.matched = value
                self.result = True

    def __bool__(self) -> bool:
        """Expose the actual boolean so objects can be appropriately truthy"""
        return self.result


class APIStats:
    def __init__(self) -> None:
        self.fetches: int = 0
        self.failed: dict[int, int] = {}
        self.elapsed: float = 0

    def tick(self, response: Response | None) -> None:
        self.fetches += 1
        if response is None:
            self.failed.setdefault(0, 0)
            self.failed[0] += 1
            return
        try:
            self.elapsed += response.elapsed.total_seconds()
        except RuntimeError:
            # elapsed only available once the response is closed
            pass
        if not response.is_success:
            self.failed.setdefault(response.status_code, 0)
            self.failed[response.status_code] += 1

    def average_elapsed(self) -> float:
        return round(self.elapsed / self.fetches, 2) if self.elapsed and self.fetches else 0

    def __str__(self) -> str:
        """Log line friendly string summary"""
        return (
            f"fetches: {self.fetches}, "
            + f"non-success: {', '.join(f'{status_code}:{fails}' for status_code, fails in self.failed.items()) or '0'}, "
            + f"avg elapsed: {self.average_elapsed()}s"
        )


class APIStatsCounter:
    def __init__(self, stats_report_interval: int = 100) -> None:
        self.stats_report_interval: int = stats_report_interval
        self.host_stats: dict[str, APIStats] = {}
        self.fetches: int = 0
        self.log: Any = structlog.get_logger().bind()
        self.lock = threading.Lock()

    def stats(self, url: str, response: Response | None) -> None:
        try:
            host: str = urlparse(url).hostname or "UNKNOWN"
            # lookups tick from worker threads
            with self.lock:
                api_stats: APIStats = self.host_stats.setdefault(host, APIStats())
                api_stats.tick(response)
                self.fetches += 1
                summary: str | None = None
                if self.stats_report_interval and self.fetches % self.stats_report_interval == 0:
                    summary = "\n".join(f"{host} {stats}" for host, stats in self.host_stats.items())
            if summary:
                self.log.info("Registry API Stats Summary\n%s", summary)
        except Exception as e:
            self.log.warning("Failed to tick stats: %s", e)


def build_http_client(cfg: RegistryConfig) -> httpx.Client:
    """Shared, non-caching transport for registry and webhook calls"""
    log.debug("Building HTTP client", timeout=cfg.timeout, max_connections=cfg.max_connections)
    return httpx.Client(
        timeout=httpx.Timeout(cfg.timeout),
        limits=httpx.Limits(max_connections=cfg.max_connections, max_keepalive_connections=cfg.max_connections),
        follow_redirects=False,
    )
