"""Discovery of the best regional server URL for cloud-hosted deployments."""

from __future__ import annotations

import json
import logging
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

_SETTINGS_CACHE_TIME = 3.0
_CLOUD_SUFFIXES = ("livekit.cloud", "livekit.io")


class RegionError(Exception):
    """Raised when region settings cannot be fetched or used."""


@dataclass
class _CacheItem:
    region_urls: list[str]
    updated_at: float
    region_url_attempts: dict[str, int] = field(default_factory=dict)


class RegionURLProvider:
    """Fetches and caches region settings per cloud hostname."""

    def __init__(self, timeout: float = 5.0) -> None:
        self._timeout = timeout
        self._cache: dict[str, _CacheItem] = {}
        self._lock = threading.Lock()

    def refresh_region_settings(self, cloud_hostname: str, token: str) -> None:
        """Fetch region settings unless they were fetched in the last few seconds."""
        with self._lock:
            cached = self._cache.get(cloud_hostname)
        if cached is not None and time.monotonic() - cached.updated_at < _SETTINGS_CACHE_TIME:
            return

        request = urllib.request.Request(
            f"https://{cloud_hostname}/settings/regions",
            headers={"Authorization": f"Bearer {token}"},
            method="GET",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                status = response.status
                reason = response.reason
                body = response.read()
        except urllib.error.HTTPError as exc:
            raise RegionError(
                "refreshRegionSettings failed to fetch region settings. "
                f"http status: {exc.code} {exc.reason}"
            ) from exc
        except (urllib.error.URLError, OSError) as exc:
            raise RegionError(f"refreshRegionSettings request failed: {exc}") from exc

        if status != 200:
            raise RegionError(
                "refreshRegionSettings failed to fetch region settings. "
                f"http status: {status} {reason}"
            )

        try:
            settings = json.loads(body)
            regions = settings.get("regions") or []
            urls = [region.get("url", "") for region in regions]
        except (ValueError, AttributeError) as exc:
            raise RegionError(
                f"refreshRegionSettings failed to decode region settings: {exc}"
            ) from exc

        with self._lock:
            self._cache[cloud_hostname] = _CacheItem(urls, time.monotonic())

        if not urls:
            logger.warning("no regions returned for %s", cloud_hostname)

    def pop_best_url(self, cloud_hostname: str, token: str) -> str:
        """Remove and return the best region URL; raise once none are left."""
        with self._lock:
            item = self._cache.get(cloud_hostname)
            if item is None or not item.region_urls:
                raise RegionError("no regions available")
            return item.region_urls.pop(0)


def parse_cloud_url(server_url: str) -> str:
    """Return the hostname of ``server_url`` if it points at the cloud service."""
    try:
        hostname = urllib.parse.urlsplit(server_url).hostname or ""
    except ValueError as exc:
        raise RegionError(f"invalid server url ({server_url}): {exc}") from exc
    if not is_cloud(hostname):
        raise RegionError("not a cloud url")
    return hostname


def is_cloud(hostname: str) -> bool:
    """Whether ``hostname`` belongs to the cloud service."""
    return hostname.endswith(_CLOUD_SUFFIXES)