from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import requests

from calnotes.ical_normalizer import CalendarNormalizer
from calnotes.models import FetchResult, Occurrence, normalize_calendar_url

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 5 * 60
FETCH_TIMEOUT_SECONDS = 15
ACCEPT_HEADER = "text/calendar, text/plain;q=0.9, */*;q=0.8"


@dataclass
class _CacheEntry:
    occurrences: list[Occurrence]
    expires_at: float


def _cache_key(
    url: str,
    window_start: datetime | None,
    window_end: datetime | None,
    include_cancelled: bool,
) -> str:
    start_key = window_start.date().isoformat() if window_start else "none"
    end_key = window_end.date().isoformat() if window_end else "none"
    return f"{url}::{start_key}::{end_key}::{include_cancelled}"


class FeedSource:
    def __init__(
        self,
        normalizer: CalendarNormalizer | None = None,
        *,
        session: requests.Session | None = None,
        cache_ttl_seconds: float = CACHE_TTL_SECONDS,
        timeout_seconds: float = FETCH_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.normalizer = normalizer or CalendarNormalizer()
        self.session = session or requests.Session()
        self.cache_ttl_seconds = cache_ttl_seconds
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._cache: dict[str, _CacheEntry] = {}
        self._lock = threading.RLock()

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def fetch(
        self,
        url: str,
        window_start: datetime | None = None,
        window_end: datetime | None = None,
        include_cancelled: bool = False,
        force_refresh: bool = False,
    ) -> FetchResult:
        normalized_url = normalize_calendar_url(url)
        if not normalized_url:
            return FetchResult(
                occurrences=[],
                ok=False,
                normalized_url=None,
                error="Invalid calendar URL",
            )

        key = _cache_key(normalized_url, window_start, window_end, include_cancelled)
        with self._lock:
            cached = self._cache.get(key)
            if not force_refresh and cached is not None and self._clock() < cached.expires_at:
                return FetchResult(
                    occurrences=list(cached.occurrences),
                    ok=True,
                    normalized_url=normalized_url,
                    from_cache=True,
                )

        try:
            response = self.session.get(
                normalized_url,
                headers={"Accept": ACCEPT_HEADER},
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            logger.error("Error fetching calendar %s: %s", normalized_url, exc)
            return FetchResult(
                occurrences=[],
                ok=False,
                normalized_url=normalized_url,
                error=f"{type(exc).__name__}: {exc}",
            )

        if response.status_code != 200:
            logger.error("Failed to fetch calendar %s: HTTP %s", normalized_url, response.status_code)
            return FetchResult(
                occurrences=[],
                ok=False,
                normalized_url=normalized_url,
                status_code=response.status_code,
                error=f"Unexpected status code: {response.status_code}",
            )

        occurrences = [
            occurrence.with_updates(source_url=normalized_url)
            for occurrence in self.normalizer.normalize(
                response.text, window_start, window_end, include_cancelled
            )
        ]
        with self._lock:
            self._cache[key] = _CacheEntry(
                occurrences=occurrences,
                expires_at=self._clock() + self.cache_ttl_seconds,
            )
        return FetchResult(
            occurrences=list(occurrences),
            ok=True,
            normalized_url=normalized_url,
            status_code=response.status_code,
        )
