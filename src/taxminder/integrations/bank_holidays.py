"""UK bank holidays from GOV.UK, with a time-based cache.

The cache is an explicit object with an injectable clock and fetcher. When
GOV.UK cannot be reached it serves the last good (possibly expired) set, and
with nothing cached at all it falls back to the ``holidays`` library's
England calendar.

Engine code goes through ``load_holidays()``, which keeps one cache per
source for the life of the process and mirrors the last good set into the
database so a fresh process still has something stale to fall back on.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import holidays as hlib
import httpx

from taxminder import db
from taxminder.config import Settings

logger = logging.getLogger("taxminder.integrations.bank_holidays")

GOV_UK_URL = "https://www.gov.uk/bank-holidays.json"


def fetch_uk_bank_holidays(url: str = GOV_UK_URL, division: str = "england-and-wales",
                           timeout: float = 10.0,
                           client: httpx.Client | None = None) -> frozenset[str]:
    """Fetch one division's bank holiday dates as ISO strings.

    Raises httpx.HTTPError on transport/status failures and KeyError, TypeError
    or ValueError on an unexpected payload.
    """
    if client is None:
        resp = httpx.get(url, timeout=timeout)
    else:
        resp = client.get(url, timeout=timeout)
    resp.raise_for_status()
    events = resp.json()[division]["events"]
    return frozenset(e["date"] for e in events)


def library_holidays(years: range) -> frozenset[str]:
    """England bank holidays computed locally by the ``holidays`` package."""
    return frozenset(d.isoformat() for d in hlib.UnitedKingdom(years=years, subdiv="ENG"))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BankHolidayCache:
    """Caches the holiday set for ``ttl``; serves stale data if a refresh fails."""

    def __init__(
        self,
        fetcher: Callable[[], frozenset[str]] | None = None,
        ttl: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._fetcher = fetcher or fetch_uk_bank_holidays
        self._ttl = ttl
        self._clock = clock
        self._holidays: frozenset[str] | None = None
        self._fetched_at: datetime | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> BankHolidayCache:
        def fetcher() -> frozenset[str]:
            return fetch_uk_bank_holidays(
                settings.bank_holidays_url,
                settings.bank_holidays_division,
                settings.http_timeout,
            )
        return cls(fetcher=fetcher, ttl=timedelta(days=settings.holiday_cache_ttl_days))

    @property
    def fetched_at(self) -> datetime | None:
        return self._fetched_at

    def is_fresh(self) -> bool:
        if self._holidays is None or self._fetched_at is None:
            return False
        return self._clock() - self._fetched_at < self._ttl

    def get(self) -> frozenset[str]:
        """Holiday dates as ISO strings."""
        if self.is_fresh():
            return self._holidays  # type: ignore[return-value]

        now = self._clock()
        try:
            fresh = self._fetcher()
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            if self._holidays is not None:
                logger.warning("Bank holiday refresh failed (%s); using cache from %s",
                               e, self._fetched_at)
                return self._holidays
            logger.warning("Bank holiday refresh failed (%s) and nothing cached; "
                           "using local England calendar", e)
            return library_holidays(range(now.year - 1, now.year + 3))

        self._holidays = fresh
        self._fetched_at = now
        return fresh

    def invalidate(self) -> None:
        self._fetched_at = None

    def seed(self, dates: frozenset[str], fetched_at: datetime) -> None:
        """Prime an empty cache with a previously fetched set."""
        if self._holidays is None:
            self._holidays = dates
            self._fetched_at = fetched_at


_shared: dict[tuple[str, str], BankHolidayCache] = {}


def shared_cache(settings: Settings) -> BankHolidayCache:
    """The process-wide cache for the configured source."""
    key = (settings.bank_holidays_url, settings.bank_holidays_division)
    cache = _shared.get(key)
    if cache is None:
        cache = _shared[key] = BankHolidayCache.from_settings(settings)
    return cache


def reset_shared_caches() -> None:
    _shared.clear()


def load_holidays(c, settings: Settings) -> frozenset[str]:
    """Holiday dates for engine runs, backed by the shared and stored caches."""
    division = settings.bank_holidays_division
    cache = shared_cache(settings)
    if cache.fetched_at is None:
        stored = db.get_cached_holidays(c, division)
        if stored:
            cache.seed(*stored)
    before = cache.fetched_at
    dates = cache.get()
    if cache.fetched_at is not None and cache.fetched_at != before:
        db.store_cached_holidays(c, division, dates, cache.fetched_at)
    return dates
