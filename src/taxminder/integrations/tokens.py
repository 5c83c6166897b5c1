"""Shared OAuth token refresh across processes.

Tokens live in the ``oauth_tokens`` table. A token that expires within the
refresh threshold is refreshed by exactly one process: the refresher holds a
short-lived lock row, re-reads the token once it has the lock, and skips the
refresh if another process already did it.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from taxminder import db
from taxminder.errors import LockHeldError, NotFoundError

logger = logging.getLogger("taxminder.integrations.tokens")

REFRESH_THRESHOLD = timedelta(minutes=50)
LOCK_TTL_SECONDS = 10


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def expires_at(token: dict) -> datetime:
    """``created_at + expires_in`` for a stored token."""
    created = datetime.fromisoformat(token["created_at"])
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return created + timedelta(seconds=int(token.get("expires_in", 0)))


class TokenManager:
    """Hands out a valid access token, refreshing it under a database lock.

    ``refresh`` receives the stored token dict and returns the new one
    (``access_token``, ``refresh_token``, ``expires_in`` at minimum).
    """

    def __init__(
        self,
        c,
        provider: str,
        refresh: Callable[[dict], dict],
        threshold: timedelta = REFRESH_THRESHOLD,
        retries: int = 5,
        backoff: float = 1.0,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.c = c
        self.provider = provider
        self._refresh = refresh
        self._threshold = threshold
        self._retries = retries
        self._backoff = backoff
        self._clock = clock
        self._sleep = sleep

    @property
    def lock_name(self) -> str:
        return f"token_refresh:{self.provider}"

    def _stored(self) -> dict:
        token = db.get_token(self.c, self.provider)
        if token is None:
            raise NotFoundError(f"No OAuth tokens stored for {self.provider}")
        return token

    def needs_refresh(self, token: dict) -> bool:
        return expires_at(token) - self._clock() < self._threshold

    def store(self, token: dict) -> dict:
        data = {**token, "created_at": self._clock().isoformat()}
        db.store_token(self.c, self.provider, data)
        return data

    def get_valid_token(self) -> str:
        token = self._stored()
        if not self.needs_refresh(token):
            return token["access_token"]

        for attempt in range(self._retries + 1):
            owner = uuid4().hex
            if db.acquire_lock(self.c, self.lock_name, LOCK_TTL_SECONDS, owner,
                               now=self._clock()):
                try:
                    current = self._stored()
                    if not self.needs_refresh(current):
                        logger.debug("%s token already refreshed by another process",
                                     self.provider)
                        return current["access_token"]
                    fresh = self.store(self._refresh(current))
                    logger.info("Refreshed %s token", self.provider)
                    return fresh["access_token"]
                finally:
                    db.release_lock(self.c, self.lock_name, owner)

            if attempt < self._retries:
                self._sleep(self._backoff * (2 ** attempt))
                # The holder may have finished while we waited
                token = self._stored()
                if not self.needs_refresh(token):
                    return token["access_token"]

        raise LockHeldError(f"Could not acquire {self.lock_name} after {self._retries} retries")
