"""Store-backed rate limiting and request replay."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from draft_gateway.config import LimitSettings
from draft_gateway.storage.db import SqliteStore
from draft_gateway.utils.serialization import dumps, loads_or
from draft_gateway.utils.time import now_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: int

    def retry_after_seconds(self, now: int) -> int:
        return max(1, -(-(self.reset_at - now) // 1000))


class RateLimiter:
    """
    Sliding window limiter keyed by ``actor:workspace:mode``.

    Hits live in ``rate_limit_hits`` so every worker process sharing the
    database shares the same counters. Count-then-insert runs inside one
    ``atomic`` block, which serialises concurrent checks on the write lock.
    """

    def __init__(
        self,
        store: SqliteStore,
        settings: LimitSettings,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._settings = settings
        self._clock = clock

    @property
    def window_ms(self) -> int:
        return self._settings.window_seconds * 1000

    def check(self, actor_id: str, workspace_id: str, mode: str) -> RateDecision:
        key = f"{actor_id}:{workspace_id}:{mode}"
        limit = self._settings.limit_for(mode)
        now = self._clock()
        window_start = now - self.window_ms

        with self._store.atomic():
            row = self._store.fetch_one(
                "SELECT COUNT(*) AS n, MIN(hit_at) AS oldest FROM rate_limit_hits "
                "WHERE bucket_key = ? AND hit_at > ?",
                (key, window_start),
            )
            used = int(row["n"]) if row is not None else 0
            oldest = row["oldest"] if row is not None and row["oldest"] is not None else now

            if used >= limit:
                logger.info("Rate limit hit for %s (%d/%d)", key, used, limit)
                return RateDecision(
                    allowed=False,
                    limit=limit,
                    remaining=0,
                    reset_at=int(oldest) + self.window_ms,
                )

            self._store.execute(
                "INSERT INTO rate_limit_hits (bucket_key, hit_at) VALUES (?, ?)",
                (key, now),
            )

        return RateDecision(
            allowed=True,
            limit=limit,
            remaining=limit - used - 1,
            reset_at=int(oldest) + self.window_ms,
        )


@dataclass(frozen=True)
class StoredResponse:
    status: int
    body: dict[str, Any]


def _storable(status: int) -> bool:
    return status != 429 and status < 500


class RequestDedupe:
    """Remembers ``(actor, request_id) -> response`` for replay.

    Rate-limited and server-error responses are never stored, so a client
    can retry those with the same request id.
    """

    def __init__(self, store: SqliteStore, clock: Callable[[], int] = now_ms) -> None:
        self._store = store
        self._clock = clock

    def lookup(self, actor_id: str, request_id: str) -> StoredResponse | None:
        row = self._store.fetch_one(
            "SELECT status_code, response_json FROM request_dedupes "
            "WHERE actor_id = ? AND request_id = ?",
            (actor_id, request_id),
        )
        if row is None:
            return None
        body = loads_or(row["response_json"], None)
        if not isinstance(body, dict):
            logger.warning("Dropping unreadable dedupe entry for request %s", request_id)
            return None
        return StoredResponse(status=int(row["status_code"]), body=body)

    def remember(
        self,
        *,
        actor_id: str,
        request_id: str,
        mode: str,
        workspace_id: str | None,
        status: int,
        body: dict[str, Any],
    ) -> bool:
        if not _storable(status):
            return False
        inserted = self._store.execute(
            """
            INSERT OR IGNORE INTO request_dedupes (
                actor_id, request_id, mode, workspace_id,
                status_code, response_json, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (actor_id, request_id, mode, workspace_id, status, dumps(body), self._clock()),
        )
        return inserted == 1
