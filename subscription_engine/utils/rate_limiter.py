import logging
import random
import threading
import time
from collections import defaultdict, deque
from typing import Callable, Optional, Protocol, Tuple

from fastapi import Request
from sqlalchemy import text
from sqlalchemy.engine import Engine

from subscription_engine.config import Settings

logger = logging.getLogger(__name__)


class RateLimitBackend(Protocol):
    def allow(self, key: str, limit: int, window_seconds: int, now: float) -> Tuple[bool, int]:
        ...


class InMemoryRateLimitBackend:
    """
    Sliding-window in-memory rate limiter.
    Suitable for local/single-instance deployments.
    """

    def __init__(self) -> None:
        self._events: dict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def allow(self, key: str, limit: int, window_seconds: int, now: float) -> Tuple[bool, int]:
        cutoff = now - window_seconds

        with self._lock:
            events = self._events[key]
            while events and events[0] <= cutoff:
                events.popleft()

            if len(events) >= limit:
                retry_after = int(max(1, window_seconds - (now - events[0])))
                return False, retry_after

            events.append(now)
            return True, 0


class DatabaseRateLimitBackend:
    """
    DB-backed fixed-window rate limiter.
    Works across multiple app instances sharing the same DB.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._initialized = False
        self._lock = threading.Lock()

    def _ensure_table(self) -> None:
        if self._initialized:
            return
        with self._lock:
            if self._initialized:
                return
            integer_type = "INTEGER" if self.engine.dialect.name == "sqlite" else "BIGINT"
            key_type = "TEXT" if self.engine.dialect.name == "sqlite" else "VARCHAR(255)"
            with self.engine.begin() as conn:
                conn.execute(
                    text(
                        f"""
                        CREATE TABLE IF NOT EXISTS rate_limit_buckets (
                            rate_key {key_type} NOT NULL,
                            window_start {integer_type} NOT NULL,
                            request_count INTEGER NOT NULL DEFAULT 0,
                            updated_at {integer_type} NOT NULL,
                            PRIMARY KEY (rate_key, window_start)
                        )
                        """
                    )
                )
                conn.execute(
                    text(
                        """
                        CREATE INDEX IF NOT EXISTS idx_rate_limit_buckets_updated_at
                        ON rate_limit_buckets (updated_at)
                        """
                    )
                )
            self._initialized = True

    def allow(self, key: str, limit: int, window_seconds: int, now: float) -> Tuple[bool, int]:
        self._ensure_table()
        current = int(now)
        window_start = current - (current % max(window_seconds, 1))

        # Best-effort cleanup (1% of requests) to prevent table growth.
        do_cleanup = random.randint(1, 100) == 1
        cleanup_before = window_start - (window_seconds * 4)

        with self.engine.begin() as conn:
            if do_cleanup:
                conn.execute(
                    text("DELETE FROM rate_limit_buckets WHERE updated_at < :cleanup_before"),
                    {"cleanup_before": cleanup_before},
                )

            conn.execute(
                text(
                    """
                    INSERT INTO rate_limit_buckets (rate_key, window_start, request_count, updated_at)
                    VALUES (:rate_key, :window_start, 1, :updated_at)
                    ON CONFLICT (rate_key, window_start)
                    DO UPDATE SET
                        request_count = rate_limit_buckets.request_count + 1,
                        updated_at = :updated_at
                    """
                ),
                {"rate_key": key, "window_start": window_start, "updated_at": current},
            )

            row = conn.execute(
                text(
                    """
                    SELECT request_count
                    FROM rate_limit_buckets
                    WHERE rate_key = :rate_key AND window_start = :window_start
                    """
                ),
                {"rate_key": key, "window_start": window_start},
            ).first()
            request_count = int(row[0] if row else 0)

        if request_count > limit:
            retry_after = int(max(1, (window_start + window_seconds) - current))
            return False, retry_after

        return True, 0


class RateLimiter:
    def __init__(
        self,
        settings: Settings,
        backend: Optional[RateLimitBackend] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.backend = backend or InMemoryRateLimitBackend()
        self.fallback = InMemoryRateLimitBackend()
        self._clock = clock

    def _should_trust_proxy_headers(self, request: Request) -> bool:
        if not self.settings.trust_proxy_headers:
            return False
        if not self.settings.trusted_proxy_ips:
            # If proxy trust is enabled but trusted IPs are not pinned, keep header trust disabled.
            return False
        remote_host = request.client.host if request.client and request.client.host else ""
        return remote_host in self.settings.trusted_proxy_ips

    def extract_client_ip(self, request: Request) -> str:
        """
        Resolve client IP with optional strict proxy-header support.
        """
        if self._should_trust_proxy_headers(request):
            cf_ip = request.headers.get("cf-connecting-ip")
            if cf_ip:
                return cf_ip.strip()

            xff = request.headers.get("x-forwarded-for")
            if xff:
                return xff.split(",")[0].strip()

            xrip = request.headers.get("x-real-ip")
            if xrip:
                return xrip.strip()

        if request.client and request.client.host:
            return request.client.host

        return "unknown"

    def allow(self, key: str, limit: int, window_seconds: int) -> Tuple[bool, int]:
        now = self._clock()
        try:
            return self.backend.allow(key, limit, window_seconds, now)
        except Exception:
            # Fail open to in-memory limiter to avoid blocking payment flows on transient DB issues.
            logger.exception("Rate limit backend failed for key %s; using in-memory fallback", key)
            return self.fallback.allow(key, limit, window_seconds, now)

    def check_ip_rate_limit(
        self,
        request: Request,
        scope: str,
        limit: int,
        window_seconds: int,
        extra_key: Optional[str] = None,
    ) -> Tuple[bool, int]:
        ip = self.extract_client_ip(request)
        key = f"{scope}:{ip}"
        if extra_key:
            key = f"{key}:{extra_key}"
        return self.allow(key, limit, window_seconds)


def build_rate_limiter(settings: Settings, engine: Engine) -> RateLimiter:
    if settings.rate_limit_backend == "database" and engine.dialect.name in {"postgresql", "sqlite"}:
        return RateLimiter(settings, DatabaseRateLimitBackend(engine))
    return RateLimiter(settings)
