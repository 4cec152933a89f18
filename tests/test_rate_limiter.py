from dataclasses import replace

from starlette.requests import Request

from subscription_engine.utils.rate_limiter import (
    DatabaseRateLimitBackend,
    InMemoryRateLimitBackend,
    RateLimiter,
    build_rate_limiter,
)


def _request(client_host="203.0.113.5", headers=None):
    raw_headers = [(key.lower().encode("latin-1"), value.encode("latin-1")) for key, value in (headers or {}).items()]
    return Request({"type": "http", "method": "POST", "path": "/", "headers": raw_headers, "client": (client_host, 443)})


def test_in_memory_sliding_window():
    backend = InMemoryRateLimitBackend()

    assert backend.allow("k", 2, 60, now=1000.0) == (True, 0)
    assert backend.allow("k", 2, 60, now=1010.0) == (True, 0)
    allowed, retry_after = backend.allow("k", 2, 60, now=1020.0)
    assert not allowed
    assert retry_after == 40
    assert backend.allow("k", 2, 60, now=1061.0) == (True, 0)
    assert backend.allow("other", 2, 60, now=1020.0) == (True, 0)


def test_database_backend_counts_per_window(db_engine):
    backend = DatabaseRateLimitBackend(db_engine)

    assert backend.allow("scope:1.2.3.4", 2, 60, now=1200.0)[0]
    assert backend.allow("scope:1.2.3.4", 2, 60, now=1210.0)[0]
    allowed, retry_after = backend.allow("scope:1.2.3.4", 2, 60, now=1230.0)
    assert not allowed
    assert retry_after == 30
    assert backend.allow("scope:1.2.3.4", 2, 60, now=1260.0)[0]


class _BrokenBackend:
    def allow(self, key, limit, window_seconds, now):
        raise RuntimeError("database is locked")


def test_backend_failure_falls_back_to_memory(settings):
    limiter = RateLimiter(settings, backend=_BrokenBackend(), clock=lambda: 500.0)

    assert limiter.allow("k", 1, 60) == (True, 0)
    assert limiter.allow("k", 1, 60)[0] is False


def test_proxy_headers_ignored_unless_proxy_is_trusted(settings):
    headers = {"X-Forwarded-For": "198.51.100.1, 10.0.0.1"}
    untrusted = RateLimiter(replace(settings, trust_proxy_headers=True))
    trusted = RateLimiter(replace(settings, trust_proxy_headers=True, trusted_proxy_ips=("10.0.0.2",)))

    assert untrusted.extract_client_ip(_request("10.0.0.2", headers)) == "10.0.0.2"
    assert trusted.extract_client_ip(_request("10.0.0.2", headers)) == "198.51.100.1"
    assert trusted.extract_client_ip(_request("10.0.0.9", headers)) == "10.0.0.9"


def test_ip_limit_keys_include_scope_and_extra_key(settings):
    limiter = RateLimiter(settings, clock=lambda: 100.0)
    request = _request()

    assert limiter.check_ip_rate_limit(request, "init", 1, 60, extra_key="user-a")[0]
    assert not limiter.check_ip_rate_limit(request, "init", 1, 60, extra_key="user-a")[0]
    assert limiter.check_ip_rate_limit(request, "init", 1, 60, extra_key="user-b")[0]
    assert limiter.check_ip_rate_limit(request, "webhook", 1, 60)[0]


def test_build_rate_limiter_selects_backend(settings, db_engine):
    assert isinstance(build_rate_limiter(settings, db_engine).backend, InMemoryRateLimitBackend)
    database = build_rate_limiter(replace(settings, rate_limit_backend="database"), db_engine)
    assert isinstance(database.backend, DatabaseRateLimitBackend)
