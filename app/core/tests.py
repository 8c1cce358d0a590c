"""
Tests para los helpers de Redis

- Caché JSON y degradación cuando Redis no responde
- Espera entre reconexiones tras un fallo
- Límite de peticiones por ventana fija
"""

from types import SimpleNamespace

import pytest
import redis

import app.core.cache as cache
from app.core.config import settings


class FailingRedis:
    def __init__(self):
        self.pings = 0

    def ping(self):
        self.pings += 1
        raise redis.ConnectionError("connection refused")


@pytest.fixture
def unreachable_redis(monkeypatch):
    """Redis caído: cada conexión nueva falla en el ping."""
    failing = FailingRedis()
    clock = {"now": 1000.0}
    monkeypatch.setattr(settings, "CACHE_ENABLED", True)
    monkeypatch.setattr(settings, "REDIS_RETRY_SECONDS", 30)
    monkeypatch.setattr(cache, "_redis_client", None)
    monkeypatch.setattr(cache, "_last_failure", None)
    monkeypatch.setattr(cache.redis, "from_url", lambda *args, **kwargs: failing)
    monkeypatch.setattr(cache, "time", SimpleNamespace(monotonic=lambda: clock["now"]))
    return failing, clock


class TestRedisConnection:

    def test_disabled_cache_never_connects(self, monkeypatch):
        monkeypatch.setattr(settings, "CACHE_ENABLED", False)
        assert cache.get_redis() is None
        assert cache.cache_get("anything") is None

    def test_failed_connection_is_not_retried_inside_window(self, unreachable_redis):
        failing, clock = unreachable_redis
        assert cache.get_redis() is None
        assert cache.get_redis() is None
        assert cache.cache_get("public_invoice:inv_1") is None
        assert failing.pings == 1

        clock["now"] += 29
        assert cache.get_redis() is None
        assert failing.pings == 1

    def test_reconnects_after_window(self, unreachable_redis, monkeypatch):
        failing, clock = unreachable_redis
        cache.get_redis()
        clock["now"] += 31
        cache.get_redis()
        assert failing.pings == 2

        healthy = FailingRedis()
        healthy.ping = lambda: True
        monkeypatch.setattr(cache.redis, "from_url", lambda *args, **kwargs: healthy)
        clock["now"] += 31
        assert cache.get_redis() is healthy
        assert cache._last_failure is None

    def test_rate_limit_fails_open_while_redis_is_down(self, unreachable_redis):
        assert cache.check_rate_limit("api_key:1", 1, 60) == (True, 0)
        assert cache.check_rate_limit("api_key:1", 1, 60) == (True, 0)


class TestCacheHelpers:

    def test_set_get_delete(self, fake_redis):
        cache.cache_set("public_invoice:inv_1", {"total": "10.00"}, ttl=60)
        assert fake_redis.ttls["public_invoice:inv_1"] == 60
        assert cache.cache_get("public_invoice:inv_1") == {"total": "10.00"}

        cache.cache_delete("public_invoice:inv_1")
        assert cache.cache_get("public_invoice:inv_1") is None

    def test_default_ttl(self, fake_redis):
        cache.cache_set("key", [1, 2])
        assert fake_redis.ttls["key"] == settings.CACHE_TTL_SECONDS


class TestRateLimit:

    def test_window_counter(self, fake_redis):
        assert cache.check_rate_limit("api_key:1", 2, 60) == (True, 0)
        assert cache.check_rate_limit("api_key:1", 2, 60) == (True, 0)
        assert cache.check_rate_limit("api_key:1", 2, 60) == (False, 60)
        assert fake_redis.store["ratelimit:api_key:1"] == 3

    def test_counters_are_per_identifier(self, fake_redis):
        assert cache.check_rate_limit("api_key:1", 1, 60) == (True, 0)
        assert cache.check_rate_limit("api_key:2", 1, 60) == (True, 0)
        assert cache.check_rate_limit("api_key:1", 1, 60)[0] is False
