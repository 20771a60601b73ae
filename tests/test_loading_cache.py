import time

import pytest

from backupservice.loading_cache import LoadingCache


def test_loading_cache():
    with LoadingCache(int) as cache:
        assert cache.get("1") == 1
        assert cache.get("1") == 1
        cache.clear()
        assert cache.get("2") == 2


def test_loading_cache_error():
    def fail(_key):
        raise ValueError("error")

    with LoadingCache(fail) as cache:
        with pytest.raises(ValueError, match="error"):
            cache.get("1")


def test_value_loaded_once():
    calls = []

    def load(key):
        calls.append(key)
        return key * 2

    with LoadingCache(load) as cache:
        assert cache.get(3) == 6
        assert cache.get(3) == 6
    assert calls == [3]


def test_clear_forces_reload():
    calls = []

    def load(key):
        calls.append(key)
        return key.upper()

    with LoadingCache(load) as cache:
        assert cache.get("a") == "A"
        cache.clear()
        assert cache.get("a") == "A"
    assert calls == ["a", "a"]


def test_periodic_cleanup():
    calls = []

    def load(key):
        calls.append(key)
        return key + "!"

    with LoadingCache(load, cleanup_interval=0.05) as cache:
        assert cache.get("k") == "k!"
        deadline = time.monotonic() + 2
        while len(calls) < 2 and time.monotonic() < deadline:
            time.sleep(0.06)
            assert cache.get("k") == "k!"
    assert len(calls) >= 2


def test_close_stops_thread():
    cache = LoadingCache(int, cleanup_interval=0.05)
    cache.close()
    assert not cache._thread.is_alive()