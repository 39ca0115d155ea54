import threading

import pytest

from app.models import ResolvedResponse
from app.services.response_cache import FrequencySketch, ResponseCache, TinyLfuCache


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_response(body: bytes = b"body") -> ResolvedResponse:
    return ResolvedResponse(headers=(("Content-Type", "text/plain"),), body=body)


def test_get_before_ttl_returns_stored_response():
    clock = FakeClock()
    cache = ResponseCache(capacity=8, ttl=60, clock=clock)
    response = make_response()

    assert cache.put("a.txt", response)
    clock.now += 59.9

    assert cache.get("a.txt") == response


def test_get_after_ttl_misses():
    """Entries read at or after their expiry behave as absent."""
    clock = FakeClock()
    cache = ResponseCache(capacity=8, ttl=60, clock=clock)
    cache.put("a.txt", make_response())

    clock.now += 60

    assert cache.get("a.txt") is None


def test_put_refreshes_expiry():
    clock = FakeClock()
    cache = ResponseCache(capacity=8, ttl=60, clock=clock)
    cache.put("a.txt", make_response(b"old"))
    clock.now += 50
    cache.put("a.txt", make_response(b"new"))
    clock.now += 50

    assert cache.get("a.txt").body == b"new"


def test_zero_capacity_disables_cache():
    cache = ResponseCache(capacity=0, ttl=60)

    assert not cache.enabled
    assert cache.put("a.txt", make_response()) is False
    assert cache.get("a.txt") is None
    assert len(cache) == 0


def test_streamed_response_cannot_be_cached():
    async def stream():
        yield b"chunk"

    cache = ResponseCache(capacity=8, ttl=60)
    with pytest.raises(ValueError):
        cache.put("big.bin", ResolvedResponse(stream=stream()))


def test_tinylfu_refuses_cold_candidate():
    """A key seen once does not displace an entry seen as often."""
    cache = TinyLfuCache(capacity=2)
    assert cache.put("a", 1)
    assert cache.put("b", 2)

    assert cache.put("c", 3) is False
    assert "c" not in cache
    assert len(cache) == 2


def test_tinylfu_admits_popular_candidate():
    """Repeated lookups make a key popular enough to evict the LRU entry."""
    cache = TinyLfuCache(capacity=2)
    cache.put("a", 1)
    cache.put("b", 2)
    for _ in range(3):
        assert cache.get("c") is None

    assert cache.put("c", 3)
    assert "a" not in cache
    assert cache.get("c") == 3
    assert len(cache) == 2


def test_tinylfu_replaces_existing_key():
    cache = TinyLfuCache(capacity=2)
    cache.put("a", 1)
    cache.put("b", 2)

    assert cache.put("a", 10)
    assert cache.get("a") == 10
    assert len(cache) == 2


def test_tinylfu_rejects_oversized_weight():
    cache = TinyLfuCache(capacity=2)
    assert cache.put("huge", 1, weight=3) is False
    assert len(cache) == 0


def test_tinylfu_remove():
    cache = TinyLfuCache(capacity=2)
    cache.put("a", 1)
    cache.remove("a")
    cache.remove("missing")
    assert "a" not in cache


def test_tinylfu_requires_positive_capacity():
    with pytest.raises(ValueError):
        TinyLfuCache(capacity=0)


def test_frequency_sketch_counts_and_ages():
    sketch = FrequencySketch(64)
    for _ in range(6):
        sketch.increment("hot")

    assert sketch.estimate("hot") >= 6
    sketch.halve()
    assert sketch.estimate("hot") >= 3
    assert sketch.estimate("hot") < 6


def test_frequency_sketch_saturates():
    sketch = FrequencySketch(16)
    for _ in range(100):
        sketch.increment("key")
    assert sketch.estimate("key") == 15


def test_concurrent_access_stays_bounded():
    """Concurrent puts and gets never push the cache above its capacity."""
    cache = ResponseCache(capacity=32, ttl=60)
    errors = []

    def worker(worker_id):
        try:
            for i in range(200):
                key = f"file-{(worker_id * 7 + i) % 64}.txt"
                cache.put(key, make_response(key.encode()))
                hit = cache.get(key)
                if hit is not None:
                    assert hit.body == key.encode()
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(cache) <= 32
