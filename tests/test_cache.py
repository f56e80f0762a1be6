from ppe_runtime.cache import TTLCache


class Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_entries_expire_after_ttl() -> None:
    clock = Clock()
    cache = TTLCache(default_ttl=10, clock=clock)
    cache.set("k", "v")
    assert cache.get("k") == "v"
    clock.now = 11
    assert cache.get("k") is None
    assert cache.get_stats()["size"] == 0


def test_fingerprint_mismatch_is_a_miss() -> None:
    cache = TTLCache()
    cache.set("k", "v", fingerprint=1)
    assert cache.get("k", fingerprint=1) == "v"
    assert cache.get("k", fingerprint=2) is None


def test_get_or_compute_only_computes_on_miss() -> None:
    cache = TTLCache()
    calls = []

    def compute() -> str:
        calls.append(1)
        return "value"

    assert cache.get_or_compute("k", None, compute) == "value"
    assert cache.get_or_compute("k", None, compute) == "value"
    assert len(calls) == 1
    stats = cache.get_stats()
    assert stats["hits"] == 1 and stats["misses"] == 1 and stats["hit_rate"] == 50.0


def test_invalidate_and_clear() -> None:
    cache = TTLCache()
    cache.set("a", 1)
    cache.set("b", 2)
    cache.invalidate("a")
    assert cache.get("a") is None
    cache.clear()
    assert cache.get("b") is None
