from copytrader.services.follow_cache import FollowCache


class _Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_entries_expire_after_ttl():
    clock = _Clock()
    cache = FollowCache(ttl_seconds=10, clock=clock)
    cache.set("f1", ["a"])
    assert cache.get("f1") == ("a",)
    clock.now = 10.0
    assert cache.get("f1") is None
    assert len(cache) == 0


def test_least_recently_used_entry_is_evicted():
    cache = FollowCache(max_entries=2)
    cache.set("f1", [1])
    cache.set("f2", [2])
    cache.get("f1")
    cache.set("f3", [3])
    assert cache.get("f2") is None
    assert cache.get("f1") == (1,)
    assert cache.get("f3") == (3,)


def test_invalidate():
    cache = FollowCache()
    cache.set("f1", [1])
    cache.set("f2", [2])
    cache.set("f3", [3])
    cache.invalidate("f1")
    cache.invalidate_many(["f2", "missing"])
    assert cache.get("f1") is None
    assert cache.get("f2") is None
    assert cache.get("f3") == (3,)
    cache.clear()
    assert len(cache) == 0
