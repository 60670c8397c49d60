from medrag.core.cache import ResultCache, make_key


def test_make_key_is_order_independent_for_dicts():
    assert make_key(["a"], {"x": 1, "y": 2}) == make_key(["a"], {"y": 2, "x": 1})
    assert make_key(["a"], {"x": 1}) != make_key(["b"], {"x": 1})


def test_get_miss_then_hit(clock):
    cache = ResultCache("t", ttl=10, timer=clock)
    assert cache.get("k") is None
    cache.set("k", "v")
    assert cache.get("k") == "v"
    assert cache.stats()["hits"] == 1
    assert cache.stats()["misses"] == 1


def test_entries_expire_after_ttl(clock):
    cache = ResultCache("t", ttl=10, timer=clock)
    cache.set("k", "v")
    clock.advance(9)
    assert cache.get("k") == "v"
    clock.advance(2)
    assert cache.get("k") is None
    assert "k" not in cache


def test_sweep_drops_expired_entries(clock):
    cache = ResultCache("t", ttl=10, timer=clock)
    cache.set("old", 1)
    clock.advance(6)
    cache.set("new", 2)
    clock.advance(5)
    assert cache.sweep() == 1
    assert len(cache) == 1


def test_set_sweeps_past_threshold(clock):
    cache = ResultCache("t", ttl=10, maxsize=100, sweep_threshold=3, timer=clock)
    for i in range(3):
        cache.set(f"old{i}", i)
    clock.advance(11)
    cache.set("fresh", 99)
    assert len(cache) == 1
    assert cache.get("fresh") == 99


def test_maxsize_bounds_the_cache(clock):
    cache = ResultCache("t", ttl=100, maxsize=2, timer=clock)
    for i in range(5):
        cache.set(str(i), i)
    assert len(cache) == 2


def test_clear(clock):
    cache = ResultCache("t", ttl=10, timer=clock)
    cache.set("k", "v")
    cache.clear()
    assert cache.get("k") is None
