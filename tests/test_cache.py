"""
TTLCache with an injected clock.
"""

from cache import TTLCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = TTLCache(ttl_seconds=300, clock=clock)
    cache.set('alice', 'settings')

    clock.now += 299
    assert cache.get('alice') == 'settings'

    clock.now += 2
    assert cache.get('alice') is None
    assert cache.stats()['size'] == 0


def test_invalidate_and_clear():
    cache = TTLCache(ttl_seconds=300, clock=FakeClock())
    cache.set('alice', 1)
    cache.set('bob', 2)

    cache.invalidate('alice')
    assert cache.get('alice', 'missing') == 'missing'
    assert cache.get('bob') == 2

    cache.clear()
    assert cache.get('bob') is None


def test_stats_track_hit_rate():
    cache = TTLCache(ttl_seconds=300, clock=FakeClock())
    cache.set('alice', 1)
    cache.get('alice')
    cache.get('alice')
    cache.get('bob')

    stats = cache.stats()
    assert stats['hits'] == 2
    assert stats['misses'] == 1
    assert stats['hit_rate'] == 2 / 3
