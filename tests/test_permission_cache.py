import unittest

from src.domain.permissions.cache import PermissionCache


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestPermissionCache(unittest.TestCase):
    """Test suite for the TTL/size-bounded permission cache."""

    def setUp(self) -> None:
        self.clock = FakeClock()
        self.cache = PermissionCache(ttl_seconds=120, max_size=10, enabled=True, clock=self.clock)

    def test_hit_and_miss_counters(self) -> None:
        self.assertIsNone(self.cache.get("user_1"))
        self.cache.set("user_1", {"LISTINGS:CREATE"})

        self.assertEqual(self.cache.get("user_1"), frozenset({"LISTINGS:CREATE"}))
        stats = self.cache.stats()
        self.assertEqual(stats["hits"], 1)
        self.assertEqual(stats["misses"], 1)
        self.assertEqual(stats["totalChecks"], 2)
        self.assertEqual(stats["hitRate"], 50.0)

    def test_entry_expires_after_ttl(self) -> None:
        self.cache.set("user_1", {"LISTINGS:CREATE"})
        self.clock.now += 121
        self.assertIsNone(self.cache.get("user_1"))
        self.assertNotIn("user_1", self.cache)

    def test_valid_until_shortens_lifetime(self) -> None:
        """A temporary grant expiring before the TTL bounds the entry."""
        self.cache.set("user_1", {"LISTINGS:FEATURE"}, valid_until=self.clock.now + 5)
        self.clock.now += 6
        self.assertIsNone(self.cache.get("user_1"))

    def test_invalidate_removes_entry(self) -> None:
        self.cache.set("user_1", {"LISTINGS:CREATE"})
        self.assertTrue(self.cache.invalidate("user_1"))
        self.assertFalse(self.cache.invalidate("user_1"))
        self.assertIsNone(self.cache.get("user_1"))
        self.assertEqual(self.cache.stats()["invalidations"], 2)

    def test_invalidate_many_counts_present_entries(self) -> None:
        self.cache.set("a", set())
        self.cache.set("b", set())
        self.assertEqual(self.cache.invalidate_many({"a", "b", "c"}), 2)
        self.assertEqual(len(self.cache), 0)

    def test_over_capacity_evicts_oldest_fifth(self) -> None:
        for i in range(10):
            self.clock.now += 1
            self.cache.set(f"user_{i}", set())
        self.clock.now += 1
        self.cache.set("user_10", set())

        # 11 entries > 10: sweep finds nothing expired, then ceil(10 * 0.2) = 2 oldest go
        self.assertEqual(len(self.cache), 9)
        self.assertNotIn("user_0", self.cache)
        self.assertNotIn("user_1", self.cache)
        self.assertIn("user_10", self.cache)
        self.assertEqual(self.cache.stats()["evictions"], 2)

    def test_capacity_sweep_prefers_expired_entries(self) -> None:
        self.cache.set("stale", set(), valid_until=self.clock.now + 1)
        for i in range(9):
            self.cache.set(f"user_{i}", set())
        self.clock.now += 2
        self.cache.set("fresh", set())

        self.assertNotIn("stale", self.cache)
        self.assertEqual(len(self.cache), 10)
        self.assertEqual(self.cache.stats()["evictions"], 0)

    def test_disabled_cache_stores_nothing(self) -> None:
        cache = PermissionCache(ttl_seconds=120, max_size=10, enabled=False)
        cache.set("user_1", {"LISTINGS:CREATE"})
        self.assertIsNone(cache.get("user_1"))
        self.assertEqual(cache.stats()["totalChecks"], 0)

    def test_clear_resets_stats(self) -> None:
        self.cache.set("user_1", set())
        self.cache.get("user_1")
        self.cache.clear()
        self.assertEqual(len(self.cache), 0)
        self.assertEqual(self.cache.stats()["hits"], 0)


if __name__ == "__main__":
    unittest.main()
