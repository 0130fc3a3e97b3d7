"""Tests for the cache proxy's eviction engine."""

import pytest

from sfloader.models.config import Budget
from sfloader.models.entry import ONE_DAY_MS, CacheEntry
from sfloader.proxy.eviction import EvictionEngine, needs_cleanup, score_entry
from sfloader.proxy.store import ProxyStore

SOUNDFONTS = "sfloader-soundfonts-vtest"
CRITICAL = "sfloader-critical-vtest"
NOW = 1_700_000_000_000


def small_budget(**overrides) -> Budget:
    """A 100-byte budget with a 70-byte target."""
    values = dict(
        total_limit=100,
        soundfont_limit=100,
        critical_limit=30,
        max_soundfonts=10,
        min_free_space=0,
    )
    values.update(overrides)
    return Budget(**values)


def entry(key, size, count=1, days_idle=0, protected=False) -> CacheEntry:
    return CacheEntry(
        key=key,
        size_bytes=size,
        access_count=count,
        last_accessed=NOW - days_idle * ONE_DAY_MS,
        protected=protected,
    )


@pytest.fixture
def store(tmp_path):
    return ProxyStore(tmp_path)


class TestScoring:
    """Test score_entry and the cleanup trigger."""

    def test_score_adds_idle_days(self):
        assert score_entry(entry("a", 1, count=3, days_idle=2), NOW) == 5

    def test_access_count_is_capped(self):
        """An entry popular long ago does not outrank a recent one forever."""
        old_favorite = entry("old", 1, count=1000, days_idle=0)
        recent = entry("new", 1, count=50, days_idle=60)
        assert score_entry(old_favorite, NOW, 100) < score_entry(recent, NOW, 100)
        assert score_entry(old_favorite, NOW) > score_entry(recent, NOW)

    def test_needs_cleanup(self):
        budget = small_budget()
        assert not needs_cleanup({"totalSize": 85, "soundfontCount": 9}, budget)
        assert needs_cleanup({"totalSize": 86, "soundfontCount": 1}, budget)
        assert needs_cleanup({"totalSize": 10, "soundfontCount": 10}, budget)


class TestPlan:
    """Test victim selection."""

    def test_lowest_score_goes_first_and_protected_stays(self):
        """
        With A=5 (popular), B=10 (rarely used) and C=80 (protected), freeing
        B+C removes B before A, keeps C and reports the remaining overshoot.
        """
        engine = EvictionEngine(store=None, budget=small_budget())
        a = entry("/soundfonts/a.json", 5, count=10)
        b = entry("/soundfonts/b.json", 10, count=1)
        c = entry("/soundfonts/c.json", 80, count=1, protected=True)

        victims = engine.plan([a, b, c], usage=95, required_space=90, now=NOW)

        assert [v.key for v in victims] == [b.key, a.key]
        assert c not in victims

    def test_stops_once_target_reached(self):
        engine = EvictionEngine(store=None, budget=small_budget())
        entries = [entry(f"/soundfonts/{i}.json", 10, count=i + 1) for i in range(9)]

        victims = engine.plan(entries, usage=90, required_space=0, now=NOW)

        assert [v.key for v in victims] == ["/soundfonts/0.json", "/soundfonts/1.json"]

    def test_required_space_beyond_target(self):
        engine = EvictionEngine(store=None, budget=small_budget())
        entries = [entry(f"/soundfonts/{i}.json", 10, count=i + 1) for i in range(5)]

        victims = engine.plan(entries, usage=50, required_space=25, now=NOW)

        assert len(victims) == 3

    def test_essential_and_excluded_are_kept(self):
        engine = EvictionEngine(
            store=None, budget=small_budget(), essential=["/soundfonts/piano.json"]
        )
        entries = [
            entry("/soundfonts/piano.json", 30),
            entry("/soundfonts/new.json", 30),
            entry("/soundfonts/old.json", 30, days_idle=5),
        ]

        victims = engine.plan(
            entries, usage=90, required_space=90, now=NOW, exclude={"/soundfonts/new.json"}
        )

        assert [v.key for v in victims] == ["/soundfonts/old.json"]

    def test_default_keeps_entries_under_target(self):
        engine = EvictionEngine(store=None, budget=small_budget(min_free_space=50))
        entries = [entry(f"/soundfonts/{i}.json", 1) for i in range(5)]

        assert engine.plan(entries, usage=5, now=NOW) == []

    def test_count_target_without_byte_pressure(self):
        engine = EvictionEngine(store=None, budget=small_budget())
        entries = [entry(f"/soundfonts/{i}.json", 1, count=i + 1) for i in range(10)]

        victims = engine.plan(entries, usage=10, now=NOW)

        assert [v.key for v in victims] == ["/soundfonts/0.json"]


class TestCleanup:
    """Test cleanup against a real store."""

    async def test_cleanup_reports_overshoot(self, store):
        engine = EvictionEngine(store, small_budget())
        await store.put(SOUNDFONTS, "/soundfonts/a.json", b"a" * 5)
        await store.put(SOUNDFONTS, "/soundfonts/b.json", b"b" * 10)
        await store.put(SOUNDFONTS, "/soundfonts/c.json", b"c" * 80, protected=True)
        for _ in range(5):
            await store.touch(SOUNDFONTS, "/soundfonts/a.json")

        report = await engine.cleanup(SOUNDFONTS, CRITICAL, required_space=90)

        assert report.removed == ["/soundfonts/b.json", "/soundfonts/a.json"]
        assert report.freed == 15
        assert report.remaining_usage == 80
        assert report.overshoot == 10
        assert report.over_budget is False
        assert await store.get(SOUNDFONTS, "/soundfonts/c.json") is not None
        assert engine.last_cleanup is not None
        assert report.as_dict()["freedSpace"] == 15
        assert report.as_dict()["removed"] == 2

    async def test_cleanup_converges_to_target(self, store):
        engine = EvictionEngine(store, small_budget())
        for i in range(9):
            await store.put(SOUNDFONTS, f"/soundfonts/{i}.json", b"x" * 10)

        report = await engine.cleanup(SOUNDFONTS, CRITICAL)
        usage = await store.usage(SOUNDFONTS, CRITICAL)

        assert usage["totalSize"] <= small_budget().target_usage
        assert report.overshoot == 0
        assert len(report.removed) == 2

    async def test_critical_bytes_count_towards_usage(self, store):
        engine = EvictionEngine(store, small_budget())
        await store.put(CRITICAL, "/index.html", b"i" * 30)
        for i in range(5):
            await store.put(SOUNDFONTS, f"/soundfonts/{i}.json", b"x" * 10)

        report = await engine.cleanup(SOUNDFONTS, CRITICAL)

        assert report.freed == 10
        assert await store.get(CRITICAL, "/index.html") is not None
