"""Tests for the cache proxy service."""

import asyncio
from collections import Counter

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from sfloader.exceptions import UpstreamUnavailable
from sfloader.models.config import Budget
from sfloader.models.entry import CacheCategory
from sfloader.proxy.pins import PinSet
from sfloader.proxy.service import CacheProxy, ProxyState
from sfloader.proxy.store import ProxyStore

from .conftest import preset_bytes

UNREACHABLE = "http://127.0.0.1:1"
PIANO = "/soundfonts/0000_piano.json"
ORGAN = "/soundfonts/0160_organ.json"


@pytest.fixture
async def upstream():
    """An origin serving the app shell, soundfonts and an API, counting requests."""
    hits = Counter()

    async def handler(request):
        path = request.path
        hits[path] += 1
        if path == "/index.html":
            return web.Response(text="<html></html>", content_type="text/html")
        if path.startswith("/soundfonts/"):
            if "slow" in path:
                await asyncio.sleep(0.1)
            name = path.rsplit("/", 1)[-1]
            return web.Response(body=preset_bytes(name), content_type="application/json")
        if path == "/api/songs":
            return web.json_response({"songs": []})
        return web.Response(status=404, text="not found")

    app = web.Application()
    app.router.add_get("/{tail:.*}", handler)
    server = TestServer(app)
    await server.start_server()
    server.hits = hits
    yield server
    await server.close()


def make_proxy(tmp_path, upstream_url, budget=None, essential=(PIANO,), version="2.0.0"):
    return CacheProxy(
        store=ProxyStore(tmp_path / "proxy"),
        upstream_url=upstream_url,
        budget=budget or Budget(),
        pins=PinSet(tmp_path / "proxy" / "pins.json"),
        essential_soundfonts=list(essential),
        critical_assets=["/index.html"],
        version=version,
        timeout=2.0,
    )


@pytest.fixture
async def proxy(tmp_path, upstream):
    cache_proxy = make_proxy(tmp_path, str(upstream.make_url("/")))
    yield cache_proxy
    await cache_proxy.close()


@pytest.fixture
async def offline_proxy(tmp_path):
    cache_proxy = make_proxy(tmp_path, UNREACHABLE)
    yield cache_proxy
    await cache_proxy.close()


class TestCategorize:
    """Test request categorization."""

    def test_categories(self, tmp_path):
        proxy = make_proxy(tmp_path, UNREACHABLE)
        assert proxy.categorize("/index.html") is CacheCategory.CRITICAL
        assert proxy.categorize(PIANO) is CacheCategory.SOUNDFONT
        assert proxy.categorize(PIANO + "?v=2") is CacheCategory.SOUNDFONT
        assert proxy.categorize("/soundfonts/readme.txt") is CacheCategory.GENERIC
        assert proxy.categorize("/api/songs") is CacheCategory.GENERIC

    def test_root_counts_as_index(self, tmp_path):
        proxy = make_proxy(tmp_path, UNREACHABLE)
        proxy.critical_assets = ["/"]
        assert proxy.is_critical("/")
        assert proxy.is_critical("/index.html")
        assert not proxy.is_critical("/app.js")

    def test_store_names_carry_version(self, tmp_path):
        proxy = make_proxy(tmp_path, UNREACHABLE, version="3.1.0")
        assert proxy.cache_names == {
            "resources": "sfloader-resources-v3.1.0",
            "soundfonts": "sfloader-soundfonts-v3.1.0",
            "critical": "sfloader-critical-v3.1.0",
        }


class TestLifecycle:
    """Test install and activate."""

    async def test_install_precaches(self, proxy, upstream):
        await proxy.install()

        assert proxy.state is ProxyState.WAITING
        assert await proxy.store.get(proxy.critical_store, "/index.html") is not None
        assert await proxy.store.get(proxy.soundfont_store, PIANO) is not None

        response = await proxy.handle_fetch("/index.html")
        assert response.cache_status == "HIT"
        assert upstream.hits["/index.html"] == 1

    async def test_install_tolerates_offline_upstream(self, offline_proxy):
        await offline_proxy.install()
        assert offline_proxy.state is ProxyState.WAITING

    async def test_activate_migrates_old_soundfonts(self, proxy):
        """Soundfonts of an older version move over; other old stores are dropped."""
        await proxy.store.put("sfloader-soundfonts-v1.0.0", ORGAN, b"organ")
        await proxy.store.put("sfloader-resources-v1.0.0", "/api/songs", b"[]")

        result = await proxy.activate()

        assert result == {"previousVersion": "1.0.0", "migrated": 1}
        assert proxy.state is ProxyState.ACTIVE
        assert await proxy.store.get(proxy.soundfont_store, ORGAN) is not None
        assert await proxy.store.store_names() == [proxy.soundfont_store]

    async def test_skip_waiting_activates(self, proxy):
        await proxy.install()
        assert await proxy.skip_waiting() is ProxyState.ACTIVE


class TestCriticalAssets:
    """Test cache-first critical assets."""

    async def test_missing_critical_asset_is_refetched(self, proxy, upstream):
        first = await proxy.handle_fetch("/index.html")
        second = await proxy.handle_fetch("/index.html")

        assert first.cache_status == "MISS"
        assert second.cache_status == "HIT"
        assert upstream.hits["/index.html"] == 1

    async def test_critical_limit_respected(self, tmp_path, upstream):
        budget = Budget(total_limit=1000, soundfont_limit=900, critical_limit=5)
        proxy = make_proxy(tmp_path, str(upstream.make_url("/")), budget=budget)
        try:
            response = await proxy.handle_fetch("/index.html")
        finally:
            await proxy.close()

        assert response.status == 200
        assert await proxy.store.get(proxy.critical_store, "/index.html") is None


class TestSoundfonts:
    """Test soundfont caching, deduplication and fallback."""

    async def test_miss_then_hit(self, proxy, upstream):
        first = await proxy.handle_fetch(ORGAN)
        second = await proxy.handle_fetch(ORGAN)

        assert first.cache_status == "MISS"
        assert second.cache_status == "HIT"
        assert second.body == first.body
        assert upstream.hits[ORGAN] == 1
        stored = await proxy.store.get(proxy.soundfont_store, ORGAN)
        assert stored.entry.access_count == 2

    async def test_concurrent_requests_share_one_download(self, proxy, upstream):
        path = "/soundfonts/slow_strings.json"
        responses = await asyncio.gather(*(proxy.handle_fetch(path) for _ in range(5)))

        assert upstream.hits[path] == 1
        assert all(r.status == 200 for r in responses)
        assert proxy._downloads == {}

    async def test_download_finished_after_miss_is_not_refetched(
        self, proxy, upstream, monkeypatch
    ):
        await proxy.handle_fetch(ORGAN)
        original_get = proxy.store.get
        lookups = []

        async def stale_first_lookup(store_name, key):
            lookups.append(key)
            if len(lookups) == 1:
                return None
            return await original_get(store_name, key)

        monkeypatch.setattr(proxy.store, "get", stale_first_lookup)
        response = await proxy.handle_fetch(ORGAN)

        assert response.cache_status == "HIT"
        assert upstream.hits[ORGAN] == 1
        assert proxy._downloads == {}

    async def test_fallback_to_default_piano(self, offline_proxy):
        await offline_proxy.store.put(
            offline_proxy.soundfont_store, PIANO, preset_bytes("piano"), "application/json"
        )

        response = await offline_proxy.handle_fetch(ORGAN)

        assert response.cache_status == "FALLBACK"
        assert response.body == preset_bytes("piano")

    async def test_no_fallback_available(self, offline_proxy):
        with pytest.raises(UpstreamUnavailable):
            await offline_proxy.handle_fetch(ORGAN)

    async def test_oversized_entry_is_served_uncached(self, tmp_path, upstream):
        budget = Budget(
            total_limit=100, soundfont_limit=100, critical_limit=30, min_free_space=0
        )
        proxy = make_proxy(tmp_path, str(upstream.make_url("/")), budget=budget)
        try:
            response = await proxy.handle_fetch(ORGAN)
        finally:
            await proxy.close()

        assert response.status == 200
        assert response.cache_status == "BYPASS"
        assert await proxy.store.get(proxy.soundfont_store, ORGAN) is None


def soundfont(i: int) -> str:
    return f"/soundfonts/sf_{i:02d}.json"


# Every soundfont(i) served by the upstream has the same size.
SF_SIZE = len(preset_bytes("sf_00.json"))


def tight_budget(**overrides) -> Budget:
    """Room for ten equal soundfonts; cleanup triggers above 8.5 and stops at 7."""
    values = dict(
        total_limit=10 * SF_SIZE,
        soundfont_limit=10 * SF_SIZE,
        critical_limit=SF_SIZE,
        min_free_space=0,
    )
    values.update(overrides)
    return Budget(**values)


async def fill(proxy: CacheProxy, count: int) -> None:
    """Stores `count` soundfonts directly, bypassing the write path."""
    for i in range(count):
        await proxy.store.put(
            proxy.soundfont_store, f"/soundfonts/old_{i}.json", b"x" * SF_SIZE
        )


class TestBudgetEnforcement:
    """Test eviction triggered by soundfont writes."""

    async def test_byte_trigger_converges(self, tmp_path, upstream):
        proxy = make_proxy(
            tmp_path,
            str(upstream.make_url("/")),
            budget=tight_budget(),
            essential=(soundfont(0),),
        )
        try:
            await proxy.protect("sf_01")
            for i in range(12):
                response = await proxy.handle_fetch(soundfont(i))
                assert response.cache_status == "MISS"
                usage = await proxy.refresh_usage()
                assert usage["totalSize"] <= proxy.budget.total_limit * 0.85
                assert await proxy.store.get(proxy.soundfont_store, soundfont(i))

            assert await proxy.store.get(proxy.soundfont_store, soundfont(0))
            assert await proxy.store.get(proxy.soundfont_store, soundfont(1))
            assert usage["soundfontCount"] < 12
        finally:
            await proxy.close()

    async def test_count_trigger_only_restores_count(self, tmp_path, upstream):
        proxy = make_proxy(
            tmp_path,
            str(upstream.make_url("/")),
            budget=Budget(max_soundfonts=10),
            essential=(),
        )
        try:
            for i in range(10):
                await proxy.handle_fetch(soundfont(i))
            usage = await proxy.refresh_usage()

            assert usage["soundfontCount"] == 9
            assert await proxy.store.get(proxy.soundfont_store, soundfont(9))
        finally:
            await proxy.close()

    async def test_large_entry_cleans_up_before_write(self, tmp_path, upstream):
        proxy = make_proxy(
            tmp_path,
            str(upstream.make_url("/")),
            budget=tight_budget(large_entry_bytes=0),
            essential=(),
        )
        try:
            await fill(proxy, 9)

            await proxy.handle_fetch(soundfont(0))
            usage = await proxy.refresh_usage()

            # Two old entries made room first, so the write did not trigger again.
            assert usage["soundfontCount"] == 8
            assert usage["totalSize"] == 8 * SF_SIZE
            assert await proxy.store.get(proxy.soundfont_store, soundfont(0))
        finally:
            await proxy.close()

    async def test_install_frees_space_when_nearly_full(self, tmp_path, upstream):
        proxy = make_proxy(
            tmp_path,
            str(upstream.make_url("/")),
            budget=tight_budget(min_free_space=3 * SF_SIZE),
            essential=(),
        )
        try:
            await fill(proxy, 10)

            await proxy.install()
            usage = await proxy.refresh_usage()

            assert usage["soundfontCount"] == 7
        finally:
            await proxy.close()

    async def test_cleanup_message_with_zero_uses_target(self, tmp_path, upstream):
        proxy = make_proxy(
            tmp_path, str(upstream.make_url("/")), budget=tight_budget(), essential=()
        )
        try:
            await fill(proxy, 9)

            status, body = await proxy.handle_message(
                {"type": "CLEANUP_CACHE", "data": {"requiredSpace": 0}}
            )

            assert status == 200
            assert body["removed"] == 2
            assert body["remainingUsage"] == 7 * SF_SIZE
        finally:
            await proxy.close()


class TestGenericResources:
    """Test network-first handling of everything else."""

    async def test_network_first_then_offline_copy(self, proxy):
        online = await proxy.handle_fetch("/api/songs")
        assert online.cache_status == "MISS"

        proxy.upstream_url = UNREACHABLE
        offline = await proxy.handle_fetch("/api/songs")

        assert offline.cache_status == "OFFLINE"
        assert offline.body == online.body

    async def test_offline_without_copy(self, offline_proxy):
        with pytest.raises(UpstreamUnavailable):
            await offline_proxy.handle_fetch("/api/songs")

    async def test_errors_are_not_cached(self, proxy):
        response = await proxy.handle_fetch("/api/missing")
        assert response.status == 404
        assert await proxy.store.find("/api/missing") is None


class TestPins:
    """Test favorite protection."""

    async def test_protect_existing_entry(self, proxy):
        await proxy.handle_fetch(ORGAN)

        assert await proxy.protect("0160_organ") == 1
        stored = await proxy.store.get(proxy.soundfont_store, ORGAN)
        assert stored.entry.protected is True

    async def test_pin_applies_to_later_writes(self, proxy):
        """A pin added before the soundfont is cached still protects it."""
        assert await proxy.protect("0160_organ") == 0

        await proxy.handle_fetch(ORGAN)

        stored = await proxy.store.get(proxy.soundfont_store, ORGAN)
        assert stored.entry.protected is True

    async def test_unprotect_keeps_other_pins(self, proxy):
        await proxy.handle_fetch(ORGAN)
        await proxy.protect("organ")
        await proxy.protect("0160")

        await proxy.unprotect("organ")

        stored = await proxy.store.get(proxy.soundfont_store, ORGAN)
        assert stored.entry.protected is True
        assert list(proxy.pins) == ["0160"]


class TestMessages:
    """Test the control message protocol."""

    async def test_get_version(self, proxy):
        status, body = await proxy.handle_message({"type": "GET_VERSION"})
        assert status == 200
        assert body["version"] == "2.0.0"
        assert body["cacheNames"]["soundfonts"] == "sfloader-soundfonts-v2.0.0"
        assert body["state"] == "installing"

    async def test_get_cache_stats(self, proxy):
        await proxy.handle_fetch(ORGAN)
        await proxy.protect("organ")

        status, body = await proxy.handle_message({"type": "GET_CACHE_STATS"})

        assert status == 200
        assert body["stats"]["soundfontCount"] == 1
        assert body["quota"]["totalLimit"] == Budget().total_limit
        assert body["pins"] == ["organ"]

    async def test_cleanup_cache(self, proxy):
        await proxy.handle_fetch(ORGAN)

        status, body = await proxy.handle_message(
            {"type": "CLEANUP_CACHE", "data": {"requiredSpace": 1}}
        )

        assert status == 200
        assert body["success"] is True
        assert body["removed"] == 1
        assert body["freedSpace"] > 0

    @pytest.mark.parametrize("required", [-1, "lots", True, 1.5])
    async def test_cleanup_rejects_bad_required_space(self, proxy, required):
        status, body = await proxy.handle_message(
            {"type": "CLEANUP_CACHE", "data": {"requiredSpace": required}}
        )
        assert status == 400
        assert body["success"] is False

    async def test_protect_and_unprotect(self, proxy):
        await proxy.handle_fetch(ORGAN)

        status, body = await proxy.handle_message(
            {"type": "PROTECT_FAVORITE", "data": {"instrumentName": "organ"}}
        )
        assert (status, body) == (200, {"success": True, "protected": 1})

        status, body = await proxy.handle_message(
            {"type": "UNPROTECT_FAVORITE", "data": {"identifier": "organ"}}
        )
        assert (status, body) == (200, {"success": True, "unprotected": 1})

    async def test_protect_requires_identifier(self, proxy):
        status, _ = await proxy.handle_message({"type": "PROTECT_FAVORITE", "data": {}})
        assert status == 400

    async def test_skip_waiting(self, proxy):
        status, body = await proxy.handle_message({"type": "SKIP_WAITING"})
        assert (status, body) == (200, {"success": True, "state": "active"})

    @pytest.mark.parametrize(
        "message",
        [
            {"type": "SELF_DESTRUCT"},
            {"data": {}},
            ["GET_VERSION"],
            {"type": "GET_VERSION", "data": ["not", "an", "object"]},
        ],
    )
    async def test_malformed_or_unknown(self, proxy, message):
        status, body = await proxy.handle_message(message)
        assert status == 400
        assert body["success"] is False
