import pytest
from fastapi import HTTPException

from zephsole.personas import AGENT_PERSONAS, DEFAULT_AGENT_ID, get_persona
from zephsole.redis_client import redis_client
from zephsole.site_assets import delete_asset, invalidate_assets, list_assets, list_assets_cached, save_asset
from zephsole.units import format_measurement, from_canonical, to_canonical


class StubRedis:
    def __init__(self):
        self.store = {}
        self.deleted = []

    async def cache_get(self, *key_parts):
        return self.store.get(key_parts)

    async def cache_set(self, *key_parts, value, ttl=None):
        self.store[key_parts] = value

    async def cache_delete(self, *key_parts):
        self.deleted.append(key_parts)
        self.store.pop(key_parts, None)


@pytest.mark.parametrize(
    "unit, expected",
    [
        ("mm", "262 mm"),
        ("cm", "26.2 cm"),
        ("inch", '10.31"'),
        ("us", "US 10.5"),
        ("eu", "EU 41"),
    ],
)
def test_format_measurement(unit, expected):
    assert format_measurement(262, unit) == expected


def test_format_measurement_whole_us_size():
    assert format_measurement(180, "us") == "US 1"


def test_canonical_conversions():
    assert to_canonical(10, "inch") == pytest.approx(254)
    assert to_canonical(26.5, "cm") == pytest.approx(265)
    assert to_canonical(270, "eu") == 270
    assert from_canonical(to_canonical(10.5, "inch"), "inch") == pytest.approx(10.5)
    assert from_canonical(265, "cm") == pytest.approx(26.5)


@pytest.mark.parametrize("mm", [0, 0.5, 1, 25.4, 180, 262.37, 299.999, 1234.5678])
def test_millimetres_survive_inch_round_trip(mm):
    assert abs(to_canonical(from_canonical(mm, "inch"), "inch") - mm) < 1e-5


def test_personas():
    assert set(AGENT_PERSONAS) == {"zeph", "analyst", "maker", "artist"}
    assert get_persona("maker")["name"] == "The Maker"
    assert get_persona("unknown") is AGENT_PERSONAS[DEFAULT_AGENT_ID]
    assert get_persona() is AGENT_PERSONAS[DEFAULT_AGENT_ID]


def test_site_assets_crud(con):
    asset_id = save_asset(con, "landing", "site/hero.png", "https://cdn/hero.png", "hero.png", "image/png", 2048)

    assert [a["id"] for a in list_assets(con, "landing")] == [asset_id]
    assert list_assets(con, "showcase") == []
    assert delete_asset(con, asset_id) == "landing"
    assert delete_asset(con, asset_id) is None

    with pytest.raises(HTTPException):
        save_asset(con, "banner", "k", "u", "f", "image/png")


@pytest.mark.asyncio
async def test_site_assets_listing_is_cached(con, monkeypatch):
    stub = StubRedis()
    monkeypatch.setattr("zephsole.site_assets.redis_client", stub)
    save_asset(con, "studio", "site/a.png", "https://cdn/a.png", "a.png", "image/png")

    first = await list_assets_cached(con, "studio")
    save_asset(con, "studio", "site/b.png", "https://cdn/b.png", "b.png", "image/png")
    assert await list_assets_cached(con, "studio") == first

    await invalidate_assets("studio")
    assert stub.deleted == [("site_assets", "studio")]
    assert len(await list_assets_cached(con, "studio")) == 2


@pytest.mark.asyncio
async def test_disconnected_redis_is_a_cache_miss():
    assert not redis_client.is_connected
    assert await redis_client.cache_get("site_assets", "landing") is None
    await redis_client.cache_set("site_assets", "landing", value=[1])
    assert redis_client.cache_key("site_assets", "landing") == "zephsole:site_assets:landing"
