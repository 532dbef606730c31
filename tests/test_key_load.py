from loguru import logger

from zephsole.config import FAL_MIN_STALE_AFTER_MS, FAL_STALE_AFTER_MS, HOUR_MS
from zephsole.key_load import (
    cleanup_stale_load_counters,
    decrement_key_load,
    get_all_key_loads,
    get_load_statistics,
    increment_key_load,
    resolve_stale_after_ms,
)


def test_increment_admits_until_capacity(con):
    assert increment_key_load(con, "alpha", 2) == {"ok": True, "active_operations": 1}
    assert increment_key_load(con, "alpha", 2) == {"ok": True, "active_operations": 2}

    rejected = increment_key_load(con, "alpha", 2)
    assert rejected == {"ok": False, "active_operations": 2}
    assert get_all_key_loads(con)["alpha"]["active_operations"] == 2


def test_rejected_increment_leaves_row_untouched(con):
    increment_key_load(con, "alpha", 1)
    before = get_all_key_loads(con)["alpha"]

    increment_key_load(con, "alpha", 1)

    assert get_all_key_loads(con)["alpha"] == before


def test_capacity_below_one_is_treated_as_one(con):
    assert increment_key_load(con, "alpha", 0)["ok"] is True
    assert increment_key_load(con, "alpha", 0)["ok"] is False
    assert get_all_key_loads(con)["alpha"]["capacity"] == 1


def test_capacity_is_refreshed_on_admission(con):
    increment_key_load(con, "alpha", 1)
    decrement_key_load(con, "alpha")

    increment_key_load(con, "alpha", 5)

    assert get_all_key_loads(con)["alpha"]["capacity"] == 5


def test_decrement_floors_at_zero(con):
    increment_key_load(con, "alpha", 3)
    decrement_key_load(con, "alpha")
    decrement_key_load(con, "alpha")

    assert get_all_key_loads(con)["alpha"]["active_operations"] == 0


def test_decrement_unknown_key_is_a_noop(con):
    decrement_key_load(con, "ghost")
    assert get_all_key_loads(con) == {}


def test_resolve_stale_after_ms_defaults_and_floor():
    assert resolve_stale_after_ms(None) == max(FAL_STALE_AFTER_MS, FAL_MIN_STALE_AFTER_MS)
    assert resolve_stale_after_ms(10) == FAL_MIN_STALE_AFTER_MS
    assert resolve_stale_after_ms(2 * HOUR_MS) == 2 * HOUR_MS


def test_cleanup_resets_only_stale_busy_counters(con, backdate):
    increment_key_load(con, "stale", 4)
    increment_key_load(con, "stale", 4)
    increment_key_load(con, "fresh", 4)
    increment_key_load(con, "idle", 4)
    decrement_key_load(con, "idle")
    backdate("stale", 2 * HOUR_MS)
    backdate("idle", 2 * HOUR_MS)

    result = cleanup_stale_load_counters(con, HOUR_MS)

    assert result == {"reset_count": 1, "scanned": 3, "stale_after_ms": HOUR_MS}
    loads = get_all_key_loads(con)
    assert loads["stale"]["active_operations"] == 0
    assert loads["fresh"]["active_operations"] == 1


def test_cleanup_applies_minimum_threshold(con, backdate):
    increment_key_load(con, "alpha", 2)
    backdate("alpha", 30_000)

    result = cleanup_stale_load_counters(con, 1)

    assert result["stale_after_ms"] == FAL_MIN_STALE_AFTER_MS
    assert result["reset_count"] == 0
    assert get_all_key_loads(con)["alpha"]["active_operations"] == 1


def test_load_statistics(con, backdate):
    increment_key_load(con, "full", 1)
    increment_key_load(con, "busy", 3)
    increment_key_load(con, "busy", 3)
    backdate("busy", 2 * HOUR_MS)

    stats = get_load_statistics(con, HOUR_MS)

    assert stats == {
        "total_entries": 2,
        "total_active_operations": 3,
        "stale_entries": 1,
        "overloaded_entries": 1,
        "stale_after_ms": HOUR_MS,
    }


def test_saturation_is_logged_against_the_key(con):
    records = []
    sink_id = logger.add(lambda message: records.append(message.record),
                         filter=lambda record: "key_name" in record["extra"])
    try:
        increment_key_load(con, "alpha", 1)
        increment_key_load(con, "alpha", 1)
    finally:
        logger.remove(sink_id)

    assert [(r["extra"]["key_name"], r["message"]) for r in records] == [("alpha", "Key saturated (1/1)")]
