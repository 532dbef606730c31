import httpx
import pytest

from zephsole import fal_manager
from zephsole.database import db_conn
from zephsole.fal_keys import add_fal_key
from zephsole.fal_manager import (
    KeyRuntimeState,
    NoActiveFalKeys,
    is_retryable_fal_error,
    weighted_sort,
    with_fal_failover,
)
from zephsole.key_load import get_all_key_loads, increment_key_load


def _keys(*names, capacity=4):
    return [{"name": n, "key": f"secret-{n}", "capacity": capacity, "weight": 1} for n in names]


def _current_loads():
    con = db_conn()
    try:
        return get_all_key_loads(con)
    finally:
        con.close()


def test_retryable_errors():
    assert is_retryable_fal_error(RuntimeError("HTTP 429 Too Many Requests"))
    assert is_retryable_fal_error(RuntimeError("Rate limited"))
    assert is_retryable_fal_error(httpx.ReadTimeout("slow"))
    assert not is_retryable_fal_error(ValueError("prompt rejected"))


def test_weighted_sort_prefers_lowest_utilisation():
    loads = {"a": {"active_operations": 3, "capacity": 4}, "b": {"active_operations": 1, "capacity": 4}}
    assert [k["name"] for k in weighted_sort(_keys("a", "b"), loads)] == ["b", "a"]


def test_weighted_sort_breaks_ties_by_weight():
    keys = _keys("a", "b")
    keys[1]["weight"] = 5
    assert [k["name"] for k in weighted_sort(keys, {})] == ["b", "a"]


def test_weighted_sort_puts_cooling_keys_last():
    fal_manager.key_runtime_state["a"] = KeyRuntimeState(failures=3, cooldown_until=2_000)
    assert [k["name"] for k in weighted_sort(_keys("a", "b"), {}, now=1_000)] == ["b", "a"]


@pytest.mark.asyncio
async def test_no_keys_raises():
    with pytest.raises(NoActiveFalKeys):
        await with_fal_failover(lambda secret, meta: None)


@pytest.mark.asyncio
async def test_holds_a_slot_during_the_operation_and_releases_it(con):
    add_fal_key(con, "primary", "secret-primary", capacity=2)
    observed = {}

    async def operation(secret, meta):
        observed["secret"] = secret
        observed["active"] = _current_loads()["primary"]["active_operations"]
        return "done"

    assert await with_fal_failover(operation) == "done"
    assert observed == {"secret": "secret-primary", "active": 1}
    assert _current_loads()["primary"]["active_operations"] == 0
    assert fal_manager.key_runtime_state["primary"].failures == 0


@pytest.mark.asyncio
async def test_retryable_failure_moves_to_next_key(con):
    add_fal_key(con, "first", "secret-first", weight=5)
    add_fal_key(con, "second", "secret-second")
    calls = []

    async def operation(secret, meta):
        calls.append(meta["name"])
        if meta["name"] == "first":
            raise RuntimeError("429 rate limit")
        return meta["name"]

    assert await with_fal_failover(operation) == "second"
    assert calls == ["first", "second"]
    assert fal_manager.key_runtime_state["first"].failures == 1
    loads = _current_loads()
    assert loads["first"]["active_operations"] == 0
    assert loads["second"]["active_operations"] == 0


@pytest.mark.asyncio
async def test_non_retryable_failure_propagates_immediately(con):
    add_fal_key(con, "first", "secret-first", weight=5)
    add_fal_key(con, "second", "secret-second")
    calls = []

    async def operation(secret, meta):
        calls.append(meta["name"])
        raise ValueError("invalid prompt")

    with pytest.raises(ValueError):
        await with_fal_failover(operation)
    assert calls == ["first"]
    assert _current_loads()["first"]["active_operations"] == 0


@pytest.mark.asyncio
async def test_saturated_key_is_skipped(con):
    add_fal_key(con, "busy", "secret-busy", capacity=1, weight=5)
    add_fal_key(con, "spare", "secret-spare", capacity=1)
    increment_key_load(con, "busy", 1)

    async def operation(secret, meta):
        return meta["name"]

    assert await with_fal_failover(operation) == "spare"


@pytest.mark.asyncio
async def test_reraises_last_error_when_every_attempt_fails(con):
    add_fal_key(con, "only", "secret-only")

    async def operation(secret, meta):
        raise RuntimeError("network unreachable")

    with pytest.raises(RuntimeError, match="network unreachable"):
        await with_fal_failover(operation, max_attempts=1, retry_delay_ms=50)
    assert _current_loads()["only"]["active_operations"] == 0


@pytest.mark.asyncio
async def test_failure_streak_starts_cooldown(con):
    add_fal_key(con, "only", "secret-only")

    async def operation(secret, meta):
        raise RuntimeError("timeout")

    for _ in range(3):
        with pytest.raises(RuntimeError):
            await with_fal_failover(operation, max_attempts=1, retry_delay_ms=50)

    state = fal_manager.key_runtime_state["only"]
    assert state.failures == 3
    assert state.cooldown_until > 0


@pytest.mark.asyncio
async def test_explicit_zero_limits_use_the_floors(con, monkeypatch):
    add_fal_key(con, "only", "secret-only")
    calls = []
    delays = []

    async def operation(secret, meta):
        calls.append(meta["name"])
        raise RuntimeError("rate limited")

    async def fake_sleep(seconds):
        delays.append(seconds)

    monkeypatch.setattr(fal_manager.asyncio, "sleep", fake_sleep)

    with pytest.raises(RuntimeError, match="rate limited"):
        await with_fal_failover(operation, max_attempts=0, retry_delay_ms=0)

    assert calls == ["only"]
    assert delays == [0.05]
