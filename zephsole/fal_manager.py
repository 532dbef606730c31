"""
Fal key failover: pick the least loaded healthy key, hold a load slot while
the operation runs, and move on to another key on retryable failures.
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import httpx

from zephsole.database import db_conn
from zephsole.fal_keys import get_active_fal_key_configs, seed_fal_keys_from_env_if_empty
from zephsole.key_load import decrement_key_load, get_all_key_loads, increment_key_load
from zephsole.logger import get_key_logger, get_logger

logger = get_logger(__name__)

T = TypeVar("T")

RETRY_COOLDOWN_MS = 60_000
MAX_FAILURE_STREAK = 3
MAX_BACKOFF_MS = 2_000

_RETRYABLE_MARKERS = ("429", "403", "rate", "timeout", "network")


class NoActiveFalKeys(RuntimeError):
    pass


class KeyRuntimeState:
    """Failure streak, cooldown and last latency for one key in this process"""

    __slots__ = ("failures", "cooldown_until", "last_latency_ms")

    def __init__(self, failures: int = 0, cooldown_until: int = 0, last_latency_ms: int = 0):
        self.failures = failures
        self.cooldown_until = cooldown_until
        self.last_latency_ms = last_latency_ms

    def in_cooldown(self, now: int) -> bool:
        return self.cooldown_until > now


key_runtime_state: Dict[str, KeyRuntimeState] = {}


def _now_ms() -> int:
    return int(time.time() * 1000)


def is_retryable_fal_error(error: BaseException) -> bool:
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _RETRYABLE_MARKERS)


def weighted_sort(keys: List[Dict[str, Any]], loads: Dict[str, Dict[str, int]],
                  now: Optional[int] = None) -> List[Dict[str, Any]]:
    now = _now_ms() if now is None else now

    def sort_key(key: Dict[str, Any]):
        state = key_runtime_state.get(key["name"]) or KeyRuntimeState()
        load = loads.get(key["name"], {})
        active = load.get("active_operations", 0)
        capacity = load.get("capacity", key["capacity"])
        utilisation = active / max(capacity, 1)
        failure_penalty = state.failures * 0.1
        latency_penalty = min(state.last_latency_ms / 30_000, 0.2)
        return (
            1 if state.in_cooldown(now) else 0,
            utilisation + failure_penalty + latency_penalty,
            utilisation,
            -key["weight"],
        )

    return sorted(keys, key=sort_key)


def _record_success(key_name: str, latency_ms: int):
    key_runtime_state[key_name] = KeyRuntimeState(last_latency_ms=latency_ms)


def _record_failure(key_name: str) -> int:
    previous = key_runtime_state.get(key_name) or KeyRuntimeState()
    failures = previous.failures + 1
    cooldown_until = _now_ms() + RETRY_COOLDOWN_MS if failures >= MAX_FAILURE_STREAK else 0
    key_runtime_state[key_name] = KeyRuntimeState(failures, cooldown_until, previous.last_latency_ms)
    return failures


def _acquire(key_meta: Dict[str, Any]) -> bool:
    con = db_conn()
    try:
        lock = increment_key_load(con, key_meta["name"], max(key_meta["capacity"], 1))
    finally:
        con.close()
    return lock["ok"]


def _release(key_name: str):
    con = db_conn()
    try:
        decrement_key_load(con, key_name)
    finally:
        con.close()


async def with_fal_failover(
    operation: Callable[[str, Dict[str, Any]], Awaitable[T]],
    max_attempts: Optional[int] = None,
    retry_delay_ms: Optional[int] = None,
) -> T:
    """Run ``operation(secret, key_meta)`` against the pool until one key succeeds.

    Non-retryable errors propagate immediately. When every attempt fails the
    last error is re-raised.
    """
    con = db_conn()
    try:
        seed_fal_keys_from_env_if_empty(con)
        keys = get_active_fal_key_configs(con)
    finally:
        con.close()

    if not keys:
        logger.error("No active FAL keys configured")
        raise NoActiveFalKeys("No active FAL keys configured")

    if max_attempts is None:
        max_attempts = len(keys) * 2
    if retry_delay_ms is None:
        retry_delay_ms = 200
    max_attempts = max(max_attempts, len(keys))
    retry_delay_ms = max(retry_delay_ms, 50)
    last_error: BaseException = RuntimeError("FAL operation failed")

    logger.debug(f"Failover over {len(keys)} keys, up to {max_attempts} attempts")

    for attempt in range(max_attempts):
        con = db_conn()
        try:
            loads = get_all_key_loads(con)
        finally:
            con.close()

        for key_meta in weighted_sort(keys, loads):
            runtime = key_runtime_state.get(key_meta["name"])
            if runtime and runtime.in_cooldown(_now_ms()):
                continue
            if not _acquire(key_meta):
                continue

            key_log = get_key_logger(key_meta["name"])
            try:
                start = _now_ms()
                result = await operation(key_meta["key"], key_meta)
                _record_success(key_meta["name"], _now_ms() - start)
                return result
            except Exception as e:
                last_error = e
                retryable = is_retryable_fal_error(e)
                failures = _record_failure(key_meta["name"])
                key_log.error(
                    f"Attempt {attempt + 1}/{max_attempts} failed (retryable={retryable}, streak={failures}): {e}"
                )
                if not retryable:
                    raise
            finally:
                _release(key_meta["name"])

        await asyncio.sleep(min(retry_delay_ms * (attempt + 1), MAX_BACKOFF_MS) / 1000)

    logger.error(f"All {max_attempts} fal attempts failed: {last_error}")
    raise last_error
