"""
Per-key load counters for the fal key pool.

Each provider key has one row in ``fal_key_load`` holding the number of
in-flight operations and the capacity it was last admitted against. A caller
acquires a slot with :func:`increment_key_load` before talking to the
provider and releases it with :func:`decrement_key_load` afterwards.
Counters that have not moved for longer than the staleness threshold are
assumed to be leaked (a worker died between acquire and release) and are
zeroed by :func:`cleanup_stale_load_counters`.
"""
import sqlite3
from typing import Any, Dict, Optional

from zephsole.config import FAL_STALE_AFTER_MS, FAL_MIN_STALE_AFTER_MS
from zephsole.database import now_ms
from zephsole.logger import get_key_logger


def resolve_stale_after_ms(stale_after_ms: Optional[int]) -> int:
    """Apply the default threshold and the one-minute floor."""
    if stale_after_ms is None:
        stale_after_ms = FAL_STALE_AFTER_MS
    return max(int(stale_after_ms), FAL_MIN_STALE_AFTER_MS)


def get_all_key_loads(con: sqlite3.Connection) -> Dict[str, Dict[str, int]]:
    rows = con.execute(
        "SELECT key_name, active_operations, capacity, last_updated_ms FROM fal_key_load ORDER BY key_name"
    ).fetchall()
    return {
        row["key_name"]: {
            "active_operations": row["active_operations"],
            "capacity": row["capacity"],
            "last_updated": row["last_updated_ms"],
        }
        for row in rows
    }


def increment_key_load(con: sqlite3.Connection, key_name: str, capacity: int) -> Dict[str, Any]:
    """Try to take one slot on ``key_name``.

    Returns ``{"ok": True, "active_operations": n}`` when admitted and
    ``{"ok": False, "active_operations": n}`` when the key is saturated. A
    rejected call leaves the row untouched.
    """
    capacity = max(int(capacity), 1)
    now = now_ms()

    # Admission and increment happen in one statement so two callers can
    # never both see the last free slot.
    cur = con.execute("""
        UPDATE fal_key_load
        SET active_operations = active_operations + 1, capacity = ?, last_updated_ms = ?
        WHERE key_name = ? AND active_operations < ?
    """, (capacity, now, key_name, capacity))
    if cur.rowcount:
        row = con.execute(
            "SELECT active_operations FROM fal_key_load WHERE key_name = ?", (key_name,)
        ).fetchone()
        con.commit()
        return {"ok": True, "active_operations": row["active_operations"]}

    cur = con.execute("""
        INSERT INTO fal_key_load (key_name, active_operations, capacity, last_updated_ms)
        VALUES (?, 1, ?, ?)
        ON CONFLICT(key_name) DO NOTHING
    """, (key_name, capacity, now))
    con.commit()
    if cur.rowcount:
        return {"ok": True, "active_operations": 1}

    row = con.execute(
        "SELECT active_operations FROM fal_key_load WHERE key_name = ?", (key_name,)
    ).fetchone()
    active = row["active_operations"] if row else 0
    get_key_logger(key_name).debug(f"Key saturated ({active}/{capacity})")
    return {"ok": False, "active_operations": active}


def decrement_key_load(con: sqlite3.Connection, key_name: str) -> None:
    con.execute("""
        UPDATE fal_key_load
        SET active_operations = MAX(active_operations - 1, 0), last_updated_ms = ?
        WHERE key_name = ?
    """, (now_ms(), key_name))
    con.commit()


def cleanup_stale_load_counters(con: sqlite3.Connection, stale_after_ms: Optional[int] = None) -> Dict[str, int]:
    stale_after_ms = resolve_stale_after_ms(stale_after_ms)
    now = now_ms()
    cutoff = now - stale_after_ms

    scanned = con.execute("SELECT COUNT(*) AS cnt FROM fal_key_load").fetchone()["cnt"]
    stale = con.execute(
        "SELECT key_name, active_operations FROM fal_key_load WHERE last_updated_ms < ? AND active_operations > 0",
        (cutoff,)
    ).fetchall()
    for row in stale:
        con.execute(
            "UPDATE fal_key_load SET active_operations = 0, last_updated_ms = ? WHERE key_name = ?",
            (now, row["key_name"])
        )
        get_key_logger(row["key_name"]).warning(
            f"Reset stale load counter (was {row['active_operations']})"
        )
    con.commit()

    return {"reset_count": len(stale), "scanned": scanned, "stale_after_ms": stale_after_ms}


def get_load_statistics(con: sqlite3.Connection, stale_after_ms: Optional[int] = None) -> Dict[str, int]:
    stale_after_ms = resolve_stale_after_ms(stale_after_ms)
    cutoff = now_ms() - stale_after_ms
    rows = con.execute("SELECT active_operations, capacity, last_updated_ms FROM fal_key_load").fetchall()

    total_active = 0
    stale_entries = 0
    overloaded_entries = 0
    for row in rows:
        total_active += row["active_operations"]
        if row["last_updated_ms"] < cutoff:
            stale_entries += 1
        if row["active_operations"] >= row["capacity"]:
            overloaded_entries += 1

    return {
        "total_entries": len(rows),
        "total_active_operations": total_active,
        "stale_entries": stale_entries,
        "overloaded_entries": overloaded_entries,
        "stale_after_ms": stale_after_ms,
    }
