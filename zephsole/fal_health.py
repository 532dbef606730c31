"""
Fal pool health: maintenance sweeps and status snapshots
"""
import sqlite3
from typing import Any, Dict, Optional

from zephsole.config import HOUR_MS
from zephsole.database import new_id, now_ms
from zephsole.fal_keys import count_enabled_fal_keys, get_active_fal_key_configs
from zephsole.key_load import cleanup_stale_load_counters, get_load_statistics
from zephsole.logger import get_logger

logger = get_logger(__name__)

MAX_SNAPSHOTS = 500


class HealthStatus:
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


def evaluate_status(enabled_keys: int, overloaded_keys: int, stale_entries: int) -> str:
    if enabled_keys <= 0:
        return HealthStatus.CRITICAL
    if overloaded_keys > 0 or stale_entries > 2:
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


def run_fal_maintenance(con: sqlite3.Connection, stale_after_ms: Optional[int] = None,
                        note: Optional[str] = None) -> Dict[str, Any]:
    cleanup = cleanup_stale_load_counters(con, stale_after_ms)
    loads = get_load_statistics(con, stale_after_ms)
    keys = get_active_fal_key_configs(con)
    status = evaluate_status(len(keys), loads["overloaded_entries"], loads["stale_entries"])
    now = now_ms()

    con.execute("""
        INSERT INTO fal_health_checks (id, status, enabled_keys, overloaded_keys, stale_load_entries, notes, created_at_ms)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    """, (new_id(), status, len(keys), loads["overloaded_entries"], loads["stale_entries"], note, now))

    # Keep only the newest snapshots
    con.execute("""
        DELETE FROM fal_health_checks WHERE id IN (
            SELECT id FROM fal_health_checks ORDER BY created_at_ms DESC, rowid DESC LIMIT -1 OFFSET ?
        )
    """, (MAX_SNAPSHOTS,))
    con.commit()

    if status != HealthStatus.HEALTHY:
        logger.warning(f"Fal pool {status}: {len(keys)} keys, {loads['overloaded_entries']} overloaded, "
                       f"{loads['stale_entries']} stale")

    return {
        "status": status,
        "cleanup": cleanup,
        "loads": loads,
        "enabled_keys": len(keys),
        "created_at_ms": now,
    }


def get_fal_health_overview(con: sqlite3.Connection) -> Dict[str, Any]:
    enabled_keys = count_enabled_fal_keys(con)
    stale_cutoff = now_ms() - HOUR_MS
    rows = con.execute("SELECT active_operations, capacity, last_updated_ms FROM fal_key_load").fetchall()

    overloaded_keys = sum(1 for row in rows if row["active_operations"] >= row["capacity"])
    stale_load_entries = sum(1 for row in rows if row["last_updated_ms"] < stale_cutoff)

    latest = con.execute(
        "SELECT created_at_ms FROM fal_health_checks ORDER BY created_at_ms DESC LIMIT 1"
    ).fetchone()

    return {
        "status": evaluate_status(enabled_keys, overloaded_keys, stale_load_entries),
        "enabled_keys": enabled_keys,
        "overloaded_keys": overloaded_keys,
        "stale_load_entries": stale_load_entries,
        "latest_snapshot_at_ms": latest["created_at_ms"] if latest else None,
    }
