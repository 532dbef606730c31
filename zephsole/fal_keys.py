"""
Fal API key pool: environment seeding, admin management and live key checks
"""
import json
import os
import re
import sqlite3
import time
from typing import Any, Dict, List, Optional

import httpx
from fastapi import HTTPException

from zephsole.config import FAL_DEFAULT_CAPACITY, FAL_MODELS_URL, FAL_TEST_TIMEOUT
from zephsole.database import new_id, now_ms
from zephsole.key_load import get_all_key_loads
from zephsole.logger import get_logger

logger = get_logger(__name__)

_NAME_INVALID = re.compile(r"[^a-z0-9_-]")


def sanitize_name(value: str) -> str:
    return _NAME_INVALID.sub("_", value.strip().lower())


def mask_key(key: str) -> str:
    if not key:
        return ""
    if len(key) <= 12:
        return key[:2] + "..."
    return key[:8] + "..." + key[-4:]


def _runtime_key(name: str, key: str, capacity: int = FAL_DEFAULT_CAPACITY, weight: int = 1) -> Dict[str, Any]:
    return {"name": name, "key": key, "capacity": capacity, "weight": weight}


def parse_env_fal_keys() -> List[Dict[str, Any]]:
    """Keys from FAL_KEY_ID (JSON array or string), FAL_KEY_ALPHA and FAL_KEY."""
    keys = []
    raw_array = os.getenv("FAL_KEY_ID")
    legacy_a = os.getenv("FAL_KEY_ALPHA")
    legacy = os.getenv("FAL_KEY")

    if raw_array:
        try:
            parsed = json.loads(raw_array)
        except ValueError:
            if raw_array.strip():
                keys.append(_runtime_key("env_1", raw_array.strip()))
        else:
            if isinstance(parsed, list):
                for i, item in enumerate(parsed):
                    if isinstance(item, str) and item.strip():
                        keys.append(_runtime_key(f"env_{i + 1}", item.strip()))
            elif isinstance(parsed, str) and parsed.strip():
                keys.append(_runtime_key("env_1", parsed.strip()))

    if legacy_a and legacy_a.strip():
        keys.append(_runtime_key("alpha", legacy_a.strip()))
    if legacy and legacy.strip():
        keys.append(_runtime_key("legacy", legacy.strip()))

    dedup: Dict[str, Dict[str, Any]] = {}
    for key in keys:
        dedup.setdefault(key["key"], key)
    return list(dedup.values())


def seed_fal_keys_from_env_if_empty(con: sqlite3.Connection) -> Dict[str, Any]:
    count = con.execute("SELECT COUNT(*) AS cnt FROM fal_keys").fetchone()["cnt"]
    if count > 0:
        return {"seeded": False, "count": count}

    env_keys = parse_env_fal_keys()
    now = now_ms()
    for key_cfg in env_keys:
        con.execute("""
            INSERT INTO fal_keys (id, name, key, enabled, capacity, weight, created_at_ms, updated_at_ms)
            VALUES (?, ?, ?, 1, ?, ?, ?, ?)
        """, (new_id(), sanitize_name(key_cfg["name"]), key_cfg["key"], key_cfg["capacity"],
              key_cfg["weight"], now, now))
    con.commit()
    if env_keys:
        logger.info(f"Seeded {len(env_keys)} fal keys from environment")
    return {"seeded": True, "count": len(env_keys)}


def get_active_fal_key_configs(con: sqlite3.Connection) -> List[Dict[str, Any]]:
    rows = con.execute("SELECT name, key, capacity, weight FROM fal_keys WHERE enabled = 1 ORDER BY name").fetchall()
    if rows:
        return [
            _runtime_key(row["name"], row["key"].strip(), max(row["capacity"], 1), max(row["weight"], 1))
            for row in rows
        ]
    return parse_env_fal_keys()


def count_enabled_fal_keys(con: sqlite3.Connection) -> int:
    return con.execute("SELECT COUNT(*) AS cnt FROM fal_keys WHERE enabled = 1").fetchone()["cnt"]


def get_fal_key(con: sqlite3.Connection, key_id: str) -> Optional[Dict]:
    row = con.execute("SELECT * FROM fal_keys WHERE id = ?", (key_id,)).fetchone()
    return dict(row) if row else None

# =============================================================================
# Admin
# =============================================================================
def list_fal_keys_for_admin(con: sqlite3.Connection) -> List[Dict[str, Any]]:
    keys = con.execute("SELECT * FROM fal_keys ORDER BY name").fetchall()
    loads = get_all_key_loads(con)
    return [
        {
            "id": k["id"],
            "name": k["name"],
            "key": mask_key(k["key"]),
            "enabled": bool(k["enabled"]),
            "capacity": k["capacity"],
            "weight": k["weight"],
            "active_operations": loads.get(k["name"], {}).get("active_operations", 0),
            "updated_at_ms": k["updated_at_ms"],
        }
        for k in keys
    ]


def add_fal_key(con: sqlite3.Connection, name: str, key: str, capacity: Optional[int] = None,
                weight: Optional[int] = None, enabled: Optional[bool] = None) -> str:
    name = sanitize_name(name)
    exists = con.execute("SELECT id FROM fal_keys WHERE name = ?", (name,)).fetchone()
    if exists:
        raise HTTPException(409, "FAL_KEY_NAME_EXISTS")

    key_id = new_id()
    now = now_ms()
    con.execute("""
        INSERT INTO fal_keys (id, name, key, enabled, capacity, weight, created_at_ms, updated_at_ms)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        key_id, name, key.strip(),
        0 if enabled is False else 1,
        max(capacity if capacity is not None else FAL_DEFAULT_CAPACITY, 1),
        max(weight if weight is not None else 1, 1),
        now, now,
    ))
    con.commit()
    return key_id


def update_fal_key(con: sqlite3.Connection, key_id: str, name: Optional[str] = None, key: Optional[str] = None,
                   capacity: Optional[int] = None, weight: Optional[int] = None,
                   enabled: Optional[bool] = None) -> str:
    if not get_fal_key(con, key_id):
        raise HTTPException(404, "FAL_KEY_NOT_FOUND")

    updates = ["updated_at_ms = ?"]
    params: List[Any] = [now_ms()]
    if name is not None:
        updates.append("name = ?")
        params.append(sanitize_name(name))
    if key is not None:
        updates.append("key = ?")
        params.append(key.strip())
    if capacity is not None:
        updates.append("capacity = ?")
        params.append(max(capacity, 1))
    if weight is not None:
        updates.append("weight = ?")
        params.append(max(weight, 1))
    if enabled is not None:
        updates.append("enabled = ?")
        params.append(1 if enabled else 0)

    params.append(key_id)
    try:
        con.execute(f"UPDATE fal_keys SET {', '.join(updates)} WHERE id = ?", params)
    except sqlite3.IntegrityError:
        raise HTTPException(409, "FAL_KEY_NAME_EXISTS")
    con.commit()
    return key_id


def remove_fal_key(con: sqlite3.Connection, key_id: str) -> None:
    con.execute("DELETE FROM fal_keys WHERE id = ?", (key_id,))
    con.commit()


def set_fal_key_enabled(con: sqlite3.Connection, key_id: str, enabled: bool) -> None:
    if not get_fal_key(con, key_id):
        raise HTTPException(404, "FAL_KEY_NOT_FOUND")
    con.execute(
        "UPDATE fal_keys SET enabled = ?, updated_at_ms = ? WHERE id = ?",
        (1 if enabled else 0, now_ms(), key_id)
    )
    con.commit()


def resolve_key_to_test(con: sqlite3.Connection, key_id: Optional[str] = None) -> Dict[str, str]:
    if key_id:
        record = get_fal_key(con, key_id)
        if not record:
            raise HTTPException(404, "FAL_KEY_NOT_FOUND")
    else:
        row = con.execute("SELECT * FROM fal_keys WHERE enabled = 1 ORDER BY name LIMIT 1").fetchone()
        if not row:
            raise HTTPException(404, "NO_ACTIVE_KEYS")
        record = dict(row)

    secret = (record["key"] or "").strip()
    if not secret:
        raise HTTPException(400, "INVALID_KEY")
    return {"name": record["name"], "key": secret}


async def probe_fal_key(key_name: str, secret: str, client: Optional[httpx.AsyncClient] = None) -> Dict[str, Any]:
    """Probe the provider with one key. Never raises for HTTP or network failures."""
    start = time.monotonic()
    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=FAL_TEST_TIMEOUT)
    try:
        response = await client.get(FAL_MODELS_URL, headers={"Authorization": f"Key {secret}"})
        response_time = int((time.monotonic() - start) * 1000)
        if response.is_success:
            return {
                "success": True,
                "key_name": key_name,
                "status": response.status_code,
                "response_time": response_time,
                "message": "Key is valid and working",
            }
        return {
            "success": False,
            "key_name": key_name,
            "status": response.status_code,
            "response_time": response_time,
            "error": f"HTTP {response.status_code}: {response.text[:200]}",
        }
    except httpx.HTTPError as e:
        return {
            "success": False,
            "key_name": key_name,
            "response_time": int((time.monotonic() - start) * 1000),
            "error": str(e) or e.__class__.__name__,
        }
    finally:
        if owns_client:
            await client.aclose()
