"""
Marketing site assets (landing, studio, showcase), listed through the Redis cache
"""
import sqlite3
from typing import Dict, List, Optional

from fastapi import HTTPException

from zephsole.database import new_id, now_ms
from zephsole.redis_client import redis_client

ASSET_TYPES = ("landing", "studio", "showcase")


def _check_type(asset_type: str):
    if asset_type not in ASSET_TYPES:
        raise HTTPException(400, f"Invalid asset type: {asset_type}")


def save_asset(con: sqlite3.Connection, asset_type: str, object_key: str, url: str, file_name: str,
               content_type: str, size: Optional[int] = None) -> str:
    _check_type(asset_type)
    asset_id = new_id()
    con.execute("""
        INSERT INTO site_assets (id, type, key, url, file_name, content_type, size, created_at_ms)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    """, (asset_id, asset_type, object_key, url, file_name, content_type, size, now_ms()))
    con.commit()
    return asset_id


def delete_asset(con: sqlite3.Connection, asset_id: str) -> Optional[str]:
    """Delete an asset; returns its type so the caller can invalidate the listing."""
    row = con.execute("SELECT type FROM site_assets WHERE id = ?", (asset_id,)).fetchone()
    if not row:
        return None
    con.execute("DELETE FROM site_assets WHERE id = ?", (asset_id,))
    con.commit()
    return row["type"]


def list_assets(con: sqlite3.Connection, asset_type: str) -> List[Dict]:
    _check_type(asset_type)
    rows = con.execute(
        "SELECT * FROM site_assets WHERE type = ? ORDER BY COALESCE(created_at_ms, 0) DESC, rowid DESC",
        (asset_type,),
    ).fetchall()
    return [dict(r) for r in rows]


async def list_assets_cached(con: sqlite3.Connection, asset_type: str) -> List[Dict]:
    cached = await redis_client.cache_get("site_assets", asset_type)
    if cached is not None:
        return cached
    assets = list_assets(con, asset_type)
    await redis_client.cache_set("site_assets", asset_type, value=assets)
    return assets


async def invalidate_assets(asset_type: str):
    await redis_client.cache_delete("site_assets", asset_type)
