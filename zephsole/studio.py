"""
Studio canvas, saved versions, design context and bill of materials
"""
import sqlite3
from typing import Any, Dict, List, Optional

from zephsole.config import GenerationStatus
from zephsole.database import json_dumps, new_id, now_ms, row_to_dict

PUBLIC_MEDIA_LIMIT = 50

DESIGN_CONTEXT_FIELDS = ("footwear_type", "gender", "aesthetic_vibe", "target_audience", "summary")
DESIGN_CONTEXT_JSON_FIELDS = ("color_palette", "key_materials", "performance_specs")


# =============================================================================
# Canvas
# =============================================================================
def get_canvas_items(con: sqlite3.Connection, project_id: str) -> List[Dict]:
    rows = con.execute("SELECT * FROM canvas_items WHERE project_id = ? ORDER BY rowid", (project_id,)).fetchall()
    return [row_to_dict(r, json_fields=("data",)) for r in rows]


def add_canvas_item(con: sqlite3.Connection, project_id: str, item_type: str, data: Any,
                    x: float, y: float, scale: Optional[float] = None) -> str:
    item_id = new_id()
    con.execute("""
        INSERT INTO canvas_items (id, project_id, type, data_json, x, y, scale, version)
        VALUES (?, ?, ?, ?, ?, ?, ?, 1)
    """, (item_id, project_id, item_type, json_dumps(data), x, y, scale or 1))
    con.commit()
    return item_id


def update_canvas_item_position(con: sqlite3.Connection, item_id: str, x: float, y: float):
    con.execute("UPDATE canvas_items SET x = ?, y = ? WHERE id = ?", (x, y, item_id))
    con.commit()


def delete_canvas_item(con: sqlite3.Connection, item_id: str):
    con.execute("DELETE FROM canvas_items WHERE id = ?", (item_id,))
    con.commit()


# =============================================================================
# Versions
# =============================================================================
def save_version(con: sqlite3.Connection, project_id: str, name: str, snapshot: Any,
                 description: Optional[str] = None) -> str:
    version_id = new_id()
    con.execute("""
        INSERT INTO versions (id, project_id, name, description, snapshot_json, created_at_ms)
        VALUES (?, ?, ?, ?, ?, ?)
    """, (version_id, project_id, name, description, json_dumps(snapshot), now_ms()))
    con.commit()
    return version_id


def get_versions(con: sqlite3.Connection, project_id: str) -> List[Dict]:
    rows = con.execute(
        "SELECT * FROM versions WHERE project_id = ? ORDER BY created_at_ms DESC, rowid DESC", (project_id,)
    ).fetchall()
    return [row_to_dict(r, json_fields=("snapshot",)) for r in rows]


# =============================================================================
# Design Context & BOM
# =============================================================================
def get_design_context(con: sqlite3.Connection, project_id: str) -> Optional[Dict]:
    row = con.execute("SELECT * FROM design_context WHERE project_id = ?", (project_id,)).fetchone()
    return row_to_dict(row, json_fields=DESIGN_CONTEXT_JSON_FIELDS)


def update_design_context(con: sqlite3.Connection, project_id: str, **updates) -> str:
    """Patch the project's design context; only fields passed as non-None are written."""
    unknown = set(updates) - set(DESIGN_CONTEXT_FIELDS) - set(DESIGN_CONTEXT_JSON_FIELDS)
    if unknown:
        raise ValueError(f"Unknown design context fields: {sorted(unknown)}")

    values: Dict[str, Any] = {}
    for field, value in updates.items():
        if value is None:
            continue
        if field in DESIGN_CONTEXT_JSON_FIELDS:
            values[f"{field}_json"] = json_dumps(value)
        else:
            values[field] = value
    values["last_updated_ms"] = now_ms()

    existing = con.execute("SELECT id FROM design_context WHERE project_id = ?", (project_id,)).fetchone()
    if existing:
        assignments = ", ".join(f"{column} = ?" for column in values)
        con.execute(f"UPDATE design_context SET {assignments} WHERE id = ?", (*values.values(), existing["id"]))
        context_id = existing["id"]
    else:
        context_id = new_id()
        columns = ["id", "project_id", *values]
        con.execute(
            f"INSERT INTO design_context ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
            (context_id, project_id, *values.values()),
        )
    con.commit()
    return context_id


def get_bom(con: sqlite3.Connection, project_id: str) -> Optional[Dict]:
    row = con.execute("SELECT * FROM boms WHERE project_id = ?", (project_id,)).fetchone()
    return row_to_dict(row, json_fields=("items",))


def update_bom(con: sqlite3.Connection, project_id: str, items: List[Dict[str, Any]], currency: str,
               total_estimated_cost: Optional[float] = None) -> str:
    now = now_ms()
    existing = con.execute("SELECT id FROM boms WHERE project_id = ?", (project_id,)).fetchone()
    if existing:
        con.execute("""
            UPDATE boms SET items_json = ?, total_estimated_cost = ?, currency = ?, last_updated_ms = ?
            WHERE id = ?
        """, (json_dumps(items), total_estimated_cost, currency, now, existing["id"]))
        bom_id = existing["id"]
    else:
        bom_id = new_id()
        con.execute("""
            INSERT INTO boms (id, project_id, items_json, total_estimated_cost, currency, last_updated_ms)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (bom_id, project_id, json_dumps(items), total_estimated_cost, currency, now))
    con.commit()
    return bom_id


# =============================================================================
# Public Media
# =============================================================================
def get_all_public_media(con: sqlite3.Connection) -> List[Dict]:
    images = con.execute("""
        SELECT id, url, prompt, created_at_ms, completed_at_ms FROM image_generations
        WHERE status = ? ORDER BY created_at_ms DESC, rowid DESC LIMIT ?
    """, (GenerationStatus.COMPLETED, PUBLIC_MEDIA_LIMIT)).fetchall()
    uploads = con.execute("""
        SELECT id, url, kind, file_name, created_at_ms FROM media
        ORDER BY created_at_ms DESC, rowid DESC LIMIT ?
    """, (PUBLIC_MEDIA_LIMIT,)).fetchall()

    items = [{
        "id": img["id"],
        "url": img["url"],
        "type": "image",
        "title": img["prompt"] or "Generated AI Design",
        "created_at_ms": img["completed_at_ms"] or img["created_at_ms"],
    } for img in images]
    items += [{
        "id": up["id"],
        "url": up["url"],
        "type": up["kind"] or "image",
        "title": up["file_name"] or "Uploaded Asset",
        "created_at_ms": up["created_at_ms"],
    } for up in uploads]

    items.sort(key=lambda item: item["created_at_ms"] or 0, reverse=True)
    return items
