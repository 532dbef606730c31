"""
Image generation state, keyed by the tool call that started it
"""
import sqlite3
from typing import Dict, List, Optional

from zephsole.config import GenerationStatus
from zephsole.database import new_id, now_ms

PATCHABLE_FIELDS = ("prompt", "aspect_ratio", "url", "storage_key", "model", "error", "workflow_id", "source")


def get_generation_by_tool_call_id(con: sqlite3.Connection, tool_call_id: str) -> Optional[Dict]:
    row = con.execute("SELECT * FROM image_generations WHERE tool_call_id = ?", (tool_call_id,)).fetchone()
    return dict(row) if row else None


def get_generations_by_project(con: sqlite3.Connection, project_id: str) -> List[Dict]:
    rows = con.execute(
        "SELECT * FROM image_generations WHERE project_id = ? ORDER BY created_at_ms DESC, rowid DESC",
        (project_id,),
    ).fetchall()
    return [dict(r) for r in rows]


def get_generation_by_workflow_id(con: sqlite3.Connection, workflow_id: str) -> Optional[Dict]:
    row = con.execute("SELECT * FROM image_generations WHERE workflow_id = ? LIMIT 1", (workflow_id,)).fetchone()
    return dict(row) if row else None


def upsert_generation(con: sqlite3.Connection, tool_call_id: str, status: str,
                      project_id: Optional[str] = None, user_id: Optional[str] = None,
                      **fields) -> str:
    """Insert a generation, or patch only the fields that were provided."""
    if status not in (GenerationStatus.GENERATING, GenerationStatus.COMPLETED, GenerationStatus.ERROR):
        raise ValueError(f"Invalid generation status: {status}")
    unknown = set(fields) - set(PATCHABLE_FIELDS)
    if unknown:
        raise ValueError(f"Unknown generation fields: {sorted(unknown)}")

    now = now_ms()
    provided = {k: v for k, v in fields.items() if v is not None}
    existing = get_generation_by_tool_call_id(con, tool_call_id)

    if existing:
        updates = {"status": status, **provided}
        if status == GenerationStatus.COMPLETED:
            updates["completed_at_ms"] = now
        assignments = ", ".join(f"{column} = ?" for column in updates)
        con.execute(f"UPDATE image_generations SET {assignments} WHERE id = ?",
                    (*updates.values(), existing["id"]))
        con.commit()
        return existing["id"]

    generation_id = new_id()
    con.execute("""
        INSERT INTO image_generations (id, tool_call_id, project_id, user_id, workflow_id, status, prompt,
                                       aspect_ratio, url, storage_key, model, error, source,
                                       created_at_ms, completed_at_ms)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        generation_id, tool_call_id, project_id, user_id, provided.get("workflow_id"), status,
        provided.get("prompt"), provided.get("aspect_ratio"), provided.get("url"),
        provided.get("storage_key"), provided.get("model"), provided.get("error"), provided.get("source"),
        now, now if status == GenerationStatus.COMPLETED else None,
    ))
    con.commit()
    return generation_id
