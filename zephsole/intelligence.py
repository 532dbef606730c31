"""
Project chat threads
"""
import sqlite3
from typing import Any, Dict, List, Optional

from fastapi import HTTPException

from zephsole.database import json_dumps, new_id, now_ms, row_to_dict
from zephsole.projects import touch_project

MESSAGE_ROLES = ("user", "assistant")


def get_messages(con: sqlite3.Connection, project_id: str) -> List[Dict]:
    rows = con.execute(
        "SELECT * FROM intelligence_threads WHERE project_id = ? ORDER BY timestamp_ms ASC, rowid ASC",
        (project_id,),
    ).fetchall()
    return [row_to_dict(r, json_fields=("card_data", "attachments")) for r in rows]


def send_message(con: sqlite3.Connection, project_id: str, role: str, content: str,
                 message_type: Optional[str] = None, card_data: Any = None,
                 message_id: Optional[str] = None, attachments: Optional[List[Dict]] = None) -> str:
    if role not in MESSAGE_ROLES:
        raise HTTPException(400, f"Invalid role: {role}")

    row_id = new_id()
    con.execute("""
        INSERT INTO intelligence_threads (id, project_id, role, content, type, card_data_json, attachments_json,
                                          message_id, timestamp_ms)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        row_id, project_id, role, content, message_type or "text",
        json_dumps(card_data) if card_data is not None else None,
        json_dumps(attachments) if attachments is not None else None,
        message_id or row_id, now_ms(),
    ))
    con.commit()
    touch_project(con, project_id)
    return row_id


def clear_history(con: sqlite3.Connection, project_id: str) -> int:
    cur = con.execute("DELETE FROM intelligence_threads WHERE project_id = ?", (project_id,))
    con.commit()
    return cur.rowcount
