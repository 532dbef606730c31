"""
Uploaded media records (object storage keys and public URLs)
"""
import os
import sqlite3
from typing import Dict, List, Optional

from fastapi import HTTPException

from zephsole.config import required_env
from zephsole.database import new_id, now_ms


def public_base_url(bucket: str, account_id: str) -> str:
    base = os.getenv("R2_PUBLIC_URL") or f"https://{bucket}.{account_id}.r2.cloudflarestorage.com"
    return base.rstrip("/")


def save_media_record(con: sqlite3.Connection, project_id: str, object_key: str, file_name: str,
                      content_type: str, size: Optional[int] = None, kind: Optional[str] = None,
                      uploaded_by: Optional[str] = None) -> Dict:
    bucket = required_env("R2_BUCKET_NAME")
    account_id = required_env("R2_ACCOUNT_ID")

    if not object_key.startswith(f"projects/{project_id}/"):
        raise HTTPException(400, "Object key does not belong to project")

    media_id = new_id()
    url = f"{public_base_url(bucket, account_id)}/{object_key}"
    con.execute("""
        INSERT INTO media (id, project_id, key, url, file_name, content_type, size, kind, uploaded_by, created_at_ms)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (media_id, project_id, object_key, url, file_name, content_type, size, kind or "image",
          uploaded_by, now_ms()))
    con.commit()
    return {"id": media_id, "url": url}


def list_project_media(con: sqlite3.Connection, project_id: str) -> List[Dict]:
    rows = con.execute(
        "SELECT * FROM media WHERE project_id = ? ORDER BY created_at_ms DESC, rowid DESC", (project_id,)
    ).fetchall()
    return [dict(r) for r in rows]
