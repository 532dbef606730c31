"""
Design projects and their workshop-scoped classifications
"""
import secrets
import sqlite3
import string
from typing import Dict, List, Optional

from fastapi import HTTPException

from zephsole.database import new_id, now_ms, row_to_dict

PROJECT_SLUG_LENGTH = 26
PROJECT_MODES = ("research", "studio")
UNIT_SYSTEMS = ("mm", "us", "eu", "cm")

_SLUG_ALPHABET = string.ascii_lowercase + string.digits


def _project(row: Optional[sqlite3.Row]) -> Optional[Dict]:
    return row_to_dict(row, bool_fields=("is_pinned",))


def random_project_slug() -> str:
    return "".join(secrets.choice(_SLUG_ALPHABET) for _ in range(PROJECT_SLUG_LENGTH))


def get_project(con: sqlite3.Connection, project_id: str) -> Optional[Dict]:
    return _project(con.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone())


def require_project(con: sqlite3.Connection, project_id: str) -> Dict:
    project = get_project(con, project_id)
    if not project:
        raise HTTPException(404, "Project not found")
    return project


def get_projects(con: sqlite3.Connection, workshop_id: str) -> List[Dict]:
    """Pinned projects first, then most recently updated"""
    rows = con.execute("""
        SELECT * FROM projects WHERE workshop_id = ?
        ORDER BY is_pinned DESC, COALESCE(last_updated_ms, 0) DESC, rowid DESC
    """, (workshop_id,)).fetchall()
    return [_project(r) for r in rows]


def create_project(con: sqlite3.Connection, name: str, workshop_id: str, user_id: str) -> Dict:
    slug = random_project_slug()
    while con.execute("SELECT 1 FROM projects WHERE slug = ?", (slug,)).fetchone():
        slug = random_project_slug()

    project_id = new_id()
    con.execute("""
        INSERT INTO projects (id, name, slug, workshop_id, user_id, status, last_updated_ms, mode, unit_system)
        VALUES (?, ?, ?, ?, ?, 'draft', ?, 'research', 'mm')
    """, (project_id, name, slug, workshop_id, user_id, now_ms()))
    con.commit()
    return {"id": project_id, "slug": slug}


def delete_project(con: sqlite3.Connection, project_id: str):
    con.execute("DELETE FROM projects WHERE id = ?", (project_id,))
    con.commit()


def rename_project(con: sqlite3.Connection, project_id: str, name: str):
    con.execute("UPDATE projects SET name = ?, last_updated_ms = ? WHERE id = ?", (name, now_ms(), project_id))
    con.commit()


def touch_project(con: sqlite3.Connection, project_id: str):
    con.execute("UPDATE projects SET last_updated_ms = ? WHERE id = ?", (now_ms(), project_id))
    con.commit()


def toggle_pin_project(con: sqlite3.Connection, project_id: str) -> Optional[bool]:
    project = get_project(con, project_id)
    if not project:
        return None
    pinned = not project["is_pinned"]
    con.execute("UPDATE projects SET is_pinned = ? WHERE id = ?", (1 if pinned else 0, project_id))
    con.commit()
    return pinned


def update_project_classification(con: sqlite3.Connection, project_id: str, classification_id: Optional[str]):
    con.execute("UPDATE projects SET classification_id = ? WHERE id = ?", (classification_id, project_id))
    con.commit()


def update_project_mode(con: sqlite3.Connection, project_id: str, mode: str):
    if mode not in PROJECT_MODES:
        raise HTTPException(400, f"Invalid mode: {mode}")
    con.execute("UPDATE projects SET mode = ?, last_updated_ms = ? WHERE id = ?", (mode, now_ms(), project_id))
    con.commit()


def update_project_unit_system(con: sqlite3.Connection, project_id: str, unit_system: str):
    if unit_system not in UNIT_SYSTEMS:
        raise HTTPException(400, f"Invalid unit system: {unit_system}")
    con.execute("UPDATE projects SET unit_system = ?, last_updated_ms = ? WHERE id = ?",
                (unit_system, now_ms(), project_id))
    con.commit()


def get_project_by_slug(con: sqlite3.Connection, workshop_slug: str, project_slug: str) -> Optional[Dict]:
    row = con.execute("""
        SELECT p.* FROM projects p
        JOIN workshops w ON w.id = p.workshop_id
        WHERE w.slug = ? AND p.slug = ?
    """, (workshop_slug, project_slug)).fetchone()
    return _project(row)


# =============================================================================
# Classifications
# =============================================================================
def get_classifications(con: sqlite3.Connection, workshop_id: str) -> List[Dict]:
    rows = con.execute("SELECT * FROM classifications WHERE workshop_id = ? ORDER BY rowid", (workshop_id,)).fetchall()
    return [dict(r) for r in rows]


def get_classification(con: sqlite3.Connection, classification_id: str) -> Optional[Dict]:
    row = con.execute("SELECT * FROM classifications WHERE id = ?", (classification_id,)).fetchone()
    return dict(row) if row else None


def create_classification(con: sqlite3.Connection, workshop_id: str, name: str, color: Optional[str] = None) -> str:
    classification_id = new_id()
    con.execute("INSERT INTO classifications (id, workshop_id, name, color) VALUES (?, ?, ?, ?)",
                (classification_id, workshop_id, name, color))
    con.commit()
    return classification_id


def rename_classification(con: sqlite3.Connection, classification_id: str, name: str):
    con.execute("UPDATE classifications SET name = ? WHERE id = ?", (name, classification_id))
    con.commit()


def delete_classification(con: sqlite3.Connection, classification_id: str):
    con.execute("UPDATE projects SET classification_id = NULL WHERE classification_id = ?", (classification_id,))
    con.execute("DELETE FROM classifications WHERE id = ?", (classification_id,))
    con.commit()
