"""
Workshops (tenants), memberships and the membership guards
"""
import re
import sqlite3
from typing import Dict, Iterable, List, Optional

from fastapi import HTTPException

from zephsole.auth import get_user_by_email, public_user
from zephsole.config import WorkshopRole
from zephsole.credits import grant_credits
from zephsole.database import log_event, new_id, now_ms
from zephsole.logger import get_logger
from zephsole.referrals import ensure_referral_code

logger = get_logger(__name__)

FREE_CREDITS = 5.00
FREE_CREDITS_SOURCE = "free_signup"


def slugify(name: str, fallback: str = "workshop") -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.strip().lower()).strip("-") or fallback


def unique_workshop_slug(con: sqlite3.Connection, base: str) -> str:
    slug = base
    counter = 1
    while con.execute("SELECT 1 FROM workshops WHERE slug = ?", (slug,)).fetchone():
        slug = f"{base}-{counter}"
        counter += 1
    return slug


def get_workshop(con: sqlite3.Connection, workshop_id: str) -> Optional[Dict]:
    row = con.execute("SELECT * FROM workshops WHERE id = ?", (workshop_id,)).fetchone()
    return dict(row) if row else None


def get_workshop_by_slug(con: sqlite3.Connection, slug: str) -> Optional[Dict]:
    row = con.execute("SELECT * FROM workshops WHERE slug = ?", (slug,)).fetchone()
    return dict(row) if row else None


def get_workshops(con: sqlite3.Connection, user_id: str) -> List[Dict]:
    rows = con.execute("""
        SELECT w.* FROM workshop_members m
        JOIN workshops w ON w.id = m.workshop_id
        WHERE m.user_id = ?
        ORDER BY m.joined_at_ms ASC, m.rowid ASC
    """, (user_id,)).fetchall()
    return [dict(r) for r in rows]


def _insert_workshop(con: sqlite3.Connection, name: str, slug: str, owner_id: str) -> str:
    workshop_id = new_id()
    now = now_ms()
    con.execute(
        "INSERT INTO workshops (id, name, slug, owner_id, credits, created_at_ms) VALUES (?, ?, ?, ?, 0, ?)",
        (workshop_id, name, slug, owner_id, now),
    )
    con.execute(
        "INSERT INTO workshop_members (id, workshop_id, user_id, role, joined_at_ms) VALUES (?, ?, ?, ?, ?)",
        (new_id(), workshop_id, owner_id, WorkshopRole.OWNER, now),
    )
    con.commit()
    return workshop_id


def _grant_free_credits(con: sqlite3.Connection, workshop_id: str):
    grant_credits(con, workshop_id, FREE_CREDITS, FREE_CREDITS_SOURCE, ref_id=workshop_id)


def create_workshop(con: sqlite3.Connection, name: str, owner_id: str) -> str:
    """Create a workshop owned by owner_id. Free credits go to the first owned workshop only."""
    owns_one = con.execute("SELECT 1 FROM workshops WHERE owner_id = ? LIMIT 1", (owner_id,)).fetchone()
    slug = unique_workshop_slug(con, slugify(name))
    workshop_id = _insert_workshop(con, name.strip(), slug, owner_id)
    if not owns_one:
        _grant_free_credits(con, workshop_id)
    log_event("info", "workshop_created", f"Workshop {slug} created", user_id=owner_id,
              meta={"workshop_id": workshop_id})
    return workshop_id


def ensure_personal_workshop(con: sqlite3.Connection, user_id: str, user_name: str) -> str:
    existing = con.execute(
        "SELECT workshop_id FROM workshop_members WHERE user_id = ? ORDER BY joined_at_ms ASC, rowid ASC LIMIT 1",
        (user_id,),
    ).fetchone()
    if existing:
        return existing["workshop_id"]

    slug = unique_workshop_slug(con, slugify(user_name, fallback="user"))
    workshop_id = _insert_workshop(con, f"{user_name}'s Workshop", slug, user_id)
    _grant_free_credits(con, workshop_id)
    ensure_referral_code(con, user_id)
    logger.info(f"Personal workshop {slug} created for {user_id}")
    return workshop_id


def get_membership(con: sqlite3.Connection, workshop_id: str, user_id: str) -> Optional[Dict]:
    row = con.execute(
        "SELECT * FROM workshop_members WHERE workshop_id = ? AND user_id = ?", (workshop_id, user_id)
    ).fetchone()
    return dict(row) if row else None


def invite_member(con: sqlite3.Connection, workshop_id: str, email: str, role: str) -> str:
    if role not in (WorkshopRole.ADMIN, WorkshopRole.MEMBER):
        raise HTTPException(400, f"Invalid role: {role}")
    user = get_user_by_email(con, email)
    if not user:
        raise HTTPException(404, "User not found")

    existing = get_membership(con, workshop_id, user["id"])
    if existing:
        return existing["id"]

    membership_id = new_id()
    con.execute(
        "INSERT INTO workshop_members (id, workshop_id, user_id, role, joined_at_ms) VALUES (?, ?, ?, ?, ?)",
        (membership_id, workshop_id, user["id"], role, now_ms()),
    )
    con.commit()
    return membership_id


def get_members(con: sqlite3.Connection, workshop_id: str) -> List[Dict]:
    rows = con.execute("""
        SELECT u.*, m.role AS member_role, m.joined_at_ms
        FROM workshop_members m
        JOIN users u ON u.id = m.user_id
        WHERE m.workshop_id = ?
        ORDER BY m.joined_at_ms ASC, m.rowid ASC
    """, (workshop_id,)).fetchall()
    members = []
    for row in rows:
        data = dict(row)
        member = public_user(data)
        member["role"] = data["member_role"]
        member["joined_at_ms"] = data["joined_at_ms"]
        members.append(member)
    return members


def backfill_credits(con: sqlite3.Connection) -> int:
    cur = con.execute("UPDATE workshops SET credits = 0 WHERE credits IS NULL")
    con.commit()
    return cur.rowcount


# =============================================================================
# Guards
# =============================================================================
def require_workshop_member(con: sqlite3.Connection, workshop_id: str, user_id: str) -> Dict:
    membership = get_membership(con, workshop_id, user_id)
    if not membership:
        raise HTTPException(403, "WORKSHOP_ACCESS_DENIED")
    return membership


def require_workshop_role(con: sqlite3.Connection, workshop_id: str, user_id: str,
                          roles: Iterable[str]) -> Dict:
    membership = require_workshop_member(con, workshop_id, user_id)
    if membership["role"] not in roles:
        raise HTTPException(403, "WORKSHOP_ROLE_FORBIDDEN")
    return membership
