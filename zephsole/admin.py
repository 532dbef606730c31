"""
Platform administration: users, workshops, memberships, credit grants and stats.

Callers are expected to have passed require_admin() already.
"""
import sqlite3
from typing import Any, Dict, List, Optional

from fastapi import HTTPException

from zephsole import auth
from zephsole.config import DAY_MS, WorkshopRole
from zephsole.credits import grant_credits
from zephsole.database import log_event, new_id, now_ms
from zephsole.logger import get_logger
from zephsole.workshops import get_workshop, slugify, unique_workshop_slug

logger = get_logger(__name__)

ADMIN_GRANT_DAYS = 90
MAX_WORKSHOPS_LIMIT = 200
MAX_USERS_LIMIT = 300


def _clamp_limit(limit: Optional[int], default: int, maximum: int) -> int:
    return min(max(limit or default, 1), maximum)


def _workshop_balance(con: sqlite3.Connection, workshop_id: str) -> float:
    now = now_ms()
    row = con.execute("""
        SELECT COALESCE(SUM(remaining), 0) AS balance FROM credit_grants
        WHERE workshop_id = ? AND expires_at_ms > ? AND starts_at_ms <= ? AND remaining > 0
    """, (workshop_id, now, now)).fetchone()
    return round(row["balance"], 6)


def _require_user_by_email(con: sqlite3.Connection, email: str) -> Dict:
    user = auth.get_user_by_email(con, email)
    if not user:
        raise HTTPException(404, "USER_NOT_FOUND")
    return user


def current_admin_status(user: Optional[Dict]) -> Dict[str, Any]:
    return {
        "user_id": user["id"] if user else None,
        "role": user.get("role") if user else None,
        "is_admin": auth.is_admin_user(user),
    }


def list_workshops_for_credits(con: sqlite3.Connection, search: Optional[str] = None,
                               limit: Optional[int] = None) -> List[Dict]:
    limit = _clamp_limit(limit, 50, MAX_WORKSHOPS_LIMIT)
    term = (search or "").strip().lower()
    if term:
        pattern = f"%{term}%"
        rows = con.execute("""
            SELECT * FROM workshops
            WHERE lower(name) LIKE ? OR lower(slug) LIKE ? OR lower(owner_id) LIKE ?
            ORDER BY created_at_ms DESC LIMIT ?
        """, (pattern, pattern, pattern, limit)).fetchall()
    else:
        rows = con.execute("SELECT * FROM workshops ORDER BY created_at_ms DESC LIMIT ?", (limit,)).fetchall()

    return [{
        "workshop_id": w["id"],
        "name": w["name"],
        "slug": w["slug"],
        "owner_id": w["owner_id"],
        "created_at_ms": w["created_at_ms"],
        "balance": _workshop_balance(con, w["id"]),
    } for w in rows]


def grant_credits_to_workshop(con: sqlite3.Connection, admin_user_id: Optional[str], workshop_id: str,
                              amount: float, source: Optional[str] = None, description: Optional[str] = None,
                              expires_in_days: Optional[float] = None) -> Dict[str, Any]:
    if amount is None or amount <= 0:
        raise HTTPException(400, "Amount must be greater than 0")
    workshop = get_workshop(con, workshop_id)
    if not workshop:
        raise HTTPException(404, "WORKSHOP_NOT_FOUND")

    starts_at = now_ms()
    days = max(expires_in_days, 1) if expires_in_days is not None else ADMIN_GRANT_DAYS
    grant_id = grant_credits(
        con, workshop_id, amount, source or "platform_admin",
        starts_at_ms=starts_at,
        expires_at_ms=starts_at + int(days * DAY_MS),
        metadata={"description": description, "granted_by": admin_user_id, "granted_at_ms": starts_at},
    )
    log_event("info", "admin_credit_grant", f"{amount} credits to {workshop['slug']}", user_id=admin_user_id,
              meta={"workshop_id": workshop_id, "grant_id": grant_id})
    return {
        "success": True,
        "grant_id": grant_id,
        "workshop_id": workshop_id,
        "workshop_name": workshop["name"],
        "new_balance": _workshop_balance(con, workshop_id),
    }


def list_users_for_admin(con: sqlite3.Connection, search: Optional[str] = None,
                         limit: Optional[int] = None) -> List[Dict]:
    limit = _clamp_limit(limit, 100, MAX_USERS_LIMIT)
    term = (search or "").strip().lower()
    if term:
        pattern = f"%{term}%"
        rows = con.execute("""
            SELECT * FROM users WHERE lower(email) LIKE ? OR lower(name) LIKE ? OR lower(id) LIKE ?
            ORDER BY created_at_ms DESC LIMIT ?
        """, (pattern, pattern, pattern, limit)).fetchall()
    else:
        rows = con.execute("SELECT * FROM users ORDER BY created_at_ms DESC LIMIT ?", (limit,)).fetchall()

    return [{
        "user_id": u["id"],
        "email": u["email"],
        "name": u["name"],
        "role": u["role"] or "user",
        "created_at_ms": u["created_at_ms"],
    } for u in rows]


def create_user(con: sqlite3.Connection, email: str, name: Optional[str] = None,
                mark_email_verified: bool = False) -> Dict[str, Any]:
    user = auth.create_user(con, email, name=name, email_verified=mark_email_verified)
    logger.info(f"Admin created user {user['email']}")
    return {"success": True, "email": user["email"], "user_id": user["id"]}


def create_workshop_for_user(con: sqlite3.Connection, owner_email: str, workspace_name: str,
                             initial_credits: Optional[float] = None) -> Dict[str, Any]:
    owner = _require_user_by_email(con, owner_email)
    slug = unique_workshop_slug(con, slugify(workspace_name, fallback="workspace"))
    now = now_ms()
    workshop_id = new_id()
    con.execute(
        "INSERT INTO workshops (id, name, slug, owner_id, credits, created_at_ms) VALUES (?, ?, ?, ?, 0, ?)",
        (workshop_id, workspace_name.strip(), slug, owner["id"], now),
    )
    con.execute(
        "INSERT INTO workshop_members (id, workshop_id, user_id, role, joined_at_ms) VALUES (?, ?, ?, ?, ?)",
        (new_id(), workshop_id, owner["id"], WorkshopRole.OWNER, now),
    )
    con.commit()

    initial_credits = max(initial_credits or 0, 0)
    if initial_credits > 0:
        grant_credits(con, workshop_id, initial_credits, "admin_workspace_bootstrap",
                      starts_at_ms=now, expires_at_ms=now + ADMIN_GRANT_DAYS * DAY_MS,
                      metadata={"owner_email": owner["email"]})

    return {"success": True, "workshop_id": workshop_id, "slug": slug}


def add_user_to_workspace(con: sqlite3.Connection, workshop_id: str, user_email: str, role: str) -> Dict[str, Any]:
    if role not in (WorkshopRole.ADMIN, WorkshopRole.MEMBER):
        raise HTTPException(400, f"Invalid role: {role}")
    user = _require_user_by_email(con, user_email)
    if not get_workshop(con, workshop_id):
        raise HTTPException(404, "WORKSHOP_NOT_FOUND")

    existing = con.execute(
        "SELECT 1 FROM workshop_members WHERE workshop_id = ? AND user_id = ?", (workshop_id, user["id"])
    ).fetchone()
    if existing:
        raise HTTPException(409, "ALREADY_MEMBER")

    membership_id = new_id()
    con.execute(
        "INSERT INTO workshop_members (id, workshop_id, user_id, role, joined_at_ms) VALUES (?, ?, ?, ?, ?)",
        (membership_id, workshop_id, user["id"], role, now_ms()),
    )
    con.commit()
    return {"success": True, "membership_id": membership_id}


def list_workshop_members_for_admin(con: sqlite3.Connection, workshop_id: str) -> List[Dict]:
    rows = con.execute("""
        SELECT m.id AS membership_id, m.role, m.user_id, u.email, u.name
        FROM workshop_members m
        LEFT JOIN users u ON u.id = m.user_id
        WHERE m.workshop_id = ?
        ORDER BY m.joined_at_ms ASC, m.rowid ASC
    """, (workshop_id,)).fetchall()
    return [dict(r) for r in rows]


def set_user_role_for_admin(con: sqlite3.Connection, user_email: str, role: str) -> Dict[str, Any]:
    if role not in ("admin", "user"):
        raise HTTPException(400, f"Invalid role: {role}")
    user = _require_user_by_email(con, user_email)
    con.execute("UPDATE users SET role = ?, updated_at_ms = ? WHERE id = ?", (role, now_ms(), user["id"]))
    con.commit()
    log_event("info", "admin_role_change", f"{user['email']} -> {role}", user_id=user["id"])
    return {"success": True, "user_id": user["id"], "role": role}


def get_platform_stats(con: sqlite3.Connection) -> Dict[str, Any]:
    def count(table: str) -> int:
        return con.execute(f"SELECT COUNT(*) AS c FROM {table}").fetchone()["c"]

    now = now_ms()
    granted = con.execute("SELECT COALESCE(SUM(amount), 0) AS s FROM credit_grants").fetchone()["s"]
    remaining = con.execute("""
        SELECT COALESCE(SUM(remaining), 0) AS s FROM credit_grants
        WHERE starts_at_ms <= ? AND expires_at_ms > ? AND remaining > 0
    """, (now, now)).fetchone()["s"]

    return {
        "total_users": count("users"),
        "total_workshops": count("workshops"),
        "total_projects": count("projects"),
        "total_memberships": count("workshop_members"),
        "total_credits_granted": round(granted, 6),
        "total_credits_remaining": round(remaining, 6),
        "total_credits_used": round(granted - remaining, 6),
    }
