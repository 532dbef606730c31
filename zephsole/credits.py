"""
Workshop credits: dated grants, redemptions allocated across grants
(earliest expiry first), and the pricing constants the UI shows.

1 credit = $1.00 USD. Amounts are rounded to 6 decimals on write.
"""
import math
import sqlite3
from typing import Any, Dict, List, Optional

from fastapi import HTTPException

from zephsole.config import DAY_MS
from zephsole.database import json_dumps, log_event, new_id, now_ms
from zephsole.logger import get_logger

logger = get_logger(__name__)

DEFAULT_GRANT_DAYS = 30
MAX_REDEMPTIONS_LIMIT = 200

CREDIT_COSTS = {
    "IMAGE_GENERATION_PRO": 0.60,
    "IMAGE_GENERATION_BASIC": 0.20,
    "RESEARCH_QUERY": 1.00,
    "DEEP_RESEARCH_SESSION": 1.00,
    "WEB_SEARCH": 1.00,
    "TECHNICAL_DRAFT_GEN": 1.00,
}

PRICING_PLANS = [
    {
        "name": "Free",
        "monthly_price": 0,
        "annual_price": 0,
        "credits": 5.00,
        "description": "Trial the power of footwear intelligence. Free credits apply to your first workshop only.",
        "features": ["Standard Research", "$5.00 One-time Credits", "Single Workshop"],
        "is_free": True,
    },
    {
        "name": "Plus",
        "monthly_price": 20,
        "annual_price": 192,
        "credits": 20,
        "description": "For designers ready to scale their output.",
        "features": ["Priority Agents", "20 Monthly Credits", "Infinite Canvas", "Community Access"],
    },
    {
        "name": "Max",
        "monthly_price": 50,
        "annual_price": 480,
        "credits": 50,
        "description": "Professional grade studio intelligence.",
        "features": ["Advanced Renders", "50 Monthly Credits", "Multi-Project Support", "Technical Drafts"],
    },
    {
        "name": "Ultra",
        "monthly_price": 100,
        "annual_price": 960,
        "credits": 100,
        "description": "Maximum power for production-ready studios.",
        "features": ["Bespoke Agent Tuning", "100 Monthly Credits", "Priority Support", "Unlimited Workspaces"],
    },
]

CREDIT_PURCHASE_OPTIONS = [
    {"amount": 5, "price": 5, "label": "$5 Credits"},
    {"amount": 10, "price": 10, "label": "$10 Credits"},
    {"amount": 25, "price": 20, "label": "$25 Credits (Bonus!)"},
]

ASSET_TYPES = ("image", "video", "3d", "research")


def _round(amount: float) -> float:
    return round(float(amount), 6)


def _active_grants(con: sqlite3.Connection, workshop_id: str, now: int) -> List[sqlite3.Row]:
    return con.execute("""
        SELECT * FROM credit_grants
        WHERE workshop_id = ? AND expires_at_ms > ? AND starts_at_ms <= ? AND remaining > 0
        ORDER BY expires_at_ms ASC, rowid ASC
    """, (workshop_id, now, now)).fetchall()


def get_available_credits(con: sqlite3.Connection, workshop_id: str) -> Dict[str, Any]:
    now = now_ms()
    active = _active_grants(con, workshop_id, now)
    next_expiry = None
    if active:
        first = active[0]
        next_expiry = {
            "amount": first["remaining"],
            "expires_at_ms": first["expires_at_ms"],
            "days_until_expiry": math.ceil((first["expires_at_ms"] - now) / DAY_MS),
        }
    return {
        "balance": _round(sum(g["remaining"] for g in active)),
        "total_credits": _round(sum(g["amount"] for g in active)),
        "grants_count": len(active),
        "next_expiry": next_expiry,
    }


def list_redemptions(con: sqlite3.Connection, workshop_id: str, limit: Optional[int] = None) -> List[Dict]:
    limit = min(limit or 50, MAX_REDEMPTIONS_LIMIT)
    rows = con.execute("""
        SELECT r.id, r.amount, r.usage_at_ms, r.asset_type, r.description, r.project_id,
               p.name AS project_name
        FROM credit_redemptions r
        LEFT JOIN projects p ON p.id = r.project_id
        WHERE r.workshop_id = ?
        ORDER BY r.usage_at_ms DESC, r.rowid DESC
        LIMIT ?
    """, (workshop_id, limit)).fetchall()
    return [dict(r) for r in rows]


def grant_credits(con: sqlite3.Connection, workshop_id: str, amount: float, source: str,
                  ref_id: Optional[str] = None, starts_at_ms: Optional[int] = None,
                  expires_at_ms: Optional[int] = None, metadata: Optional[Dict] = None) -> str:
    """Deposit credits into a workshop. Idempotent on (source, ref_id) when ref_id is given."""
    if amount is None or amount <= 0:
        raise HTTPException(400, "Amount must be greater than 0")

    if ref_id:
        existing = con.execute(
            "SELECT id FROM credit_grants WHERE source = ? AND ref_id = ? LIMIT 1", (source, ref_id)
        ).fetchone()
        if existing:
            return existing["id"]

    workshop = con.execute("SELECT id, credits FROM workshops WHERE id = ?", (workshop_id,)).fetchone()
    if not workshop:
        raise HTTPException(404, "WORKSHOP_NOT_FOUND")

    amount = _round(amount)
    starts_at_ms = starts_at_ms if starts_at_ms is not None else now_ms()
    expires_at_ms = expires_at_ms if expires_at_ms is not None else starts_at_ms + DEFAULT_GRANT_DAYS * DAY_MS

    grant_id = new_id()
    con.execute("""
        INSERT INTO credit_grants (id, workshop_id, amount, remaining, starts_at_ms, expires_at_ms,
                                   source, ref_id, metadata_json)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (grant_id, workshop_id, amount, amount, starts_at_ms, expires_at_ms, source, ref_id,
          json_dumps(metadata) if metadata is not None else None))
    con.execute("UPDATE workshops SET credits = ? WHERE id = ?",
                (_round((workshop["credits"] or 0) + amount), workshop_id))
    con.commit()

    logger.info(f"Granted {amount} credits to workshop {workshop_id} ({source})")
    log_event("info", "credits_granted", f"{amount} credits ({source})",
              meta={"workshop_id": workshop_id, "grant_id": grant_id})
    return grant_id


def redeem_credits(con: sqlite3.Connection, workshop_id: str, amount: float,
                   project_id: Optional[str] = None, user_id: Optional[str] = None,
                   asset_type: Optional[str] = None, description: Optional[str] = None,
                   idempotency_key: Optional[str] = None) -> str:
    """Spend credits, drawing from the earliest-expiring grants first.

    Either the whole amount is allocated or nothing is written.
    """
    if amount is None or amount <= 0:
        raise HTTPException(400, "Amount must be greater than 0")
    if asset_type is not None and asset_type not in ASSET_TYPES:
        raise HTTPException(400, f"Invalid asset type: {asset_type}")

    if idempotency_key:
        existing = con.execute(
            "SELECT id FROM credit_redemptions WHERE workshop_id = ? AND idempotency_key = ? LIMIT 1",
            (workshop_id, idempotency_key),
        ).fetchone()
        if existing:
            return existing["id"]

    now = now_ms()
    amount = _round(amount)
    to_allocate = amount
    allocations = []
    for grant in _active_grants(con, workshop_id, now):
        if to_allocate <= 0:
            break
        take = _round(min(grant["remaining"], to_allocate))
        if take > 0:
            allocations.append((grant["id"], grant["remaining"], take))
            to_allocate = _round(to_allocate - take)

    if to_allocate > 0:
        raise HTTPException(402, "INSUFFICIENT_CREDITS")

    redemption_id = new_id()
    con.execute("""
        INSERT INTO credit_redemptions (id, workshop_id, amount, usage_at_ms, created_at_ms, project_id,
                                        user_id, asset_type, description, idempotency_key)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (redemption_id, workshop_id, amount, now, now, project_id, user_id, asset_type, description,
          idempotency_key))
    for grant_id, remaining, take in allocations:
        con.execute("INSERT INTO credit_allocations (id, redemption_id, grant_id, amount) VALUES (?, ?, ?, ?)",
                    (new_id(), redemption_id, grant_id, take))
        con.execute("UPDATE credit_grants SET remaining = ? WHERE id = ?", (_round(remaining - take), grant_id))
    con.execute("UPDATE workshops SET credits = ROUND(COALESCE(credits, 0) - ?, 6) WHERE id = ?",
                (amount, workshop_id))
    con.commit()
    return redemption_id
