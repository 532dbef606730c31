"""
Referral codes, referral tracking and milestone rewards
"""
import re
import sqlite3
from typing import Dict, Optional

from fastapi import HTTPException

from zephsole.credits import grant_credits
from zephsole.database import log_event, new_id, now_ms
from zephsole.logger import get_logger

logger = get_logger(__name__)

MILESTONE_SIZE = 5
MILESTONE_REWARD = 5.00
PURCHASE_REWARD_RATE = 0.10
REFERRAL_CODE_LENGTH = 8


def _get_stats(con: sqlite3.Connection, user_id: str) -> Optional[sqlite3.Row]:
    return con.execute("SELECT * FROM referral_stats WHERE user_id = ?", (user_id,)).fetchone()


def resolve_reward_workshop_id(con: sqlite3.Connection, user_id: str) -> Optional[str]:
    """Preferred workshop if the user is still a member of it, else their first membership"""
    stats = _get_stats(con, user_id)
    preferred = stats["preferred_workshop_id"] if stats else None
    if preferred:
        membership = con.execute(
            "SELECT 1 FROM workshop_members WHERE workshop_id = ? AND user_id = ?", (preferred, user_id)
        ).fetchone()
        if membership:
            return preferred

    row = con.execute(
        "SELECT workshop_id FROM workshop_members WHERE user_id = ? ORDER BY joined_at_ms ASC, rowid ASC LIMIT 1",
        (user_id,),
    ).fetchone()
    return row["workshop_id"] if row else None


def get_referral_stats(con: sqlite3.Connection, user_id: str) -> Dict:
    stats = _get_stats(con, user_id)
    user = con.execute("SELECT referral_code FROM users WHERE id = ?", (user_id,)).fetchone()
    return {
        "total_uses": stats["total_uses"] if stats else 0,
        "referral_code": (user["referral_code"] if user else None) or "",
    }


def ensure_referral_code(con: sqlite3.Connection, user_id: str) -> Optional[str]:
    user = con.execute("SELECT name, referral_code FROM users WHERE id = ?", (user_id,)).fetchone()
    if not user:
        return None
    if user["referral_code"]:
        return user["referral_code"]

    base = re.sub(r"[^a-z0-9]", "", (user["name"] or "").lower())[:REFERRAL_CODE_LENGTH] or "user"
    code = base
    counter = 1
    while con.execute("SELECT 1 FROM users WHERE referral_code = ?", (code,)).fetchone():
        code = f"{base}{counter}"
        counter += 1

    con.execute("UPDATE users SET referral_code = ? WHERE id = ?", (code, user_id))
    con.commit()
    return code


def register_referral(con: sqlite3.Connection, new_user_id: str, referral_code: str) -> Dict:
    referrer = con.execute("SELECT id FROM users WHERE referral_code = ?", (referral_code,)).fetchone()
    if not referrer:
        return {"success": False, "error": "Invalid referral code"}
    referrer_id = referrer["id"]
    if referrer_id == new_user_id:
        return {"success": False, "error": "Cannot refer yourself"}
    if con.execute("SELECT 1 FROM referrals WHERE referred_id = ?", (new_user_id,)).fetchone():
        return {"success": False, "error": "User already referred"}

    con.execute(
        "INSERT INTO referrals (id, referrer_id, referred_id, status, created_at_ms) VALUES (?, ?, ?, 'joined', ?)",
        (new_id(), referrer_id, new_user_id, now_ms()),
    )
    stats = _get_stats(con, referrer_id)
    if stats:
        con.execute("UPDATE referral_stats SET total_uses = total_uses + 1 WHERE id = ?", (stats["id"],))
        total_uses = stats["total_uses"] + 1
        last_milestone = stats["last_milestone_reward_count"]
    else:
        con.execute(
            "INSERT INTO referral_stats (id, user_id, total_uses, last_milestone_reward_count) VALUES (?, ?, 1, 0)",
            (new_id(), referrer_id),
        )
        total_uses, last_milestone = 1, 0
    con.commit()

    if total_uses >= last_milestone + MILESTONE_SIZE:
        workshop_id = resolve_reward_workshop_id(con, referrer_id)
        if workshop_id:
            grant_credits(con, workshop_id, MILESTONE_REWARD, "referral")
            con.execute(
                "UPDATE referral_stats SET last_milestone_reward_count = ? WHERE user_id = ?",
                (last_milestone + MILESTONE_SIZE, referrer_id),
            )
            con.commit()
            logger.info(f"Referral milestone reached by {referrer_id} ({total_uses} uses)")
        else:
            logger.warning(f"Referral milestone for {referrer_id} has no reward workshop")

    log_event("info", "referral_registered", f"Referral via {referral_code}", user_id=new_user_id,
              meta={"referrer_id": referrer_id})
    return {"success": True}


def process_purchase_reward(con: sqlite3.Connection, user_id: str, purchase_amount: float) -> Optional[str]:
    """Credit the buyer's referrer with a share of the purchase. Returns the grant id if one was made."""
    referral = con.execute("SELECT * FROM referrals WHERE referred_id = ?", (user_id,)).fetchone()
    if not referral:
        return None
    if referral["status"] != "purchased":
        con.execute("UPDATE referrals SET status = 'purchased' WHERE id = ?", (referral["id"],))
        con.commit()

    reward = purchase_amount * PURCHASE_REWARD_RATE
    workshop_id = resolve_reward_workshop_id(con, referral["referrer_id"])
    if not workshop_id or reward <= 0:
        return None
    return grant_credits(con, workshop_id, reward, "referral_purchase")


def set_preferred_reward_workshop(con: sqlite3.Connection, user_id: str, workshop_id: str):
    membership = con.execute(
        "SELECT 1 FROM workshop_members WHERE workshop_id = ? AND user_id = ?", (workshop_id, user_id)
    ).fetchone()
    if not membership:
        raise HTTPException(403, "WORKSHOP_ACCESS_DENIED")

    if _get_stats(con, user_id):
        con.execute("UPDATE referral_stats SET preferred_workshop_id = ? WHERE user_id = ?", (workshop_id, user_id))
    else:
        con.execute("""
            INSERT INTO referral_stats (id, user_id, total_uses, last_milestone_reward_count, preferred_workshop_id)
            VALUES (?, ?, 0, 0, ?)
        """, (new_id(), user_id, workshop_id))
    con.commit()
