"""
User accounts and token sessions
"""
import hashlib
import re
import secrets
import sqlite3
from typing import Dict, Optional, Tuple

from fastapi import HTTPException

from zephsole.config import ADMIN_TOKEN
from zephsole.database import db_conn, new_id, now_ms

EMAIL_REGEX = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

PUBLIC_USER_FIELDS = ("id", "email", "name", "role", "referral_code", "created_at_ms", "last_login_ms")

# =============================================================================
# Passwords & Tokens
# =============================================================================
def _pbkdf2_hash(password: str, salt_hex: str) -> str:
    salt = bytes.fromhex(salt_hex)
    dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, 200_000)
    return dk.hex()

def make_password(password: str) -> Tuple[str, str]:
    salt_hex = secrets.token_hex(16)
    return salt_hex, _pbkdf2_hash(password, salt_hex)

def verify_password(password: str, salt_hex: Optional[str], pw_hash_hex: Optional[str]) -> bool:
    if not salt_hex or not pw_hash_hex:
        return False
    return secrets.compare_digest(_pbkdf2_hash(password, salt_hex), pw_hash_hex)

def normalize_email(value: str) -> str:
    return value.strip().lower()

def public_user(user: Dict) -> Dict:
    return {field: user.get(field) for field in PUBLIC_USER_FIELDS}

# =============================================================================
# Accounts
# =============================================================================
def get_user_by_email(con: sqlite3.Connection, email: str) -> Optional[Dict]:
    row = con.execute("SELECT * FROM users WHERE email = ?", (normalize_email(email),)).fetchone()
    return dict(row) if row else None

def get_user(con: sqlite3.Connection, user_id: str) -> Optional[Dict]:
    row = con.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    return dict(row) if row else None

def create_user(con: sqlite3.Connection, email: str, name: Optional[str] = None,
                password: Optional[str] = None, role: str = "user",
                email_verified: bool = False) -> Dict:
    """Insert a user row. Password-less users exist but cannot log in until one is set."""
    email = normalize_email(email)
    if not EMAIL_REGEX.match(email):
        raise HTTPException(400, "INVALID_EMAIL_FORMAT")
    if get_user_by_email(con, email):
        raise HTTPException(400, "USER_ALREADY_EXISTS")

    name = (name or "").strip() or email.split("@")[0] or "User"
    salt, pw_hash = make_password(password) if password else (None, None)
    user_id = new_id()
    now = now_ms()
    con.execute("""
        INSERT INTO users (id, email, name, password_salt, password_hash, role, email_verified,
                           created_at_ms, updated_at_ms)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (user_id, email, name, salt, pw_hash, role, 1 if email_verified else 0, now, now))
    con.commit()
    return get_user(con, user_id)

def login(con: sqlite3.Connection, email: str, password: str) -> Dict:
    user = get_user_by_email(con, email)
    if not user:
        raise HTTPException(401, "Invalid credentials")
    if not user["is_active"]:
        raise HTTPException(403, "Account is disabled")
    if not verify_password(password, user["password_salt"], user["password_hash"]):
        raise HTTPException(401, "Invalid credentials")

    auth_token = secrets.token_hex(32)
    con.execute("UPDATE users SET auth_token = ?, last_login_ms = ? WHERE id = ?",
                (auth_token, now_ms(), user["id"]))
    con.commit()
    user["auth_token"] = auth_token
    return user

def logout(con: sqlite3.Connection, user_id: str):
    con.execute("UPDATE users SET auth_token = NULL WHERE id = ?", (user_id,))
    con.commit()

# =============================================================================
# Request Guards
# =============================================================================
def extract_token(authorization: Optional[str], token: Optional[str]) -> Optional[str]:
    if authorization:
        if authorization.startswith("Bearer "):
            return authorization[7:]
        return authorization
    return token

def get_auth_user(token: Optional[str]) -> Optional[Dict]:
    if not token:
        return None
    con = db_conn()
    try:
        user = con.execute("SELECT * FROM users WHERE auth_token = ? AND is_active = 1", (token,)).fetchone()
        return dict(user) if user else None
    finally:
        con.close()

def require_user(token: Optional[str]) -> Dict:
    if not token:
        raise HTTPException(401, "AUTH_REQUIRED")
    user = get_auth_user(token)
    if not user:
        raise HTTPException(401, "Invalid or expired token")
    return user

def is_admin_user(user: Optional[Dict]) -> bool:
    return bool(user) and user.get("role") == "admin"

def require_admin(token: Optional[str], x_admin_token: Optional[str] = None) -> Optional[Dict]:
    """Platform admin: an admin-role user, or a caller holding ADMIN_TOKEN."""
    if ADMIN_TOKEN and x_admin_token and secrets.compare_digest(x_admin_token, ADMIN_TOKEN):
        return get_auth_user(token)
    user = require_user(token)
    if not is_admin_user(user):
        raise HTTPException(403, "ADMIN_ONLY")
    return user
