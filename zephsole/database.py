"""
SQLite storage: connection helper, schema and the event log
"""
import json
import sqlite3
import time
import uuid
from typing import Any, Dict, Optional

from zephsole import config
from zephsole.logger import get_logger

logger = get_logger(__name__)

# =============================================================================
# Helpers
# =============================================================================
def now_ms() -> int:
    return int(time.time() * 1000)

def new_id() -> str:
    return str(uuid.uuid4())

def db_conn() -> sqlite3.Connection:
    con = sqlite3.connect(config.DB_PATH, check_same_thread=False)
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA foreign_keys = ON")
    return con

def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False)

def json_loads(value: Optional[str], default: Any = None) -> Any:
    if value is None or value == "":
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default

def row_to_dict(row: Optional[sqlite3.Row], json_fields: tuple = (), bool_fields: tuple = ()) -> Optional[Dict]:
    """Convert a row to a plain dict, decoding *_json columns into their bare names."""
    if row is None:
        return None
    data = dict(row)
    for field in json_fields:
        data[field] = json_loads(data.pop(f"{field}_json", None))
    for field in bool_fields:
        if data.get(field) is not None:
            data[field] = bool(data[field])
    return data

# =============================================================================
# Schema
# =============================================================================
SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT UNIQUE NOT NULL,
        name TEXT NOT NULL,
        password_salt TEXT,
        password_hash TEXT,
        auth_token TEXT,
        role TEXT DEFAULT 'user',
        referral_code TEXT UNIQUE,
        email_verified INTEGER DEFAULT 0,
        is_active INTEGER DEFAULT 1,
        created_at_ms INTEGER,
        updated_at_ms INTEGER,
        last_login_ms INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_users_token ON users(auth_token)",
    """
    CREATE TABLE IF NOT EXISTS workshops (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        slug TEXT UNIQUE NOT NULL,
        owner_id TEXT NOT NULL,
        credits REAL,
        created_at_ms INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_workshops_owner ON workshops(owner_id)",
    """
    CREATE TABLE IF NOT EXISTS workshop_members (
        id TEXT PRIMARY KEY,
        workshop_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        role TEXT NOT NULL,
        joined_at_ms INTEGER,
        UNIQUE (workshop_id, user_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_members_user ON workshop_members(user_id)",
    """
    CREATE TABLE IF NOT EXISTS classifications (
        id TEXT PRIMARY KEY,
        workshop_id TEXT NOT NULL,
        name TEXT NOT NULL,
        color TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_classifications_workshop ON classifications(workshop_id)",
    """
    CREATE TABLE IF NOT EXISTS projects (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        slug TEXT UNIQUE NOT NULL,
        workshop_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        status TEXT DEFAULT 'draft',
        last_updated_ms INTEGER,
        is_pinned INTEGER DEFAULT 0,
        classification_id TEXT,
        mode TEXT DEFAULT 'research',
        unit_system TEXT DEFAULT 'mm'
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_projects_workshop ON projects(workshop_id)",
    """
    CREATE TABLE IF NOT EXISTS product_baselines (
        id TEXT PRIMARY KEY,
        project_id TEXT UNIQUE NOT NULL,
        size_run_json TEXT NOT NULL,
        last_shape TEXT,
        heel_height REAL,
        toe_spring REAL,
        measurements_json TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS upper_designs (
        id TEXT PRIMARY KEY,
        project_id TEXT UNIQUE NOT NULL,
        panels_json TEXT NOT NULL,
        stitching TEXT,
        closures_json TEXT,
        lining TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sole_designs (
        id TEXT PRIMARY KEY,
        project_id TEXT UNIQUE NOT NULL,
        outsole_material_id TEXT,
        midsole_material_id TEXT,
        tread_pattern TEXT,
        midsole_stack REAL,
        shank TEXT,
        plate TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS intelligence_threads (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        type TEXT DEFAULT 'text',
        card_data_json TEXT,
        attachments_json TEXT,
        message_id TEXT,
        timestamp_ms INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_threads_project ON intelligence_threads(project_id, timestamp_ms)",
    """
    CREATE TABLE IF NOT EXISTS canvas_items (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        type TEXT NOT NULL,
        data_json TEXT,
        x REAL NOT NULL,
        y REAL NOT NULL,
        scale REAL DEFAULT 1,
        version INTEGER DEFAULT 1
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_canvas_project ON canvas_items(project_id)",
    """
    CREATE TABLE IF NOT EXISTS versions (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        snapshot_json TEXT,
        created_at_ms INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_versions_project ON versions(project_id, created_at_ms)",
    """
    CREATE TABLE IF NOT EXISTS design_context (
        id TEXT PRIMARY KEY,
        project_id TEXT UNIQUE NOT NULL,
        footwear_type TEXT,
        gender TEXT,
        aesthetic_vibe TEXT,
        target_audience TEXT,
        color_palette_json TEXT,
        key_materials_json TEXT,
        performance_specs_json TEXT,
        summary TEXT,
        last_updated_ms INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS boms (
        id TEXT PRIMARY KEY,
        project_id TEXT UNIQUE NOT NULL,
        items_json TEXT NOT NULL,
        total_estimated_cost REAL,
        currency TEXT NOT NULL,
        last_updated_ms INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS materials (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        supplier TEXT,
        unit TEXT NOT NULL,
        price_per_unit REAL NOT NULL,
        currency TEXT NOT NULL,
        co2_per_unit REAL,
        properties_json TEXT,
        availability INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS media (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        key TEXT NOT NULL,
        url TEXT NOT NULL,
        file_name TEXT NOT NULL,
        content_type TEXT NOT NULL,
        size INTEGER,
        kind TEXT,
        uploaded_by TEXT,
        created_at_ms INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_media_project ON media(project_id, created_at_ms)",
    """
    CREATE TABLE IF NOT EXISTS site_assets (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        key TEXT NOT NULL,
        url TEXT NOT NULL,
        file_name TEXT NOT NULL,
        content_type TEXT NOT NULL,
        size INTEGER,
        created_at_ms INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_site_assets_type ON site_assets(type)",
    """
    CREATE TABLE IF NOT EXISTS image_generations (
        id TEXT PRIMARY KEY,
        tool_call_id TEXT UNIQUE NOT NULL,
        project_id TEXT,
        user_id TEXT,
        workflow_id TEXT,
        status TEXT NOT NULL,
        prompt TEXT,
        aspect_ratio TEXT,
        url TEXT,
        storage_key TEXT,
        model TEXT,
        error TEXT,
        source TEXT,
        created_at_ms INTEGER,
        completed_at_ms INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_generations_project ON image_generations(project_id, created_at_ms)",
    "CREATE INDEX IF NOT EXISTS idx_generations_workflow ON image_generations(workflow_id)",
    """
    CREATE TABLE IF NOT EXISTS credit_grants (
        id TEXT PRIMARY KEY,
        workshop_id TEXT NOT NULL,
        amount REAL NOT NULL,
        remaining REAL NOT NULL,
        starts_at_ms INTEGER NOT NULL,
        expires_at_ms INTEGER NOT NULL,
        source TEXT NOT NULL,
        ref_id TEXT,
        metadata_json TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_grants_workshop_expires ON credit_grants(workshop_id, expires_at_ms)",
    "CREATE INDEX IF NOT EXISTS idx_grants_source_ref ON credit_grants(source, ref_id)",
    """
    CREATE TABLE IF NOT EXISTS credit_redemptions (
        id TEXT PRIMARY KEY,
        workshop_id TEXT NOT NULL,
        amount REAL NOT NULL,
        usage_at_ms INTEGER NOT NULL,
        created_at_ms INTEGER NOT NULL,
        project_id TEXT,
        user_id TEXT,
        asset_type TEXT,
        description TEXT,
        idempotency_key TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_redemptions_workshop_usage ON credit_redemptions(workshop_id, usage_at_ms)",
    "CREATE INDEX IF NOT EXISTS idx_redemptions_workshop_idem ON credit_redemptions(workshop_id, idempotency_key)",
    """
    CREATE TABLE IF NOT EXISTS credit_allocations (
        id TEXT PRIMARY KEY,
        redemption_id TEXT NOT NULL,
        grant_id TEXT NOT NULL,
        amount REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS referrals (
        id TEXT PRIMARY KEY,
        referrer_id TEXT NOT NULL,
        referred_id TEXT UNIQUE NOT NULL,
        status TEXT NOT NULL,
        rewarded_for_milestone INTEGER,
        created_at_ms INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_referrals_referrer ON referrals(referrer_id)",
    """
    CREATE TABLE IF NOT EXISTS referral_stats (
        id TEXT PRIMARY KEY,
        user_id TEXT UNIQUE NOT NULL,
        total_uses INTEGER NOT NULL DEFAULT 0,
        last_milestone_reward_count INTEGER NOT NULL DEFAULT 0,
        preferred_workshop_id TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS fal_keys (
        id TEXT PRIMARY KEY,
        name TEXT UNIQUE NOT NULL,
        key TEXT NOT NULL,
        enabled INTEGER NOT NULL DEFAULT 1,
        capacity INTEGER NOT NULL,
        weight INTEGER NOT NULL,
        created_at_ms INTEGER,
        updated_at_ms INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_fal_keys_enabled ON fal_keys(enabled)",
    """
    CREATE TABLE IF NOT EXISTS fal_key_load (
        key_name TEXT PRIMARY KEY,
        active_operations INTEGER NOT NULL DEFAULT 0,
        capacity INTEGER NOT NULL,
        last_updated_ms INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS fal_health_checks (
        id TEXT PRIMARY KEY,
        status TEXT NOT NULL,
        enabled_keys INTEGER NOT NULL,
        overloaded_keys INTEGER NOT NULL,
        stale_load_entries INTEGER NOT NULL,
        notes TEXT,
        created_at_ms INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_fal_health_created ON fal_health_checks(created_at_ms)",
    """
    CREATE TABLE IF NOT EXISTS event_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        level TEXT,
        event_type TEXT,
        message TEXT,
        user_id TEXT,
        metadata_json TEXT DEFAULT '{}',
        created_at_ms INTEGER
    )
    """,
]

def init_db():
    con = db_conn()
    try:
        for stmt in SCHEMA:
            con.execute(stmt)
        con.commit()
    finally:
        con.close()
    logger.debug(f"Database ready at {config.DB_PATH}")

def log_event(level: str, event_type: str, message: str, user_id: str = None, meta: dict = None):
    """Log an event to the database"""
    con = db_conn()
    try:
        con.execute(
            "INSERT INTO event_log (level, event_type, message, user_id, metadata_json, created_at_ms) VALUES (?, ?, ?, ?, ?, ?)",
            (level, event_type, message, user_id, json_dumps(meta or {}), now_ms())
        )
        con.commit()
    except sqlite3.Error as e:
        logger.error(f"Event log write failed: {e}")
    finally:
        con.close()
