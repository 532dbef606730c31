"""
Configuration Management
Centralized configuration with environment variables
"""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env file
load_dotenv()

# =============================================================================
# Paths
# =============================================================================
PROJECT_ROOT = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(PROJECT_ROOT / "data"))).resolve()
DB_PATH = Path(os.getenv("DB_PATH", str(DATA_DIR / "zephsole.db"))).resolve()
LOG_DIR = DATA_DIR / "logs"

LOG_DIR.mkdir(parents=True, exist_ok=True)

DEBUG = os.getenv("DEBUG", "").lower() in ("1", "true", "yes")

# =============================================================================
# Security
# =============================================================================
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "").strip()
ALLOWED_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",") if o.strip()] or ["*"]

# =============================================================================
# Redis Configuration
# =============================================================================
REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
REDIS_DB = int(os.getenv("REDIS_DB", "0"))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", "")
REDIS_URL = f"redis://:{REDIS_PASSWORD}@{REDIS_HOST}:{REDIS_PORT}/{REDIS_DB}" if REDIS_PASSWORD else f"redis://{REDIS_HOST}:{REDIS_PORT}/{REDIS_DB}"
CACHE_TTL_SECONDS = int(os.getenv("CACHE_TTL_SECONDS", "300"))

# =============================================================================
# Fal Key Pool
# =============================================================================
FAL_DEFAULT_CAPACITY = int(os.getenv("FAL_DEFAULT_CAPACITY", "8"))
FAL_STALE_AFTER_MS = int(os.getenv("FAL_STALE_AFTER_MS", str(60 * 60 * 1000)))  # 1 hour
FAL_MIN_STALE_AFTER_MS = 60 * 1000
FAL_MAINTENANCE_AUTOSTART = os.getenv("FAL_MAINTENANCE_AUTOSTART", "true").lower() == "true"
FAL_MODELS_URL = os.getenv("FAL_MODELS_URL", "https://fal.run/models")
FAL_QUEUE_URL = os.getenv("FAL_QUEUE_URL", "https://queue.fal.run").rstrip("/")

# =============================================================================
# Object Storage (R2)
# =============================================================================
R2_PUBLIC_URL = os.getenv("R2_PUBLIC_URL", "")

# =============================================================================
# Timeouts
# =============================================================================
REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", "120"))
FAL_TEST_TIMEOUT = float(os.getenv("FAL_TEST_TIMEOUT", "10"))

# =============================================================================
# Constants
# =============================================================================
DAY_MS = 24 * 60 * 60 * 1000
HOUR_MS = 60 * 60 * 1000
MINUTE_MS = 60 * 1000


def required_env(name: str) -> str:
    """Read a variable that must be set at call time"""
    value = os.getenv(name)
    if not value:
        raise RuntimeError(f"Missing environment variable: {name}")
    return value


# Workshop member roles
class WorkshopRole:
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


# Image generation statuses
class GenerationStatus:
    GENERATING = "generating"
    COMPLETED = "completed"
    ERROR = "error"
