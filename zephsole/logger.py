"""
Zephsole logging
Loguru sinks for the API: console, app and error logs, and a fal.log
stream for key pool admission and failover
"""
import sys
from loguru import logger
from zephsole.config import LOG_DIR, DEBUG

# Remove default handler
logger.remove()

# Console handler - colored, readable format
logger.add(
    sys.stdout,
    colorize=True,
    format="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | <level>{message}</level>",
    level="DEBUG" if DEBUG else "INFO",
    backtrace=True,
    diagnose=DEBUG
)

# App log - every module, full detail
logger.add(
    LOG_DIR / "app.log",
    rotation="100 MB",
    retention="30 days",
    compression="zip",
    format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message}",
    level="DEBUG",
    backtrace=True,
    diagnose=False
)

# Error log - route failures and upstream fal errors
logger.add(
    LOG_DIR / "error.log",
    rotation="50 MB",
    retention="90 days",
    compression="zip",
    format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message} | {extra}",
    level="ERROR",
    backtrace=True,
    diagnose=False
)

# Key pool log - only records bound with a key_name
logger.add(
    LOG_DIR / "fal.log",
    rotation="100 MB",
    retention="30 days",
    compression="zip",
    format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[key_name]} | {message}",
    filter=lambda record: "key_name" in record["extra"],
    level="DEBUG" if DEBUG else "INFO"
)

def get_logger(name: str):
    """Get a logger instance with context"""
    return logger.bind(module=name)

def get_key_logger(key_name: str):
    """Logger whose records also land in fal.log"""
    return logger.bind(module="fal_pool", key_name=key_name)

# Export main logger
__all__ = ["logger", "get_logger", "get_key_logger"]
