"""
In-process interval jobs for fal pool maintenance
"""
import asyncio
from typing import Any, Dict, List, Optional

from fastapi import HTTPException

from zephsole.config import HOUR_MS, MINUTE_MS
from zephsole.database import db_conn, log_event, now_ms
from zephsole.fal_health import run_fal_maintenance
from zephsole.logger import get_logger

logger = get_logger(__name__)

FAL_CRON_PREFIX = "fal-"

FAL_CRON_JOBS = [
    {
        "name": "fal-maintenance-15m",
        "interval_ms": 15 * MINUTE_MS,
        "args": {"note": "cron_15m_maintenance", "stale_after_ms": HOUR_MS},
    },
    {
        "name": "fal-health-hourly",
        "interval_ms": HOUR_MS,
        "args": {"note": "cron_hourly_health_snapshot", "stale_after_ms": HOUR_MS},
    },
]


def run_maintenance_job(args: Dict[str, Any]) -> Dict[str, Any]:
    con = db_conn()
    try:
        return run_fal_maintenance(con, args.get("stale_after_ms"), args.get("note"))
    finally:
        con.close()


class MaintenanceScheduler:
    """Named interval jobs, each backed by one asyncio task"""

    def __init__(self):
        self._jobs: Dict[str, Dict[str, Any]] = {}

    async def _loop(self, name: str, interval_ms: int, args: Dict[str, Any]):
        while True:
            await asyncio.sleep(interval_ms / 1000)
            try:
                result = run_maintenance_job(args)
                self._jobs[name]["last_run_ms"] = now_ms()
                self._jobs[name]["last_status"] = result["status"]
            except Exception as e:
                logger.exception(f"Scheduled job {name} failed: {e}")
                log_event("error", "cron_failed", f"{name}: {e}")

    def get(self, name: str) -> Optional[Dict[str, Any]]:
        return self._jobs.get(name)

    def register(self, name: str, interval_ms: int, args: Dict[str, Any]):
        self.delete(name)
        task = asyncio.get_running_loop().create_task(self._loop(name, interval_ms, args))
        self._jobs[name] = {
            "task": task,
            "interval_ms": interval_ms,
            "args": args,
            "registered_at_ms": now_ms(),
            "last_run_ms": None,
            "last_status": None,
        }
        logger.info(f"Registered job {name} every {interval_ms // 1000}s")

    def delete(self, name: str) -> bool:
        job = self._jobs.pop(name, None)
        if not job:
            return False
        job["task"].cancel()
        return True

    def list(self) -> List[Dict[str, Any]]:
        return [
            {key: value for key, value in {"name": name, **job}.items() if key != "task"}
            for name, job in sorted(self._jobs.items())
        ]

    def shutdown(self):
        for name in list(self._jobs):
            self.delete(name)


scheduler = MaintenanceScheduler()


def ensure_fal_crons() -> Dict[str, Any]:
    for job in FAL_CRON_JOBS:
        scheduler.register(job["name"], job["interval_ms"], dict(job["args"]))
    return {"success": True, "jobs": [job["name"] for job in FAL_CRON_JOBS]}


def list_fal_crons() -> List[Dict[str, Any]]:
    return [job for job in scheduler.list() if job["name"].startswith(FAL_CRON_PREFIX)]


def remove_fal_cron(name: str) -> Dict[str, Any]:
    if not name.startswith(FAL_CRON_PREFIX):
        raise HTTPException(400, "INVALID_CRON_NAME")
    scheduler.delete(name)
    return {"success": True}
