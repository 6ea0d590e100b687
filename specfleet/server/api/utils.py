"""Utility functions for the SpecFleet API server."""

import logging
import time
from datetime import datetime
from typing import Any, Dict

import psutil

logger = logging.getLogger(__name__)

_STARTED = time.monotonic()


def format_timestamp(dt: datetime) -> str:
    return dt.isoformat() + "Z"


def get_memory_usage() -> Dict[str, Any]:
    """Host load of the coordinator process, reported by /health."""
    try:
        memory = psutil.virtual_memory()
        process = psutil.Process()
        return {
            "cpu_percent": psutil.cpu_percent(interval=None),
            "memory_percent": memory.percent,
            "memory_available": f"{memory.available / (1024**3):.1f}GB",
            "memory_total": f"{memory.total / (1024**3):.1f}GB",
            "process_rss": f"{process.memory_info().rss / (1024**2):.1f}MB",
        }
    except psutil.Error as exc:
        logger.error(f"Error reading memory usage: {exc}")
        return {"error": str(exc)}


def get_uptime() -> float:
    return time.monotonic() - _STARTED
