"""Shared schema models for SpecFleet."""

from .records import (
    Slave,
    Task,
    Taskset,
    TasksetConfig,
    TasksetSnapshot,
    Trial,
    Worker,
    WorkerLog,
)

__all__ = [
    "Slave",
    "Task",
    "Taskset",
    "TasksetConfig",
    "TasksetSnapshot",
    "Trial",
    "Worker",
    "WorkerLog",
]
