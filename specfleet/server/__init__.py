"""Live coordination services: queue, workers and notifications."""

from .live_store import LiveStateStore
from .notificator import Notificator
from .retry_policy import RetryDecision, RetryPolicy
from .task_queue import TaskQueueService
from .worker_registry import WorkerRegistry

__all__ = [
    "LiveStateStore",
    "Notificator",
    "RetryDecision",
    "RetryPolicy",
    "TaskQueueService",
    "WorkerRegistry",
]
