"""SpecFleet: distributed spec-file runs with bounded retries."""

from .common import EventType, RetryOrdering, SlaveStatus, TaskStatus, TasksetStatus, TrialStatus
from .errors import InvalidStateError, IOFailure, NotFoundError, SpecFleetError, ValidationError
from .persistence import DurableStore, PersistenceService, Persister
from .server import LiveStateStore, Notificator, RetryPolicy, TaskQueueService, WorkerRegistry

__version__ = "1.0.0"

__all__ = [
    "DurableStore",
    "EventType",
    "InvalidStateError",
    "IOFailure",
    "LiveStateStore",
    "NotFoundError",
    "Notificator",
    "PersistenceService",
    "Persister",
    "RetryOrdering",
    "RetryPolicy",
    "SlaveStatus",
    "SpecFleetError",
    "TaskQueueService",
    "TaskStatus",
    "TasksetStatus",
    "TrialStatus",
    "ValidationError",
    "WorkerRegistry",
]
