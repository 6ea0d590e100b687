"""Common types and enums shared across modules."""

from enum import Enum


class TasksetStatus(str, Enum):
    """Taskset status enumeration."""

    PENDING = "pending"
    RUNNING = "running"
    FINISHED = "finished"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TasksetStatus.FINISHED, TasksetStatus.FAILED)


class TaskStatus(str, Enum):
    """Task status enumeration."""

    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.PASSED, TaskStatus.FAILED)


class TrialStatus(str, Enum):
    """Trial status enumeration."""

    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"


class SlaveStatus(str, Enum):
    """Slave status enumeration."""

    IDLE = "idle"
    RUNNING = "running"
    FINISHED = "finished"


class RetryOrdering(str, Enum):
    """Where a retried task goes back into the pending queue."""

    FRONT = "front"
    BACK = "back"


class EventType(str, Enum):
    """Lifecycle events published by the notificator."""

    TASKSET_CREATED = "taskset_created"
    TASK_DEQUEUED = "task_dequeued"
    TRIAL_STARTED = "trial_started"
    TRIAL_FINISHED = "trial_finished"
    TASKSET_FINISHED = "taskset_finished"
    TASKSET_FAILED = "taskset_failed"


class ErrorCode(str, Enum):
    """Error code enumeration for different error types."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    INVALID_STATE = "INVALID_STATE"
    IO_FAILURE = "IO_FAILURE"
    STALE_TRIAL_IGNORED = "STALE_TRIAL_IGNORED"
    FATAL_TASKSET_FAILURE = "FATAL_TASKSET_FAILURE"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
