"""Live records of a run, as held in the ephemeral store."""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from specfleet.common import SlaveStatus, TaskStatus, TasksetStatus, TrialStatus

from .serialization import make_json_safe


def _key_part(value: str) -> str:
    return re.sub(r"\s+", "_", value.strip())


def taskset_key(token: str) -> str:
    return f"taskset:{token}"


def task_key(taskset: str, spec_file: str) -> str:
    return f"{taskset}:task:{spec_file}"


def trial_key(task: str, token: str) -> str:
    return f"{task}:trial:{token}"


def worker_key(worker_name: str) -> str:
    return f"worker:{_key_part(worker_name)}"


def slave_key(taskset: str, worker: str, slave_name: str) -> str:
    return f"{taskset}:slave:{worker.split(':', 1)[-1]}:{_key_part(slave_name)}"


def worker_log_key(taskset: str, worker: str) -> str:
    return f"{taskset}:worker_log:{worker.split(':', 1)[-1]}"


@dataclass
class TasksetConfig:
    rsync_name: str
    setup_command: str
    slave_command: str
    worker_type: str
    taskset_class: str
    max_workers: int
    max_trials: int


@dataclass
class Taskset:
    key: str
    rsync_name: str
    setup_command: str
    slave_command: str
    worker_type: str
    taskset_class: str
    max_workers: int
    max_trials: int
    status: TasksetStatus = TasksetStatus.PENDING
    created_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def from_config(cls, key: str, config: TasksetConfig, created_at: datetime) -> "Taskset":
        return cls(key=key, created_at=created_at, **asdict(config))

    def to_dict(self) -> Dict[str, Any]:
        return make_json_safe(asdict(self))


@dataclass
class Task:
    key: str
    taskset: str
    spec_file: str
    status: TaskStatus = TaskStatus.PENDING
    estimate_sec: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return make_json_safe(asdict(self))


@dataclass
class Trial:
    key: str
    task: str
    slave: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    status: TrialStatus = TrialStatus.RUNNING
    stdout: str = ""
    stderr: str = ""
    passed_count: Optional[int] = None
    pending_count: Optional[int] = None
    failed_count: Optional[int] = None
    stale: bool = False

    @property
    def is_finished(self) -> bool:
        return self.finished_at is not None

    def to_dict(self) -> Dict[str, Any]:
        return make_json_safe(asdict(self))


@dataclass
class Worker:
    key: str
    worker_type: str = ""
    current_taskset: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return make_json_safe(asdict(self))


@dataclass
class Slave:
    key: str
    worker: str
    taskset: Optional[str] = None
    status: SlaveStatus = SlaveStatus.IDLE
    current_trial: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return make_json_safe(asdict(self))


@dataclass
class WorkerLog:
    key: str
    worker: str
    taskset: str
    rsync_finished_at: Optional[datetime] = None
    setup_finished_at: Optional[datetime] = None
    worker_finished_at: Optional[datetime] = None
    finished: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return make_json_safe(asdict(self))


@dataclass
class TasksetSnapshot:
    """Everything the persister needs from the live store for one taskset."""

    taskset: Taskset
    log: str
    tasks: List[Task] = field(default_factory=list)
    trials: Dict[str, List[Trial]] = field(default_factory=dict)
    slaves: List[Slave] = field(default_factory=list)
    slave_logs: Dict[str, str] = field(default_factory=dict)
    slave_trials: Dict[str, List[str]] = field(default_factory=dict)
    worker_logs: List[WorkerLog] = field(default_factory=list)
    worker_log_logs: Dict[str, str] = field(default_factory=dict)
