"""Durable snapshot of a closed taskset."""

from typing import Any, Dict, Optional

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from .database import Base


def _time(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _ref(row) -> Optional[Dict[str, str]]:
    return {"key": row.key} if row is not None else None


class Taskset(Base):
    __tablename__ = "tasksets"

    id = Column(Integer, primary_key=True)
    key = Column(String(255), unique=True, nullable=False, index=True)
    rsync_name = Column(String(255))
    setup_command = Column(Text)
    slave_command = Column(Text)
    worker_type = Column(String(255))
    taskset_class = Column(String(255), index=True)
    max_workers = Column(Integer)
    max_trials = Column(Integer)
    status = Column(String(32))
    created_at = Column(DateTime)
    finished_at = Column(DateTime)
    log = Column(Text)
    log_path = Column(String(512))  # set when the log lives in a file

    tasks = relationship("Task", back_populates="taskset", cascade="all, delete-orphan", order_by="Task.id")
    slaves = relationship("Slave", back_populates="taskset", cascade="all, delete-orphan", order_by="Slave.key")
    worker_logs = relationship(
        "WorkerLog", back_populates="taskset", cascade="all, delete-orphan", order_by="WorkerLog.key"
    )

    def as_short_json(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "rsync_name": self.rsync_name,
            "setup_command": self.setup_command,
            "slave_command": self.slave_command,
            "worker_type": self.worker_type,
            "taskset_class": self.taskset_class,
            "max_workers": self.max_workers,
            "max_trials": self.max_trials,
            "status": self.status,
            "created_at": _time(self.created_at),
            "finished_at": _time(self.finished_at),
            "log": self.log,
            "log_path": self.log_path,
        }

    def as_full_json(self) -> Dict[str, Any]:
        data = self.as_short_json()
        data["tasks"] = [task.as_full_json() for task in self.tasks]
        data["slaves"] = [slave.as_short_json() for slave in self.slaves]
        data["worker_logs"] = [worker_log.as_short_json() for worker_log in self.worker_logs]
        return data


class Task(Base):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True)
    key = Column(String(1024), nullable=False)
    taskset_id = Column(Integer, ForeignKey("tasksets.id"), nullable=False, index=True)
    spec_file = Column(String(1024), nullable=False, index=True)
    status = Column(String(32))
    estimate_sec = Column(Float)

    taskset = relationship("Taskset", back_populates="tasks")
    trials = relationship("Trial", back_populates="task", cascade="all, delete-orphan", order_by="Trial.id")

    def as_short_json(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "taskset": _ref(self.taskset),
            "spec_file": self.spec_file,
            "status": self.status,
            "estimate_sec": self.estimate_sec,
            "trials": [_ref(trial) for trial in self.trials],
        }

    def as_full_json(self) -> Dict[str, Any]:
        data = self.as_short_json()
        data["trials"] = [trial.as_short_json() for trial in self.trials]
        return data


class Trial(Base):
    __tablename__ = "trials"

    id = Column(Integer, primary_key=True)
    key = Column(String(1024), nullable=False)
    task_id = Column(Integer, ForeignKey("tasks.id"), nullable=False, index=True)
    slave_id = Column(Integer, ForeignKey("slaves.id"), index=True)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    status = Column(String(32))
    stdout = Column(Text)
    stdout_path = Column(String(1024))
    stderr = Column(Text)
    stderr_path = Column(String(1024))
    passed_count = Column(Integer)
    pending_count = Column(Integer)
    failed_count = Column(Integer)

    task = relationship("Task", back_populates="trials")
    slave = relationship("Slave", back_populates="trials")

    def as_short_json(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "task": _ref(self.task),
            "slave": _ref(self.slave),
            "started_at": _time(self.started_at),
            "finished_at": _time(self.finished_at),
            "status": self.status,
            "stdout": self.stdout,
            "stdout_path": self.stdout_path,
            "stderr": self.stderr,
            "stderr_path": self.stderr_path,
            "passed_count": self.passed_count,
            "pending_count": self.pending_count,
            "failed_count": self.failed_count,
        }


class Slave(Base):
    __tablename__ = "slaves"

    id = Column(Integer, primary_key=True)
    key = Column(String(1024), nullable=False)
    taskset_id = Column(Integer, ForeignKey("tasksets.id"), nullable=False, index=True)
    worker = Column(String(255))
    status = Column(String(32))
    log = Column(Text)
    log_path = Column(String(1024))

    taskset = relationship("Taskset", back_populates="slaves")
    trials = relationship("Trial", back_populates="slave", order_by="Trial.id")

    def as_short_json(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "worker": self.worker,
            "status": self.status,
            "log": self.log,
            "log_path": self.log_path,
            "trials": [_ref(trial) for trial in self.trials],
        }


class WorkerLog(Base):
    __tablename__ = "worker_logs"

    id = Column(Integer, primary_key=True)
    key = Column(String(1024), nullable=False)
    taskset_id = Column(Integer, ForeignKey("tasksets.id"), nullable=False, index=True)
    worker = Column(String(255))
    rsync_finished_at = Column(DateTime)
    setup_finished_at = Column(DateTime)
    worker_finished_at = Column(DateTime)
    finished = Column(Boolean, default=False)
    log = Column(Text)
    log_path = Column(String(1024))

    taskset = relationship("Taskset", back_populates="worker_logs")

    def as_short_json(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "worker": self.worker,
            "taskset": _ref(self.taskset),
            "rsync_finished_at": _time(self.rsync_finished_at),
            "setup_finished_at": _time(self.setup_finished_at),
            "worker_finished_at": _time(self.worker_finished_at),
            "finished": bool(self.finished),
            "log": self.log,
            "log_path": self.log_path,
        }
