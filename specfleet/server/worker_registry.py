"""Worker, slave and worker-log bookkeeping."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from specfleet.common import SlaveStatus
from specfleet.errors import NotFoundError, ValidationError
from specfleet.schema import Slave, Worker, WorkerLog
from specfleet.schema.records import slave_key, worker_key, worker_log_key
from specfleet.schema.serialization import format_time, parse_time, utc_now
from specfleet.server.live_store import LiveStateStore

logger = logging.getLogger(__name__)


class WorkerRegistry:
    """Tracks which taskset each worker serves and which trial each slave runs."""

    def __init__(self, store: LiveStateStore):
        self.store = store
        self.workers: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def _require_worker(self, key: str) -> Worker:
        worker = await self.store.get_worker(key)
        if worker is None:
            raise NotFoundError(f"Unknown worker '{key}'")
        return worker

    async def _require_slave(self, key: str) -> Slave:
        slave = await self.store.get_slave(key)
        if slave is None:
            raise NotFoundError(f"Unknown slave '{key}'")
        return slave

    async def _require_worker_log(self, key: str) -> WorkerLog:
        worker_log = await self.store.get_worker_log(key)
        if worker_log is None:
            raise NotFoundError(f"Unknown worker log '{key}'")
        return worker_log

    async def _taskset_for(self, worker: Worker, taskset: Optional[str]) -> str:
        taskset = taskset or worker.current_taskset
        if not taskset:
            raise ValidationError(f"Worker {worker.key} is not assigned to a taskset")
        if await self.store.get_taskset(taskset) is None:
            raise NotFoundError(f"Unknown taskset '{taskset}'")
        return taskset

    # Workers

    async def register_worker(self, worker_name: str, worker_type: str) -> str:
        if not worker_name or not worker_name.strip():
            raise ValidationError("worker_name must not be empty")
        key = worker_key(worker_name)
        existing = await self.store.get_worker(key)
        worker = Worker(
            key=key,
            worker_type=worker_type,
            current_taskset=existing.current_taskset if existing else None,
        )
        await self.store.save_worker(worker)
        async with self._lock:
            self.workers[key] = {
                "worker_type": worker_type,
                "current_taskset": worker.current_taskset,
                "registered_at": format_time(utc_now()),
            }
        logger.info(f"Worker {key} registered (type {worker_type})")
        return key

    async def unregister_worker(self, worker: str) -> None:
        await self.store.delete_worker(worker)
        async with self._lock:
            self.workers.pop(worker, None)
        logger.info(f"Worker {worker} left")

    async def current_taskset(self, worker: str, taskset: Optional[str]) -> None:
        """Bind the worker to ``taskset``, or detach it with ``None``."""
        record = await self._require_worker(worker)
        if taskset and await self.store.get_taskset(taskset) is None:
            raise NotFoundError(f"Unknown taskset '{taskset}'")
        record.current_taskset = taskset or None
        await self.store.save_worker(record)
        async with self._lock:
            if worker in self.workers:
                self.workers[worker]["current_taskset"] = record.current_taskset

    async def get_workers_status(self) -> Dict[str, Any]:
        async with self._lock:
            return {key: dict(info) for key, info in self.workers.items()}

    # Worker logs

    async def create_worker_log(self, worker: str, taskset: Optional[str] = None) -> str:
        record = await self._require_worker(worker)
        taskset = await self._taskset_for(record, taskset)
        key = worker_log_key(taskset, worker)
        if await self.store.get_worker_log(key) is None:
            await self.store.save_worker_log(WorkerLog(key=key, worker=worker, taskset=taskset))
        return key

    async def append_worker_log_log(self, worker_log: str, log: str) -> None:
        await self._require_worker_log(worker_log)
        await self.store.append_worker_log_log(worker_log, log)

    async def set_rsync_finished_time(self, worker_log: str, finished_at: Optional[datetime] = None) -> None:
        await self._require_worker_log(worker_log)
        await self.store.update_worker_log(worker_log, rsync_finished_at=parse_time(finished_at) or utc_now())

    async def set_setup_finished_time(self, worker_log: str, finished_at: Optional[datetime] = None) -> None:
        await self._require_worker_log(worker_log)
        await self.store.update_worker_log(worker_log, setup_finished_at=parse_time(finished_at) or utc_now())

    async def set_worker_finished_time(self, worker_log: str, finished_at: Optional[datetime] = None) -> None:
        await self._require_worker_log(worker_log)
        await self.store.update_worker_log(worker_log, worker_finished_at=parse_time(finished_at) or utc_now())

    async def finish_worker_log(self, worker_log: str) -> None:
        await self._require_worker_log(worker_log)
        await self.store.update_worker_log(worker_log, finished=True)

    # Slaves

    async def create_slave(self, worker: str, slave_name: str, taskset: Optional[str] = None) -> str:
        record = await self._require_worker(worker)
        taskset = await self._taskset_for(record, taskset)
        key = slave_key(taskset, worker, slave_name)
        await self.store.save_slave(Slave(key=key, worker=worker, taskset=taskset))
        logger.info(f"Slave {key} created for {taskset}")
        return key

    async def append_slave_log(self, slave: str, log: str) -> None:
        await self._require_slave(slave)
        await self.store.append_slave_log(slave, log)

    async def current_trial(self, slave: str, trial: Optional[str]) -> None:
        """Bind the slave to the trial it runs, or mark it idle with ``None``."""
        await self._require_slave(slave)
        if trial and await self.store.get_trial(trial) is None:
            raise NotFoundError(f"Unknown trial '{trial}'")
        await self.store.update_slave(
            slave,
            current_trial=trial,
            status=SlaveStatus.RUNNING if trial else SlaveStatus.IDLE,
        )

    async def finish_slave(self, slave: str) -> None:
        await self._require_slave(slave)
        await self.store.update_slave(slave, current_trial=None, status=SlaveStatus.FINISHED)
