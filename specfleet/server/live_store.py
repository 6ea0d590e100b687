"""Redis-backed live state for in-flight tasksets.

Every key handed to this store is a prefix-free entity key (``taskset:...``,
``taskset:...:task:spec/a_spec.rb`` and so on); the configured Redis key
prefix is applied here only. The store has no locking of its own: callers
that need a consistent read-modify-write hold the per-taskset lock of the
task queue service.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Type, TypeVar

import redis.asyncio as redis

from specfleet.common import TaskStatus
from specfleet.config import settings
from specfleet.schema import (
    Slave,
    Task,
    Taskset,
    TasksetSnapshot,
    Trial,
    Worker,
    WorkerLog,
)
from specfleet.schema.serialization import (
    decode,
    from_redis_mapping,
    to_redis_mapping,
    to_redis_values,
)

logger = logging.getLogger(__name__)

R = TypeVar("R")


class LiveStateStore:
    """Queue, status and log text of live tasksets."""

    def __init__(self, redis_client: redis.Redis, key_prefix: Optional[str] = None):
        self.redis = redis_client
        self.key_prefix = key_prefix if key_prefix is not None else settings.redis_key_prefix

    def _k(self, key: str, suffix: Optional[str] = None) -> str:
        full = f"{self.key_prefix}:{key}" if self.key_prefix else key
        return f"{full}:{suffix}" if suffix else full

    async def _load(self, cls: Type[R], key: str) -> Optional[R]:
        data = await self.redis.hgetall(self._k(key))
        if not data:
            return None
        return from_redis_mapping(cls, key, data)

    async def _load_many(self, cls: Type[R], keys: Iterable[str]) -> List[R]:
        keys = list(keys)
        if not keys:
            return []
        async with self.redis.pipeline(transaction=False) as pipe:
            for key in keys:
                pipe.hgetall(self._k(key))
            rows = await pipe.execute()
        return [from_redis_mapping(cls, key, data) for key, data in zip(keys, rows) if data]

    async def _list(self, key: str, suffix: str) -> List[str]:
        return [decode(v) for v in await self.redis.lrange(self._k(key, suffix), 0, -1)]

    async def _members(self, key: str, suffix: str) -> List[str]:
        return sorted(decode(v) for v in await self.redis.smembers(self._k(key, suffix)))

    async def _text(self, key: str) -> str:
        value = await self.redis.get(self._k(key, "log"))
        return decode(value) or ""

    # Taskset

    async def create_taskset(self, taskset: Taskset, tasks: List[Task]) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._k(taskset.key), mapping=to_redis_mapping(taskset))
            for task in tasks:
                pipe.hset(self._k(task.key), mapping=to_redis_mapping(task))
            task_keys = [task.key for task in tasks]
            pipe.rpush(self._k(taskset.key, "tasks"), *task_keys)
            pipe.rpush(self._k(taskset.key, "queue"), *task_keys)
            pipe.sadd(self._k(taskset.key, "tasks_left"), *task_keys)
            await pipe.execute()

    async def get_taskset(self, key: str) -> Optional[Taskset]:
        return await self._load(Taskset, key)

    async def update_taskset(self, key: str, **fields) -> None:
        await self.redis.hset(self._k(key), mapping=to_redis_values(fields))

    async def append_taskset_log(self, key: str, text: str) -> None:
        await self.redis.append(self._k(key, "log"), text)

    async def get_taskset_log(self, key: str) -> str:
        return await self._text(key)

    # Tasks

    async def get_task(self, key: str) -> Optional[Task]:
        return await self._load(Task, key)

    async def get_tasks(self, keys: Iterable[str]) -> List[Task]:
        return await self._load_many(Task, keys)

    async def list_task_keys(self, taskset: str) -> List[str]:
        return await self._list(taskset, "tasks")

    async def set_task_status(self, task: Task, status: TaskStatus) -> None:
        task.status = status
        await self.redis.hset(self._k(task.key), "status", status.value)
        if status.is_terminal:
            await self.redis.srem(self._k(task.taskset, "tasks_left"), task.key)

    async def count_tasks_left(self, taskset: str) -> int:
        return await self.redis.scard(self._k(taskset, "tasks_left"))

    # Pending queue; the head is the left end.

    async def pop_queue_head(self, taskset: str) -> Optional[str]:
        return decode(await self.redis.lpop(self._k(taskset, "queue")))

    async def push_queue_front(self, taskset: str, task: str) -> None:
        await self.redis.lpush(self._k(taskset, "queue"), task)

    async def push_queue_back(self, taskset: str, task: str) -> None:
        await self.redis.rpush(self._k(taskset, "queue"), task)

    async def is_queued(self, taskset: str, task: str) -> bool:
        return await self.redis.lpos(self._k(taskset, "queue"), task) is not None

    async def queue_length(self, taskset: str) -> int:
        return await self.redis.llen(self._k(taskset, "queue"))

    async def queued_task_keys(self, taskset: str) -> List[str]:
        return await self._list(taskset, "queue")

    # Trials

    async def create_trial(self, taskset: str, trial: Trial) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._k(trial.key), mapping=to_redis_mapping(trial))
            pipe.rpush(self._k(trial.task, "trials"), trial.key)
            pipe.sadd(self._k(taskset, "running_trials"), trial.key)
            if trial.slave:
                pipe.rpush(self._k(trial.slave, "trials"), trial.key)
            await pipe.execute()

    async def get_trial(self, key: str) -> Optional[Trial]:
        return await self._load(Trial, key)

    async def get_trials(self, keys: Iterable[str]) -> List[Trial]:
        return await self._load_many(Trial, keys)

    async def list_trial_keys(self, task: str) -> List[str]:
        return await self._list(task, "trials")

    async def save_finished_trial(self, taskset: str, trial: Trial) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._k(trial.key), mapping=to_redis_mapping(trial))
            pipe.srem(self._k(taskset, "running_trials"), trial.key)
            await pipe.execute()

    async def count_running_trials(self, taskset: str) -> int:
        return await self.redis.scard(self._k(taskset, "running_trials"))

    # Workers

    async def save_worker(self, worker: Worker) -> None:
        await self.redis.hset(self._k(worker.key), mapping=to_redis_mapping(worker, exclude=()))

    async def get_worker(self, key: str) -> Optional[Worker]:
        return await self._load(Worker, key)

    async def delete_worker(self, key: str) -> None:
        await self.redis.delete(self._k(key))

    # Slaves

    async def save_slave(self, slave: Slave) -> None:
        await self.redis.hset(self._k(slave.key), mapping=to_redis_mapping(slave))
        if slave.taskset:
            await self.redis.sadd(self._k(slave.taskset, "slaves"), slave.key)

    async def get_slave(self, key: str) -> Optional[Slave]:
        return await self._load(Slave, key)

    async def get_slaves(self, keys: Iterable[str]) -> List[Slave]:
        return await self._load_many(Slave, keys)

    async def update_slave(self, key: str, **fields) -> None:
        await self.redis.hset(self._k(key), mapping=to_redis_values(fields))

    async def append_slave_log(self, key: str, text: str) -> None:
        await self.redis.append(self._k(key, "log"), text)

    async def get_slave_log(self, key: str) -> str:
        return await self._text(key)

    async def list_slave_trial_keys(self, key: str) -> List[str]:
        return await self._list(key, "trials")

    async def list_slave_keys(self, taskset: str) -> List[str]:
        return await self._members(taskset, "slaves")

    # Worker logs

    async def save_worker_log(self, worker_log: WorkerLog) -> None:
        await self.redis.hset(self._k(worker_log.key), mapping=to_redis_mapping(worker_log))
        await self.redis.sadd(self._k(worker_log.taskset, "worker_logs"), worker_log.key)

    async def get_worker_log(self, key: str) -> Optional[WorkerLog]:
        return await self._load(WorkerLog, key)

    async def get_worker_logs(self, keys: Iterable[str]) -> List[WorkerLog]:
        return await self._load_many(WorkerLog, keys)

    async def update_worker_log(self, key: str, **fields) -> None:
        await self.redis.hset(self._k(key), mapping=to_redis_values(fields))

    async def append_worker_log_log(self, key: str, text: str) -> None:
        await self.redis.append(self._k(key, "log"), text)

    async def get_worker_log_log(self, key: str) -> str:
        return await self._text(key)

    async def list_worker_log_keys(self, taskset: str) -> List[str]:
        return await self._members(taskset, "worker_logs")

    # Estimates, keyed by taskset class and spec file

    async def get_estimates(self, taskset_class: str) -> Dict[str, float]:
        data = await self.redis.hgetall(self._k(f"estimate_sec:{taskset_class}"))
        return {decode(k): float(decode(v)) for k, v in data.items()}

    async def set_estimates(self, taskset_class: str, estimates: Dict[str, float]) -> None:
        if not estimates:
            return
        await self.redis.hset(
            self._k(f"estimate_sec:{taskset_class}"),
            mapping={spec: str(sec) for spec, sec in estimates.items()},
        )

    # Whole-taskset views

    async def load_snapshot(self, key: str) -> Optional[TasksetSnapshot]:
        taskset = await self.get_taskset(key)
        if taskset is None:
            return None

        snapshot = TasksetSnapshot(taskset=taskset, log=await self.get_taskset_log(key))
        snapshot.tasks = await self.get_tasks(await self.list_task_keys(key))
        for task in snapshot.tasks:
            snapshot.trials[task.key] = await self.get_trials(await self.list_trial_keys(task.key))

        snapshot.slaves = await self.get_slaves(await self.list_slave_keys(key))
        for slave in snapshot.slaves:
            snapshot.slave_logs[slave.key] = await self.get_slave_log(slave.key)
            snapshot.slave_trials[slave.key] = await self.list_slave_trial_keys(slave.key)

        snapshot.worker_logs = await self.get_worker_logs(await self.list_worker_log_keys(key))
        for worker_log in snapshot.worker_logs:
            snapshot.worker_log_logs[worker_log.key] = await self.get_worker_log_log(worker_log.key)
        return snapshot

    async def expire_taskset(self, key: str, ttl_sec: int) -> None:
        """Let every live key belonging to the taskset expire after ``ttl_sec``."""
        suffixes = ("log", "tasks", "queue", "tasks_left", "running_trials", "slaves", "worker_logs")
        redis_keys = [self._k(key)] + [self._k(key, suffix) for suffix in suffixes]
        for task in await self.list_task_keys(key):
            redis_keys += [self._k(task), self._k(task, "trials")]
            redis_keys += [self._k(trial) for trial in await self.list_trial_keys(task)]
        for slave in await self.list_slave_keys(key):
            redis_keys += [self._k(slave), self._k(slave, "log"), self._k(slave, "trials")]
        for worker_log in await self.list_worker_log_keys(key):
            redis_keys += [self._k(worker_log), self._k(worker_log, "log")]

        async with self.redis.pipeline(transaction=False) as pipe:
            for redis_key in redis_keys:
                pipe.expire(redis_key, ttl_sec)
            await pipe.execute()
        logger.info(f"Live state of {key} expires in {ttl_sec}s ({len(redis_keys)} keys)")

