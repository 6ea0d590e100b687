"""Taskset queue and retry state machine.

Workers pull work: ``dequeue_task`` hands out the queue head, ``create_trial``
and ``finish_trial`` record one attempt, and the result either retires the
task or puts it back for another attempt. Every mutation of a taskset's queue
or statuses runs under that taskset's lock; notifications are published only
after the lock is released.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from specfleet.common import (
    ErrorCode,
    EventType,
    SlaveStatus,
    TaskStatus,
    TasksetStatus,
    TrialStatus,
)
from specfleet.errors import InvalidStateError, NotFoundError, ValidationError
from specfleet.schema import Task, Taskset, TasksetConfig, Trial
from specfleet.schema.records import task_key, taskset_key, trial_key
from specfleet.schema.serialization import parse_time, utc_now
from specfleet.server.live_store import LiveStateStore
from specfleet.server.notificator import Notificator
from specfleet.server.retry_policy import RetryPolicy

logger = logging.getLogger(__name__)

TasksetClosedCallback = Callable[[str], Awaitable[Any]]


class TasksetRequest(BaseModel):
    """Validated arguments of ``create_taskset``."""

    rsync_name: str = Field(..., min_length=1)
    setup_command: str
    slave_command: str
    worker_type: str = Field(..., min_length=1)
    taskset_class: str = Field(..., min_length=1)
    max_workers: int = Field(..., gt=0)
    max_trials: int = Field(..., gt=0)
    tasks: List[str] = Field(..., min_length=1)

    @field_validator("tasks")
    @classmethod
    def validate_tasks(cls, v):
        if any(not spec_file or not spec_file.strip() for spec_file in v):
            raise ValueError("spec file paths must not be empty")
        if len(set(v)) != len(v):
            raise ValueError("spec file paths must be unique within a taskset")
        return v

    def config(self) -> TasksetConfig:
        return TasksetConfig(**self.model_dump(exclude={"tasks"}))


class TaskQueueService:
    """Manages taskset queues, trials and the retry discipline."""

    def __init__(
        self,
        store: LiveStateStore,
        notificator: Notificator,
        retry_policy: Optional[RetryPolicy] = None,
        on_taskset_closed: Optional[TasksetClosedCallback] = None,
    ):
        self.store = store
        self.notificator = notificator
        self.retry_policy = retry_policy or RetryPolicy()
        self.on_taskset_closed = on_taskset_closed
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._background_tasks: set[asyncio.Task] = set()

    def _lock(self, taskset: str) -> asyncio.Lock:
        return self._locks[taskset]

    def release_lock(self, taskset: str) -> None:
        """Forget the lock of an archived taskset."""
        lock = self._locks.get(taskset)
        if lock is not None and not lock.locked():
            del self._locks[taskset]

    async def _require_taskset(self, key: str) -> Taskset:
        taskset = await self.store.get_taskset(key)
        if taskset is None:
            raise NotFoundError(f"Unknown taskset '{key}'")
        return taskset

    async def _require_task(self, key: str) -> Task:
        task = await self.store.get_task(key)
        if task is None:
            raise NotFoundError(f"Unknown task '{key}'")
        return task

    async def _require_trial(self, key: str) -> Trial:
        trial = await self.store.get_trial(key)
        if trial is None:
            raise NotFoundError(f"Unknown trial '{key}'")
        return trial

    async def create_taskset(
        self,
        rsync_name: str,
        setup_command: str,
        slave_command: str,
        worker_type: str,
        taskset_class: str,
        max_workers: int,
        max_trials: int,
        tasks: Sequence[str],
    ) -> str:
        try:
            request = TasksetRequest(
                rsync_name=rsync_name,
                setup_command=setup_command,
                slave_command=slave_command,
                worker_type=worker_type,
                taskset_class=taskset_class,
                max_workers=max_workers,
                max_trials=max_trials,
                tasks=list(tasks),
            )
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid taskset: {exc.errors(include_url=False)}") from exc

        key = taskset_key(uuid.uuid4().hex)
        estimates = await self.store.get_estimates(request.taskset_class)
        taskset = Taskset.from_config(key, request.config(), created_at=utc_now())
        task_records = [
            Task(
                key=task_key(key, spec_file),
                taskset=key,
                spec_file=spec_file,
                estimate_sec=estimates.get(spec_file),
            )
            for spec_file in request.tasks
        ]
        await self.store.create_taskset(taskset, task_records)
        logger.info(f"Taskset {key} created with {len(task_records)} tasks (class {taskset_class})")

        self.notificator.publish(EventType.TASKSET_CREATED, key, {"tasks": len(task_records)})
        return key

    async def dequeue_task(self, taskset: str) -> Optional[str]:
        """Pop the queue head; ``None`` means there is no work right now."""
        async with self._lock(taskset):
            record = await self._require_taskset(taskset)
            if record.status.is_terminal:
                return None
            key = await self.store.pop_queue_head(taskset)
            if key is None:
                return None
            if record.status == TasksetStatus.PENDING:
                await self.store.update_taskset(taskset, status=TasksetStatus.RUNNING)

        self.notificator.publish(EventType.TASK_DEQUEUED, taskset, {"task": key})
        return key

    async def reversed_enqueue_task(self, task: str) -> bool:
        """Give a claimed but unstarted task back; it is served next.

        Returns ``False`` when nothing was enqueued: the task or taskset is
        terminal, the task is already waiting in the queue, or one of its
        trials is still running.
        """
        record = await self._require_task(task)
        async with self._lock(record.taskset):
            taskset = await self._require_taskset(record.taskset)
            record = await self._require_task(task)
            if taskset.status.is_terminal or record.status.is_terminal:
                logger.info(f"Not re-enqueueing {task}: taskset {taskset.status.value}, task {record.status.value}")
                return False
            if await self.store.is_queued(record.taskset, task):
                logger.info(f"Not re-enqueueing {task}: already queued")
                return False
            history = await self.store.get_trials(await self.store.list_trial_keys(task))
            if any(not trial.is_finished for trial in history):
                logger.info(f"Not re-enqueueing {task}: a trial is still running")
                return False
            if record.status == TaskStatus.RUNNING:
                await self.store.set_task_status(record, TaskStatus.PENDING)
            await self.store.push_queue_front(record.taskset, task)
        return True

    async def create_trial(self, task: str, slave: Optional[str], started_at: Optional[datetime] = None) -> str:
        record = await self._require_task(task)
        if slave and await self.store.get_slave(slave) is None:
            raise NotFoundError(f"Unknown slave '{slave}'")
        trial = Trial(
            key=trial_key(task, uuid.uuid4().hex),
            task=task,
            slave=slave,
            started_at=parse_time(started_at) or utc_now(),
        )
        async with self._lock(record.taskset):
            taskset = await self._require_taskset(record.taskset)
            await self.store.create_trial(record.taskset, trial)
            if not taskset.status.is_terminal and not record.status.is_terminal:
                await self.store.set_task_status(record, TaskStatus.RUNNING)
            if slave:
                await self.store.update_slave(slave, current_trial=trial.key, status=SlaveStatus.RUNNING)

        self.notificator.publish(
            EventType.TRIAL_STARTED,
            record.taskset,
            {"task": task, "trial": trial.key, "slave": slave},
        )
        return trial.key

    async def finish_trial(
        self,
        trial: str,
        finished_at: Optional[datetime],
        status: TrialStatus,
        stdout: str = "",
        stderr: str = "",
        passed_count: Optional[int] = None,
        pending_count: Optional[int] = None,
        failed_count: Optional[int] = None,
    ) -> None:
        try:
            status = TrialStatus(status)
        except ValueError as exc:
            raise ValidationError(f"Unknown trial status '{status}'") from exc
        if status == TrialStatus.RUNNING:
            raise ValidationError("A trial cannot finish with status 'running'")

        record = await self._require_trial(trial)
        task = await self._require_task(record.task)
        closed: Optional[TasksetStatus] = None

        async with self._lock(task.taskset):
            record = await self._require_trial(trial)
            if record.is_finished:
                raise InvalidStateError(f"Trial {trial} already finished at {record.finished_at.isoformat()}")
            taskset = await self._require_taskset(task.taskset)
            task = await self._require_task(record.task)

            record.finished_at = parse_time(finished_at) or utc_now()
            record.status = status
            record.stdout = stdout or ""
            record.stderr = stderr or ""
            record.passed_count = passed_count
            record.pending_count = pending_count
            record.failed_count = failed_count
            record.stale = taskset.status.is_terminal
            await self.store.save_finished_trial(task.taskset, record)

            if record.stale:
                logger.info(
                    f"[{ErrorCode.STALE_TRIAL_IGNORED.value}] Trial {trial} finished after "
                    f"taskset {taskset.key} became {taskset.status.value}"
                )
            else:
                if not task.status.is_terminal:
                    await self._apply_trial_result(taskset, task, status)
                closed = await self._try_finish_locked(taskset)

        self.notificator.publish(
            EventType.TRIAL_FINISHED,
            task.taskset,
            {
                "task": task.key,
                "trial": trial,
                "status": status.value,
                "task_status": task.status.value,
                "stale": record.stale,
            },
        )
        if closed is not None:
            self._after_close(task.taskset, closed)

    async def _apply_trial_result(self, taskset: Taskset, task: Task, status: TrialStatus) -> None:
        history = await self.store.get_trials(await self.store.list_trial_keys(task.key))
        decision = self.retry_policy.decide(status, history, taskset.max_trials)
        await self.store.set_task_status(task, decision.status)
        if not decision.requeue:
            logger.info(f"Task {task.key} {decision.status.value} after {len(history)} trial(s)")
            return
        if decision.front:
            await self.store.push_queue_front(task.taskset, task.key)
        else:
            await self.store.push_queue_back(task.taskset, task.key)
        logger.info(f"Task {task.key} re-enqueued after {status.value} trial")

    async def try_finish_taskset(self, taskset: str) -> TasksetStatus:
        async with self._lock(taskset):
            record = await self._require_taskset(taskset)
            closed = await self._try_finish_locked(record)
        if closed is not None:
            self._after_close(taskset, closed)
            return closed
        return record.status

    async def _try_finish_locked(self, taskset: Taskset) -> Optional[TasksetStatus]:
        if taskset.status.is_terminal:
            return None
        if await self.store.queue_length(taskset.key) > 0:
            return None
        if await self.store.count_running_trials(taskset.key) > 0:
            return None
        if await self.store.count_tasks_left(taskset.key) > 0:
            return None

        # Worker clocks may run ahead of ours; the close time covers every counted trial.
        finished_at = max([utc_now()] + await self._finished_times(taskset.key))
        await self.store.update_taskset(taskset.key, status=TasksetStatus.FINISHED, finished_at=finished_at)
        await self.store.append_taskset_log(taskset.key, f"{finished_at.isoformat()} taskset finished\n")
        taskset.status = TasksetStatus.FINISHED
        taskset.finished_at = finished_at
        logger.info(f"Taskset {taskset.key} finished")
        return TasksetStatus.FINISHED

    async def _finished_times(self, taskset: str) -> List[datetime]:
        times: List[datetime] = []
        for task in await self.store.list_task_keys(taskset):
            trials = await self.store.get_trials(await self.store.list_trial_keys(task))
            times += [trial.finished_at for trial in trials if trial.is_finished and not trial.stale]
        return times

    async def fail_taskset(self, taskset: str, reason: str = "") -> TasksetStatus:
        """Force the taskset into ``failed``; later dequeues return nothing."""
        async with self._lock(taskset):
            record = await self._require_taskset(taskset)
            if record.status.is_terminal:
                return record.status
            finished_at = utc_now()
            await self.store.update_taskset(taskset, status=TasksetStatus.FAILED, finished_at=finished_at)
            await self.store.append_taskset_log(
                taskset, f"{finished_at.isoformat()} taskset failed{': ' + reason if reason else ''}\n"
            )
        logger.warning(f"[{ErrorCode.FATAL_TASKSET_FAILURE.value}] Taskset {taskset} failed {reason}".rstrip())
        self._after_close(taskset, TasksetStatus.FAILED, reason)
        return TasksetStatus.FAILED

    async def query_taskset_status(self, taskset: str) -> Dict[str, Any]:
        """Lock-free aggregate of the taskset and its task statuses."""
        record = await self._require_taskset(taskset)
        tasks = await self.store.get_tasks(await self.store.list_task_keys(taskset))
        counts = {status.value: 0 for status in TaskStatus}
        for task in tasks:
            counts[task.status.value] += 1
        return {
            "key": taskset,
            "status": record.status.value,
            "created_at": record.created_at.isoformat() if record.created_at else None,
            "finished_at": record.finished_at.isoformat() if record.finished_at else None,
            "tasks": len(tasks),
            **counts,
            "queued": await self.store.queue_length(taskset),
            "running_trials": await self.store.count_running_trials(taskset),
        }

    async def query_spec_average_sec(self, taskset_class: str, spec_file: str) -> Optional[float]:
        return (await self.store.get_estimates(taskset_class)).get(spec_file)

    def _after_close(self, taskset: str, status: TasksetStatus, reason: str = "") -> None:
        if status == TasksetStatus.FAILED:
            self.notificator.publish(
                EventType.TASKSET_FAILED,
                taskset,
                {"reason": reason, "error_code": ErrorCode.FATAL_TASKSET_FAILURE.value},
            )
        else:
            self.notificator.publish(EventType.TASKSET_FINISHED, taskset, {"status": status.value})

        if self.on_taskset_closed is not None:
            task = asyncio.create_task(self.on_taskset_closed(taskset))
            self._background_tasks.add(task)
            task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Taskset close callback failed: {exc!r}")

    async def wait_background(self) -> None:
        """Wait for closing callbacks still in flight."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._background_tasks):
            task.cancel()
        for task in list(self._background_tasks):
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._background_tasks.clear()
        logger.info("TaskQueueService shutdown")
