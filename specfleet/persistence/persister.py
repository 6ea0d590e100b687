"""Archive a closed taskset from the live store into the durable store.

The durable snapshot is written inside one database transaction: any failure
while writing rows or externalized log files rolls the whole snapshot back and
surfaces as :class:`~specfleet.errors.IOFailure`. The JSON cache is derived from
the committed snapshot and can be regenerated at any time.
"""

import asyncio
import gzip
import json
import logging
import os
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from specfleet.config import settings
from specfleet.errors import InvalidStateError, IOFailure, NotFoundError
from specfleet.schema import Trial
from specfleet.schema.records import TasksetSnapshot
from specfleet.server.live_store import LiveStateStore

from . import models
from .database import DurableStore

logger = logging.getLogger("specfleet.persister")


def log_file_name(key: str, kind: str) -> str:
    """File name of an externalized log, e.g. ``taskset_abc_1_2_log.log``."""
    return key.replace("/", "_").replace(":", "_") + f"_{kind}.log"


def cache_file_name(key: str) -> str:
    return key.replace(":", "-")


def _atomic_write(path: Path, data: bytes) -> None:
    _atomic_write_all({path: data})


def _atomic_write_all(files: Dict[Path, bytes]) -> None:
    """Write every temp file first, then rename them; a failed write replaces nothing."""
    written: List[Path] = []
    try:
        for path, data in files.items():
            tmp_path = path.with_name(path.name + ".tmp")
            with open(tmp_path, "wb") as f:
                written.append(tmp_path)
                f.write(data)
        for path in files:
            os.replace(path.with_name(path.name + ".tmp"), path)
    except OSError:
        for tmp_path in written:
            if tmp_path.exists():
                tmp_path.unlink()
        raise


class Persister:
    def __init__(
        self,
        live_store: LiveStateStore,
        durable_store: DurableStore,
        log_text_path: Optional[str] = None,
        size_threshold: Optional[int] = None,
    ):
        self.live_store = live_store
        self.durable_store = durable_store
        self.log_text_path = Path(log_text_path) if log_text_path else settings.resolve_path(
            settings.execute_log_text_path
        )
        self.size_threshold = size_threshold if size_threshold is not None else settings.log_text_size_threshold
        self._key_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # Snapshot

    async def persist(self, taskset_key: str) -> None:
        """Write the durable snapshot of a finished or failed taskset, replacing any prior one."""
        snapshot = await self.live_store.load_snapshot(taskset_key)
        if snapshot is None:
            raise NotFoundError(f"Unknown taskset '{taskset_key}'")
        if not snapshot.taskset.status.is_terminal:
            raise InvalidStateError(
                f"Taskset {taskset_key} is {snapshot.taskset.status.value}; only closed tasksets are persisted"
            )

        async with self._key_locks[taskset_key]:
            await asyncio.to_thread(self._write_snapshot, snapshot)
        logger.info(f"Persisted taskset {taskset_key}")

    def _kept_trials(self, snapshot: TasksetSnapshot, trials: List[Trial]) -> List[Trial]:
        cutoff = snapshot.taskset.finished_at
        kept = []
        for trial in trials:
            if not trial.is_finished or trial.stale:
                continue
            if cutoff is not None and trial.finished_at > cutoff:
                continue
            kept.append(trial)
        return kept

    def _externalize(self, key: str, kind: str, text: str) -> Tuple[Optional[str], Optional[str]]:
        """Return ``(text, path)`` for a log field; oversized text moves to a file."""
        text = text or ""
        if len(text) <= self.size_threshold:
            return text, None
        path = self.log_text_path / log_file_name(key, kind)
        _atomic_write(path, text.encode("utf-8"))
        return None, path.name

    def _write_snapshot(self, snapshot: TasksetSnapshot) -> None:
        ts = snapshot.taskset
        try:
            self.log_text_path.mkdir(parents=True, exist_ok=True)
            with self.durable_store.session() as session:
                existing = session.query(models.Taskset).filter_by(key=ts.key).one_or_none()
                if existing is not None:
                    session.delete(existing)
                    session.flush()

                row = models.Taskset(
                    key=ts.key,
                    rsync_name=ts.rsync_name,
                    setup_command=ts.setup_command,
                    slave_command=ts.slave_command,
                    worker_type=ts.worker_type,
                    taskset_class=ts.taskset_class,
                    max_workers=ts.max_workers,
                    max_trials=ts.max_trials,
                    status=ts.status.value,
                    created_at=ts.created_at,
                    finished_at=ts.finished_at,
                )
                row.log, row.log_path = self._externalize(ts.key, "log", snapshot.log)

                slave_rows: Dict[str, models.Slave] = {}
                for slave in snapshot.slaves:
                    slave_row = models.Slave(key=slave.key, worker=slave.worker, status=slave.status.value)
                    slave_row.log, slave_row.log_path = self._externalize(
                        slave.key, "log", snapshot.slave_logs.get(slave.key, "")
                    )
                    row.slaves.append(slave_row)
                    slave_rows[slave.key] = slave_row

                for worker_log in snapshot.worker_logs:
                    worker_log_row = models.WorkerLog(
                        key=worker_log.key,
                        worker=worker_log.worker,
                        rsync_finished_at=worker_log.rsync_finished_at,
                        setup_finished_at=worker_log.setup_finished_at,
                        worker_finished_at=worker_log.worker_finished_at,
                        finished=worker_log.finished,
                    )
                    worker_log_row.log, worker_log_row.log_path = self._externalize(
                        worker_log.key, "log", snapshot.worker_log_logs.get(worker_log.key, "")
                    )
                    row.worker_logs.append(worker_log_row)

                dropped = 0
                for task in snapshot.tasks:
                    task_row = models.Task(
                        key=task.key,
                        spec_file=task.spec_file,
                        status=task.status.value,
                        estimate_sec=task.estimate_sec,
                    )
                    trials = snapshot.trials.get(task.key, [])
                    kept = self._kept_trials(snapshot, trials)
                    dropped += len(trials) - len(kept)
                    for trial in kept:
                        trial_row = models.Trial(
                            key=trial.key,
                            started_at=trial.started_at,
                            finished_at=trial.finished_at,
                            status=trial.status.value,
                            passed_count=trial.passed_count,
                            pending_count=trial.pending_count,
                            failed_count=trial.failed_count,
                            slave=slave_rows.get(trial.slave) if trial.slave else None,
                        )
                        trial_row.stdout, trial_row.stdout_path = self._externalize(trial.key, "stdout", trial.stdout)
                        trial_row.stderr, trial_row.stderr_path = self._externalize(trial.key, "stderr", trial.stderr)
                        task_row.trials.append(trial_row)
                    row.tasks.append(task_row)

                session.add(row)
        except OSError as e:
            logger.error(f"Persisting {ts.key} failed, snapshot rolled back: {e}")
            raise IOFailure(f"Failed to write logs of {ts.key}: {e}") from e
        except SQLAlchemyError as e:
            logger.error(f"Persisting {ts.key} failed, snapshot rolled back: {e}")
            raise IOFailure(f"Failed to store snapshot of {ts.key}: {e}") from e

        if dropped:
            logger.info(f"Excluded {dropped} unfinished or late trial(s) from {ts.key}")

    # API cache

    def cache_paths(self, taskset_key: str, output_dir: str) -> Tuple[Path, Path]:
        json_path = Path(output_dir) / "v1" / "tasksets" / cache_file_name(taskset_key)
        return json_path, json_path.with_name(json_path.name + ".gz")

    async def create_api_cache(self, taskset_key: str, output_dir: Optional[str] = None) -> Path:
        """Write the full JSON document of a persisted taskset and its gzip copy."""
        output_dir = output_dir or str(settings.resolve_path(settings.json_cache_path))
        async with self._key_locks[taskset_key]:
            return await asyncio.to_thread(self._write_api_cache, taskset_key, output_dir)

    def _write_api_cache(self, taskset_key: str, output_dir: str) -> Path:
        with self.durable_store.session() as session:
            row = session.query(models.Taskset).filter_by(key=taskset_key).one_or_none()
            if row is None:
                raise NotFoundError(f"Taskset {taskset_key} has not been persisted")
            document = row.as_full_json()
        document["is_full"] = True
        data = json.dumps(document, sort_keys=True).encode("utf-8")

        json_path, gz_path = self.cache_paths(taskset_key, output_dir)
        try:
            json_path.parent.mkdir(parents=True, exist_ok=True)
            _atomic_write_all({json_path: data, gz_path: gzip.compress(data, mtime=0)})
        except OSError as e:
            logger.error(f"Writing API cache of {taskset_key} failed: {e}")
            raise IOFailure(f"Failed to write API cache of {taskset_key}: {e}") from e

        logger.info(f"API cache of {taskset_key} written to {json_path}")
        return json_path

    # Scheduling hints

    async def update_estimate_sec(self, taskset_key: str) -> Dict[str, float]:
        """Recompute mean passed-trial durations for the spec files of this taskset's class."""
        taskset_class, estimates = await asyncio.to_thread(self._compute_estimates, taskset_key)
        if estimates:
            await self.live_store.set_estimates(taskset_class, estimates)
        logger.info(f"Updated {len(estimates)} estimate(s) for class {taskset_class}")
        return estimates

    def _compute_estimates(self, taskset_key: str) -> Tuple[str, Dict[str, float]]:
        with self.durable_store.session() as session:
            row = session.query(models.Taskset).filter_by(key=taskset_key).one_or_none()
            if row is None:
                raise NotFoundError(f"Taskset {taskset_key} has not been persisted")
            spec_files = [task.spec_file for task in row.tasks]
            results = (
                session.query(models.Task.spec_file, models.Trial.started_at, models.Trial.finished_at)
                .join(models.Trial, models.Trial.task_id == models.Task.id)
                .join(models.Taskset, models.Task.taskset_id == models.Taskset.id)
                .filter(
                    models.Taskset.taskset_class == row.taskset_class,
                    models.Task.spec_file.in_(spec_files),
                    models.Trial.status == "passed",
                    models.Trial.started_at.isnot(None),
                    models.Trial.finished_at.isnot(None),
                )
                .all()
            )
            taskset_class = row.taskset_class

        durations: Dict[str, List[float]] = defaultdict(list)
        for spec_file, started_at, finished_at in results:
            durations[spec_file].append((finished_at - started_at).total_seconds())
        return taskset_class, {spec: sum(values) / len(values) for spec, values in durations.items()}
