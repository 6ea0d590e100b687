# tests/test_persister.py

from __future__ import annotations

import gzip
import json
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from specfleet.common import TrialStatus
from specfleet.errors import InvalidStateError, IOFailure, NotFoundError
from specfleet.persistence import cache_file_name, log_file_name, models
from specfleet.schema import Trial
from specfleet.schema.serialization import utc_now

from .helpers import new_taskset, run_trial

LONG_OUTPUT = "F" * 40 + "\n3 examples, 1 failure\n"


async def _finished_taskset(queue, registry) -> tuple[str, str]:
    """A taskset of two specs; one of them needed a retry."""
    ts = await new_taskset(queue, tasks=["spec/a_spec.rb", "spec/b_spec.rb"], max_trials=2)
    worker = await registry.register_worker("ci-01", "default")
    await registry.current_taskset(worker, ts)
    worker_log = await registry.create_worker_log(worker)
    await registry.append_worker_log_log(worker_log, "setup done\n")
    await registry.finish_worker_log(worker_log)
    slave = await registry.create_slave(worker, "1")
    await registry.append_slave_log(slave, "slave started\n")

    first = await queue.dequeue_task(ts)
    await run_trial(queue, first, TrialStatus.FAILED, slave=slave, stdout=LONG_OUTPUT)
    await run_trial(queue, await queue.dequeue_task(ts), TrialStatus.PASSED, slave=slave, stdout="ok")
    await run_trial(queue, await queue.dequeue_task(ts), TrialStatus.PASSED, slave=slave, stdout="ok")
    await registry.finish_slave(slave)
    return ts, first


def _count(durable_store, model) -> int:
    with durable_store.session() as session:
        return session.execute(select(func.count()).select_from(model)).scalar_one()


def test_log_file_name_sanitizes_key() -> None:
    assert log_file_name("taskset:abc/1:2", "log") == "taskset_abc_1_2_log.log"
    assert cache_file_name("taskset:abc") == "taskset-abc"


@pytest.mark.asyncio
async def test_persist_writes_every_entity(queue, registry, persister, durable_store) -> None:
    ts, _ = await _finished_taskset(queue, registry)

    await persister.persist(ts)

    with durable_store.session() as session:
        row = session.query(models.Taskset).filter_by(key=ts).one()
        assert row.status == "finished"
        assert row.finished_at is not None
        assert [task.status for task in row.tasks] == ["passed", "passed"]
        assert sum(len(task.trials) for task in row.tasks) == 3
        assert len(row.slaves) == 1
        assert len(row.slaves[0].trials) == 3
        assert row.slaves[0].status == "finished"
        assert len(row.worker_logs) == 1
        assert row.worker_logs[0].finished is True
        assert row.worker_logs[0].log == "setup done\n"


@pytest.mark.asyncio
async def test_persist_is_idempotent(queue, registry, persister, durable_store) -> None:
    ts, _ = await _finished_taskset(queue, registry)

    await persister.persist(ts)
    await persister.persist(ts)

    assert _count(durable_store, models.Taskset) == 1
    assert _count(durable_store, models.Task) == 2
    assert _count(durable_store, models.Trial) == 3
    assert _count(durable_store, models.Slave) == 1
    assert _count(durable_store, models.WorkerLog) == 1


@pytest.mark.asyncio
async def test_persist_refuses_open_taskset(queue, persister) -> None:
    ts = await new_taskset(queue)

    with pytest.raises(InvalidStateError):
        await persister.persist(ts)
    with pytest.raises(NotFoundError):
        await persister.persist("taskset:missing")


@pytest.mark.asyncio
async def test_trial_finishing_after_taskset_is_excluded(queue, persister, store, durable_store) -> None:
    ts = await new_taskset(queue, tasks=["spec/a_spec.rb"])
    task = await queue.dequeue_task(ts)
    await run_trial(queue, task, TrialStatus.PASSED)
    finished_at = (await store.get_taskset(ts)).finished_at

    late = await run_trial(queue, task, TrialStatus.FAILED, finished_at=finished_at + timedelta(seconds=1))

    await persister.persist(ts)

    with durable_store.session() as session:
        keys = [trial.key for trial in session.query(models.Trial).all()]
    assert late not in keys
    assert len(keys) == 1


@pytest.mark.asyncio
async def test_late_trial_is_excluded_even_when_not_stale(queue, persister, store, durable_store) -> None:
    ts = await new_taskset(queue, tasks=["spec/a_spec.rb"])
    task = await queue.dequeue_task(ts)
    kept = await run_trial(queue, task, TrialStatus.PASSED)
    finished_at = (await store.get_taskset(ts)).finished_at

    late = Trial(key=f"{task}:trial:late", task=task, started_at=finished_at)
    await store.create_trial(ts, late)
    late.finished_at = finished_at + timedelta(seconds=1)
    late.status = TrialStatus.FAILED
    await store.save_finished_trial(ts, late)
    assert (await store.get_trial(late.key)).stale is False

    await persister.persist(ts)

    with durable_store.session() as session:
        keys = [trial.key for trial in session.query(models.Trial).all()]
    assert keys == [kept]


@pytest.mark.asyncio
async def test_closing_trial_ahead_of_server_clock_is_kept(queue, persister, store, durable_store) -> None:
    ts = await new_taskset(queue, tasks=["spec/a_spec.rb"])
    task = await queue.dequeue_task(ts)
    worker_time = utc_now() + timedelta(minutes=5)

    trial = await run_trial(queue, task, TrialStatus.PASSED, finished_at=worker_time)

    assert (await store.get_taskset(ts)).finished_at >= worker_time
    await persister.persist(ts)
    with durable_store.session() as session:
        assert [row.key for row in session.query(models.Trial).all()] == [trial]


@pytest.mark.asyncio
async def test_offset_aware_worker_times_are_stored_as_utc(queue, persister, store, durable_store) -> None:
    ts = await new_taskset(queue, tasks=["spec/a_spec.rb", "spec/b_spec.rb"])
    await run_trial(queue, await queue.dequeue_task(ts), TrialStatus.PASSED)
    aware = datetime.now(timezone(timedelta(hours=9))) + timedelta(seconds=2)
    trial = await run_trial(queue, await queue.dequeue_task(ts), TrialStatus.PASSED, finished_at=aware)

    await persister.persist(ts)

    expected = aware.astimezone(timezone.utc).replace(tzinfo=None)
    assert (await store.get_trial(trial)).finished_at == expected
    with durable_store.session() as session:
        row = session.query(models.Trial).filter_by(key=trial).one()
        assert row.finished_at == expected
        assert session.query(models.Taskset).filter_by(key=ts).one().finished_at >= expected
        assert session.query(models.Trial).count() == 2


@pytest.mark.asyncio
async def test_oversized_logs_are_written_to_files(queue, registry, persister, durable_store, log_dir) -> None:
    ts, first = await _finished_taskset(queue, registry)
    trial = (await queue.store.list_trial_keys(first))[0]

    await persister.persist(ts)

    with durable_store.session() as session:
        row = session.query(models.Trial).filter_by(key=trial).one()
        assert row.stdout is None
        assert row.stdout_path == log_file_name(trial, "stdout")
        assert row.stderr == ""
        assert row.stderr_path is None
        short = session.query(models.Trial).filter(models.Trial.key != trial).first()
        assert short.stdout == "ok"
    assert (log_dir / log_file_name(trial, "stdout")).read_text() == LONG_OUTPUT


@pytest.mark.asyncio
async def test_failed_log_write_rolls_back_snapshot(queue, registry, persister, durable_store, monkeypatch) -> None:
    ts, _ = await _finished_taskset(queue, registry)
    await persister.persist(ts)

    def refuse_write(path, data):
        raise PermissionError(f"read-only file system: {path}")

    monkeypatch.setattr("specfleet.persistence.persister._atomic_write", refuse_write)

    with pytest.raises(IOFailure):
        await persister.persist(ts)

    assert _count(durable_store, models.Taskset) == 1
    assert _count(durable_store, models.Trial) == 3
    with durable_store.session() as session:
        assert session.query(models.Taskset).filter_by(key=ts).one().log_path is not None


@pytest.mark.asyncio
async def test_api_cache_matches_snapshot(queue, registry, persister, durable_store, cache_dir) -> None:
    ts, _ = await _finished_taskset(queue, registry)
    await persister.persist(ts)

    json_path = await persister.create_api_cache(ts, str(cache_dir))

    assert json_path == cache_dir / "v1" / "tasksets" / cache_file_name(ts)
    plain = json_path.read_bytes()
    gz_path = json_path.with_name(json_path.name + ".gz")
    assert gzip.decompress(gz_path.read_bytes()) == plain

    document = json.loads(plain)
    with durable_store.session() as session:
        expected = session.query(models.Taskset).filter_by(key=ts).one().as_full_json()
    expected["is_full"] = True
    assert document == expected
    assert document["tasks"][0]["taskset"] == {"key": ts}
    assert {"key", "log", "status", "trials"} <= set(document["slaves"][0])


@pytest.mark.asyncio
async def test_api_cache_is_reproducible(queue, registry, persister, cache_dir) -> None:
    ts, _ = await _finished_taskset(queue, registry)
    await persister.persist(ts)

    json_path = await persister.create_api_cache(ts, str(cache_dir))
    gz_path = json_path.with_name(json_path.name + ".gz")
    first = (json_path.read_bytes(), gz_path.read_bytes())
    await persister.create_api_cache(ts, str(cache_dir))

    assert (json_path.read_bytes(), gz_path.read_bytes()) == first


@pytest.mark.asyncio
async def test_failed_gzip_write_leaves_plain_cache_untouched(queue, registry, persister, cache_dir) -> None:
    ts, _ = await _finished_taskset(queue, registry)
    await persister.persist(ts)
    json_path, gz_path = persister.cache_paths(ts, str(cache_dir))
    json_path.parent.mkdir(parents=True, exist_ok=True)
    json_path.write_bytes(b"old")
    gz_path.with_name(gz_path.name + ".tmp").mkdir()

    with pytest.raises(IOFailure):
        await persister.create_api_cache(ts, str(cache_dir))

    assert json_path.read_bytes() == b"old"
    assert not gz_path.exists()
    assert not json_path.with_name(json_path.name + ".tmp").exists()


@pytest.mark.asyncio
async def test_api_cache_requires_persisted_taskset(persister, cache_dir) -> None:
    with pytest.raises(NotFoundError):
        await persister.create_api_cache("taskset:missing", str(cache_dir))


@pytest.mark.asyncio
async def test_estimates_are_mean_of_passed_trials(queue, persister, store) -> None:
    ts = await new_taskset(queue, tasks=["spec/a_spec.rb"], max_trials=3)
    task = await queue.dequeue_task(ts)
    trial = await queue.create_trial(task, None)
    started = (await store.get_trial(trial)).started_at
    await queue.finish_trial(trial, started + timedelta(seconds=30), TrialStatus.FAILED)
    trial = await queue.create_trial(await queue.dequeue_task(ts), None, started)
    await queue.finish_trial(trial, started + timedelta(seconds=4), TrialStatus.PASSED)

    second = await new_taskset(queue, tasks=["spec/a_spec.rb"])
    trial = await queue.create_trial(await queue.dequeue_task(second), None, started)
    await queue.finish_trial(trial, started + timedelta(seconds=8), TrialStatus.PASSED)

    await persister.persist(ts)
    await persister.persist(second)
    estimates = await persister.update_estimate_sec(second)

    assert estimates == {"spec/a_spec.rb": pytest.approx(6.0)}
    assert await store.get_estimates("webapp-ci") == {"spec/a_spec.rb": pytest.approx(6.0)}


@pytest.mark.asyncio
async def test_archive_runs_all_steps(queue, registry, persistence, cache_dir) -> None:
    ts, _ = await _finished_taskset(queue, registry)

    summary = await persistence.archive(ts)

    assert summary == {"taskset": ts, "persisted": True, "cached": True, "estimated": True}
    assert (cache_dir / "v1" / "tasksets" / cache_file_name(ts)).is_file()
