# tests/helpers.py

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Optional, Sequence

from specfleet.common import TrialStatus
from specfleet.server import TaskQueueService

SPEC_FILES = ("spec/models/user_spec.rb", "spec/models/post_spec.rb", "spec/requests/api_spec.rb")


async def new_taskset(
    queue: TaskQueueService,
    tasks: Sequence[str] = SPEC_FILES,
    **overrides: Any,
) -> str:
    params = dict(
        rsync_name="webapp",
        setup_command="bundle install",
        slave_command="bundle exec rspec",
        worker_type="default",
        taskset_class="webapp-ci",
        max_workers=2,
        max_trials=3,
    )
    params.update(overrides)
    return await queue.create_taskset(tasks=list(tasks), **params)


async def run_trial(
    queue: TaskQueueService,
    task: str,
    status: TrialStatus,
    slave: Optional[str] = None,
    started_at: Optional[datetime] = None,
    finished_at: Optional[datetime] = None,
    stdout: str = "",
    stderr: str = "",
) -> str:
    trial = await queue.create_trial(task, slave, started_at)
    await queue.finish_trial(trial, finished_at, status, stdout, stderr, 1, 0, 0)
    return trial


class RecordingListener:
    """Listener that keeps every event it receives."""

    def __init__(self) -> None:
        self.events: list[dict] = []

    async def send_json(self, data: Any) -> None:
        self.events.append(data)

    def types(self) -> list[str]:
        return [event["type"] for event in self.events]


class BrokenListener:
    def __init__(self) -> None:
        self.calls = 0

    async def send_json(self, data: Any) -> None:
        self.calls += 1
        raise ConnectionResetError("peer went away")


class StuckListener:
    async def send_json(self, data: Any) -> None:
        await asyncio.sleep(60)
