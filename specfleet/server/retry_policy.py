"""
Retry policy for tasks whose trial failed or errored.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

from specfleet.common import RetryOrdering, TaskStatus, TrialStatus
from specfleet.config import settings
from specfleet.schema import Trial

logger = logging.getLogger("specfleet.retry")


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of a finished trial for its task."""

    status: TaskStatus
    requeue: bool = False
    front: bool = True


class RetryPolicy:
    """Decides whether a task is retried and where it re-enters the queue.

    A task passes on its first passed trial no matter how many attempts failed
    before. A failed or errored trial is retried while the number of finished
    trials is below ``max_trials``; at ``max_trials`` the task fails for good.
    """

    def __init__(self, ordering: Optional[RetryOrdering] = None):
        self.ordering = RetryOrdering(ordering or settings.retry_ordering)

    def decide(self, trial_status: TrialStatus, history: List[Trial], max_trials: int) -> RetryDecision:
        if trial_status == TrialStatus.PASSED:
            return RetryDecision(status=TaskStatus.PASSED)

        finished = sum(1 for trial in history if trial.is_finished)
        if finished < max_trials:
            return RetryDecision(
                status=TaskStatus.PENDING,
                requeue=True,
                front=self.ordering == RetryOrdering.FRONT,
            )

        logger.info(f"Retry budget exhausted after {finished}/{max_trials} trials")
        return RetryDecision(status=TaskStatus.FAILED)
