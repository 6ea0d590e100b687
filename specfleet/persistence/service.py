"""Runs the archive steps once a taskset closes."""

import logging
from typing import Any, Callable, Dict, Optional

from specfleet.config import settings
from specfleet.errors import IOFailure, SpecFleetError
from specfleet.server.live_store import LiveStateStore

from .persister import Persister

logger = logging.getLogger("specfleet.persister")


class PersistenceService:
    """Persist, cache, update estimates, then let the live state expire.

    A failed ``persist`` propagates; the cache and the estimates are derived
    from the committed snapshot, so their failures are logged and reported in
    the returned summary instead.
    """

    def __init__(
        self,
        persister: Persister,
        live_store: LiveStateStore,
        json_cache_path: Optional[str] = None,
        live_state_ttl_sec: Optional[int] = None,
        on_archived: Optional[Callable[[str], None]] = None,
    ):
        self.persister = persister
        self.live_store = live_store
        self.json_cache_path = json_cache_path or str(settings.resolve_path(settings.json_cache_path))
        self.live_state_ttl_sec = (
            live_state_ttl_sec if live_state_ttl_sec is not None else settings.live_state_ttl_sec
        )
        self.on_archived = on_archived

    async def archive(self, taskset_key: str) -> Dict[str, Any]:
        summary: Dict[str, Any] = {"taskset": taskset_key, "persisted": False, "cached": False, "estimated": False}

        await self.persister.persist(taskset_key)
        summary["persisted"] = True

        try:
            await self.persister.create_api_cache(taskset_key, self.json_cache_path)
            summary["cached"] = True
        except IOFailure as e:
            logger.error(f"[{e.error_code.value}] API cache of {taskset_key} not regenerated: {e}")

        try:
            await self.persister.update_estimate_sec(taskset_key)
            summary["estimated"] = True
        except (SpecFleetError, OSError) as e:
            logger.warning(f"Estimates not updated after {taskset_key}: {e}")

        if self.live_state_ttl_sec > 0:
            await self.live_store.expire_taskset(taskset_key, self.live_state_ttl_sec)
        if self.on_archived is not None:
            self.on_archived(taskset_key)

        logger.info(f"Archived taskset {taskset_key}: {summary}")
        return summary
