"""FastAPI server for SpecFleet."""
import asyncio
import inspect
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as redis
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse
from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import (
    BusyLoadingError,
    ConnectionError as RedisConnectionError,
    RedisError,
    ResponseError as RedisResponseError,
    TimeoutError as RedisTimeoutError,
)

from specfleet.common import ErrorCode
from specfleet.config import settings, setup_logging
from specfleet.errors import NotFoundError, SpecFleetError, ValidationError
from specfleet.persistence import DurableStore, PersistenceService, Persister
from specfleet.schema.serialization import make_json_safe, parse_time
from specfleet.server.live_store import LiveStateStore
from specfleet.server.notificator import Notificator
from specfleet.server.task_queue import TaskQueueService
from specfleet.server.worker_registry import WorkerRegistry
from .models import ErrorResponse, HealthResponse, RPCError, RPCRequest, RPCResponse
from .utils import format_timestamp, get_memory_usage, get_uptime

logger = logging.getLogger("specfleet.api")

TIME_PARAMS = ("started_at", "finished_at")


@dataclass
class Services:
    redis_client: redis.Redis
    durable_store: DurableStore
    store: LiveStateStore
    notificator: Notificator
    task_queue: TaskQueueService
    workers: WorkerRegistry
    persister: Persister
    persistence: PersistenceService


def build_services(redis_client: redis.Redis, durable_store: DurableStore) -> Services:
    """Wire the services together; the queue archives every taskset it closes."""
    store = LiveStateStore(redis_client)
    notificator = Notificator()
    task_queue = TaskQueueService(store, notificator)
    persister = Persister(store, durable_store)
    persistence = PersistenceService(persister, store, on_archived=task_queue.release_lock)
    task_queue.on_taskset_closed = persistence.archive
    return Services(
        redis_client=redis_client,
        durable_store=durable_store,
        store=store,
        notificator=notificator,
        task_queue=task_queue,
        workers=WorkerRegistry(store),
        persister=persister,
        persistence=persistence,
    )


async def wait_for_redis_ready(url: str, timeout_sec: float = 60.0, interval_sec: float = 0.5) -> redis.Redis:
    """Ping Redis until it answers; it may still be loading its RDB/AOF."""
    start = time.monotonic()
    client = redis.from_url(url)
    last_err = None
    while True:
        try:
            await client.ping()
            return client
        except (BusyLoadingError, RedisResponseError) as e:
            last_err = e
            logger.warning(f"Redis not ready (loading data): {e}. Retrying...")
        except (RedisConnectionError, RedisTimeoutError) as e:
            last_err = e
            logger.warning(f"Redis connection not ready: {e}. Retrying...")
        if time.monotonic() - start > timeout_sec:
            await client.aclose()
            raise RuntimeError(f"Redis not ready within {timeout_sec}s: {last_err}")
        await asyncio.sleep(interval_sec)


class _WebSocketListener:
    """Serializes writes of RPC answers and pushed events on one socket."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._lock = asyncio.Lock()

    async def send_json(self, data: Any) -> None:
        async with self._lock:
            await self.websocket.send_json(data)


def _rpc_methods(services: Services, listener: _WebSocketListener) -> Dict[str, Callable[..., Awaitable[Any]]]:
    queue = services.task_queue
    workers = services.workers
    notificator = services.notificator

    async def listen_to_global() -> bool:
        notificator.listen(listener)
        return True

    async def listen_to_taskset(taskset: str) -> bool:
        if await services.store.get_taskset(taskset) is None:
            raise NotFoundError(f"Unknown taskset '{taskset}'")
        notificator.listen(listener, taskset)
        return True

    async def close() -> bool:
        notificator.close(listener)
        return True

    return {
        "create_taskset": queue.create_taskset,
        "dequeue_task": queue.dequeue_task,
        "reversed_enqueue_task": queue.reversed_enqueue_task,
        "create_trial": queue.create_trial,
        "finish_trial": queue.finish_trial,
        "try_finish_taskset": queue.try_finish_taskset,
        "fail_taskset": queue.fail_taskset,
        "query_taskset_status": queue.query_taskset_status,
        "query_spec_average_sec": queue.query_spec_average_sec,
        "register_worker": workers.register_worker,
        "unregister_worker": workers.unregister_worker,
        "current_taskset": workers.current_taskset,
        "create_worker_log": workers.create_worker_log,
        "append_worker_log_log": workers.append_worker_log_log,
        "set_rsync_finished_time": workers.set_rsync_finished_time,
        "set_setup_finished_time": workers.set_setup_finished_time,
        "set_worker_finished_time": workers.set_worker_finished_time,
        "finish_worker_log": workers.finish_worker_log,
        "create_slave": workers.create_slave,
        "append_slave_log": workers.append_slave_log,
        "current_trial": workers.current_trial,
        "finish_slave": workers.finish_slave,
        "archive_taskset": services.persistence.archive,
        "listen_to_global": listen_to_global,
        "listen_to_taskset": listen_to_taskset,
        "close": close,
    }


async def dispatch(methods: Dict[str, Callable[..., Awaitable[Any]]], message: Any) -> Dict[str, Any]:
    """Run one RPC message and build its response payload."""
    request_id = message.get("id") if isinstance(message, dict) else None
    try:
        request = RPCRequest.model_validate(message)
        method = methods.get(request.method)
        if method is None:
            raise NotFoundError(f"Unknown method '{request.method}'")

        params = dict(request.params)
        try:
            for name in TIME_PARAMS:
                if name in params:
                    params[name] = parse_time(params[name])
        except ValueError as e:
            raise ValidationError(f"Invalid timestamp: {e}") from e
        try:
            inspect.signature(method).bind(**params)
        except TypeError as e:
            raise ValidationError(f"Invalid params for {request.method}: {e}") from e

        result = await method(**params)
        return RPCResponse(id=request.id, result=make_json_safe(result)).model_dump(mode="json", exclude={"error"})
    except PydanticValidationError as e:
        error = RPCError(code=ErrorCode.VALIDATION_ERROR, message=f"Malformed request: {e.errors(include_url=False)}")
    except SpecFleetError as e:
        logger.info(f"RPC {message.get('method') if isinstance(message, dict) else '?'} rejected: {e}")
        error = RPCError(code=e.error_code, message=e.message)
    except Exception as e:
        logger.exception(f"Unhandled error in RPC call: {e}")
        error = RPCError(code=ErrorCode.UNKNOWN_ERROR, message=str(e))
    return RPCResponse(id=request_id, error=error).model_dump(mode="json", exclude={"result"})


def create_app(
    redis_client: Optional[redis.Redis] = None,
    durable_store: Optional[DurableStore] = None,
    json_cache_path: Optional[str] = None,
) -> FastAPI:
    """Build the application; clients passed in are used instead of the configured ones."""
    cache_root = json_cache_path or str(settings.resolve_path(settings.json_cache_path))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging("api")
        logger.info("Starting SpecFleet...")

        client = redis_client
        if client is None:
            client = await wait_for_redis_ready(settings.redis_url, settings.redis_ready_timeout_sec)
        logger.info("Redis connection established")

        durable = durable_store or DurableStore()
        durable.init_database()

        services = build_services(client, durable)
        services.persistence.json_cache_path = cache_root
        app.state.services = services
        logger.info("Services initialized")

        yield

        logger.info("Shutting down SpecFleet...")
        await services.task_queue.wait_background()
        await services.task_queue.shutdown()
        await services.notificator.shutdown()
        if redis_client is None:
            await client.aclose()
        if durable_store is None:
            durable.dispose()

    app = FastAPI(
        title="SpecFleet",
        description="Distributed spec-file test runs",
        version="1.0.0",
        lifespan=lifespan,
    )

    async def get_services(request: Request) -> Services:
        services = getattr(request.app.state, "services", None)
        if services is None:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Services not available")
        return services

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()
        logger.info(f"Request: {request.method} {request.url}")
        response = await call_next(request)
        logger.info(f"Response: {response.status_code} - {time.time() - start_time:.4f}s")
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.error(f"Validation error for {request.url}: {exc.errors()}")
        return JSONResponse(
            status_code=400,
            content=ErrorResponse(
                error="RequestValidationError",
                message=f"Request validation failed: {exc.errors()}",
                error_code=ErrorCode.VALIDATION_ERROR,
                timestamp=format_timestamp(datetime.now()),
            ).model_dump(mode="json"),
            headers={"X-Error-Code": ErrorCode.VALIDATION_ERROR.value},
        )

    @app.get("/health", response_model=HealthResponse)
    async def health_check(services: Services = Depends(get_services)):
        try:
            redis_ok = bool(await services.redis_client.ping())
        except RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            redis_ok = False
        return HealthResponse(
            status="healthy" if redis_ok else "degraded",
            timestamp=format_timestamp(datetime.now()),
            redis=redis_ok,
            listeners=services.notificator.listeners(),
            workers=len(await services.workers.get_workers_status()),
            memory_usage=get_memory_usage(),
            uptime=get_uptime(),
        )

    @app.get("/workers/status")
    async def get_workers_status(services: Services = Depends(get_services)):
        return await services.workers.get_workers_status()

    @app.get("/v1/tasksets/{key}")
    async def get_taskset_cache(key: str, request: Request, services: Services = Depends(get_services)):
        """Serve the cached full document of an archived taskset."""
        if "/" in key or key.startswith("."):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Taskset {key} not found")
        json_path, gz_path = services.persister.cache_paths(key, cache_root)
        if "gzip" in request.headers.get("accept-encoding", "") and Path(gz_path).is_file():
            return FileResponse(
                gz_path,
                media_type="application/json",
                headers={"Content-Encoding": "gzip", "Vary": "Accept-Encoding"},
            )
        if not Path(json_path).is_file():
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Taskset {key} not found")
        return FileResponse(json_path, media_type="application/json")

    @app.websocket("/v1/ws")
    async def rpc_endpoint(websocket: WebSocket):
        await websocket.accept()
        services: Services = websocket.app.state.services
        listener = _WebSocketListener(websocket)
        methods = _rpc_methods(services, listener)
        logger.info("RPC connection opened")
        try:
            while True:
                try:
                    message = await websocket.receive_json()
                except ValueError as e:
                    await listener.send_json(
                        {"id": None, "error": {"code": ErrorCode.VALIDATION_ERROR.value, "message": f"Invalid JSON: {e}"}}
                    )
                    continue
                await listener.send_json(await dispatch(methods, message))
        except WebSocketDisconnect:
            logger.info("RPC connection closed")
        finally:
            services.notificator.close(listener)

    return app


app = create_app()


def main() -> None:
    setup_logging("api")

    uvicorn.run(
        "specfleet.server.api.server:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
