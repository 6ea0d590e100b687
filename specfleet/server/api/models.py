"""API request/response models for the SpecFleet server."""

from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field

from specfleet.common import ErrorCode


class RPCRequest(BaseModel):
    """One call received on the WebSocket endpoint."""

    id: Optional[Union[int, str]] = Field(default=None, description="Echoed back in the response")
    method: str = Field(..., min_length=1, description="Service operation name, e.g. dequeue_task")
    params: Dict[str, Any] = Field(default_factory=dict, description="Keyword arguments of the operation")

    class Config:
        json_schema_extra = {
            "example": {
                "id": 7,
                "method": "dequeue_task",
                "params": {"taskset": "taskset:3f2a9c"},
            }
        }


class RPCError(BaseModel):
    code: ErrorCode
    message: str


class RPCResponse(BaseModel):
    id: Optional[Union[int, str]] = None
    result: Any = None
    error: Optional[RPCError] = None


class ErrorResponse(BaseModel):
    """Error response model for HTTP routes."""

    error: str
    message: str
    error_code: Optional[ErrorCode] = None
    timestamp: str


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    redis: bool
    listeners: int
    workers: int
    memory_usage: Dict[str, Any]
    uptime: float
