"""Shared serialization helpers for schema objects."""

from __future__ import annotations

import dataclasses
import typing
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Type, TypeVar

T = TypeVar("T")


def format_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def utc_now() -> datetime:
    """Current time as naive UTC, the one form every stored timestamp takes."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_time(value: Optional[Any]) -> Optional[datetime]:
    """Parse an ISO timestamp; offset-aware input is converted to naive UTC."""
    if value is None or isinstance(value, datetime):
        return to_naive_utc(value)
    if isinstance(value, bytes):
        value = value.decode()
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return to_naive_utc(datetime.fromisoformat(value))


def decode(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.decode()
    return value


def make_json_safe(obj: Any, depth: int = 0, max_depth: int = 10) -> Any:
    """Recursively convert objects to JSON-serializable forms."""
    if depth > max_depth:
        return str(obj)
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, dict):
        return {str(k): make_json_safe(v, depth + 1, max_depth) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [make_json_safe(x, depth + 1, max_depth) for x in obj]
    return str(obj)


def _unwrap_optional(tp: Any) -> Any:
    if typing.get_origin(tp) is typing.Union:
        args = [a for a in typing.get_args(tp) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return tp


def _to_redis(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _from_redis(tp: Any, raw: Any) -> Any:
    raw = decode(raw)
    target = _unwrap_optional(tp)
    optional = target is not tp
    if raw is None or (raw == "" and (optional or target is not str)):
        return None
    if target is bool:
        return raw in ("1", "true", "True")
    if target is datetime:
        return parse_time(raw)
    if isinstance(target, type) and issubclass(target, Enum):
        return target(raw)
    if target in (int, float):
        return target(raw)
    return raw


def to_redis_mapping(record: Any, exclude: tuple = ("key",)) -> Dict[str, str]:
    """Flatten a schema dataclass into a Redis hash mapping."""
    return {
        f.name: _to_redis(getattr(record, f.name))
        for f in dataclasses.fields(record)
        if f.name not in exclude
    }


def from_redis_mapping(cls: Type[T], key: str, data: Mapping[Any, Any]) -> T:
    """Build a schema dataclass from a Redis hash, decoding by annotation."""
    hints = typing.get_type_hints(cls)
    decoded = {decode(k): v for k, v in data.items()}
    kwargs: Dict[str, Any] = {"key": key}
    for f in dataclasses.fields(cls):
        if f.name == "key" or f.name not in decoded:
            continue
        kwargs[f.name] = _from_redis(hints[f.name], decoded[f.name])
    return cls(**kwargs)


def to_redis_values(fields: Mapping[str, Any]) -> Dict[str, str]:
    """Flatten keyword field updates into a Redis hash mapping."""
    return {name: _to_redis(value) for name, value in fields.items()}
