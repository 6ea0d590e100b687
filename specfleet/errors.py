"""Exceptions raised by SpecFleet services."""

from typing import Optional

from specfleet.common import ErrorCode


class SpecFleetError(Exception):
    """Base class for errors surfaced to callers of the services."""

    error_code = ErrorCode.UNKNOWN_ERROR

    def __init__(self, message: str, error_code: Optional[ErrorCode] = None):
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code

    def to_dict(self):
        return {"code": self.error_code.value, "message": self.message}


class ValidationError(SpecFleetError):
    """Invalid taskset configuration or request arguments."""

    error_code = ErrorCode.VALIDATION_ERROR


class NotFoundError(SpecFleetError):
    """A referenced entity does not exist in the live store."""

    error_code = ErrorCode.NOT_FOUND


class InvalidStateError(SpecFleetError):
    """The entity is not in a state that allows the operation."""

    error_code = ErrorCode.INVALID_STATE


class IOFailure(SpecFleetError):
    """Disk or database write failure while persisting a taskset."""

    error_code = ErrorCode.IO_FAILURE
