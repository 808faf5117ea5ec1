"""
Error taxonomy untuk On-Device Diffusion Runtime
Closed set of failure kinds plus the single conversion point from foreign exceptions
"""

import logging
from concurrent import futures
from enum import Enum
from typing import Optional

import torch

logger = logging.getLogger(__name__)


class ErrorType(Enum):
    """Tipe error yang bisa terjadi"""
    INVALID_INPUT = "invalid_input"
    RESOURCE_UNAVAILABLE = "resource_unavailable"
    OUT_OF_MEMORY = "out_of_memory"
    TIMEOUT = "timeout"
    BACKEND_FAILURE = "backend_failure"
    CANCELLED = "cancelled"
    BUSY = "busy"


class DiffusionError(Exception):
    """Base class untuk semua failure yang dilaporkan ke caller"""

    error_type: ErrorType = ErrorType.BACKEND_FAILURE
    retryable: bool = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message

    @property
    def reason(self) -> str:
        return f"{self.error_type.value}: {self.message}"


class InvalidInputError(DiffusionError):
    error_type = ErrorType.INVALID_INPUT

    def __init__(self, field: str, message: Optional[str] = None):
        super().__init__(message or f"Invalid value for '{field}'")
        self.field = field


class ResourceUnavailableError(DiffusionError):
    error_type = ErrorType.RESOURCE_UNAVAILABLE

    def __init__(self, name: str, detail: Optional[str] = None):
        message = f"Resource '{name}' is unavailable"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.name = name


class OutOfMemoryError(DiffusionError):
    error_type = ErrorType.OUT_OF_MEMORY
    retryable = True

    def __init__(self, detail: str = "Not enough memory to complete the operation"):
        super().__init__(detail)


class ExecutionTimeoutError(DiffusionError):
    error_type = ErrorType.TIMEOUT
    retryable = True

    def __init__(self, operation: str, timeout_seconds: Optional[float] = None):
        if timeout_seconds is None:
            message = f"'{operation}' timed out"
        else:
            message = f"'{operation}' exceeded {timeout_seconds:g}s"
        super().__init__(message)
        self.operation = operation
        self.timeout_seconds = timeout_seconds


class BackendFailureError(DiffusionError):
    error_type = ErrorType.BACKEND_FAILURE

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class GenerationCancelled(DiffusionError, futures.CancelledError):
    """Normal terminal outcome untuk request yang di-cancel atau superseded"""

    error_type = ErrorType.CANCELLED

    def __init__(self, request_id: Optional[str] = None):
        if request_id:
            message = f"Request {request_id} was cancelled"
        else:
            message = "Request was cancelled"
        super().__init__(message)
        self.request_id = request_id


class BusyError(DiffusionError):
    error_type = ErrorType.BUSY

    def __init__(self, capacity: int):
        super().__init__(
            f"Engine is busy ({capacity} request(s) already admitted)"
        )
        self.capacity = capacity


def _is_out_of_memory(error: BaseException) -> bool:
    if isinstance(error, (torch.cuda.OutOfMemoryError, MemoryError)):
        return True
    error_str = str(error).lower()
    return "out of memory" in error_str or "oom" in error_str.split()


def classify_error(error: BaseException) -> DiffusionError:
    """
    Convert any exception into the closed taxonomy

    DiffusionError instances pass through unchanged. Everything else is mapped
    by type first and by message as a fallback, the way backend libraries
    report allocation failures.
    """
    if isinstance(error, DiffusionError):
        return error

    if _is_out_of_memory(error):
        return OutOfMemoryError(str(error) or "Out of memory")

    if isinstance(error, (TimeoutError, futures.TimeoutError)):
        return ExecutionTimeoutError(str(error) or "backend call")

    detail = str(error) or type(error).__name__
    logger.debug(f"Classified {type(error).__name__} as backend failure: {detail}")
    return BackendFailureError(detail)
