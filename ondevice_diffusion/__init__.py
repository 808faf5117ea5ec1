"""
On-Device Diffusion Runtime

Text-to-image generation engine untuk perangkat dengan memori terbatas:
single-flight execution, bounded caches, cancellation dan retry.
"""

from .config import RuntimeConfig, PresetConfigs, detect_environment
from .core import (
    GenerationRequest,
    GenerationHandle,
    GenerationResult,
    GenerationStatus,
    ProgressEvent,
    DiffusionError,
    InvalidInputError,
    ResourceUnavailableError,
    OutOfMemoryError,
    ExecutionTimeoutError,
    BackendFailureError,
    GenerationCancelled,
    BusyError,
)
from .runtime import DiffusionRuntime
from .utils import setup_logging

__version__ = "1.0.0"

__all__ = [
    "DiffusionRuntime",
    "RuntimeConfig",
    "PresetConfigs",
    "detect_environment",
    "GenerationRequest",
    "GenerationHandle",
    "GenerationResult",
    "GenerationStatus",
    "ProgressEvent",
    "DiffusionError",
    "InvalidInputError",
    "ResourceUnavailableError",
    "OutOfMemoryError",
    "ExecutionTimeoutError",
    "BackendFailureError",
    "GenerationCancelled",
    "BusyError",
    "setup_logging",
]
