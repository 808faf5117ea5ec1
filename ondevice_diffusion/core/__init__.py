"""
On-Device Diffusion Core Package

Core modules untuk pipeline, admission control, caches dan error taxonomy.
"""

from .errors import (
    ErrorType,
    DiffusionError,
    InvalidInputError,
    ResourceUnavailableError,
    OutOfMemoryError,
    ExecutionTimeoutError,
    BackendFailureError,
    GenerationCancelled,
    BusyError,
    classify_error
)

from .interfaces import (
    ComputeGraph,
    ComputeBackend,
    Tokenizer,
    ResourceProvider,
    DirectoryResourceProvider,
    MappingResourceProvider
)

from .memory_manager import (
    BoundedCache,
    ResourceStore,
    TensorCache,
    BufferPool,
    VRAMMonitor,
    MemoryManager,
    MemorySnapshot
)

from .noise_schedule import (
    NoiseSchedule,
    classifier_free_guidance,
    ddim_step
)

from .performance_advisor import (
    DeviceCapabilities,
    DeviceConfiguration,
    PerformanceAdvisor,
    probe_device
)

from .execution_state_machine import (
    GenerationStatus,
    ProgressEvent,
    StatusSnapshot,
    StatusTracker,
    ExecutionContext,
    ExecutionMetrics
)

from .job_queue_manager import (
    GenerationRequest,
    GenerationHandle,
    JobQueue,
    JobStatus
)

from .diffusion_engine import (
    GenerationPipeline,
    GenerationResult
)

from .execution_guard import (
    ExecutionGuard,
    RetryPolicy
)

from .model_loader import (
    DiffusersComputeBackend,
    CLIPTokenizerAdapter,
    DiffusionModelLoader,
    ModelConfig,
    ModelComponent
)

__all__ = [
    # Errors
    "ErrorType",
    "DiffusionError",
    "InvalidInputError",
    "ResourceUnavailableError",
    "OutOfMemoryError",
    "ExecutionTimeoutError",
    "BackendFailureError",
    "GenerationCancelled",
    "BusyError",
    "classify_error",

    # External interfaces
    "ComputeGraph",
    "ComputeBackend",
    "Tokenizer",
    "ResourceProvider",
    "DirectoryResourceProvider",
    "MappingResourceProvider",

    # Memory Management
    "BoundedCache",
    "ResourceStore",
    "TensorCache",
    "BufferPool",
    "VRAMMonitor",
    "MemoryManager",
    "MemorySnapshot",

    # Numerics
    "NoiseSchedule",
    "classifier_free_guidance",
    "ddim_step",

    # Device sizing
    "DeviceCapabilities",
    "DeviceConfiguration",
    "PerformanceAdvisor",
    "probe_device",

    # Status
    "GenerationStatus",
    "ProgressEvent",
    "StatusSnapshot",
    "StatusTracker",
    "ExecutionContext",
    "ExecutionMetrics",

    # Requests
    "GenerationRequest",
    "GenerationHandle",
    "JobQueue",
    "JobStatus",

    # Pipeline
    "GenerationPipeline",
    "GenerationResult",
    "ExecutionGuard",
    "RetryPolicy",

    # Model Loading
    "DiffusersComputeBackend",
    "CLIPTokenizerAdapter",
    "DiffusionModelLoader",
    "ModelConfig",
    "ModelComponent",
]
