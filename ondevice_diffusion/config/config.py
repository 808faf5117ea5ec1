"""
Configuration file untuk On-Device Diffusion Runtime
Centralized configuration untuk easy customization
"""

import json
import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import torch

from ..core.noise_schedule import DEFAULT_SCHEDULE_RESOURCE
from ..core.performance_advisor import GiB, MiB, PerformanceAdvisor, probe_device

logger = logging.getLogger(__name__)

DEFAULT_MODEL_ID = "runwayml/stable-diffusion-v1-5"


@dataclass
class RuntimeConfig:
    """Main runtime configuration"""

    # Model settings
    model_id: str = DEFAULT_MODEL_ID
    variant: Optional[str] = None
    device: str = "cpu"

    # Resources
    resource_dirs: List[str] = field(default_factory=list)
    schedule_resource_name: str = DEFAULT_SCHEDULE_RESOURCE
    required_resources: List[str] = field(default_factory=list)

    # Memory management
    resource_cache_bytes: int = 512 * MiB
    tensor_cache_bytes: int = 256 * MiB
    memory_warning_threshold: float = 0.75
    enable_cpu_offload: bool = True
    enable_xformers: bool = False

    # Admission
    queue_depth: int = 2

    # Execution settings
    timeout_seconds: Optional[float] = 30.0
    max_attempts: int = 3
    backoff_base: float = 2.0
    max_oom_retries: int = 1

    # Image geometry
    height: int = 512
    width: int = 512
    context_length: int = 77
    pad_token_id: int = 49407

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def __post_init__(self):
        """Validate configuration"""
        if self.resource_cache_bytes <= 0 or self.tensor_cache_bytes <= 0:
            raise ValueError("Cache ceilings must be positive")
        if self.queue_depth < 0:
            raise ValueError(f"queue_depth must be >= 0, got {self.queue_depth}")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be positive, got {self.timeout_seconds}")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.backoff_base <= 0:
            raise ValueError(f"backoff_base must be positive, got {self.backoff_base}")
        if self.height % 8 or self.width % 8:
            raise ValueError(f"Image size {self.height}x{self.width} must be a multiple of 8")
        assert 0 < self.memory_warning_threshold <= 1.0

        # Check CUDA availability if cuda device specified
        if self.device.startswith("cuda") and not torch.cuda.is_available():
            logger.warning("CUDA device specified but CUDA not available, falling back to CPU")
            self.device = "cpu"

        if self.device == "cpu":
            self.enable_cpu_offload = False  # No offloading needed on CPU

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return asdict(self)

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "RuntimeConfig":
        """Create from dictionary, mengabaikan keys yang tidak dikenal"""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(config_dict) - known)
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {unknown}")
        return cls(**{k: v for k, v in config_dict.items() if k in known})

    def save(self, filepath: str):
        """Save configuration to JSON file"""
        with open(filepath, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, filepath: str) -> "RuntimeConfig":
        """Load configuration from JSON file"""
        with open(filepath, "r") as f:
            config_dict = json.load(f)
        return cls.from_dict(config_dict)

    @property
    def resource_paths(self) -> List[Path]:
        return [Path(p) for p in self.resource_dirs]


# Preset configurations untuk different scenarios

class PresetConfigs:
    """Preset configurations untuk common scenarios"""

    @staticmethod
    def low_memory(device: str = "cpu") -> RuntimeConfig:
        """Devices dengan memori kecil (< 4GB)"""
        return RuntimeConfig(
            device=device,
            resource_cache_bytes=128 * MiB,
            tensor_cache_bytes=64 * MiB,
            memory_warning_threshold=0.65,
            enable_cpu_offload=True,
            queue_depth=1,
            timeout_seconds=60.0,
            max_attempts=3,
        )

    @staticmethod
    def balanced(device: str = "cpu") -> RuntimeConfig:
        """Default settings"""
        return RuntimeConfig(device=device)

    @staticmethod
    def high_memory(device: str = "cpu") -> RuntimeConfig:
        """Devices dengan memori besar (16GB+)"""
        return RuntimeConfig(
            device=device,
            resource_cache_bytes=1 * GiB,
            tensor_cache_bytes=512 * MiB,
            memory_warning_threshold=0.85,
            enable_cpu_offload=False,  # Keep everything on device
            enable_xformers=True,
            queue_depth=4,
            max_attempts=2,  # Less likely to need retries
        )

    @staticmethod
    def fail_fast(device: str = "cpu") -> RuntimeConfig:
        """No retries, short timeout"""
        return RuntimeConfig(
            device=device,
            queue_depth=0,
            timeout_seconds=10.0,
            max_attempts=1,
        )


# Environment detection

def detect_environment(device: Optional[str] = None) -> RuntimeConfig:
    """
    Auto-detect environment dan return appropriate config
    """
    if device is None:
        device = "cuda" if torch.cuda.is_available() else "cpu"

    capabilities = probe_device(device)
    advice = PerformanceAdvisor(capabilities, device=device).configuration()
    budget_gb = capabilities.memory_budget_bytes / GiB

    logger.info(f"Detected device: {capabilities.device_name} ({budget_gb:.2f}GB)")

    if advice.use_low_memory_mode:
        logger.info("Low memory detected, using conservative config")
        config = PresetConfigs.low_memory(device)
    elif capabilities.memory_budget_bytes >= 16 * GiB and not capabilities.has_unified_memory:
        logger.info("High memory detected, using high performance config")
        config = PresetConfigs.high_memory(device)
    else:
        logger.info("Using balanced config")
        config = PresetConfigs.balanced(device)

    return config
