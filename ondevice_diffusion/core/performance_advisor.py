"""
Performance Advisor
Derive device configuration (batch size, threads, precision) dari device capabilities
"""

import logging
import os
import threading
from dataclasses import dataclass
from typing import Dict, Optional

import torch

from .errors import BackendFailureError

logger = logging.getLogger(__name__)

MiB = 1024 ** 2
GiB = 1024 ** 3


@dataclass(frozen=True)
class DeviceCapabilities:
    """Properties device yang relevan untuk sizing"""
    memory_budget_bytes: int
    has_unified_memory: bool
    cpu_count: int
    device_name: str = "cpu"


@dataclass(frozen=True)
class DeviceConfiguration:
    """Configuration yang dipakai GenerationPipeline"""
    max_batch_size: int
    thread_count: int
    use_unified_memory: bool
    use_low_memory_mode: bool

    @property
    def precision(self) -> str:
        return "float16" if self.use_low_memory_mode else "float32"

    @property
    def torch_dtype(self) -> torch.dtype:
        return torch.float16 if self.use_low_memory_mode else torch.float32

    def to_dict(self) -> Dict:
        return {
            "max_batch_size": self.max_batch_size,
            "thread_count": self.thread_count,
            "use_unified_memory": self.use_unified_memory,
            "use_low_memory_mode": self.use_low_memory_mode,
            "precision": self.precision,
        }


class PerformanceAdvisor:
    """
    Pure mapping dari DeviceCapabilities ke DeviceConfiguration

    The result is cached; it is recomputed only when ``configuration`` is
    called with ``refresh=True``.
    """

    MEMORY_PER_BATCH = 512 * MiB
    MAX_BATCH_SIZE = 4
    LOW_MEMORY_THRESHOLD = 2 * GiB
    MIN_MEMORY_BUDGET = 1 * GiB

    def __init__(self, capabilities: Optional[DeviceCapabilities] = None, device: str = "cpu"):
        self.device = device
        self._capabilities = capabilities
        self._configuration: Optional[DeviceConfiguration] = None
        self._lock = threading.Lock()

    def advise(self, capabilities: DeviceCapabilities) -> DeviceConfiguration:
        budget = capabilities.memory_budget_bytes
        theoretical_max_batch = budget // self.MEMORY_PER_BATCH
        max_batch_size = min(self.MAX_BATCH_SIZE, max(1, theoretical_max_batch))

        cpu_count = max(1, capabilities.cpu_count)
        thread_count = min(cpu_count, max(2, cpu_count - 1))

        return DeviceConfiguration(
            max_batch_size=max_batch_size,
            thread_count=thread_count,
            use_unified_memory=capabilities.has_unified_memory,
            use_low_memory_mode=budget < self.LOW_MEMORY_THRESHOLD,
        )

    def configuration(self, refresh: bool = False) -> DeviceConfiguration:
        with self._lock:
            if self._configuration is None or refresh:
                if self._capabilities is None or refresh:
                    self._capabilities = probe_device(self.device)
                self._configuration = self.advise(self._capabilities)
                logger.info(
                    f"Device configuration for {self._capabilities.device_name}: "
                    f"{self._configuration.to_dict()}"
                )
            return self._configuration

    @property
    def capabilities(self) -> DeviceCapabilities:
        with self._lock:
            if self._capabilities is None:
                self._capabilities = probe_device(self.device)
            return self._capabilities

    def ensure_supported(self) -> DeviceCapabilities:
        """
        Tolak device dengan memory budget di bawah MIN_MEMORY_BUDGET

        A budget of 0 means the probe could not read it; such devices are
        accepted with a warning.

        Raises:
            BackendFailureError: device not supported
        """
        capabilities = self.capabilities
        budget = capabilities.memory_budget_bytes
        if budget == 0:
            logger.warning(f"Memory budget of {capabilities.device_name} unknown, assuming supported")
        elif budget < self.MIN_MEMORY_BUDGET:
            raise BackendFailureError(
                f"Device {capabilities.device_name} not supported: "
                f"{budget / GiB:.2f}GB memory budget, at least "
                f"{self.MIN_MEMORY_BUDGET / GiB:.0f}GB required"
            )
        return capabilities


def _host_memory_bytes() -> int:
    try:
        return os.sysconf("SC_PAGE_SIZE") * os.sysconf("SC_PHYS_PAGES")
    except (ValueError, OSError, AttributeError):
        return 0


def probe_device(device: str = "cuda") -> DeviceCapabilities:
    """Baca capabilities dari torch untuk device yang diberikan"""
    cpu_count = os.cpu_count() or 1
    torch_device = torch.device(device)

    if torch_device.type == "cuda" and torch.cuda.is_available():
        props = torch.cuda.get_device_properties(torch_device)
        return DeviceCapabilities(
            memory_budget_bytes=props.total_memory,
            has_unified_memory=False,
            cpu_count=cpu_count,
            device_name=props.name,
        )

    # CPU dan Apple MPS share host memory
    return DeviceCapabilities(
        memory_budget_bytes=_host_memory_bytes(),
        has_unified_memory=True,
        cpu_count=cpu_count,
        device_name=torch_device.type,
    )
