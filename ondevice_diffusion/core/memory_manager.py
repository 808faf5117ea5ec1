"""
Memory Manager untuk On-Device Diffusion Runtime
Menangani bounded caches, live buffer tracking, dan cleanup saat memory pressure
"""

import gc
import hashlib
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple

import torch

from .errors import ResourceUnavailableError
from .interfaces import ResourceProvider

logger = logging.getLogger(__name__)

MiB = 1024 ** 2
GiB = 1024 ** 3


@dataclass
class CacheEntry:
    """Satu entry di dalam bounded cache"""
    key: str
    payload: Any
    size_bytes: int


@dataclass
class MemorySnapshot:
    """Snapshot status memori pada waktu tertentu"""
    allocated_gb: float
    reserved_gb: float
    free_gb: float
    total_gb: float
    utilization_percent: float
    timestamp: float


class BoundedCache:
    """
    Size-bounded cache dengan eviction oldest-inserted-first

    Sizes are tracked per entry, so eviction frees exactly what the evicted
    entry occupied. Replacing an existing key counts as a new insertion.
    """

    def __init__(self, max_size_bytes: int, name: str = "cache"):
        if max_size_bytes <= 0:
            raise ValueError(f"{name} ceiling must be positive, got {max_size_bytes}")

        self.name = name
        self.max_size_bytes = max_size_bytes
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._current_size = 0
        self._lock = threading.RLock()

        # Cache hit statistics
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    @property
    def current_size(self) -> int:
        return self._current_size

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def get(self, key: str) -> Optional[Any]:
        """Return payload, atau None saat miss"""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            self.hits += 1
            return entry.payload

    def put(self, key: str, payload: Any, size_bytes: int) -> bool:
        """
        Insert entry, evicting oldest entries until it fits

        Returns:
            False if the entry alone exceeds the ceiling and was not stored
        """
        if size_bytes < 0:
            raise ValueError(f"size_bytes must be non-negative, got {size_bytes}")

        if size_bytes > self.max_size_bytes:
            logger.warning(
                f"{self.name}: entry '{key}' ({size_bytes} bytes) exceeds ceiling "
                f"({self.max_size_bytes} bytes), not cached"
            )
            return False

        with self._lock:
            self._remove(key)
            while self._current_size + size_bytes > self.max_size_bytes:
                self._evict_oldest()

            self._entries[key] = CacheEntry(key=key, payload=payload, size_bytes=size_bytes)
            self._current_size += size_bytes

        logger.debug(f"{self.name}: cached '{key}' ({size_bytes} bytes, total={self._current_size})")
        return True

    def remove(self, key: str) -> bool:
        with self._lock:
            return self._remove(key) is not None

    def clear(self):
        """Drop semua entries. Aman dipanggil kapan saja"""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._current_size = 0

        logger.info(f"{self.name}: cleared {count} entries")

    def get_stats(self) -> Dict:
        with self._lock:
            return {
                "entries": len(self._entries),
                "size_bytes": self._current_size,
                "max_size_bytes": self.max_size_bytes,
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
            }

    def _remove(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._current_size -= entry.size_bytes
        return entry

    def _evict_oldest(self):
        key, entry = self._entries.popitem(last=False)
        self._current_size -= entry.size_bytes
        self.evictions += 1
        logger.info(f"{self.name}: evicted '{key}' ({entry.size_bytes} bytes)")


class ResourceStore(BoundedCache):
    """Cache untuk named binary resources (weights, noise schedule)"""

    def __init__(self, provider: ResourceProvider, max_size_bytes: int = 512 * MiB):
        super().__init__(max_size_bytes, name="ResourceStore")
        self.provider = provider

    def load(self, name: str) -> bytes:
        """
        Return resource bytes, loading dari provider saat miss

        Raises:
            ResourceUnavailableError: provider has no resource with this name
        """
        cached = self.get(name)
        if cached is not None:
            return cached

        try:
            data = self.provider.load(name)
        except (OSError, KeyError) as e:
            raise ResourceUnavailableError(name, str(e) or type(e).__name__) from e

        if data is None:
            raise ResourceUnavailableError(name)

        data = bytes(data)
        self.put(name, data, len(data))
        logger.info(f"Loaded resource '{name}' ({len(data)} bytes)")
        return data


class TensorCache(BoundedCache):
    """Cache untuk intermediate tensors (prompt embeddings, dll)"""

    def __init__(self, max_size_bytes: int = 256 * MiB):
        super().__init__(max_size_bytes, name="TensorCache")

    @staticmethod
    def make_key(*parts: Any) -> str:
        digest = hashlib.sha256(repr(parts).encode("utf-8")).hexdigest()
        return digest[:32]

    @staticmethod
    def tensor_size(tensor: torch.Tensor) -> int:
        return tensor.numel() * tensor.element_size()

    def put_tensor(self, key: str, tensor: torch.Tensor) -> bool:
        return self.put(key, tensor.detach(), self.tensor_size(tensor))

    def get_tensor(self, key: str) -> Optional[torch.Tensor]:
        return self.get(key)


class BufferPool:
    """Track live device allocations sehingga bisa di-enumerate dan di-purge"""

    def __init__(self):
        self._buffers: Dict[int, Tuple[torch.Tensor, str]] = {}
        self._lock = threading.Lock()

    @property
    def live_count(self) -> int:
        with self._lock:
            return len(self._buffers)

    @property
    def live_bytes(self) -> int:
        with self._lock:
            return sum(TensorCache.tensor_size(t) for t, _ in self._buffers.values())

    def register(self, tensor: torch.Tensor, tag: str = "buffer") -> torch.Tensor:
        with self._lock:
            self._buffers[id(tensor)] = (tensor, tag)
        return tensor

    def allocate(self,
                 shape: Sequence[int],
                 dtype: torch.dtype = torch.float32,
                 device: Any = "cpu",
                 tag: str = "buffer") -> torch.Tensor:
        tensor = torch.empty(tuple(shape), dtype=dtype, device=device)
        return self.register(tensor, tag)

    def release(self, tensor: torch.Tensor) -> bool:
        with self._lock:
            return self._buffers.pop(id(tensor), None) is not None

    def purge(self) -> int:
        with self._lock:
            count = len(self._buffers)
            self._buffers.clear()

        if count:
            logger.warning(f"Purged {count} live buffers")
        return count

    def describe(self) -> Dict[str, int]:
        """Live buffer count per tag"""
        with self._lock:
            counts: Dict[str, int] = {}
            for _, tag in self._buffers.values():
                counts[tag] = counts.get(tag, 0) + 1
            return counts


class VRAMMonitor:
    """Monitor device memory. Tanpa CUDA semua query return nilai netral"""

    def __init__(self, device: str = "cuda:0", warning_threshold: float = 0.75):
        self.device = torch.device(device)
        self.warning_threshold = warning_threshold
        self.enabled = self.device.type == "cuda" and torch.cuda.is_available()

        if self.enabled:
            self.total_memory = torch.cuda.get_device_properties(self.device).total_memory
        else:
            self.total_memory = 0

    def get_memory_stats(self) -> MemorySnapshot:
        """Ambil statistik memori saat ini"""
        if not self.enabled:
            return MemorySnapshot(0.0, 0.0, 0.0, 0.0, 0.0, time.time())

        allocated = torch.cuda.memory_allocated(self.device)
        reserved = torch.cuda.memory_reserved(self.device)
        total_gb = self.total_memory / GiB

        return MemorySnapshot(
            allocated_gb=allocated / GiB,
            reserved_gb=reserved / GiB,
            free_gb=total_gb - reserved / GiB,
            total_gb=total_gb,
            utilization_percent=allocated / self.total_memory * 100,
            timestamp=time.time()
        )

    def is_warning(self) -> bool:
        """Check apakah memori di atas warning threshold"""
        if not self.enabled:
            return False
        stats = self.get_memory_stats()
        return stats.utilization_percent / 100 > self.warning_threshold

    def log_memory_status(self, prefix: str = ""):
        if not self.enabled:
            return
        stats = self.get_memory_stats()
        logger.info(
            f"{prefix}VRAM: {stats.allocated_gb:.2f}GB allocated, "
            f"{stats.free_gb:.2f}GB free, "
            f"{stats.utilization_percent:.1f}% used"
        )


class MemoryManager:
    """
    Manager utama untuk memory operations
    Owns the caches and the buffer pool, and runs cleanup under pressure
    """

    def __init__(self,
                 resource_store: ResourceStore,
                 tensor_cache: Optional[TensorCache] = None,
                 buffer_pool: Optional[BufferPool] = None,
                 monitor: Optional[VRAMMonitor] = None,
                 aggressive_gc: bool = True):
        self.resource_store = resource_store
        self.tensor_cache = tensor_cache or TensorCache()
        self.buffer_pool = buffer_pool or BufferPool()
        self.monitor = monitor or VRAMMonitor("cpu")
        self.aggressive_gc = aggressive_gc

    def aggressive_cleanup(self):
        """Clear caches dan bebaskan memori device"""
        self.resource_store.clear()
        self.tensor_cache.clear()

        if self.aggressive_gc:
            gc.collect()

        if torch.cuda.is_available():
            torch.cuda.empty_cache()

        logger.info("Aggressive cleanup completed")
        self.monitor.log_memory_status("After cleanup - ")

    def relieve_pressure(self) -> bool:
        """Cleanup jika device memory di atas warning threshold"""
        if not self.monitor.is_warning():
            return False

        logger.warning("Device memory above warning threshold, clearing caches")
        self.aggressive_cleanup()
        return True

    def handle_memory_warning(self):
        """Respond to an external low-memory notification"""
        logger.warning("Memory warning received")
        self.aggressive_cleanup()

    def get_memory_report(self) -> Dict:
        stats = self.monitor.get_memory_stats()
        return {
            "vram": {
                "total_gb": stats.total_gb,
                "allocated_gb": stats.allocated_gb,
                "free_gb": stats.free_gb,
                "utilization_percent": stats.utilization_percent
            },
            "resource_store": self.resource_store.get_stats(),
            "tensor_cache": self.tensor_cache.get_stats(),
            "live_buffers": self.buffer_pool.live_count,
            "status": "WARNING" if self.monitor.is_warning() else "OK"
        }
