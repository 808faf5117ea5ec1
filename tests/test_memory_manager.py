from __future__ import annotations

import pytest
import torch

from ondevice_diffusion.core.errors import ResourceUnavailableError
from ondevice_diffusion.core.interfaces import DirectoryResourceProvider, MappingResourceProvider
from ondevice_diffusion.core.memory_manager import (
    BoundedCache, BufferPool, MemoryManager, ResourceStore, TensorCache
)


class CountingProvider:
    def __init__(self, blobs):
        self.blobs = blobs
        self.loads = []

    def load(self, name):
        self.loads.append(name)
        return self.blobs.get(name)


def test_cache_never_exceeds_ceiling_and_evicts_oldest_first():
    cache = BoundedCache(max_size_bytes=100, name="test")

    for i, size in enumerate([40, 30, 20, 50, 10, 60]):
        assert cache.put(f"k{i}", i, size)
        assert cache.current_size <= 100

    # k0 evicted for k3, k1 for k4, k2 and k3 for k5
    assert "k0" not in cache
    assert "k3" not in cache
    assert cache.get("k5") == 5
    assert "k4" in cache
    assert cache.evictions == 4


def test_cache_refuses_entry_larger_than_ceiling():
    cache = BoundedCache(max_size_bytes=10)
    cache.put("small", "x", 5)

    assert cache.put("huge", "y", 11) is False
    assert "huge" not in cache
    assert cache.get("small") == "x"


def test_cache_replacing_key_updates_size():
    cache = BoundedCache(max_size_bytes=100)
    cache.put("a", 1, 60)
    cache.put("a", 2, 30)

    assert cache.current_size == 30
    assert cache.get("a") == 2
    assert len(cache) == 1


def test_clear_then_get_is_a_miss():
    cache = BoundedCache(max_size_bytes=100)
    cache.put("a", 1, 10)
    cache.clear()

    assert cache.get("a") is None
    assert cache.current_size == 0
    stats = cache.get_stats()
    assert stats["misses"] == 1
    assert stats["entries"] == 0


def test_resource_store_caches_loaded_bytes():
    provider = CountingProvider({"weights.bin": b"abcd"})
    store = ResourceStore(provider, max_size_bytes=1024)

    assert store.load("weights.bin") == b"abcd"
    assert store.load("weights.bin") == b"abcd"
    assert provider.loads == ["weights.bin"]


def test_resource_store_reports_missing_resource():
    store = ResourceStore(MappingResourceProvider({}))

    with pytest.raises(ResourceUnavailableError) as excinfo:
        store.load("missing.bin")

    assert excinfo.value.name == "missing.bin"


def test_resource_store_accepts_provider_raising_file_not_found():
    class RaisingProvider:
        def load(self, name):
            raise FileNotFoundError(name)

    with pytest.raises(ResourceUnavailableError):
        ResourceStore(RaisingProvider()).load("x")


@pytest.mark.parametrize("error", [PermissionError("denied"), IsADirectoryError("x"), OSError(5, "I/O error")])
def test_resource_store_reports_unreadable_resource(error):
    class UnreadableProvider:
        def load(self, name):
            raise error

    store = ResourceStore(UnreadableProvider())

    with pytest.raises(ResourceUnavailableError) as excinfo:
        store.load("unet.weights")
    assert excinfo.value.name == "unet.weights"
    assert "unet.weights" not in store


def test_directory_provider_searches_in_order(tmp_path):
    package_dir = tmp_path / "package"
    app_dir = tmp_path / "app"
    package_dir.mkdir()
    app_dir.mkdir()
    (package_dir / "shared.bin").write_bytes(b"package")
    (app_dir / "shared.bin").write_bytes(b"app")
    (app_dir / "only_app.bin").write_bytes(b"app-only")

    provider = DirectoryResourceProvider([package_dir, app_dir])

    assert provider.load("shared.bin") == b"package"
    assert provider.load("only_app.bin") == b"app-only"
    assert provider.load("nowhere.bin") is None


def test_mapping_provider_falls_back():
    fallback = MappingResourceProvider({"b": b"2"})
    provider = MappingResourceProvider({"a": b"1"}, fallback=fallback)

    assert provider.load("a") == b"1"
    assert provider.load("b") == b"2"
    assert provider.load("c") is None


def test_tensor_cache_keys_and_sizes():
    cache = TensorCache(max_size_bytes=1024)
    key = cache.make_key("embedding", (1, 2, 3))

    assert key == cache.make_key("embedding", (1, 2, 3))
    assert key != cache.make_key("embedding", (1, 2, 4))

    tensor = torch.ones(4, 8)
    assert cache.put_tensor(key, tensor)
    assert cache.current_size == 4 * 8 * 4
    assert torch.equal(cache.get_tensor(key), tensor)


def test_buffer_pool_tracks_live_buffers():
    pool = BufferPool()
    a = pool.allocate((2, 2), tag="latents")
    b = pool.register(torch.zeros(3), tag="scratch")

    assert pool.live_count == 2
    assert pool.live_bytes == 4 * 4 + 3 * 4
    assert pool.describe() == {"latents": 1, "scratch": 1}

    assert pool.release(a)
    assert not pool.release(a)
    assert pool.live_count == 1

    assert pool.purge() == 1
    assert pool.live_count == 0
    assert not pool.release(b)


def test_aggressive_cleanup_clears_both_caches(memory_manager: MemoryManager):
    memory_manager.resource_store.load("unet.weights")
    memory_manager.tensor_cache.put_tensor("k", torch.ones(2))

    memory_manager.aggressive_cleanup()

    assert len(memory_manager.resource_store) == 0
    assert memory_manager.tensor_cache.get_tensor("k") is None


def test_memory_report_on_cpu(memory_manager: MemoryManager):
    report = memory_manager.get_memory_report()

    assert report["status"] == "OK"
    assert report["live_buffers"] == 0
    assert "tensor_cache" in report
    assert memory_manager.relieve_pressure() is False
