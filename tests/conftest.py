from __future__ import annotations

import threading
from typing import Dict, List, Optional

import pytest
import torch

from ondevice_diffusion.config import RuntimeConfig
from ondevice_diffusion.core.diffusion_engine import GenerationPipeline
from ondevice_diffusion.core.execution_guard import ExecutionGuard
from ondevice_diffusion.core.interfaces import ComputeGraph, MappingResourceProvider
from ondevice_diffusion.core.memory_manager import MemoryManager, ResourceStore
from ondevice_diffusion.core.noise_schedule import DEFAULT_SCHEDULE_RESOURCE, NoiseSchedule
from ondevice_diffusion.core.performance_advisor import (
    GiB, DeviceCapabilities, DeviceConfiguration, PerformanceAdvisor
)
from ondevice_diffusion.runtime import DiffusionRuntime

IMAGE_SIZE = 64
CONTEXT_LENGTH = 8
EMBED_DIM = 16
WEIGHTS_RESOURCE = "unet.weights"


class StubTokenizer:
    def encode(self, text: str) -> List[int]:
        return [49406] + [ord(c) % 997 for c in text]


class StubBackend:
    """Tiny deterministic stand-in for the three compute graphs"""

    def __init__(self):
        self.calls: List[ComputeGraph] = []
        self.failures: Dict[ComputeGraph, List[BaseException]] = {}
        self.unet_gate: Optional[threading.Event] = None
        self.unet_started = threading.Event()
        self.decode_gate: Optional[threading.Event] = None
        self.decode_started = threading.Event()
        self.max_concurrency = 0
        self._active = 0
        self._lock = threading.Lock()

    def fail_next(self, graph: ComputeGraph, *errors: BaseException):
        with self._lock:
            self.failures.setdefault(graph, []).extend(errors)

    def count(self, graph: ComputeGraph) -> int:
        with self._lock:
            return sum(1 for g in self.calls if g == graph)

    def run(self, graph, inputs):
        with self._lock:
            self._active += 1
            self.max_concurrency = max(self.max_concurrency, self._active)
            self.calls.append(graph)
            pending = self.failures.get(graph)
            error = pending.pop(0) if pending else None

        try:
            if error is not None:
                raise error

            if graph == ComputeGraph.TEXT_ENCODER:
                ids = inputs["input_ids"].float() / 1000.0
                weights = torch.linspace(0.5, 1.5, EMBED_DIM)
                return {"embeddings": ids.unsqueeze(-1) * weights}

            if graph == ComputeGraph.UNET:
                self.unet_started.set()
                if self.unet_gate is not None:
                    self.unet_gate.wait(timeout=5)
                latents = inputs["latents"]
                bias = inputs["encoder_hidden_states"].mean(dim=(1, 2)).view(-1, 1, 1, 1)
                return {"noise_pred": 0.1 * latents + bias}

            self.decode_started.set()
            if self.decode_gate is not None:
                self.decode_gate.wait(timeout=5)
            latents = inputs["latents"]
            images = torch.tanh(latents[:, :3])
            images = images.repeat_interleave(8, dim=2).repeat_interleave(8, dim=3)
            return {"images": images}
        finally:
            with self._lock:
                self._active -= 1


@pytest.fixture()
def schedule() -> NoiseSchedule:
    return NoiseSchedule.scaled_linear()


@pytest.fixture()
def blobs(schedule: NoiseSchedule) -> Dict[str, bytes]:
    return {
        DEFAULT_SCHEDULE_RESOURCE: schedule.to_bytes(),
        WEIGHTS_RESOURCE: b"\x00" * 64,
    }


@pytest.fixture()
def provider(blobs) -> MappingResourceProvider:
    return MappingResourceProvider(blobs)


@pytest.fixture()
def memory_manager(provider) -> MemoryManager:
    return MemoryManager(ResourceStore(provider))


@pytest.fixture()
def backend() -> StubBackend:
    return StubBackend()


@pytest.fixture()
def tokenizer() -> StubTokenizer:
    return StubTokenizer()


@pytest.fixture()
def device_config() -> DeviceConfiguration:
    return DeviceConfiguration(
        max_batch_size=2,
        thread_count=2,
        use_unified_memory=True,
        use_low_memory_mode=False,
    )


@pytest.fixture()
def make_pipeline(backend, tokenizer, schedule, memory_manager, device_config):
    def factory(**overrides) -> GenerationPipeline:
        options = dict(
            backend=backend,
            tokenizer=tokenizer,
            schedule=schedule,
            memory_manager=memory_manager,
            device_config=device_config,
            height=IMAGE_SIZE,
            width=IMAGE_SIZE,
            context_length=CONTEXT_LENGTH,
        )
        options.update(overrides)
        return GenerationPipeline(**options)

    return factory


@pytest.fixture()
def sleeps() -> List[float]:
    return []


@pytest.fixture()
def make_guard(make_pipeline, memory_manager, backend, sleeps):
    guards: List[ExecutionGuard] = []

    def factory(**overrides) -> ExecutionGuard:
        options = dict(
            pipeline=make_pipeline(),
            memory_manager=memory_manager,
            timeout_seconds=None,
            sleep=sleeps.append,
        )
        options.update(overrides)
        guard = ExecutionGuard(**options)
        guards.append(guard)
        return guard

    yield factory

    if backend.unet_gate is not None:
        backend.unet_gate.set()
    if backend.decode_gate is not None:
        backend.decode_gate.set()
    for guard in guards:
        if guard.running:
            guard.stop(timeout=5)


@pytest.fixture()
def advisor() -> PerformanceAdvisor:
    return PerformanceAdvisor(
        DeviceCapabilities(memory_budget_bytes=4 * GiB, has_unified_memory=True, cpu_count=4)
    )


@pytest.fixture()
def runtime_config() -> RuntimeConfig:
    return RuntimeConfig(
        height=IMAGE_SIZE,
        width=IMAGE_SIZE,
        context_length=CONTEXT_LENGTH,
        timeout_seconds=None,
    )


@pytest.fixture()
def make_runtime(runtime_config, provider, tokenizer, backend, advisor, sleeps):
    runtimes: List[DiffusionRuntime] = []

    def factory(config: Optional[RuntimeConfig] = None, start: bool = True, **overrides) -> DiffusionRuntime:
        options = dict(
            config=config or runtime_config,
            provider=provider,
            tokenizer=tokenizer,
            backend=backend,
            advisor=advisor,
            sleep=sleeps.append,
        )
        options.update(overrides)
        runtime = DiffusionRuntime(**options)
        runtimes.append(runtime)
        if start:
            runtime.start()
        return runtime

    yield factory

    if backend.unet_gate is not None:
        backend.unet_gate.set()
    for runtime in runtimes:
        if runtime.running:
            runtime.stop(timeout=5)
