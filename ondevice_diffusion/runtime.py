"""
On-Device Diffusion Runtime
Facade yang menyatukan config, caches, pipeline dan execution guard
"""

import logging
import time
from dataclasses import replace
from typing import Callable, Dict, Optional

import torch

from .config import RuntimeConfig
from .core.diffusion_engine import GenerationPipeline, GenerationResult
from .core.errors import classify_error
from .core.execution_guard import ExecutionGuard, RetryPolicy
from .core.execution_state_machine import GenerationStatus, ProgressEvent, StatusSnapshot, StatusTracker
from .core.interfaces import (
    ComputeBackend, DirectoryResourceProvider, MappingResourceProvider, ResourceProvider, Tokenizer
)
from .core.job_queue_manager import GenerationHandle, GenerationRequest
from .core.memory_manager import MemoryManager, ResourceStore, TensorCache, VRAMMonitor
from .core.model_loader import DiffusionModelLoader, ModelConfig
from .core.noise_schedule import NoiseSchedule
from .core.performance_advisor import DeviceConfiguration, PerformanceAdvisor
from .utils.monitoring import PerformanceMonitor

logger = logging.getLogger(__name__)


class DiffusionRuntime:
    """
    Main entry point untuk on-device generation

    Usage:
        runtime = DiffusionRuntime.from_pretrained(RuntimeConfig())
        runtime.start()
        result = runtime.generate_sync("a mountain", steps=20, seed=42)
        runtime.stop()
    """

    def __init__(self,
                 config: RuntimeConfig,
                 provider: ResourceProvider,
                 tokenizer: Tokenizer,
                 backend: ComputeBackend,
                 advisor: Optional[PerformanceAdvisor] = None,
                 schedule: Optional[NoiseSchedule] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.tokenizer = tokenizer
        self.backend = backend
        self.advisor = advisor or PerformanceAdvisor(device=config.device)
        self.status_tracker = StatusTracker()
        self.monitor = PerformanceMonitor()

        self.memory_manager = MemoryManager(
            ResourceStore(provider, max_size_bytes=config.resource_cache_bytes),
            tensor_cache=TensorCache(max_size_bytes=config.tensor_cache_bytes),
            monitor=VRAMMonitor(config.device, warning_threshold=config.memory_warning_threshold),
        )

        self.schedule = schedule
        self.pipeline: Optional[GenerationPipeline] = None
        self.guard: Optional[ExecutionGuard] = None
        self._sleep = sleep

        logger.info(f"DiffusionRuntime created for {config.model_id} on {config.device}")

    @classmethod
    def from_pretrained(cls,
                        config: RuntimeConfig,
                        pipeline_class=None,
                        advisor: Optional[PerformanceAdvisor] = None) -> "DiffusionRuntime":
        """
        Build runtime di atas diffusers model

        The noise schedule is derived from the model's scheduler and served
        through the resource provider; other resources come from
        ``config.resource_dirs``.
        """
        advisor = advisor or PerformanceAdvisor(device=config.device)
        device_config = advisor.configuration()
        low_memory = device_config.use_low_memory_mode

        model_config = ModelConfig(
            model_id=config.model_id,
            variant=config.variant,
            torch_dtype=device_config.torch_dtype if config.device != "cpu" else torch.float32,
            enable_attention_slicing=low_memory,
            enable_vae_slicing=low_memory,
            enable_vae_tiling=low_memory,
            enable_xformers=config.enable_xformers,
            enable_cpu_offload=config.enable_cpu_offload and low_memory,
        )

        backend, tokenizer = DiffusionModelLoader(
            model_config, device=config.device
        ).load_pipeline_from_diffusers(pipeline_class)

        config = replace(
            config,
            context_length=tokenizer.model_max_length,
            pad_token_id=tokenizer.pad_token_id,
        )

        schedule_blob = backend.noise_schedule().to_bytes()
        provider = MappingResourceProvider(
            {config.schedule_resource_name: schedule_blob},
            fallback=DirectoryResourceProvider(config.resource_paths),
        )
        return cls(config, provider, tokenizer, backend, advisor=advisor)

    @property
    def running(self) -> bool:
        return self.guard is not None and self.guard.running

    @property
    def device_config(self) -> DeviceConfiguration:
        return self.advisor.configuration()

    def start(self):
        """
        Load schedule, build pipeline dan start worker

        Raises:
            ResourceUnavailableError: noise schedule missing or malformed
            BackendFailureError: device not supported, or any other startup failure
        """
        if self.running:
            logger.warning("DiffusionRuntime already running")
            return

        logger.info("=" * 60)
        logger.info("STARTING DIFFUSION RUNTIME")
        logger.info("=" * 60)

        self.status_tracker.transition(GenerationStatus.LOADING)
        try:
            self.advisor.ensure_supported()
            device_config = self.advisor.configuration()
            torch.set_num_threads(device_config.thread_count)

            if self.schedule is None:
                self.schedule = NoiseSchedule.load(
                    self.memory_manager.resource_store, self.config.schedule_resource_name
                )

            self.pipeline = GenerationPipeline(
                backend=self.backend,
                tokenizer=self.tokenizer,
                schedule=self.schedule,
                memory_manager=self.memory_manager,
                device_config=device_config,
                device=self.config.device,
                height=self.config.height,
                width=self.config.width,
                context_length=self.config.context_length,
                pad_token_id=self.config.pad_token_id,
                required_resources=self.config.required_resources,
                monitor=self.monitor,
            )
            self.guard = ExecutionGuard(
                pipeline=self.pipeline,
                memory_manager=self.memory_manager,
                status=self.status_tracker,
                queue_depth=self.config.queue_depth,
                timeout_seconds=self.config.timeout_seconds,
                retry_policy=RetryPolicy(
                    max_attempts=self.config.max_attempts,
                    backoff_base=self.config.backoff_base,
                    max_oom_retries=self.config.max_oom_retries,
                ),
                sleep=self._sleep,
            )
        except Exception as e:
            error = classify_error(e)
            logger.error(f"Runtime failed to start: {error}")
            self.status_tracker.transition(GenerationStatus.ERROR, reason=error.reason)
            self.status_tracker.transition(GenerationStatus.IDLE)
            if error is e:
                raise
            raise error from e

        self.status_tracker.transition(GenerationStatus.IDLE)
        self.guard.start()
        logger.info(f"Runtime ready ({device_config.to_dict()})")

    def stop(self, timeout: float = 30.0):
        """Stop worker dan cancel pending requests"""
        if not self.running:
            logger.warning("DiffusionRuntime not running")
            return
        self.guard.stop(timeout=timeout)
        self.memory_manager.tensor_cache.clear()
        logger.info("DiffusionRuntime stopped")

    def submit(self,
               prompt: str,
               negative_prompt: str = "",
               steps: int = 50,
               guidance_scale: float = 7.5,
               seed: int = 0,
               on_progress: Optional[Callable[[ProgressEvent], None]] = None) -> GenerationHandle:
        """
        Submit generation request

        Raises:
            InvalidInputError: parameters out of range
            BusyError: queue is full
        """
        if not self.running:
            raise RuntimeError("Runtime not started. Call start() first.")

        request = GenerationRequest(
            prompt=prompt,
            negative_prompt=negative_prompt,
            steps=steps,
            guidance_scale=guidance_scale,
            seed=seed,
        )
        return self.guard.submit(request, on_progress=on_progress)

    def generate_sync(self,
                      prompt: str,
                      timeout: Optional[float] = None,
                      **generation_params) -> GenerationResult:
        """Submit lalu tunggu result"""
        handle = self.submit(prompt, **generation_params)
        return handle.result(timeout=timeout)

    def cancel(self, request_id: str) -> bool:
        if not self.running:
            return False
        return self.guard.cancel(request_id)

    def status(self) -> StatusSnapshot:
        return self.status_tracker.snapshot()

    def handle_memory_warning(self):
        """Clear caches dan cancel semua pekerjaan yang sedang berjalan"""
        self.memory_manager.handle_memory_warning()
        if self.running:
            cancelled = self.guard.cancel_all()
            if cancelled:
                logger.warning(f"Cancelled {cancelled} request(s) after memory warning")

    def refresh_device_configuration(self) -> DeviceConfiguration:
        device_config = self.advisor.configuration(refresh=True)
        torch.set_num_threads(device_config.thread_count)
        if self.pipeline is not None:
            self.pipeline.device_config = device_config
        return device_config

    def get_stats(self) -> Dict:
        stats = {
            "status": self.status().to_dict(),
            "device": self.device_config.to_dict(),
            "memory": self.memory_manager.get_memory_report(),
            "timings": self.monitor.get_metrics(),
        }
        if self.guard is not None:
            stats["queue"] = self.guard.queue.get_stats()
        return stats
