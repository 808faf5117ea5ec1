"""
Diffusion Generation Pipeline
Encode prompts → denoise loop dengan classifier-free guidance → decode latents
"""

import functools
import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import torch
from PIL import Image

from .errors import BackendFailureError
from .execution_state_machine import ExecutionContext, ExecutionMetrics, ProgressEvent
from .interfaces import ComputeBackend, ComputeGraph, Tokenizer
from .job_queue_manager import GenerationRequest
from .memory_manager import BufferPool, MemoryManager
from .noise_schedule import NoiseSchedule, classifier_free_guidance, ddim_step
from .performance_advisor import DeviceConfiguration
from ..utils.monitoring import PerformanceMonitor

logger = logging.getLogger(__name__)

GuidanceFn = Callable[[torch.Tensor, torch.Tensor, float], torch.Tensor]
StepFn = Callable[[torch.Tensor, torch.Tensor, float, float], torch.Tensor]

DEFAULT_CONTEXT_LENGTH = 77
CLIP_PAD_TOKEN_ID = 49407


@dataclass
class GenerationResult:
    """Result dari satu generation"""
    image: Image.Image
    request: GenerationRequest
    request_id: str
    timesteps: List[int]
    metrics: ExecutionMetrics = field(default_factory=ExecutionMetrics)

    @property
    def seed(self) -> int:
        return self.request.seed


@dataclass
class DenoiseState:
    """Latent yang sedang di-denoise, dimiliki oleh satu run"""
    latents: torch.Tensor
    timesteps: List[int]
    step_index: int = 0

    def advance(self, latents: torch.Tensor, pool: BufferPool):
        pool.release(self.latents)
        self.latents = pool.register(latents, tag="latents")
        self.step_index += 1

    def release(self, pool: BufferPool):
        pool.release(self.latents)


class GenerationPipeline:
    """
    Runs one generation request end to end

    Every backend invocation goes through ``context.run_unit`` so that the
    caller can attach timeouts and retries per unit of work.
    """

    def __init__(self,
                 backend: ComputeBackend,
                 tokenizer: Tokenizer,
                 schedule: NoiseSchedule,
                 memory_manager: MemoryManager,
                 device_config: DeviceConfiguration,
                 device: str = "cpu",
                 height: int = 512,
                 width: int = 512,
                 latent_channels: int = 4,
                 vae_scale_factor: int = 8,
                 context_length: int = DEFAULT_CONTEXT_LENGTH,
                 pad_token_id: int = CLIP_PAD_TOKEN_ID,
                 required_resources: Sequence[str] = (),
                 guidance_fn: GuidanceFn = classifier_free_guidance,
                 step_fn: StepFn = ddim_step,
                 monitor: Optional[PerformanceMonitor] = None):
        if height % vae_scale_factor or width % vae_scale_factor:
            raise ValueError(
                f"Image size {height}x{width} must be a multiple of {vae_scale_factor}"
            )

        self.backend = backend
        self.tokenizer = tokenizer
        self.schedule = schedule
        self.memory_manager = memory_manager
        self.device_config = device_config
        self.device = torch.device(device)
        self.height = height
        self.width = width
        self.latent_channels = latent_channels
        self.vae_scale_factor = vae_scale_factor
        self.context_length = context_length
        self.pad_token_id = pad_token_id
        self.required_resources = list(required_resources)
        self.guidance_fn = guidance_fn
        self.step_fn = step_fn
        self.monitor = monitor or PerformanceMonitor()

    @property
    def latent_shape(self) -> Tuple[int, int, int, int]:
        return (
            1,
            self.latent_channels,
            self.height // self.vae_scale_factor,
            self.width // self.vae_scale_factor,
        )

    def run(self,
            request: GenerationRequest,
            on_progress: Optional[Callable[[ProgressEvent], None]] = None,
            context: Optional[ExecutionContext] = None) -> GenerationResult:
        """
        Main generation method

        Args:
            request: Validated or unvalidated request
            on_progress: Receives one event per denoise step plus a terminal one
            context: Cancellation token, unit wrapper and metrics sink

        Returns:
            GenerationResult

        Raises:
            DiffusionError subclasses, see ``core.errors``
        """
        request.validate()
        context = context or ExecutionContext(job_id=str(uuid.uuid4()))
        emit = self._emitter(on_progress, context.job_id)

        logger.info("=" * 60)
        logger.info(f"STARTING IMAGE GENERATION ({context.job_id})")
        logger.info("=" * 60)
        logger.info(f"Parameters: {request.to_dict()}")

        self._require_resources()
        self.memory_manager.relieve_pressure()

        pool = self.memory_manager.buffer_pool
        state: Optional[DenoiseState] = None
        try:
            cond_embeds, uncond_embeds = self._encode_prompts(request, context)
            context.raise_if_cancelled()

            state = DenoiseState(
                latents=pool.register(self.initial_latents(request.seed), tag="latents"),
                timesteps=self.schedule.timesteps(request.steps),
            )
            self._denoise(state, cond_embeds, uncond_embeds, request, context, emit)

            image = self._decode(state.latents, context)
        finally:
            if state is not None:
                state.release(pool)

        context.metrics.finish()
        emit(1.0, "Generation completed")

        logger.info(f"Generation completed in {context.metrics.total_time:.2f}s")
        return GenerationResult(
            image=image,
            request=request,
            request_id=context.job_id,
            timesteps=list(state.timesteps),
            metrics=context.metrics,
        )

    def initial_latents(self, seed: int) -> torch.Tensor:
        """Seeded noise, bit-identical untuk seed yang sama di device manapun"""
        generator = torch.Generator(device="cpu").manual_seed(seed)
        latents = torch.randn(self.latent_shape, generator=generator, dtype=torch.float32)
        return latents.to(self.device)

    def pad_tokens(self, token_ids: Sequence[int]) -> List[int]:
        ids = [int(t) for t in token_ids][:self.context_length]
        return ids + [self.pad_token_id] * (self.context_length - len(ids))

    def _require_resources(self):
        for name in self.required_resources:
            self.memory_manager.resource_store.load(name)

    @staticmethod
    def _emitter(on_progress, request_id: str):
        def emit(fraction: float, stage: str):
            if on_progress is not None:
                on_progress(ProgressEvent(fraction=fraction, stage=stage, request_id=request_id))
        return emit

    def _encode_prompts(self,
                        request: GenerationRequest,
                        context: ExecutionContext) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Phase 1: Encode prompts using the text encoder graph

        Returns:
            (prompt_embeds, negative_prompt_embeds)
        """
        logger.info("=" * 60)
        logger.info("PHASE 1: ENCODING PROMPTS")
        logger.info("=" * 60)

        start_time = self.monitor.start_measuring("encoding")

        prompt_ids = self.pad_tokens(self.tokenizer.encode(request.prompt))
        negative_ids = self.pad_tokens(self.tokenizer.encode(request.negative_prompt))

        prompt_embeds = self._encode_tokens(prompt_ids, "encoding prompt", context)
        negative_prompt_embeds = self._encode_tokens(negative_ids, "encoding negative prompt", context)

        context.metrics.encoding_time = self.monitor.stop_measuring("encoding", start_time)
        logger.info(f"Prompt encoding completed in {context.metrics.encoding_time:.2f}s")
        logger.info(f"Prompt embeds shape: {tuple(prompt_embeds.shape)}")

        return prompt_embeds, negative_prompt_embeds

    def _encode_tokens(self,
                       token_ids: List[int],
                       label: str,
                       context: ExecutionContext) -> torch.Tensor:
        cache = self.memory_manager.tensor_cache
        key = cache.make_key("embedding", tuple(token_ids))

        cached = cache.get_tensor(key)
        if cached is not None:
            logger.info(f"{label}: embedding cache hit")
            return cached

        input_ids = torch.tensor([token_ids], dtype=torch.long, device=self.device)
        outputs = context.run_unit(
            label,
            functools.partial(self.backend.run, ComputeGraph.TEXT_ENCODER, {"input_ids": input_ids}),
        )
        embeds = self._output(outputs, "embeddings", ComputeGraph.TEXT_ENCODER)

        cache.put_tensor(key, embeds)
        return embeds

    def _denoise(self,
                 state: DenoiseState,
                 cond_embeds: torch.Tensor,
                 uncond_embeds: torch.Tensor,
                 request: GenerationRequest,
                 context: ExecutionContext,
                 emit):
        """Phase 2: iterative denoise loop"""
        logger.info("=" * 60)
        logger.info("PHASE 2: RUNNING DIFFUSION")
        logger.info("=" * 60)

        start_time = self.monitor.start_measuring("diffusion")
        pool = self.memory_manager.buffer_pool
        total = len(state.timesteps)
        context.total_steps = total

        batched = self.device_config.max_batch_size >= 2
        logger.info(
            f"Running {total} diffusion steps "
            f"({'batched' if batched else 'sequential'} guidance)"
        )

        for index, timestep in enumerate(state.timesteps):
            step_number = index + 1
            label = f"denoising step {step_number}/{total}"

            noise_pred = context.run_unit(
                label,
                functools.partial(
                    self._predict_noise, state.latents, timestep,
                    cond_embeds, uncond_embeds, request.guidance_scale, batched
                ),
            )

            latents = self.step_fn(
                state.latents,
                noise_pred,
                self.schedule[timestep],
                self.schedule.predecessor_alpha(state.timesteps, index),
            )
            state.advance(latents, pool)

            context.current_step = step_number
            emit(step_number / total, label)
            if step_number % 10 == 0 or step_number == total:
                logger.info(f"Step {step_number}/{total} ({step_number / total * 100:.1f}%)")

            context.raise_if_cancelled(final=step_number == total)

        context.metrics.diffusion_time = self.monitor.stop_measuring("diffusion", start_time)
        logger.info(f"Diffusion completed in {context.metrics.diffusion_time:.2f}s")

    def _predict_noise(self,
                       latents: torch.Tensor,
                       timestep: int,
                       cond_embeds: torch.Tensor,
                       uncond_embeds: torch.Tensor,
                       guidance_scale: float,
                       batched: bool) -> torch.Tensor:
        t = torch.tensor(timestep, dtype=torch.long, device=self.device)

        if batched:
            outputs = self.backend.run(ComputeGraph.UNET, {
                "latents": torch.cat([latents] * 2),
                "timestep": t,
                "encoder_hidden_states": torch.cat([uncond_embeds, cond_embeds]),
            })
            noise_uncond, noise_cond = self._output(outputs, "noise_pred", ComputeGraph.UNET).chunk(2)
        else:
            noise_uncond = self._output(self.backend.run(ComputeGraph.UNET, {
                "latents": latents,
                "timestep": t,
                "encoder_hidden_states": uncond_embeds,
            }), "noise_pred", ComputeGraph.UNET)
            noise_cond = self._output(self.backend.run(ComputeGraph.UNET, {
                "latents": latents,
                "timestep": t,
                "encoder_hidden_states": cond_embeds,
            }), "noise_pred", ComputeGraph.UNET)

        return self.guidance_fn(noise_uncond, noise_cond, guidance_scale)

    def _decode(self, latents: torch.Tensor, context: ExecutionContext) -> Image.Image:
        """Phase 3: Decode latents ke image"""
        logger.info("=" * 60)
        logger.info("PHASE 3: DECODING LATENTS")
        logger.info("=" * 60)

        start_time = self.monitor.start_measuring("decoding")

        outputs = context.run_unit(
            "decoding latents",
            functools.partial(self.backend.run, ComputeGraph.VAE_DECODER, {"latents": latents}),
        )
        images = self._output(outputs, "images", ComputeGraph.VAE_DECODER)

        # Post-process
        images = (images.float() / 2 + 0.5).clamp(0, 1)
        images = images.detach().cpu().permute(0, 2, 3, 1).numpy()
        images = (images * 255).round().astype(np.uint8)

        context.metrics.decoding_time = self.monitor.stop_measuring("decoding", start_time)
        logger.info(f"Decoding completed in {context.metrics.decoding_time:.2f}s")

        return Image.fromarray(images[0])

    @staticmethod
    def _output(outputs: Dict, name: str, graph: ComputeGraph) -> torch.Tensor:
        try:
            return outputs[name]
        except (KeyError, TypeError) as e:
            raise BackendFailureError(f"{graph.value} returned no '{name}' output") from e
