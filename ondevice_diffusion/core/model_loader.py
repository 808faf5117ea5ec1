"""
Model Loader untuk On-Device Diffusion Runtime
ComputeBackend di atas komponen diffusers dengan phase-based placement:
Text Encoder → UNet → VAE, plus CPU offload dalam low-memory mode
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import torch

from .errors import BackendFailureError, OutOfMemoryError, classify_error
from .interfaces import ComputeGraph
from .noise_schedule import NoiseSchedule

logger = logging.getLogger(__name__)


class ModelComponent(Enum):
    """Komponen model difusi"""
    TEXT_ENCODER = "text_encoder"
    UNET = "unet"
    VAE = "vae"


GRAPH_COMPONENTS = {
    ComputeGraph.TEXT_ENCODER: ModelComponent.TEXT_ENCODER,
    ComputeGraph.UNET: ModelComponent.UNET,
    ComputeGraph.VAE_DECODER: ModelComponent.VAE,
}


@dataclass
class ModelConfig:
    """Konfigurasi untuk model loading"""
    model_id: str
    variant: Optional[str] = None  # fp16, fp32, etc
    torch_dtype: torch.dtype = torch.float32
    low_cpu_mem_usage: bool = True
    use_safetensors: bool = True

    # Memory optimization flags
    enable_attention_slicing: bool = False
    enable_vae_slicing: bool = False
    enable_vae_tiling: bool = False
    enable_xformers: bool = False

    # Offload settings
    enable_cpu_offload: bool = False


class DiffusersComputeBackend:
    """
    ComputeBackend yang menjalankan text encoder, UNet dan VAE decoder

    Only the component needed by the current graph is kept on the target
    device when CPU offload is enabled; the others wait on the CPU.
    """

    def __init__(self,
                 text_encoder: torch.nn.Module,
                 unet: torch.nn.Module,
                 vae: torch.nn.Module,
                 scheduler: Optional[Any] = None,
                 device: str = "cpu",
                 dtype: torch.dtype = torch.float32,
                 enable_cpu_offload: bool = False):
        self.components: Dict[ModelComponent, torch.nn.Module] = {
            ModelComponent.TEXT_ENCODER: text_encoder,
            ModelComponent.UNET: unet,
            ModelComponent.VAE: vae,
        }
        self.scheduler = scheduler
        self.device = torch.device(device)
        self.dtype = dtype
        self.enable_cpu_offload = enable_cpu_offload and self.device.type != "cpu"
        self.active_component: Optional[ModelComponent] = None

        for component in self.components.values():
            component.eval()
            component.requires_grad_(False)

        if not self.enable_cpu_offload:
            for name, component in self.components.items():
                self.components[name] = component.to(self.device)

        logger.info(
            f"DiffusersComputeBackend ready on {self.device} "
            f"(dtype={dtype}, cpu_offload={self.enable_cpu_offload})"
        )

    @property
    def text_encoder(self) -> torch.nn.Module:
        return self.components[ModelComponent.TEXT_ENCODER]

    @property
    def unet(self) -> torch.nn.Module:
        return self.components[ModelComponent.UNET]

    @property
    def vae(self) -> torch.nn.Module:
        return self.components[ModelComponent.VAE]

    def apply_optimizations(self, config: ModelConfig):
        """Apply memory optimizations ke komponen"""
        logger.info("Applying memory optimizations...")

        if config.enable_attention_slicing and hasattr(self.unet, "set_attention_slice"):
            self.unet.set_attention_slice("auto")
            logger.info("Enabled attention slicing")

        if config.enable_vae_slicing and hasattr(self.vae, "enable_slicing"):
            self.vae.enable_slicing()
            logger.info("Enabled VAE slicing")

        if config.enable_vae_tiling and hasattr(self.vae, "enable_tiling"):
            self.vae.enable_tiling()
            logger.info("Enabled VAE tiling")

        if config.enable_xformers and hasattr(self.unet, "enable_xformers_memory_efficient_attention"):
            try:
                self.unet.enable_xformers_memory_efficient_attention()
                logger.info("Enabled xformers memory efficient attention")
            except (ImportError, ModuleNotFoundError, ValueError, RuntimeError) as e:
                logger.warning(f"Could not enable xformers attention: {e}")

    def prepare(self, target: ModelComponent) -> torch.nn.Module:
        """
        Pindahkan komponen target ke device

        With CPU offload the other components are moved back to the CPU first.
        """
        if self.active_component == target:
            return self.components[target]

        if self.enable_cpu_offload:
            logger.info("=" * 50)
            logger.info(f"Preparing {target.value}")
            logger.info("=" * 50)

            for name, component in self.components.items():
                if name != target:
                    self.components[name] = component.to("cpu")
            if self.device.type == "cuda":
                torch.cuda.empty_cache()

            self.components[target] = self.components[target].to(self.device)
            logger.info(f"{target.value} ready on {self.device}")

        self.active_component = target
        return self.components[target]

    def run(self, graph: ComputeGraph, inputs: Dict[str, Any]) -> Dict[str, Any]:
        """
        Execute satu compute graph

        Raises:
            OutOfMemoryError: device allocation failed
            BackendFailureError: any other failure inside the model
        """
        try:
            module = self.prepare(GRAPH_COMPONENTS[graph])
        except KeyError:
            raise BackendFailureError(f"Unknown compute graph: {graph!r}") from None

        try:
            with torch.no_grad():
                if graph == ComputeGraph.TEXT_ENCODER:
                    return self._run_text_encoder(module, inputs)
                if graph == ComputeGraph.UNET:
                    return self._run_unet(module, inputs)
                return self._run_vae_decoder(module, inputs)
        except torch.cuda.OutOfMemoryError as e:
            logger.error(f"OOM during {graph.value}: {e}")
            raise OutOfMemoryError(str(e)) from e
        except (RuntimeError, KeyError, AttributeError) as e:
            raise classify_error(e) from e

    def _run_text_encoder(self, module: torch.nn.Module, inputs: Dict[str, Any]) -> Dict[str, Any]:
        input_ids = inputs["input_ids"].to(self.device)
        embeddings = module(input_ids)[0]
        return {"embeddings": embeddings.float()}

    def _run_unet(self, module: torch.nn.Module, inputs: Dict[str, Any]) -> Dict[str, Any]:
        latents = inputs["latents"].to(self.device, dtype=self.dtype)
        timestep = inputs["timestep"].to(self.device)
        hidden_states = inputs["encoder_hidden_states"].to(self.device, dtype=self.dtype)

        noise_pred = module(latents, timestep, encoder_hidden_states=hidden_states).sample
        return {"noise_pred": noise_pred.float()}

    def _run_vae_decoder(self, module: torch.nn.Module, inputs: Dict[str, Any]) -> Dict[str, Any]:
        latents = inputs["latents"].to(self.device, dtype=self.dtype)
        images = module.decode(latents / module.config.scaling_factor).sample
        return {"images": images.float()}

    def noise_schedule(self) -> NoiseSchedule:
        """Noise schedule dari scheduler bawaan model"""
        if self.scheduler is None:
            return NoiseSchedule.scaled_linear()
        return NoiseSchedule.from_scheduler(self.scheduler)

    def offload_all(self):
        """Offload semua components ke CPU"""
        for name, component in self.components.items():
            self.components[name] = component.to("cpu")
        self.active_component = None
        if self.device.type == "cuda":
            torch.cuda.empty_cache()


class CLIPTokenizerAdapter:
    """Tokenizer interface di atas transformers CLIPTokenizer"""

    def __init__(self, tokenizer: Any):
        self.tokenizer = tokenizer

    @property
    def model_max_length(self) -> int:
        return self.tokenizer.model_max_length

    @property
    def pad_token_id(self) -> int:
        return self.tokenizer.pad_token_id

    def encode(self, text: str) -> List[int]:
        encoded = self.tokenizer(
            text,
            truncation=True,
            max_length=self.model_max_length,
        )
        return list(encoded.input_ids)

    @classmethod
    def from_pretrained(cls, model_id: str, subfolder: str = "tokenizer") -> "CLIPTokenizerAdapter":
        from transformers import CLIPTokenizer

        return cls(CLIPTokenizer.from_pretrained(model_id, subfolder=subfolder))


class DiffusionModelLoader:
    """
    Loader untuk complete diffusion pipeline dari diffusers
    Splits the pipeline into a ComputeBackend and a Tokenizer
    """

    def __init__(self, config: ModelConfig, device: str = "cpu"):
        self.config = config
        self.device = device
        logger.info(f"Initialized DiffusionModelLoader for {config.model_id}")

    def load_pipeline_from_diffusers(self, pipeline_class=None) -> Tuple[DiffusersComputeBackend, CLIPTokenizerAdapter]:
        """
        Load complete pipeline using diffusers library

        Args:
            pipeline_class: Diffusers pipeline class (default StableDiffusionPipeline)

        Returns:
            (backend, tokenizer)
        """
        if pipeline_class is None:
            from diffusers import StableDiffusionPipeline
            pipeline_class = StableDiffusionPipeline

        logger.info("Loading complete pipeline from diffusers...")

        try:
            pipeline = pipeline_class.from_pretrained(
                self.config.model_id,
                torch_dtype=self.config.torch_dtype,
                variant=self.config.variant,
                use_safetensors=self.config.use_safetensors,
                low_cpu_mem_usage=self.config.low_cpu_mem_usage,
            )
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load pipeline: {e}")
            raise BackendFailureError(f"Could not load '{self.config.model_id}': {e}") from e

        backend = DiffusersComputeBackend(
            text_encoder=pipeline.text_encoder,
            unet=pipeline.unet,
            vae=pipeline.vae,
            scheduler=pipeline.scheduler,
            device=self.device,
            dtype=self.config.torch_dtype,
            enable_cpu_offload=self.config.enable_cpu_offload,
        )
        backend.apply_optimizations(self.config)

        logger.info("Pipeline loaded successfully")
        return backend, CLIPTokenizerAdapter(pipeline.tokenizer)
