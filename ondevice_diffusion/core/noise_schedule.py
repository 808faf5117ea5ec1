"""
Noise schedule dan sampling numerics
Cumulative-product table (alphas_cumprod), timestep selection, guidance, DDIM update
"""

import logging
import math
from typing import Any, List, Sequence

import numpy as np
import torch

from .errors import ResourceUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_SCHEDULE_RESOURCE = "alphas_cumprod.bin"
DEFAULT_TRAIN_TIMESTEPS = 1000

# Little-endian float32, satu value per training timestep
_BLOB_DTYPE = np.dtype("<f4")


class NoiseSchedule:
    """
    Immutable table of cumulative-product coefficients, one per training timestep

    Index ``t`` holds ``alpha_bar_t``. Values decrease with ``t``; index 0 is
    almost noise-free and the last index is almost pure noise.
    """

    final_alpha_cumprod = 1.0

    def __init__(self, alphas_cumprod: Sequence[float]):
        values = np.array(alphas_cumprod, dtype=np.float64)
        if values.ndim != 1 or values.size == 0:
            raise ValueError("Noise schedule must be a non-empty 1-D sequence")
        if not np.all(np.isfinite(values)) or np.any(values <= 0.0) or np.any(values > 1.0):
            raise ValueError("Noise schedule coefficients must lie in (0, 1]")

        values.setflags(write=False)
        self._values = values

    @classmethod
    def from_bytes(cls, data: bytes) -> "NoiseSchedule":
        if len(data) == 0 or len(data) % _BLOB_DTYPE.itemsize != 0:
            raise ValueError(
                f"Schedule blob length {len(data)} is not a multiple of {_BLOB_DTYPE.itemsize}"
            )
        return cls(np.frombuffer(data, dtype=_BLOB_DTYPE))

    @classmethod
    def scaled_linear(cls,
                      num_train_timesteps: int = DEFAULT_TRAIN_TIMESTEPS,
                      beta_start: float = 0.00085,
                      beta_end: float = 0.012) -> "NoiseSchedule":
        """Schedule Stable Diffusion v1 (scaled linear betas)"""
        betas = np.linspace(beta_start ** 0.5, beta_end ** 0.5, num_train_timesteps,
                            dtype=np.float64) ** 2
        return cls(np.cumprod(1.0 - betas))

    @classmethod
    def from_scheduler(cls, scheduler: Any) -> "NoiseSchedule":
        """Build dari diffusers scheduler yang punya ``alphas_cumprod``"""
        alphas_cumprod = scheduler.alphas_cumprod
        if isinstance(alphas_cumprod, torch.Tensor):
            alphas_cumprod = alphas_cumprod.detach().cpu().double().numpy()
        return cls(alphas_cumprod)

    @classmethod
    def load(cls, store, name: str = DEFAULT_SCHEDULE_RESOURCE) -> "NoiseSchedule":
        """
        Load schedule melalui ResourceStore

        Raises:
            ResourceUnavailableError: blob missing or malformed
        """
        data = store.load(name)
        try:
            schedule = cls.from_bytes(data)
        except ValueError as e:
            raise ResourceUnavailableError(name, str(e)) from e

        logger.info(f"Noise schedule '{name}' loaded ({len(schedule)} timesteps)")
        return schedule

    def to_bytes(self) -> bytes:
        return self._values.astype(_BLOB_DTYPE).tobytes()

    def __len__(self) -> int:
        return self._values.size

    def __getitem__(self, timestep: int) -> float:
        return float(self._values[timestep])

    def __eq__(self, other) -> bool:
        if not isinstance(other, NoiseSchedule):
            return NotImplemented
        return np.array_equal(self._values, other._values)

    def __hash__(self):
        return hash(self._values.tobytes())

    def timesteps(self, steps: int) -> List[int]:
        """
        Select ``steps`` evenly spaced indices, descending from T-1 to 0

        Non-integer positions round half-up to the nearest index; duplicates
        are dropped keeping the first occurrence.
        """
        if steps < 1:
            raise ValueError(f"steps must be >= 1, got {steps}")

        last = len(self) - 1
        if steps == 1:
            positions = [float(last)]
        else:
            spacing = last / (steps - 1)
            positions = [last - i * spacing for i in range(steps)]

        selected: List[int] = []
        for position in positions:
            index = min(last, max(0, int(math.floor(position + 0.5))))
            if not selected or index != selected[-1]:
                selected.append(index)

        if len(selected) < steps:
            logger.warning(
                f"Schedule of {len(self)} timesteps yields only {len(selected)} "
                f"distinct steps for {steps} requested"
            )
        return selected

    def predecessor_alpha(self, timesteps: Sequence[int], index: int) -> float:
        """alpha_bar dari timestep berikutnya di denoising order"""
        if index + 1 < len(timesteps):
            return self[timesteps[index + 1]]
        return self.final_alpha_cumprod


def classifier_free_guidance(noise_uncond: torch.Tensor,
                             noise_cond: torch.Tensor,
                             guidance_scale: float) -> torch.Tensor:
    return noise_uncond + guidance_scale * (noise_cond - noise_uncond)


def ddim_step(latents: torch.Tensor,
              noise_pred: torch.Tensor,
              alpha_cumprod: float,
              alpha_cumprod_prev: float) -> torch.Tensor:
    """Deterministic DDIM update (eta = 0)"""
    pred_original = (latents - math.sqrt(1.0 - alpha_cumprod) * noise_pred) / math.sqrt(alpha_cumprod)
    return (
        math.sqrt(alpha_cumprod_prev) * pred_original
        + math.sqrt(1.0 - alpha_cumprod_prev) * noise_pred
    )
