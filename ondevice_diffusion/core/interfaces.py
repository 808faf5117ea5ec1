"""
External collaborator interfaces
ResourceProvider, Tokenizer, dan ComputeBackend yang dikonsumsi oleh core
"""

import logging
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Protocol, Sequence, Union

logger = logging.getLogger(__name__)


class ComputeGraph(Enum):
    """Sub-graph yang bisa dijalankan oleh compute backend"""
    TEXT_ENCODER = "text_encoder"
    UNET = "unet"
    VAE_DECODER = "vae_decoder"


class ResourceProvider(Protocol):
    def load(self, name: str) -> Optional[bytes]:
        """Return raw bytes untuk resource, atau None jika tidak ditemukan"""


class Tokenizer(Protocol):
    def encode(self, text: str) -> Sequence[int]:
        """Deterministic text → token ids"""


class ComputeBackend(Protocol):
    def run(self, graph: ComputeGraph, inputs: Dict[str, Any]) -> Dict[str, Any]:
        """Evaluate one sub-graph"""


class DirectoryResourceProvider:
    """
    Load resources dari filesystem

    Directories are searched in order, so pass the package-local directory
    first and the application-local one after it.
    """

    def __init__(self, search_paths: Iterable[Union[str, Path]]):
        self.search_paths = [Path(p) for p in search_paths]
        logger.info(
            f"DirectoryResourceProvider initialized "
            f"(search_paths={[str(p) for p in self.search_paths]})"
        )

    def load(self, name: str) -> Optional[bytes]:
        for directory in self.search_paths:
            candidate = directory / name
            if candidate.is_file():
                logger.info(f"Loading resource '{name}' from {candidate}")
                return candidate.read_bytes()

        logger.warning(f"Resource '{name}' not found in any search path")
        return None


class MappingResourceProvider:
    """In-memory provider, dengan optional fallback provider"""

    def __init__(self,
                 blobs: Mapping[str, bytes],
                 fallback: Optional[ResourceProvider] = None):
        self.blobs = dict(blobs)
        self.fallback = fallback

    def load(self, name: str) -> Optional[bytes]:
        if name in self.blobs:
            return self.blobs[name]
        if self.fallback is not None:
            return self.fallback.load(name)
        return None
