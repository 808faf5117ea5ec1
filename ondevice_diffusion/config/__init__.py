"""
Configuration Package
"""

from .config import (
    RuntimeConfig,
    PresetConfigs,
    detect_environment
)

__all__ = [
    "RuntimeConfig",
    "PresetConfigs",
    "detect_environment"
]
