"""
Utilities Package
"""

from .monitoring import (
    setup_logging,
    PerformanceMonitor,
    PerformanceBenchmark,
    BenchmarkResult
)

__all__ = [
    "setup_logging",
    "PerformanceMonitor",
    "PerformanceBenchmark",
    "BenchmarkResult"
]
