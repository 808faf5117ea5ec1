"""
Utilities untuk monitoring, logging setup, dan benchmarking
"""

import logging
import sys
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import numpy as np

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(level: str = "INFO", log_file: Optional[str] = None):
    """Configure root logger (stream handler, plus file handler jika diminta)"""
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True
    )


class PerformanceMonitor:
    """Thread-safe timing per operation (last duration wins)"""

    def __init__(self):
        self._metrics: Dict[str, float] = {}
        self._lock = threading.Lock()

    def start_measuring(self, operation: str) -> float:
        return time.perf_counter()

    def stop_measuring(self, operation: str, start_time: float) -> float:
        duration = time.perf_counter() - start_time
        with self._lock:
            self._metrics[operation] = duration
        return duration

    def get_metrics(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._metrics)

    def reset(self):
        with self._lock:
            self._metrics.clear()


@dataclass
class BenchmarkResult:
    """Result dari benchmark run"""
    config: Dict[str, Any]
    num_runs: int

    # Timing
    avg_time: float
    min_time: float
    max_time: float
    std_time: float

    # Success rate
    successful_runs: int
    failed_runs: int
    oom_errors: int
    timeouts: int

    # Per-phase timing
    avg_encoding_time: float = 0.0
    avg_diffusion_time: float = 0.0
    avg_decoding_time: float = 0.0

    @property
    def success_rate(self) -> float:
        return self.successful_runs / self.num_runs if self.num_runs > 0 else 0.0

    def to_dict(self) -> Dict:
        return {
            "config": self.config,
            "num_runs": self.num_runs,
            "timing": {
                "avg": self.avg_time,
                "min": self.min_time,
                "max": self.max_time,
                "std": self.std_time,
                "phases": {
                    "encoding": self.avg_encoding_time,
                    "diffusion": self.avg_diffusion_time,
                    "decoding": self.avg_decoding_time
                }
            },
            "reliability": {
                "successful": self.successful_runs,
                "failed": self.failed_runs,
                "oom_errors": self.oom_errors,
                "timeouts": self.timeouts,
                "success_rate": self.success_rate
            }
        }


class PerformanceBenchmark:
    """
    Benchmark utility untuk testing performance
    """

    def __init__(self, runtime):
        """
        Args:
            runtime: DiffusionRuntime instance (already started)
        """
        self.runtime = runtime

    def benchmark_config(self,
                         prompt: str,
                         num_runs: int = 5,
                         **generation_params) -> BenchmarkResult:
        """
        Benchmark specific configuration

        Args:
            prompt: Test prompt
            num_runs: Number of runs
            **generation_params: Parameters for generation

        Returns:
            BenchmarkResult
        """
        from ..core.errors import DiffusionError, ErrorType

        logger.info(f"Starting benchmark with {num_runs} runs")
        logger.info(f"Params: {generation_params}")

        timings: List[float] = []
        encoding_times: List[float] = []
        diffusion_times: List[float] = []
        decoding_times: List[float] = []

        successful = 0
        failed = 0
        oom_errors = 0
        timeouts = 0

        for i in range(num_runs):
            logger.info(f"Benchmark run {i + 1}/{num_runs}")

            try:
                result = self.runtime.generate_sync(prompt=prompt, **generation_params)
            except DiffusionError as e:
                logger.error(f"Run {i + 1} failed: {e}")
                failed += 1
                if e.error_type == ErrorType.OUT_OF_MEMORY:
                    oom_errors += 1
                elif e.error_type == ErrorType.TIMEOUT:
                    timeouts += 1
                continue

            successful += 1
            metrics = result.metrics
            timings.append(metrics.total_time)
            encoding_times.append(metrics.encoding_time)
            diffusion_times.append(metrics.diffusion_time)
            decoding_times.append(metrics.decoding_time)

        result = BenchmarkResult(
            config=dict(generation_params),
            num_runs=num_runs,
            avg_time=float(np.mean(timings)) if timings else 0.0,
            min_time=float(np.min(timings)) if timings else 0.0,
            max_time=float(np.max(timings)) if timings else 0.0,
            std_time=float(np.std(timings)) if timings else 0.0,
            successful_runs=successful,
            failed_runs=failed,
            oom_errors=oom_errors,
            timeouts=timeouts,
            avg_encoding_time=float(np.mean(encoding_times)) if encoding_times else 0.0,
            avg_diffusion_time=float(np.mean(diffusion_times)) if diffusion_times else 0.0,
            avg_decoding_time=float(np.mean(decoding_times)) if decoding_times else 0.0,
        )

        logger.info(
            f"Benchmark finished: {successful}/{num_runs} successful, "
            f"avg {result.avg_time:.2f}s"
        )
        return result
