"""
Custom Configuration Example
Contoh menggunakan presets, config file, dan benchmark
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from ondevice_diffusion import DiffusionRuntime, PresetConfigs, RuntimeConfig, detect_environment, setup_logging
from ondevice_diffusion.utils import PerformanceBenchmark


def example_auto_detect() -> RuntimeConfig:
    """Example: Auto-detect configuration"""
    print("=" * 70)
    print("Example 1: Auto-Detect Configuration")
    print("=" * 70)

    config = detect_environment()

    print("\n✓ Auto-detected configuration:")
    print(f"  Model: {config.model_id}")
    print(f"  Device: {config.device}")
    print(f"  CPU Offload: {config.enable_cpu_offload}")
    print(f"  Queue depth: {config.queue_depth}")
    print(f"  Timeout: {config.timeout_seconds}s, attempts: {config.max_attempts}")

    return config


def example_presets():
    """Example: Using presets"""
    print("\n" + "=" * 70)
    print("Example 2: Using Presets")
    print("=" * 70)

    for name in ("low_memory", "balanced", "high_memory", "fail_fast"):
        config = getattr(PresetConfigs, name)()
        print(f"\n{name}:")
        print(f"   Tensor cache: {config.tensor_cache_bytes // (1024 ** 2)}MB")
        print(f"   Queue depth: {config.queue_depth}")
        print(f"   Max attempts: {config.max_attempts}")


def example_save_load():
    """Example: Save dan load config file"""
    print("\n" + "=" * 70)
    print("Example 3: Config File")
    print("=" * 70)

    config = RuntimeConfig(queue_depth=0, timeout_seconds=120.0, log_file="ondevice_diffusion.log")
    config.save("runtime_config.json")
    print("Config saved to runtime_config.json")

    loaded = RuntimeConfig.load("runtime_config.json")
    print(f"Loaded queue depth: {loaded.queue_depth}, timeout: {loaded.timeout_seconds}s")


def example_benchmark(config: RuntimeConfig):
    """Example: Benchmark satu configuration"""
    print("\n" + "=" * 70)
    print("Example 4: Benchmark")
    print("=" * 70)

    runtime = DiffusionRuntime.from_pretrained(config)
    runtime.start()
    try:
        benchmark = PerformanceBenchmark(runtime)
        result = benchmark.benchmark_config("a mountain", num_runs=3, steps=20, seed=42)
    finally:
        runtime.stop()

    print(f"\n✓ Success rate: {result.success_rate * 100:.0f}%")
    print(f"✓ Avg time: {result.avg_time:.2f}s (±{result.std_time:.2f})")


def main():
    config = example_auto_detect()
    setup_logging(config.log_level)
    example_presets()
    example_save_load()
    example_benchmark(config)


if __name__ == "__main__":
    main()
