"""
Basic Generation Example
Satu prompt, satu image, config dipilih otomatis dari device
"""

from pathlib import Path

from ondevice_diffusion import DiffusionRuntime, detect_environment, setup_logging


def main():
    print("=" * 70)
    print("On-Device Diffusion: single image")
    print("=" * 70)

    config = detect_environment()
    setup_logging(config.log_level, config.log_file)
    print(f"Device: {config.device}, queue depth: {config.queue_depth}")

    runtime = DiffusionRuntime.from_pretrained(config)
    runtime.start()

    def on_progress(event):
        print(f"  {event.fraction * 100:5.1f}%  {event.stage}")

    try:
        result = runtime.generate_sync(
            prompt="a lighthouse on a cliff, overcast morning, oil painting",
            negative_prompt="blurry, watermark",
            steps=25,
            guidance_scale=7.0,
            seed=1234,
            on_progress=on_progress,
        )
    finally:
        runtime.stop()

    out_dir = Path("outputs")
    out_dir.mkdir(exist_ok=True)
    image_path = out_dir / f"lighthouse_seed{result.seed}.png"
    result.image.save(image_path)

    retries = result.metrics.retry_count
    print(f"\nSaved {image_path} in {result.metrics.total_time:.2f}s ({retries} retries)")
    print(f"Timesteps used: {result.timesteps[:3]} ... {result.timesteps[-1]}")


if __name__ == "__main__":
    main()
