"""
Queued Generation Example
Submit beberapa request, cancel satu, dan tangani Busy rejection
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from ondevice_diffusion import (
    BusyError, DiffusionError, DiffusionRuntime, GenerationCancelled, detect_environment,
    setup_logging
)


def main():
    """Queued generation example"""
    print("=" * 70)
    print("Queued Generation Example")
    print("=" * 70)

    config = detect_environment()
    setup_logging(config.log_level, config.log_file)

    runtime = DiffusionRuntime.from_pretrained(config)
    runtime.start()

    prompts = [
        "A cat sitting on a table",
        "A dog running in a park",
        "A bird flying in the sky",
        "A fish swimming in ocean",
    ]

    print(f"\nSubmitting {len(prompts)} requests (queue depth {config.queue_depth})...")
    handles = []
    for i, prompt in enumerate(prompts):
        try:
            handle = runtime.submit(prompt, steps=25, seed=i)
        except BusyError as e:
            print(f"  ✗ {prompt[:40]}... rejected: {e}")
            continue
        handles.append((handle, prompt))
        print(f"  ✓ {prompt[:40]}... ({handle.request_id})")

    # Cancel the last admitted request while it is still waiting
    if len(handles) > 1:
        cancelled, prompt = handles[-1]
        cancelled.cancel()
        print(f"\nCancelled: {prompt[:40]}...")

    output_dir = Path("outputs/queued")
    output_dir.mkdir(parents=True, exist_ok=True)

    print("\n" + "=" * 70)
    print("Results:")
    print("=" * 70)

    for i, (handle, prompt) in enumerate(handles):
        print(f"\n{i + 1}. {prompt[:50]}")
        try:
            result = handle.result()
        except GenerationCancelled:
            print("   Status: cancelled")
            continue
        except DiffusionError as e:
            print(f"   Status: failed ({e.error_type.value}) {e}")
            continue

        output_path = output_dir / f"queued_{i + 1}.png"
        result.image.save(output_path)
        print(f"   Saved: {output_path}")
        print(f"   Time: {result.metrics.total_time:.2f}s, retries: {result.metrics.retry_count}")

    stats = runtime.get_stats()["queue"]
    print("\n" + "=" * 70)
    print("Final Statistics:")
    print("=" * 70)
    print(f"Total completed: {stats['total_completed']}")
    print(f"Total cancelled: {stats['total_cancelled']}")
    print(f"Total rejected: {stats['total_rejected']}")

    runtime.stop()
    print("\n✓ Done!")


if __name__ == "__main__":
    main()
