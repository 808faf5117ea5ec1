from __future__ import annotations

import functools
import threading
import time

import pytest
import torch

from ondevice_diffusion.core.errors import (
    BackendFailureError, BusyError, ExecutionTimeoutError, GenerationCancelled,
    InvalidInputError, OutOfMemoryError
)
from ondevice_diffusion.core.execution_guard import RetryPolicy
from ondevice_diffusion.core.execution_state_machine import ExecutionContext, GenerationStatus
from ondevice_diffusion.core.interfaces import ComputeGraph
from ondevice_diffusion.core.job_queue_manager import GenerationRequest

RESULT_TIMEOUT = 10


def request(prompt: str = "a mountain", steps: int = 3, seed: int = 42) -> GenerationRequest:
    return GenerationRequest(prompt=prompt, steps=steps, seed=seed)


def test_timeout_twice_then_success_backs_off_exponentially(make_guard, memory_manager, sleeps):
    guard = make_guard(timeout_seconds=0.3)
    memory_manager.tensor_cache.put_tensor("k", torch.ones(1))
    attempts = []

    def slow_then_fast():
        attempts.append(1)
        if len(attempts) == 1:
            time.sleep(0.75)
        return "ok"

    context = ExecutionContext(job_id="job")
    assert guard.run_unit(context, "denoising step 1/1", slow_then_fast) == "ok"

    # The retries wait for the abandoned call instead of running beside it
    assert len(attempts) == 2

    assert sleeps == [2.0, 4.0]
    assert context.metrics.backoff_delays == [2.0, 4.0]
    assert context.metrics.timeout_count == 2
    assert context.metrics.retry_count == 2
    assert memory_manager.tensor_cache.get_tensor("k") is None


def test_timeouts_exhaust_the_attempts(make_guard, sleeps):
    guard = make_guard()

    def always_times_out():
        raise TimeoutError("backend stalled")

    with pytest.raises(ExecutionTimeoutError):
        guard.run_unit(ExecutionContext(job_id="job"), "decoding latents", always_times_out)

    assert sleeps == [2.0, 4.0]


def test_out_of_memory_is_retried_once(make_guard, sleeps):
    guard = make_guard()
    attempts = []

    def out_of_memory():
        attempts.append(1)
        raise MemoryError("allocation failed")

    context = ExecutionContext(job_id="job")
    with pytest.raises(OutOfMemoryError):
        guard.run_unit(context, "decoding latents", out_of_memory)

    assert len(attempts) == 2
    assert sleeps == [2.0]
    assert context.metrics.oom_count == 2


def test_non_retryable_failure_surfaces_immediately(make_guard, sleeps):
    guard = make_guard()
    attempts = []

    def broken():
        attempts.append(1)
        raise ValueError("shape mismatch")

    with pytest.raises(BackendFailureError):
        guard.run_unit(ExecutionContext(job_id="job"), "encoding prompt", broken)

    assert len(attempts) == 1
    assert sleeps == []


def test_retry_policy_delays():
    policy = RetryPolicy(max_attempts=3, backoff_base=2.0)

    assert [policy.backoff_delay(a) for a in (1, 2)] == [2.0, 4.0]
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)


def test_submit_requires_started_guard(make_guard):
    with pytest.raises(RuntimeError):
        make_guard().submit(request())


def test_invalid_request_is_rejected_synchronously(make_guard, backend):
    guard = make_guard()
    guard.start()

    with pytest.raises(InvalidInputError):
        guard.submit(request(steps=0))

    assert guard.queue.get_stats()["total_admitted"] == 0
    assert backend.calls == []


def test_busy_when_capacity_is_exhausted(make_guard, backend):
    backend.unet_gate = threading.Event()
    guard = make_guard(queue_depth=0)
    guard.start()

    first = guard.submit(request())
    with pytest.raises(BusyError):
        guard.submit(request("a river"))

    backend.unet_gate.set()
    assert first.result(timeout=RESULT_TIMEOUT).image is not None


def test_requests_run_one_at_a_time_in_submission_order(make_guard, backend):
    guard = make_guard(queue_depth=2)
    guard.start()
    finished = []

    handles = [guard.submit(request(f"prompt {i}", seed=i)) for i in range(3)]
    for handle in handles:
        handle.add_done_callback(lambda h: finished.append(h.request_id))

    results = [h.result(timeout=RESULT_TIMEOUT) for h in handles]

    assert [r.seed for r in results] == [0, 1, 2]
    assert finished == [h.request_id for h in handles]
    assert backend.max_concurrency == 1


def test_cancel_waiting_request_has_no_side_effects(make_guard, backend):
    backend.unet_gate = threading.Event()
    guard = make_guard(queue_depth=1)
    guard.start()

    active = guard.submit(request("a mountain"))
    assert backend.unet_started.wait(timeout=RESULT_TIMEOUT)
    waiting = guard.submit(request("a river"))

    assert waiting.cancel() is True
    with pytest.raises(GenerationCancelled):
        waiting.result(timeout=RESULT_TIMEOUT)
    assert list(waiting.progress_events(timeout=1)) == []

    backend.unet_gate.set()
    active.result(timeout=RESULT_TIMEOUT)
    # Only the active request reached the text encoder
    assert backend.count(ComputeGraph.TEXT_ENCODER) == 2


def test_cancel_active_request_stops_at_next_step(make_guard, backend):
    backend.unet_gate = threading.Event()
    guard = make_guard()
    guard.start()

    handle = guard.submit(request(steps=10))
    assert backend.unet_started.wait(timeout=RESULT_TIMEOUT)
    assert guard.cancel(handle.request_id) is True
    backend.unet_gate.set()

    with pytest.raises(GenerationCancelled):
        handle.result(timeout=RESULT_TIMEOUT)

    assert len(list(handle.progress_events(timeout=1))) == 1
    assert backend.count(ComputeGraph.VAE_DECODER) == 0
    assert guard.status.status == GenerationStatus.IDLE


def test_cancel_unknown_request_returns_false(make_guard):
    guard = make_guard()
    guard.start()

    assert guard.cancel("does-not-exist") is False


def test_status_returns_to_idle_before_handle_resolves(make_guard):
    guard = make_guard()
    guard.start()
    seen = []

    handle = guard.submit(request())
    handle.add_done_callback(lambda h: seen.append(guard.status.status))
    handle.result(timeout=RESULT_TIMEOUT)

    assert seen == [GenerationStatus.IDLE]


def test_failure_passes_through_error_status(make_guard, backend):
    guard = make_guard()
    transitions = []

    def record(snapshot):
        if not transitions or transitions[-1][0] != snapshot.status:
            transitions.append((snapshot.status, snapshot.reason))

    guard.status.add_listener(record)
    guard.start()
    backend.fail_next(ComputeGraph.TEXT_ENCODER, ValueError("weights corrupted"))

    handle = guard.submit(request())
    with pytest.raises(BackendFailureError):
        handle.result(timeout=RESULT_TIMEOUT)

    statuses = [status for status, _ in transitions]
    assert statuses == [GenerationStatus.GENERATING, GenerationStatus.ERROR, GenerationStatus.IDLE]
    assert transitions[1][1].startswith("backend_failure")
    assert guard.queue.get_stats()["total_failed"] == 1


def test_backend_timeouts_are_retried_within_a_run(make_guard, backend, sleeps):
    guard = make_guard()
    guard.start()
    backend.fail_next(ComputeGraph.UNET, TimeoutError("slow"), TimeoutError("slow"))

    result = guard.submit(request()).result(timeout=RESULT_TIMEOUT)

    assert result.metrics.backoff_delays == [2.0, 4.0]
    assert sleeps == [2.0, 4.0]


def test_stop_cancels_waiting_requests(make_guard, backend):
    backend.unet_gate = threading.Event()
    guard = make_guard(queue_depth=2)
    guard.start()

    active = guard.submit(request())
    assert backend.unet_started.wait(timeout=RESULT_TIMEOUT)
    waiting = guard.submit(request("a river"))

    stopper = threading.Thread(target=guard.stop, kwargs={"timeout": RESULT_TIMEOUT})
    stopper.start()
    assert active.cancel_event.wait(timeout=RESULT_TIMEOUT)
    backend.unet_gate.set()
    stopper.join(timeout=RESULT_TIMEOUT)

    with pytest.raises(GenerationCancelled):
        waiting.result(timeout=RESULT_TIMEOUT)
    with pytest.raises(GenerationCancelled):
        active.result(timeout=RESULT_TIMEOUT)
    assert not guard.running


def test_abandoned_backend_call_never_overlaps_a_retry(make_guard, backend, sleeps):
    guard = make_guard(timeout_seconds=0.3)
    backend.unet_gate = threading.Event()
    threading.Timer(0.45, backend.unet_gate.set).start()
    inputs = {
        "latents": torch.zeros(1, 4, 8, 8),
        "encoder_hidden_states": torch.zeros(1, 8, 16),
    }

    context = ExecutionContext(job_id="job")
    outputs = guard.run_unit(
        context, "denoising step 1/1", functools.partial(backend.run, ComputeGraph.UNET, inputs)
    )

    assert outputs["noise_pred"].shape == (1, 4, 8, 8)
    assert backend.count(ComputeGraph.UNET) == 2
    assert backend.max_concurrency == 1
    assert context.metrics.timeout_count == 1
    assert sleeps == [2.0]


def test_backend_stuck_past_every_attempt_times_out_without_overlap(make_guard):
    guard = make_guard(timeout_seconds=0.1)
    lock = threading.Lock()
    calls = []
    running = [0, 0]

    def stuck():
        with lock:
            calls.append(1)
            running[0] += 1
            running[1] = max(running[1], running[0])
        time.sleep(0.6)
        with lock:
            running[0] -= 1

    with pytest.raises(ExecutionTimeoutError):
        guard.run_unit(ExecutionContext(job_id="job"), "decoding latents", stuck)

    assert len(calls) == 1
    assert running[1] == 1


def test_cancel_after_last_step_lets_the_run_complete(make_guard, backend):
    backend.decode_gate = threading.Event()
    guard = make_guard()
    guard.start()

    handle = guard.submit(request(steps=2))
    assert backend.decode_started.wait(timeout=RESULT_TIMEOUT)

    assert guard.cancel(handle.request_id) is False
    assert handle.cancel() is False
    backend.decode_gate.set()

    assert handle.result(timeout=RESULT_TIMEOUT).image is not None
    assert guard.queue.get_stats()["total_completed"] == 1
