from __future__ import annotations

from concurrent import futures

from ondevice_diffusion.core.errors import (
    BackendFailureError, BusyError, DiffusionError, ErrorType, ExecutionTimeoutError,
    GenerationCancelled, InvalidInputError, OutOfMemoryError, ResourceUnavailableError,
    classify_error
)


def test_memory_error_is_classified_as_retryable_oom():
    error = classify_error(MemoryError("allocation failed"))

    assert isinstance(error, OutOfMemoryError)
    assert error.retryable
    assert error.error_type == ErrorType.OUT_OF_MEMORY


def test_out_of_memory_message_is_classified_as_oom():
    error = classify_error(RuntimeError("CUDA out of memory. Tried to allocate 2.00 GiB"))

    assert isinstance(error, OutOfMemoryError)


def test_timeouts_are_classified_as_retryable():
    for exc in (TimeoutError("slow"), futures.TimeoutError()):
        error = classify_error(exc)
        assert isinstance(error, ExecutionTimeoutError)
        assert error.retryable


def test_other_exceptions_become_backend_failures():
    error = classify_error(ValueError("bad tensor shape"))

    assert isinstance(error, BackendFailureError)
    assert not error.retryable
    assert error.detail == "bad tensor shape"


def test_diffusion_errors_pass_through_unchanged():
    original = ResourceUnavailableError("unet.weights")

    assert classify_error(original) is original


def test_cancellation_is_also_a_futures_cancelled_error():
    error = GenerationCancelled("abc")

    assert isinstance(error, futures.CancelledError)
    assert isinstance(error, DiffusionError)
    assert error.request_id == "abc"
    assert not error.retryable


def test_invalid_input_names_the_field_and_reason():
    error = InvalidInputError("steps", "Steps must be between 1 and 150")

    assert error.field == "steps"
    assert error.reason == "invalid_input: Steps must be between 1 and 150"


def test_busy_and_unavailable_messages():
    assert "busy" in str(BusyError(3)).lower()
    assert "unet.weights" in str(ResourceUnavailableError("unet.weights", "not on disk"))
