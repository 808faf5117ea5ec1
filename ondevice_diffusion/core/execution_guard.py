"""
Execution Guard untuk On-Device Diffusion Runtime
Single-flight admission, timeout per unit of work, retry dengan exponential backoff
"""

import functools
import logging
import threading
import time
from concurrent import futures
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, TypeVar

from .diffusion_engine import GenerationPipeline
from .errors import (
    DiffusionError, ExecutionTimeoutError, GenerationCancelled, OutOfMemoryError,
    classify_error
)
from .execution_state_machine import (
    ExecutionContext, GenerationStatus, ProgressEvent, StatusTracker
)
from .job_queue_manager import GenerationHandle, GenerationRequest, JobQueue, JobStatus
from .memory_manager import MemoryManager

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry policy untuk transient failures"""
    max_attempts: int = 3
    backoff_base: float = 2.0
    max_oom_retries: int = 1

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.max_oom_retries < 0:
            raise ValueError(f"max_oom_retries must be >= 0, got {self.max_oom_retries}")

    def backoff_delay(self, attempt: int) -> float:
        return self.backoff_base ** attempt

    def should_retry(self, error: DiffusionError, attempt: int, oom_failures: int) -> bool:
        if not error.retryable or attempt >= self.max_attempts:
            return False
        if isinstance(error, OutOfMemoryError):
            return oom_failures <= self.max_oom_retries
        return True


class ExecutionGuard:
    """
    Admission control dan resilience wrapper di sekitar GenerationPipeline

    One worker thread runs requests strictly one at a time in submission
    order. Backend calls run on a separate unit thread so each one can be
    raced against ``timeout_seconds``.
    """

    def __init__(self,
                 pipeline: GenerationPipeline,
                 memory_manager: MemoryManager,
                 status: Optional[StatusTracker] = None,
                 queue_depth: int = 2,
                 timeout_seconds: Optional[float] = 30.0,
                 retry_policy: Optional[RetryPolicy] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.pipeline = pipeline
        self.memory_manager = memory_manager
        self.status = status or StatusTracker()
        self.queue = JobQueue(depth=queue_depth)
        self.timeout_seconds = timeout_seconds
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

        self._unit_executor = self._new_unit_executor()
        self._abandoned: Optional[futures.Future] = None
        self._active_context: Optional[ExecutionContext] = None
        self._worker: Optional[threading.Thread] = None
        self._shutdown_event = threading.Event()
        self._lock = threading.Lock()

        logger.info(
            f"ExecutionGuard initialized (queue_depth={queue_depth}, "
            f"timeout={timeout_seconds}s, retry={self.retry_policy})"
        )

    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def start(self):
        """Start worker thread"""
        with self._lock:
            if self.running:
                logger.warning("ExecutionGuard already running")
                return

            self._shutdown_event.clear()
            self._worker = threading.Thread(
                target=self._worker_loop,
                name="GenerationWorker",
                daemon=True
            )
            self._worker.start()

        logger.info("ExecutionGuard started")

    def stop(self, timeout: float = 30.0):
        """Stop worker. Waiting requests are cancelled, the active one is asked to stop"""
        with self._lock:
            if not self.running:
                logger.warning("ExecutionGuard not running")
                return
            worker = self._worker
            self._worker = None

        logger.info("Stopping ExecutionGuard...")
        self.cancel_all()
        self._shutdown_event.set()
        worker.join(timeout=timeout)
        if worker.is_alive():
            logger.warning(f"Worker {worker.name} did not stop gracefully")

        self._unit_executor.shutdown(wait=False)
        self._unit_executor = self._new_unit_executor()
        logger.info("ExecutionGuard stopped")

    def submit(self,
               request: GenerationRequest,
               on_progress: Optional[Callable[[ProgressEvent], None]] = None,
               request_id: Optional[str] = None) -> GenerationHandle:
        """
        Submit request for processing

        Raises:
            InvalidInputError: request violates an invariant
            BusyError: admission capacity is exhausted
        """
        request.validate()

        if not self.running:
            raise RuntimeError("ExecutionGuard not started. Call start() first.")

        handle = GenerationHandle(request, on_progress=on_progress, request_id=request_id)
        handle._bind_canceller(self.cancel)
        self.queue.admit(handle)
        return handle

    def cancel(self, request_id: str) -> bool:
        """
        Cancel request

        A waiting request is removed without side effects. The active request
        stops at its next step boundary; once its last step boundary has
        passed it runs to completion and False is returned.
        """
        job = self.queue.remove_pending(request_id)
        if job is not None:
            logger.info(f"Cancelled queued job {request_id}")
            job._fail(GenerationCancelled(request_id))
            return True

        active = self.queue.active
        if active is None or active.request_id != request_id:
            return False

        if not self._request_active_cancel(active):
            logger.info(f"Job {request_id} is past its last step, cancellation ignored")
            return False

        logger.info(f"Cancellation requested for active job {request_id}")
        return True

    def cancel_all(self) -> int:
        jobs = self.queue.drain()
        for job in jobs:
            job._fail(GenerationCancelled(job.request_id))

        active = self.queue.active
        if active is not None and self._request_active_cancel(active):
            return len(jobs) + 1
        return len(jobs)

    def _request_active_cancel(self, job: GenerationHandle) -> bool:
        context = self._active_context
        if context is not None and context.job_id == job.request_id:
            return context.request_cancel()
        # Dequeued but not started yet; the first boundary check sees it
        job.cancel_event.set()
        return True

    def run_unit(self, context: ExecutionContext, label: str, work: Callable[[], T]) -> T:
        """
        Run one unit of work dengan timeout dan retry

        Timeouts and out-of-memory failures are retried with exponential
        backoff after clearing caches. Other failures surface immediately.
        """
        oom_failures = 0
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._call_with_timeout(label, work)
            except Exception as exc:
                error = classify_error(exc)

                if isinstance(error, OutOfMemoryError):
                    oom_failures += 1
                    context.metrics.oom_count += 1
                elif isinstance(error, ExecutionTimeoutError):
                    context.metrics.timeout_count += 1

                if not self.retry_policy.should_retry(error, attempt, oom_failures):
                    if error.retryable:
                        logger.error(f"{label}: giving up after {attempt} attempt(s): {error}")
                    if error is exc:
                        raise
                    raise error from exc

            delay = self.retry_policy.backoff_delay(attempt)
            logger.warning(
                f"{label}: {error.error_type.value} on attempt {attempt}/"
                f"{self.retry_policy.max_attempts}, retrying in {delay:g}s"
            )
            self.memory_manager.aggressive_cleanup()
            context.metrics.retry_count += 1
            context.metrics.backoff_delays.append(delay)
            self._sleep(delay)

    def get_stats(self) -> Dict:
        stats = self.queue.get_stats()
        stats["status"] = self.status.snapshot().to_dict()
        stats["running"] = self.running
        return stats

    def _call_with_timeout(self, label: str, work: Callable[[], T]) -> T:
        if not self.timeout_seconds:
            return work()

        self._wait_for_abandoned(label)
        future = self._unit_executor.submit(work)
        try:
            return future.result(timeout=self.timeout_seconds)
        except futures.TimeoutError:
            if future.done():
                # Work finished right at the deadline; use its outcome
                return future.result()
            logger.error(f"{label}: exceeded {self.timeout_seconds}s, abandoning backend call")
            self._abandoned = future
            raise ExecutionTimeoutError(label, self.timeout_seconds) from None

    def _wait_for_abandoned(self, label: str):
        """
        Tunggu backend call yang di-abandon sebelum memulai unit baru

        The backend is owned by one call at a time. If the abandoned call is
        still running after ``timeout_seconds`` this unit times out too.
        """
        stuck = self._abandoned
        if stuck is None:
            return

        done, _ = futures.wait([stuck], timeout=self.timeout_seconds)
        if not done:
            logger.error(f"{label}: backend still busy with an abandoned call")
            raise ExecutionTimeoutError(label, self.timeout_seconds)
        self._abandoned = None

    @staticmethod
    def _new_unit_executor() -> futures.ThreadPoolExecutor:
        return futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="BackendUnit")

    def _worker_loop(self):
        """Main worker loop"""
        worker_name = threading.current_thread().name
        logger.info(f"{worker_name} started")

        while not self._shutdown_event.is_set():
            job = self.queue.next_job(timeout=0.5)
            if job is None:
                continue

            try:
                self._execute(job)
            except Exception as e:
                logger.error(f"{worker_name} encountered error: {e}", exc_info=True)

        logger.info(f"{worker_name} stopped")

    def _execute(self, job: GenerationHandle):
        logger.info("=" * 70)
        logger.info(f"EXECUTING JOB: {job.request_id}")
        logger.info("=" * 70)

        context = ExecutionContext(job_id=job.request_id, cancel_event=job.cancel_event)
        context.run_unit = functools.partial(self.run_unit, context)

        def on_progress(event: ProgressEvent):
            self.status.update_progress(event)
            job.publish(event)

        self.status.transition(GenerationStatus.GENERATING, request_id=job.request_id)
        leaked_before = self.memory_manager.buffer_pool.live_count

        self._active_context = context
        try:
            result = self.pipeline.run(job.request, on_progress=on_progress, context=context)
        except GenerationCancelled as e:
            self._finish(job, JobStatus.CANCELLED, leaked_before)
            logger.info(f"Job {job.request_id} cancelled at step {context.current_step}")
            job._fail(e)
        except Exception as e:
            error = classify_error(e)
            logger.error(f"Job {job.request_id} failed ({error.error_type.value}): {error}")
            logger.debug("Failure traceback", exc_info=True)
            self._finish(job, JobStatus.FAILED, leaked_before, error)
            job._fail(error)
        else:
            self._finish(job, JobStatus.COMPLETED, leaked_before)
            logger.info(f"Job {job.request_id} completed successfully")
            job._succeed(result)

    def _finish(self,
                job: GenerationHandle,
                status: JobStatus,
                leaked_before: int,
                error: Optional[DiffusionError] = None):
        self._active_context = None
        leaked = self.memory_manager.buffer_pool.live_count - leaked_before
        if leaked > 0:
            logger.warning(f"Job {job.request_id} left {leaked} live buffer(s)")

        self.queue.finish(job, status)
        if error is not None:
            self.status.transition(GenerationStatus.ERROR, request_id=job.request_id,
                                   reason=error.reason)
        self.status.transition(GenerationStatus.IDLE)

    def pending_ids(self) -> List[str]:
        return self.queue.pending_ids()
