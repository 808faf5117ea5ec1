"""
Job Queue Manager untuk On-Device Diffusion Runtime
Menangani request validation, bounded FIFO admission, handles, dan cancellation
"""

import logging
import queue
import threading
import uuid
from collections import deque
from concurrent import futures
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional

from .errors import BusyError, GenerationCancelled, InvalidInputError
from .execution_state_machine import ProgressEvent

logger = logging.getLogger(__name__)

MIN_STEPS = 1
MAX_STEPS = 150
MIN_GUIDANCE_SCALE = 1.0
MAX_GUIDANCE_SCALE = 20.0
MAX_SEED = 2 ** 64 - 1


@dataclass(frozen=True)
class GenerationRequest:
    """Request untuk satu text-to-image generation"""
    prompt: str
    negative_prompt: str = ""
    steps: int = 50
    guidance_scale: float = 7.5
    seed: int = 0

    def validate(self) -> "GenerationRequest":
        """
        Check invariants

        Raises:
            InvalidInputError: naming the first violated field
        """
        if not isinstance(self.prompt, str) or not self.prompt.strip():
            raise InvalidInputError("prompt", "Prompt cannot be empty")

        if not isinstance(self.negative_prompt, str):
            raise InvalidInputError("negative_prompt", "Negative prompt must be a string")

        if isinstance(self.steps, bool) or not isinstance(self.steps, int) \
                or not MIN_STEPS <= self.steps <= MAX_STEPS:
            raise InvalidInputError(
                "steps", f"Steps must be between {MIN_STEPS} and {MAX_STEPS}, got {self.steps!r}"
            )

        if isinstance(self.guidance_scale, bool) \
                or not isinstance(self.guidance_scale, (int, float)) \
                or not MIN_GUIDANCE_SCALE <= self.guidance_scale <= MAX_GUIDANCE_SCALE:
            raise InvalidInputError(
                "guidance_scale",
                f"Guidance scale must be between {MIN_GUIDANCE_SCALE:g} and "
                f"{MAX_GUIDANCE_SCALE:g}, got {self.guidance_scale!r}"
            )

        if isinstance(self.seed, bool) or not isinstance(self.seed, int) \
                or not 0 <= self.seed <= MAX_SEED:
            raise InvalidInputError(
                "seed", f"Seed must be an unsigned 64-bit integer, got {self.seed!r}"
            )

        return self

    def to_dict(self) -> Dict:
        return {
            "prompt": self.prompt[:100] + "..." if len(self.prompt) > 100 else self.prompt,
            "negative_prompt": self.negative_prompt,
            "steps": self.steps,
            "guidance_scale": self.guidance_scale,
            "seed": self.seed,
        }


class JobStatus(Enum):
    """Status untuk individual jobs"""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_END_OF_STREAM = object()


class GenerationHandle:
    """
    Caller-side view dari satu submitted request

    Progress arrives through the optional callback and through
    ``progress_events()``; the final outcome through ``result()``.
    """

    def __init__(self,
                 request: GenerationRequest,
                 on_progress: Optional[Callable[[ProgressEvent], None]] = None,
                 request_id: Optional[str] = None):
        self.request_id = request_id or str(uuid.uuid4())
        self.request = request
        self.on_progress = on_progress
        self.status = JobStatus.QUEUED
        self.created_at = datetime.now()
        self.cancel_event = threading.Event()

        self._future: futures.Future = futures.Future()
        self._events: "queue.Queue[Any]" = queue.Queue()
        self._canceller: Optional[Callable[[str], bool]] = None

    def publish(self, event: ProgressEvent):
        """Deliver progress event ke channel dan callback"""
        self._events.put(event)
        if self.on_progress:
            try:
                self.on_progress(event)
            except Exception as e:
                logger.error(f"Progress callback failed for {self.request_id}: {e}")

    def result(self, timeout: Optional[float] = None) -> Any:
        return self._future.result(timeout=timeout)

    def exception(self, timeout: Optional[float] = None) -> Optional[BaseException]:
        return self._future.exception(timeout=timeout)

    def done(self) -> bool:
        return self._future.done()

    def add_done_callback(self, fn: Callable[["GenerationHandle"], None]):
        self._future.add_done_callback(lambda _: fn(self))

    def cancel(self) -> bool:
        """Cancel lewat guard yang meng-admit handle ini"""
        if self._canceller is None:
            return False
        return self._canceller(self.request_id)

    def progress_events(self, timeout: Optional[float] = None) -> Iterator[ProgressEvent]:
        """Yield progress events sampai request selesai"""
        while True:
            item = self._events.get(timeout=timeout)
            if item is _END_OF_STREAM:
                return
            yield item

    def _bind_canceller(self, canceller: Callable[[str], bool]):
        self._canceller = canceller

    def _succeed(self, result: Any):
        self.status = JobStatus.COMPLETED
        self._events.put(_END_OF_STREAM)
        self._future.set_result(result)

    def _fail(self, error: BaseException):
        if isinstance(error, GenerationCancelled):
            self.status = JobStatus.CANCELLED
        else:
            self.status = JobStatus.FAILED
        self._events.put(_END_OF_STREAM)
        self._future.set_exception(error)

    def __repr__(self) -> str:
        return f"GenerationHandle(request_id={self.request_id!r}, status={self.status.value})"


class JobQueue:
    """
    Bounded FIFO queue dengan single active slot

    At most ``1 + depth`` requests are admitted at once: the active one plus
    ``depth`` waiting. Waiting requests can be removed by id.
    """

    def __init__(self, depth: int = 2):
        if depth < 0:
            raise ValueError(f"Queue depth must be >= 0, got {depth}")

        self.depth = depth
        self._pending: Deque[GenerationHandle] = deque()
        self._active: Optional[GenerationHandle] = None
        self._cond = threading.Condition()

        # Stats
        self.total_admitted = 0
        self.total_rejected = 0
        self.total_completed = 0
        self.total_failed = 0
        self.total_cancelled = 0

        logger.info(f"JobQueue initialized (depth={depth})")

    @property
    def capacity(self) -> int:
        return 1 + self.depth

    @property
    def active(self) -> Optional[GenerationHandle]:
        with self._cond:
            return self._active

    def pending_ids(self) -> List[str]:
        with self._cond:
            return [job.request_id for job in self._pending]

    def admit(self, job: GenerationHandle):
        """
        Add job ke queue

        Raises:
            BusyError: active plus waiting requests already fill the capacity
        """
        with self._cond:
            in_system = len(self._pending) + (1 if self._active is not None else 0)
            if in_system >= self.capacity:
                self.total_rejected += 1
                logger.warning(
                    f"Rejecting job {job.request_id}: {in_system} request(s) admitted "
                    f"(capacity={self.capacity})"
                )
                raise BusyError(in_system)

            self._pending.append(job)
            self.total_admitted += 1
            self._cond.notify()

        logger.info(f"Job {job.request_id} enqueued (waiting={len(self._pending)})")

    def next_job(self, timeout: Optional[float] = None) -> Optional[GenerationHandle]:
        """Pop job berikutnya dan jadikan active. None jika timeout"""
        with self._cond:
            if not self._pending:
                self._cond.wait(timeout=timeout)
            if not self._pending or self._active is not None:
                return None

            job = self._pending.popleft()
            self._active = job
            job.status = JobStatus.RUNNING

        logger.info(f"Job {job.request_id} dequeued (waiting={len(self._pending)})")
        return job

    def finish(self, job: GenerationHandle, status: JobStatus):
        with self._cond:
            if self._active is job:
                self._active = None

            if status == JobStatus.COMPLETED:
                self.total_completed += 1
            elif status == JobStatus.CANCELLED:
                self.total_cancelled += 1
            else:
                self.total_failed += 1
            self._cond.notify()

    def remove_pending(self, request_id: str) -> Optional[GenerationHandle]:
        """Remove waiting job tanpa side effects lain"""
        with self._cond:
            for job in self._pending:
                if job.request_id == request_id:
                    self._pending.remove(job)
                    self.total_cancelled += 1
                    return job
        return None

    def drain(self) -> List[GenerationHandle]:
        """Remove dan return semua waiting jobs"""
        with self._cond:
            jobs = list(self._pending)
            self._pending.clear()
            self.total_cancelled += len(jobs)
        return jobs

    def get_stats(self) -> Dict:
        with self._cond:
            finished = self.total_completed + self.total_failed
            return {
                "waiting": len(self._pending),
                "active": self._active.request_id if self._active else None,
                "depth": self.depth,
                "total_admitted": self.total_admitted,
                "total_rejected": self.total_rejected,
                "total_completed": self.total_completed,
                "total_failed": self.total_failed,
                "total_cancelled": self.total_cancelled,
                "success_rate": self.total_completed / finished if finished > 0 else 0.0
            }
