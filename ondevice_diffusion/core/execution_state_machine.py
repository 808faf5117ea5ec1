"""
Execution State Machine untuk On-Device Diffusion Runtime
Menangani status transitions, progress tracking, dan execution metrics
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TypeVar

from .errors import GenerationCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class GenerationStatus(Enum):
    """Process-wide status dari generation engine"""
    IDLE = "idle"
    LOADING = "loading"
    GENERATING = "generating"
    ERROR = "error"


_ALLOWED_TRANSITIONS = {
    GenerationStatus.IDLE: {GenerationStatus.LOADING, GenerationStatus.GENERATING},
    GenerationStatus.LOADING: {GenerationStatus.IDLE, GenerationStatus.ERROR},
    GenerationStatus.GENERATING: {GenerationStatus.IDLE, GenerationStatus.ERROR},
    GenerationStatus.ERROR: {GenerationStatus.IDLE},
}


@dataclass(frozen=True)
class ProgressEvent:
    """Progress report yang dikirim setiap step boundary"""
    fraction: float
    stage: str
    request_id: Optional[str] = None

    def __post_init__(self):
        if not 0.0 <= self.fraction <= 1.0:
            raise ValueError(f"Progress fraction must be within [0, 1], got {self.fraction}")


@dataclass(frozen=True)
class StatusSnapshot:
    """Immutable view dari status, aman dibaca dari thread manapun"""
    status: GenerationStatus
    reason: Optional[str] = None
    request_id: Optional[str] = None
    progress: float = 0.0
    stage: str = ""

    @property
    def is_running(self) -> bool:
        return self.status in (GenerationStatus.LOADING, GenerationStatus.GENERATING)

    def to_dict(self) -> Dict:
        return {
            "status": self.status.value,
            "reason": self.reason,
            "request_id": self.request_id,
            "progress": self.progress,
            "stage": self.stage,
        }


class StatusTracker:
    """
    State machine untuk GenerationStatus
    Semua transition di-serialize oleh satu lock sehingga observer
    tidak pernah melihat state yang setengah jadi
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._snapshot = StatusSnapshot(status=GenerationStatus.IDLE)
        self._listeners: List[Callable[[StatusSnapshot], None]] = []

    @property
    def status(self) -> GenerationStatus:
        return self._snapshot.status

    @property
    def is_running(self) -> bool:
        return self._snapshot.is_running

    def snapshot(self) -> StatusSnapshot:
        return self._snapshot

    def add_listener(self, listener: Callable[[StatusSnapshot], None]):
        with self._lock:
            self._listeners.append(listener)

    def transition(self,
                   new_status: GenerationStatus,
                   request_id: Optional[str] = None,
                   reason: Optional[str] = None) -> StatusSnapshot:
        """Transition ke status baru"""
        with self._lock:
            old = self._snapshot
            if new_status not in _ALLOWED_TRANSITIONS[old.status]:
                raise RuntimeError(
                    f"Invalid status transition: {old.status.name} → {new_status.name}"
                )

            if new_status == GenerationStatus.IDLE:
                snapshot = StatusSnapshot(status=new_status)
            elif new_status == GenerationStatus.ERROR:
                snapshot = StatusSnapshot(
                    status=new_status,
                    reason=reason,
                    request_id=request_id or old.request_id,
                    progress=old.progress,
                    stage=old.stage,
                )
            else:
                snapshot = StatusSnapshot(status=new_status, request_id=request_id)

            self._snapshot = snapshot
            listeners = list(self._listeners)

        logger.info(f"Status transition: {old.status.name} → {new_status.name}")
        self._notify(listeners, snapshot)
        return snapshot

    def update_progress(self, event: ProgressEvent) -> StatusSnapshot:
        """Record progress untuk active request"""
        with self._lock:
            old = self._snapshot
            snapshot = StatusSnapshot(
                status=old.status,
                reason=old.reason,
                request_id=old.request_id,
                progress=event.fraction,
                stage=event.stage,
            )
            self._snapshot = snapshot
            listeners = list(self._listeners)

        self._notify(listeners, snapshot)
        return snapshot

    @staticmethod
    def _notify(listeners, snapshot: StatusSnapshot):
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Status listener failed: {e}")


@dataclass
class ExecutionMetrics:
    """Metrics untuk satu execution"""
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None

    # Phase timings
    encoding_time: float = 0.0
    diffusion_time: float = 0.0
    decoding_time: float = 0.0
    total_time: float = 0.0

    # Retry stats
    retry_count: int = 0
    oom_count: int = 0
    timeout_count: int = 0
    backoff_delays: List[float] = field(default_factory=list)

    def finish(self):
        self.end_time = datetime.now()
        self.total_time = (self.end_time - self.start_time).total_seconds()

    def to_dict(self) -> Dict:
        return {
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "timings": {
                "encoding": self.encoding_time,
                "diffusion": self.diffusion_time,
                "decoding": self.decoding_time,
                "total": self.total_time
            },
            "retries": {
                "total": self.retry_count,
                "oom": self.oom_count,
                "timeout": self.timeout_count,
                "backoff_delays": list(self.backoff_delays)
            }
        }


def _run_directly(label: str, work: Callable[[], T]) -> T:
    return work()


@dataclass
class ExecutionContext:
    """Context untuk satu generation run"""
    job_id: str
    cancel_event: threading.Event = field(default_factory=threading.Event)
    metrics: ExecutionMetrics = field(default_factory=ExecutionMetrics)

    # Wrapper untuk setiap unit of work (encode, satu denoise step, decode)
    run_unit: Callable[[str, Callable[[], Any]], Any] = _run_directly

    # State tracking
    current_step: int = 0
    total_steps: int = 0

    _cancel_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _cancellation_closed: bool = field(default=False, repr=False)

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def request_cancel(self) -> bool:
        """
        Minta run berhenti di step boundary berikutnya

        Returns:
            False once the last step boundary has passed; the run will complete
        """
        with self._cancel_lock:
            if self._cancellation_closed:
                return False
            self.cancel_event.set()
            return True

    def raise_if_cancelled(self, final: bool = False):
        """Check cancellation; ``final`` closes the window for later requests"""
        with self._cancel_lock:
            if self.cancel_event.is_set():
                logger.info(f"Cancellation observed for job {self.job_id} at step {self.current_step}")
                raise GenerationCancelled(self.job_id)
            if final:
                self._cancellation_closed = True

    def to_dict(self) -> Dict:
        return {
            "job_id": self.job_id,
            "progress": {
                "current_step": self.current_step,
                "total_steps": self.total_steps,
                "percent": (
                    self.current_step / self.total_steps * 100
                    if self.total_steps > 0 else 0
                )
            },
            "cancelled": self.is_cancelled,
            "metrics": self.metrics.to_dict()
        }
