"""
Construction tracing.

Every pipeline stage runs inside `recorder.step(name)`. The recorder is
owned by the orchestrating coroutine and is the only writer of the step
list, so step order equals execution order. Finished traces are frozen.

Scores:
- overall confidence = mean confidence of executed steps
- efficiency = 0.6 * max(0, 1 - total_ms / 5000) + 0.4 * success ratio
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from app.cache import Cache, InMemoryCache
from app.config import TracingConfig, settings

from .audit_logging import TraceAuditLogger, get_audit_logger
from .trace_store import InMemoryTraceStore, TraceStore

logger = logging.getLogger(__name__)

ERROR_STEP = "Error"


class StepStatus(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    NOT_STARTED = "not_started"


class TraceOutcome(Enum):
    SUCCESS = "success"
    DEGRADED = "degraded"
    EMPTY = "empty"
    FAILED = "failed"


@dataclass(frozen=True)
class ConstructionStep:
    """One recorded pipeline stage."""

    name: str
    status: StepStatus
    success: bool
    confidence: float = 0.0
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration_ms: float = 0.0
    details: Mapping[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "details", MappingProxyType(dict(self.details)))

    @property
    def executed(self) -> bool:
        return self.status != StepStatus.NOT_STARTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "success": self.success,
            "confidence": self.confidence,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_ms": self.duration_ms,
            "details": dict(self.details),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ConstructionStep":
        return cls(
            name=data["name"],
            status=StepStatus(data["status"]),
            success=data["success"],
            confidence=data.get("confidence", 0.0),
            started_at=datetime.fromisoformat(data["started_at"]) if data.get("started_at") else None,
            ended_at=datetime.fromisoformat(data["ended_at"]) if data.get("ended_at") else None,
            duration_ms=data.get("duration_ms", 0.0),
            details=data.get("details", {}),
            error=data.get("error"),
        )


@dataclass(frozen=True)
class ConstructionTrace:
    """Immutable record of one prompt construction."""

    trace_id: str
    question: str
    user_id: Optional[str]
    started_at: datetime
    ended_at: datetime
    steps: Tuple[ConstructionStep, ...]
    overall_confidence: float
    efficiency_score: float
    total_duration_ms: float
    outcome: TraceOutcome
    error: Optional[str] = None

    @property
    def successful(self) -> bool:
        return self.outcome in (TraceOutcome.SUCCESS, TraceOutcome.DEGRADED)

    def step(self, name: str) -> Optional[ConstructionStep]:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trace_id": self.trace_id,
            "question": self.question,
            "user_id": self.user_id,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat(),
            "steps": [s.to_dict() for s in self.steps],
            "overall_confidence": self.overall_confidence,
            "efficiency_score": self.efficiency_score,
            "total_duration_ms": self.total_duration_ms,
            "outcome": self.outcome.value,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ConstructionTrace":
        return cls(
            trace_id=data["trace_id"],
            question=data["question"],
            user_id=data.get("user_id"),
            started_at=datetime.fromisoformat(data["started_at"]),
            ended_at=datetime.fromisoformat(data["ended_at"]),
            steps=tuple(ConstructionStep.from_dict(s) for s in data.get("steps", [])),
            overall_confidence=data["overall_confidence"],
            efficiency_score=data["efficiency_score"],
            total_duration_ms=data["total_duration_ms"],
            outcome=TraceOutcome(data["outcome"]),
            error=data.get("error"),
        )


class StepHandle:
    """Mutable view of the step in progress, filled in by the stage code."""

    def __init__(self, name: str):
        self.name = name
        self.confidence = 0.0
        self.success = True
        self.error: Optional[str] = None
        self.details: Dict[str, Any] = {}

    def record(self, confidence: Optional[float] = None, **details) -> None:
        if confidence is not None:
            self.confidence = min(1.0, max(0.0, confidence))
        self.details.update(details)

    def fail(self, message: str, **details) -> None:
        """Mark the step unsuccessful without raising."""
        self.success = False
        self.error = message
        self.details.update(details)


def trace_scores(
    steps: Sequence[ConstructionStep],
    total_duration_ms: float,
    speed_baseline_ms: float = 5000.0,
) -> Tuple[float, float]:
    """(overall confidence, efficiency score) over executed steps."""
    executed = [s for s in steps if s.executed]
    if not executed:
        return 0.0, 0.0
    confidence = sum(s.confidence for s in executed) / len(executed)
    speed = max(0.0, 1.0 - total_duration_ms / speed_baseline_ms)
    success_ratio = sum(1 for s in executed if s.success) / len(executed)
    return round(confidence, 4), round(0.6 * speed + 0.4 * success_ratio, 4)


class TraceRecorder:
    """
    Append-only step recorder for one request.

    Usage:
        recorder = tracer.start(question, user_id)
        async with recorder.step("context_analysis") as step:
            profile = await analyzer.analyze(question)
            step.record(confidence=profile.confidence, intent=profile.intent.type.value)
        trace = recorder.finalize()
    """

    def __init__(
        self,
        question: str,
        user_id: Optional[str] = None,
        trace_id: Optional[str] = None,
        clock: Callable[[], float] = time.perf_counter,
        wall_clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        speed_baseline_ms: float = 5000.0,
    ):
        self.trace_id = trace_id or uuid.uuid4().hex
        self.question = question
        self.user_id = user_id
        self._clock = clock
        self._wall_clock = wall_clock
        self.speed_baseline_ms = speed_baseline_ms
        self._steps: List[ConstructionStep] = []
        self._started = clock()
        self._started_at = wall_clock()
        self._final: Optional[ConstructionTrace] = None

    @property
    def steps(self) -> Tuple[ConstructionStep, ...]:
        return tuple(self._steps)

    @property
    def finalized(self) -> bool:
        return self._final is not None

    @asynccontextmanager
    async def step(self, name: str) -> AsyncIterator[StepHandle]:
        """Record the enclosed block as one step; exceptions are recorded and re-raised."""
        if self._final is not None:
            raise RuntimeError(f"Trace {self.trace_id} is already finalized")

        handle = StepHandle(name)
        started, started_at = self._clock(), self._wall_clock()
        logger.debug(f"[{self.trace_id}] step {name} started")
        try:
            yield handle
        except Exception as e:
            handle.fail(f"{type(e).__name__}: {e}")
            raise
        finally:
            self._steps.append(
                ConstructionStep(
                    name=name,
                    status=StepStatus.COMPLETED if handle.success else StepStatus.FAILED,
                    success=handle.success,
                    confidence=handle.confidence if handle.success else 0.0,
                    started_at=started_at,
                    ended_at=self._wall_clock(),
                    duration_ms=round((self._clock() - started) * 1000, 3),
                    details=dict(handle.details),
                    error=handle.error,
                )
            )
            logger.debug(f"[{self.trace_id}] step {name} finished (success={handle.success})")

    def skip(self, name: str) -> None:
        """Record a stage that was never started."""
        if self._final is not None:
            raise RuntimeError(f"Trace {self.trace_id} is already finalized")
        self._steps.append(ConstructionStep(name=name, status=StepStatus.NOT_STARTED, success=False))

    def finalize(self, outcome: TraceOutcome = TraceOutcome.SUCCESS, error: Optional[str] = None) -> ConstructionTrace:
        """Freeze the trace. Further calls return the same trace."""
        if self._final is not None:
            return self._final
        total_ms = round((self._clock() - self._started) * 1000, 3)
        confidence, efficiency = trace_scores(self._steps, total_ms, self.speed_baseline_ms)
        self._final = ConstructionTrace(
            trace_id=self.trace_id,
            question=self.question,
            user_id=self.user_id,
            started_at=self._started_at,
            ended_at=self._wall_clock(),
            steps=tuple(self._steps),
            overall_confidence=confidence,
            efficiency_score=efficiency,
            total_duration_ms=total_ms,
            outcome=outcome,
            error=error,
        )
        return self._final

    def fail(
        self,
        stage: str,
        error: BaseException,
        pending_stages: Sequence[str] = (),
        kind: Optional[str] = None,
    ) -> ConstructionTrace:
        """
        Best-effort trace after a failure.

        Completed steps stay as recorded, `pending_stages` are added as
        not started, and one synthetic Error step names the failure. `kind`
        defaults to the error's own kind, or its class name.
        """
        if self._final is not None:
            return self._final
        now = self._wall_clock()
        recorded = {s.name for s in self._steps}
        for name in pending_stages:
            if name not in recorded:
                self._steps.append(ConstructionStep(name=name, status=StepStatus.NOT_STARTED, success=False))
        kind = kind or getattr(getattr(error, "kind", None), "value", type(error).__name__)
        message = getattr(error, "message", None) or str(error) or type(error).__name__
        self._steps.append(
            ConstructionStep(
                name=ERROR_STEP,
                status=StepStatus.FAILED,
                success=False,
                confidence=0.0,
                started_at=now,
                ended_at=now,
                details={"stage": stage, "kind": kind},
                error=message,
            )
        )
        return self.finalize(TraceOutcome.FAILED, error=f"{kind} at {stage}: {message}")


class ConstructionTracer:
    """
    Creates recorders and publishes finished traces.

    A finished trace is handed once to the append-only store, once to the
    short-lived cache keyed by trace id, and once to the audit log.
    """

    def __init__(
        self,
        store: Optional[TraceStore] = None,
        cache: Optional[Cache] = None,
        audit: Optional[TraceAuditLogger] = None,
        config: Optional[TracingConfig] = None,
        clock: Callable[[], float] = time.perf_counter,
        wall_clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.config = config or settings.tracing
        self.store = store if store is not None else InMemoryTraceStore()
        self.cache = cache if cache is not None else InMemoryCache(default_ttl=self.config.trace_cache_ttl)
        self.audit = audit or get_audit_logger(self.config.audit_log_file)
        self._clock = clock
        self._wall_clock = wall_clock

    def start(self, question: str, user_id: Optional[str] = None) -> TraceRecorder:
        recorder = TraceRecorder(
            question,
            user_id,
            clock=self._clock,
            wall_clock=self._wall_clock,
            speed_baseline_ms=self.config.speed_baseline_ms,
        )
        logger.info(f"Started trace {recorder.trace_id}")
        return recorder

    def publish(self, trace: ConstructionTrace) -> None:
        self.store.append(trace)
        self.cache.set(self._key(trace.trace_id), trace, ttl=self.config.trace_cache_ttl)
        self.audit.log_trace(trace)
        logger.info(
            f"Published trace {trace.trace_id}: outcome={trace.outcome.value}, "
            f"confidence={trace.overall_confidence:.2f}, efficiency={trace.efficiency_score:.2f}"
        )

    def get(self, trace_id: str) -> Optional[ConstructionTrace]:
        """Cached trace, falling back to the store."""
        trace = self.cache.get(self._key(trace_id))
        if trace is None:
            trace = self.store.get(trace_id)
        return trace

    @staticmethod
    def _key(trace_id: str) -> str:
        return f"trace:{trace_id}"
