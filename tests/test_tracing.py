import json
from datetime import datetime, timezone

import pytest

from app.cache import InMemoryCache
from app.config import TracingConfig
from monitoring.audit_logging import TraceAuditLogger
from monitoring.trace_store import InMemoryTraceStore, JsonlTraceStore, get_trace_store
from monitoring.tracing import (
    ERROR_STEP,
    ConstructionStep,
    ConstructionTrace,
    ConstructionTracer,
    StepHandle,
    StepStatus,
    TraceOutcome,
    TraceRecorder,
    trace_scores,
)
from shared.errors import BudgetInfeasible

WALL = datetime(2024, 3, 15, 14, 30, tzinfo=timezone.utc)


class TickClock:
    """Monotonic clock advancing a fixed step on every read."""

    def __init__(self, step=0.01):
        self.now = 0.0
        self.step = step

    def __call__(self):
        self.now += self.step
        return self.now


def recorder(question="Top 10 depositors yesterday from UK"):
    return TraceRecorder(question, "u1", clock=TickClock(), wall_clock=lambda: WALL)


async def run_steps(rec, names, confidence=0.8):
    for name in names:
        async with rec.step(name) as step:
            step.record(confidence=confidence, name=name)


@pytest.mark.asyncio
async def test_steps_are_recorded_in_execution_order():
    rec = recorder()

    await run_steps(rec, ["context_analysis", "metadata_retrieval", "context_assembly"])
    trace = rec.finalize()

    assert [s.name for s in trace.steps] == ["context_analysis", "metadata_retrieval", "context_assembly"]
    assert all(s.status == StepStatus.COMPLETED and s.success for s in trace.steps)
    assert all(s.duration_ms > 0 for s in trace.steps)
    assert trace.overall_confidence == 0.8
    assert trace.outcome == TraceOutcome.SUCCESS
    assert trace.successful


@pytest.mark.asyncio
async def test_step_exception_is_recorded_and_reraised():
    rec = recorder()

    with pytest.raises(ValueError):
        async with rec.step("context_assembly") as step:
            step.record(confidence=0.9, budget=100)
            raise ValueError("boom")

    failed = rec.steps[0]
    assert failed.status == StepStatus.FAILED
    assert not failed.success
    assert failed.confidence == 0.0
    assert failed.error == "ValueError: boom"
    assert failed.details == {"budget": 100}


@pytest.mark.asyncio
async def test_step_fail_without_raising():
    rec = recorder()

    async with rec.step("metadata_retrieval") as step:
        step.fail("no admissible tables", table_count=0)

    assert rec.steps[0].status == StepStatus.FAILED
    assert rec.steps[0].details == {"table_count": 0}


def test_confidence_is_clipped():
    handle = StepHandle("x")
    handle.record(confidence=1.7)
    assert handle.confidence == 1.0
    handle.record(confidence=-0.2)
    assert handle.confidence == 0.0


@pytest.mark.asyncio
async def test_failure_trace_marks_pending_stages_and_error_step():
    rec = recorder()
    await run_steps(rec, ["context_analysis", "metadata_retrieval"])

    error = BudgetInfeasible("essentials need 900 tokens", required_tokens=900, budget=400)
    trace = rec.fail(
        "context_assembly",
        error,
        pending_stages=["context_analysis", "metadata_retrieval", "context_assembly", "template_selection"],
    )

    assert [s.name for s in trace.steps] == [
        "context_analysis", "metadata_retrieval", "context_assembly", "template_selection", ERROR_STEP,
    ]
    assert trace.step("context_assembly").status == StepStatus.NOT_STARTED
    assert trace.step(ERROR_STEP).details == {"stage": "context_assembly", "kind": "budget_infeasible"}
    assert trace.outcome == TraceOutcome.FAILED
    assert trace.error == "budget_infeasible at context_assembly: essentials need 900 tokens"
    assert not trace.successful
    # Not-started steps are left out of the confidence mean
    assert trace.overall_confidence == pytest.approx(round(1.6 / 3, 4))


@pytest.mark.asyncio
async def test_finalized_trace_is_frozen():
    rec = recorder()
    await run_steps(rec, ["context_analysis"])
    trace = rec.finalize()

    assert rec.finalize() is trace
    assert rec.fail("x", RuntimeError("late")) is trace
    with pytest.raises(RuntimeError):
        async with rec.step("late"):
            pass
    with pytest.raises(RuntimeError):
        rec.skip("late")
    with pytest.raises(Exception):
        trace.outcome = TraceOutcome.FAILED
    with pytest.raises(TypeError):
        trace.steps[0].details["name"] = "edited"
    assert trace.steps[0].details["name"] == "context_analysis"


def test_trace_scores():
    steps = [
        ConstructionStep(name="a", status=StepStatus.COMPLETED, success=True, confidence=0.9),
        ConstructionStep(name="b", status=StepStatus.FAILED, success=False, confidence=0.0),
        ConstructionStep(name="c", status=StepStatus.NOT_STARTED, success=False),
    ]

    confidence, efficiency = trace_scores(steps, total_duration_ms=2500, speed_baseline_ms=5000)

    assert confidence == 0.45
    assert efficiency == pytest.approx(0.6 * 0.5 + 0.4 * 0.5)
    assert trace_scores(steps, 10000, 5000)[1] == pytest.approx(0.2)
    assert trace_scores([], 0) == (0.0, 0.0)


@pytest.mark.asyncio
async def test_trace_round_trips_through_dict():
    rec = recorder()
    await run_steps(rec, ["context_analysis"])
    rec.skip("metadata_retrieval")
    trace = rec.finalize(TraceOutcome.DEGRADED)

    restored = ConstructionTrace.from_dict(json.loads(json.dumps(trace.to_dict())))

    assert restored == trace


@pytest.mark.asyncio
async def test_jsonl_store_appends_and_reloads(tmp_path):
    path = tmp_path / "traces" / "traces.jsonl"
    store = JsonlTraceStore(path)
    traces = []
    for i in range(3):
        rec = recorder(f"question {i}")
        await run_steps(rec, ["context_analysis"])
        traces.append(rec.finalize())
        store.append(traces[-1])

    with pytest.raises(ValueError):
        store.append(traces[0])

    reopened = JsonlTraceStore(path)
    assert len(reopened) == 3
    assert reopened.get(traces[1].trace_id) == traces[1]
    assert reopened.get("missing") is None
    assert len(path.read_text(encoding="utf-8").splitlines()) == 3


def test_get_trace_store_backends(tmp_path):
    assert isinstance(get_trace_store(None), InMemoryTraceStore)
    assert isinstance(get_trace_store(str(tmp_path / "t.jsonl")), JsonlTraceStore)


@pytest.mark.asyncio
async def test_tracer_publishes_to_store_cache_and_audit(tmp_path):
    store = InMemoryTraceStore()
    cache = InMemoryCache()
    audit_file = tmp_path / "audit.log"
    tracer = ConstructionTracer(
        store=store,
        cache=cache,
        audit=TraceAuditLogger(str(audit_file)),
        config=TracingConfig(),
        clock=TickClock(),
        wall_clock=lambda: WALL,
    )
    rec = tracer.start("Top 10 depositors yesterday from UK", "u1")
    async with rec.step("metadata_retrieval") as step:
        step.record(confidence=0.7, tables=["transactions", "players"])
    trace = rec.finalize()

    tracer.publish(trace)

    assert store.get(trace.trace_id) is trace
    assert cache.get(f"trace:{trace.trace_id}") is trace
    assert tracer.get(trace.trace_id) is trace
    assert tracer.get("missing") is None

    line = json.loads(audit_file.read_text(encoding="utf-8").splitlines()[-1].split(" - ", 1)[1])
    assert line["trace_id"] == trace.trace_id
    assert line["tables"] == ["transactions", "players"]
    assert line["outcome"] == "success"


@pytest.mark.asyncio
async def test_tracer_falls_back_to_store_after_cache_eviction():
    store = InMemoryTraceStore()
    cache = InMemoryCache()
    tracer = ConstructionTracer(store=store, cache=cache, config=TracingConfig(), clock=TickClock())
    rec = tracer.start("question")
    trace = rec.finalize()
    tracer.publish(trace)

    cache.clear()

    assert tracer.get(trace.trace_id) is trace
