"""
Prompt construction pipeline.

Orchestrates:
1. Context analysis (question -> business context profile)
2. Metadata retrieval (profile -> contextual schema)
3. Context assembly (budgeted section selection)
4. Template selection
5. Prompt assembly

Every stage runs under one request deadline and is recorded as a trace
step. `construct_prompt` never raises: terminal conditions come back as a
structured failure carrying the trace.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from analysis.analyzer import ContextAnalyzer
from analysis.intent import TextClassifier
from app.cache import Cache, InMemoryCache
from app.config import Settings, settings as default_settings
from context.context_budgeting import allocate_token_budget
from context.examples import rank_examples
from context.optimizer import AssemblyResult, ContextAssemblyEngine
from context.prompt_builder import PromptAssembler
from context.sections import SectionBuilder
from monitoring.metrics import MetricsSink, RequestMetrics, get_metrics_sink
from monitoring.trace_store import TraceStore, get_trace_store
from monitoring.tracing import (
    ConstructionStep,
    ConstructionTrace,
    ConstructionTracer,
    StepStatus,
    TraceOutcome,
    TraceRecorder,
)
from retrieval.engine import MetadataRetrievalEngine, RetrievalOutcome
from retrieval.metadata_store import MetadataStore, RelationshipService
from retrieval.scoring import ScoringStrategy, get_scoring_strategy
from shared.deadline import Deadline
from shared.errors import AssemblyFailure, Degradation, ErrorKind, PromptConstructionError
from shared.models import BusinessContextProfile, ContextSection, ContextualSchema, QueryExample
from shared.schemas import (
    ConfidenceLevel,
    ConstructionExplanation,
    ConstructPromptResponse,
    FailureInfo,
    PromptOptions,
    SectionRationale,
    StepSummary,
    TableSummary,
    TemplateFactor,
    TemplateRationale,
    TraceSummary,
)
from templates.repository import TemplateRepository
from templates.selector import TemplateSelection, TemplateSelector

logger = logging.getLogger(__name__)

ANALYSIS = "context_analysis"
RETRIEVAL = "metadata_retrieval"
ASSEMBLY = "context_assembly"
TEMPLATE = "template_selection"
PROMPT = "prompt_assembly"
STAGES: Tuple[str, ...] = (ANALYSIS, RETRIEVAL, ASSEMBLY, TEMPLATE, PROMPT)

OVER_LIMIT_CONFIDENCE = 0.7


@dataclass(frozen=True)
class ConstructionFailure:
    """Terminal condition that ended a request."""

    kind: ErrorKind
    stage: str
    message: str


@dataclass(frozen=True)
class ConstructionResult:
    """Outcome of one `construct_prompt` call: a prompt or a structured failure, always with a trace."""

    trace: ConstructionTrace
    prompt_text: Optional[str] = None
    token_count: int = 0
    profile: Optional[BusinessContextProfile] = None
    schema: Optional[ContextualSchema] = None
    assembly: Optional[AssemblyResult] = None
    selection: Optional[TemplateSelection] = None
    degradations: Tuple[Degradation, ...] = ()
    failure: Optional[ConstructionFailure] = None

    @property
    def trace_id(self) -> str:
        return self.trace.trace_id

    @property
    def success(self) -> bool:
        return self.failure is None and self.prompt_text is not None

    @property
    def degraded(self) -> bool:
        return bool(self.degradations)

    def to_response(self) -> ConstructPromptResponse:
        tables = []
        if self.schema is not None:
            tables = [
                TableSummary(
                    id=r.table.id,
                    name=r.table.qualified_name,
                    relevance=r.relevance,
                    columns=[c.name for c in self.schema.columns.get(r.table.id, ())],
                )
                for r in self.schema.tables
            ]
        failure = None
        if self.failure is not None:
            failure = FailureInfo(kind=self.failure.kind.value, stage=self.failure.stage, message=self.failure.message)
        return ConstructPromptResponse(
            success=self.success,
            trace_id=self.trace_id,
            prompt_text=self.prompt_text,
            token_count=self.token_count,
            confidence=ConfidenceLevel.from_score(self.trace.overall_confidence),
            degraded=self.degraded,
            degradations=[str(d) for d in self.degradations],
            failure=failure,
            tables=tables,
            trace=trace_summary(self.trace),
        )


@dataclass
class _Progress:
    """Partial outputs of a request, kept so a failure can still report them."""

    stage: str = ANALYSIS
    profile: Optional[BusinessContextProfile] = None
    schema: Optional[ContextualSchema] = None
    assembly: Optional[AssemblyResult] = None
    selection: Optional[TemplateSelection] = None


def step_summary(step: ConstructionStep) -> StepSummary:
    return StepSummary(
        name=step.name,
        status=step.status.value,
        success=step.success,
        duration_ms=step.duration_ms,
        confidence=step.confidence,
        error=step.error,
        details=dict(step.details),
    )


def trace_summary(trace: ConstructionTrace) -> TraceSummary:
    return TraceSummary(
        trace_id=trace.trace_id,
        overall_confidence=trace.overall_confidence,
        efficiency_score=trace.efficiency_score,
        total_duration_ms=trace.total_duration_ms,
        outcome=trace.outcome.value,
        steps=[step_summary(s) for s in trace.steps],
    )


def section_details(section: ContextSection) -> Dict[str, Any]:
    return {
        "id": section.id,
        "kind": section.kind.value,
        "tokens": section.token_cost,
        "relevance": round(section.relevance, 4),
        "importance": round(section.importance, 4),
        "efficiency": round(section.efficiency, 6),
        "essential": section.essential,
        "compressed": section.compressed,
    }


class PromptConstructionPipeline:
    """
    End-to-end prompt construction with tracing and metrics.

    Usage:
        pipeline = PromptConstructionPipeline(store=InMemoryMetadataStore.from_json("metadata.json"))
        result = await pipeline.construct_prompt("Top 10 depositors yesterday from UK")
        if result.success:
            print(result.prompt_text)
        explanation = pipeline.explain_construction(result.trace_id)
    """

    def __init__(
        self,
        store: MetadataStore,
        relationships: Optional[RelationshipService] = None,
        classifier: Optional[TextClassifier] = None,
        scorer: Optional[ScoringStrategy] = None,
        template_repository: Optional[TemplateRepository] = None,
        examples: Optional[Sequence[QueryExample]] = None,
        trace_store: Optional[TraceStore] = None,
        metrics_sink: Optional[MetricsSink] = None,
        cache: Optional[Cache] = None,
        clock: Callable[[], datetime] = datetime.now,
        settings: Optional[Settings] = None,
        tracer: Optional[ConstructionTracer] = None,
    ):
        """
        Args:
            store: Metadata store collaborator
            relationships: Relationship service; defaults to the store
            classifier: External text classifier for intents
            scorer: Similarity strategy shared by all stages
            template_repository: Static template source
            examples: Worked examples; the built-in set when None
            trace_store: Append-only trace store
            metrics_sink: Destination for per-request metrics
            cache: Shared cache for retrieval, templates and traces
            clock: Reference time for relative time expressions
            settings: Application settings
        """
        self.settings = settings or default_settings
        self.scorer = scorer or get_scoring_strategy(self.settings.SIMILARITY_BACKEND)
        self.examples = examples
        cache = cache if cache is not None else InMemoryCache()
        encoding = self.settings.assembly.encoding_name

        self.analyzer = ContextAnalyzer(
            store=store, classifier=classifier, scorer=self.scorer, clock=clock, config=self.settings.analysis,
        )
        self.retrieval = MetadataRetrievalEngine(
            store, relationships=relationships, scorer=self.scorer, cache=cache,
            config=self.settings.retrieval, encoding_name=encoding,
        )
        self.section_builder = SectionBuilder(encoding)
        self.assembly_engine = ContextAssemblyEngine(self.settings.assembly)
        self.assembler = PromptAssembler(encoding)
        self.selector = TemplateSelector(
            template_repository, config=self.settings.templates, cache=cache, assembler=self.assembler,
        )
        self.tracer = tracer or ConstructionTracer(
            store=trace_store if trace_store is not None else get_trace_store(self.settings.TRACE_STORE_PATH),
            cache=cache,
            config=self.settings.tracing,
        )
        self.metrics_sink = metrics_sink if metrics_sink is not None else get_metrics_sink(self.settings.METRICS_BACKEND)

    # --- construction ---------------------------------------------------------

    async def construct_prompt(
        self,
        question: str,
        user_id: Optional[str] = None,
        options: Optional[PromptOptions] = None,
    ) -> ConstructionResult:
        """
        Build a budgeted, schema-grounded prompt for a question.

        Never raises. Recoverable conditions are listed in `degradations`;
        BudgetInfeasible, TemplateNotFound, AssemblyFailure and RetrievalEmpty
        come back as `failure` with no prompt text.
        """
        options = options or PromptOptions()
        deadline = Deadline.after(options.timeout_seconds or self.settings.REQUEST_TIMEOUT)
        recorder = self.tracer.start(question, user_id)
        progress = _Progress()
        degradations: List[Degradation] = []

        try:
            result = await self._construct(question, user_id, options, deadline, recorder, progress, degradations)
        except PromptConstructionError as e:
            stage = e.stage or progress.stage
            if isinstance(e, AssemblyFailure):
                logger.exception(f"Assembly invariant violated at {stage}: {e.message}")
            else:
                logger.warning(f"Construction failed at {stage}: {e.kind.value}: {e.message}")
            result = self._failed(recorder, progress, degradations, stage, e.kind, e.message, e)
        except Exception as e:
            logger.exception(f"Unexpected error at {progress.stage}")
            result = self._failed(
                recorder, progress, degradations, progress.stage, ErrorKind.ASSEMBLY_FAILURE,
                f"{type(e).__name__}: {e}", e,
            )

        self._publish(result)
        return result

    async def _construct(
        self,
        question: str,
        user_id: Optional[str],
        options: PromptOptions,
        deadline: Deadline,
        recorder: TraceRecorder,
        progress: _Progress,
        degradations: List[Degradation],
    ) -> ConstructionResult:
        # 1. Context analysis
        progress.stage = ANALYSIS
        async with recorder.step(ANALYSIS) as step:
            profile = await self.analyzer.analyze(question, user_id, deadline)
            progress.profile = profile
            for message in profile.degradations:
                degradations.append(Degradation(ErrorKind.ANALYSIS_DEGRADED, ANALYSIS, message))
            step.record(
                confidence=profile.confidence,
                intent=profile.intent.type.value,
                intent_confidence=profile.intent.confidence,
                sub_intents=list(profile.intent.sub_intents),
                domain=profile.domain.descriptor.key,
                domain_name=profile.domain.name,
                domain_score=profile.domain.score,
                entities=[{"name": e.name, "category": e.category.value, "text": e.source_text} for e in profile.entities],
                business_terms=list(profile.business_terms),
                time_range=profile.time_range.describe() if profile.time_range else None,
                degraded=profile.degraded,
            )

        # 2. Metadata retrieval
        progress.stage = RETRIEVAL
        async with recorder.step(RETRIEVAL) as step:
            outcome: RetrievalOutcome = await self.retrieval.retrieve(profile, options.max_tables, deadline)
            schema = outcome.schema
            progress.schema = schema
            degradations.extend(outcome.degradations)
            step.record(
                confidence=schema.relevance_score,
                tables=list(schema.table_ids),
                table_count=len(schema.tables),
                table_relevance={r.table.id: r.relevance for r in schema.tables},
                column_count=sum(len(c) for c in schema.columns.values()),
                relationship_count=len(schema.relationships),
                candidate_count=outcome.candidate_count,
                cached=outcome.cached,
                timed_out_strategies=list(schema.timed_out_strategies),
                failed_strategies=list(schema.failed_strategies),
            )
            empty = next((d for d in outcome.degradations if d.kind == ErrorKind.RETRIEVAL_EMPTY), None)
            if empty is not None:
                step.fail(empty.message)

        if empty is not None:
            return self._empty(recorder, progress, degradations, empty)

        # 3. Context assembly
        progress.stage = ASSEMBLY
        async with recorder.step(ASSEMBLY) as step:
            overhead = await self.selector.estimate_overhead(profile, options)
            budget = allocate_token_budget(options.max_tokens, overhead, options.reserved_response_tokens)
            examples = rank_examples(
                profile, self.scorer, self.examples,
                limit=min(options.max_examples, self.settings.assembly.max_examples),
            ) if options.include_examples else []
            sections = self.section_builder.build(profile, schema, examples, options)
            assembly = self.assembly_engine.assemble(sections, budget.available_for_context)
            progress.assembly = assembly
            mean_relevance = (
                sum(s.relevance for s in assembly.selected) / len(assembly.selected) if assembly.selected else 0.0
            )
            step.record(
                confidence=mean_relevance,
                template_overhead=overhead,
                budget=assembly.budget,
                total_tokens=assembly.total_tokens,
                utilization=round(assembly.utilization, 4),
                method=assembly.method,
                candidate_count=len(sections),
                selected=[section_details(s) for s in assembly.selected],
                rejected=[section_details(s) for s in assembly.rejected],
                adjustments=list(assembly.adjustments),
            )

        # 4. Template selection
        progress.stage = TEMPLATE
        async with recorder.step(TEMPLATE) as step:
            selection = await self.selector.select(profile, options)
            progress.selection = selection
            step.record(
                confidence=selection.score,
                template_key=selection.template.key,
                dynamic=selection.dynamic,
                score=selection.score,
                factors=[{"name": n, "score": s, "weight": w} for n, s, w in selection.factors],
                alternatives=[{"template_key": k, "score": s} for k, s in selection.alternatives],
            )

        # 5. Prompt assembly
        progress.stage = PROMPT
        async with recorder.step(PROMPT) as step:
            prompt = self.assembler.assemble(
                profile, selection.template, assembly.selected,
                max_prompt_tokens=options.max_tokens - options.reserved_response_tokens,
            )
            step.record(
                confidence=1.0 if prompt.within_limit else OVER_LIMIT_CONFIDENCE,
                token_count=prompt.token_count,
                within_limit=prompt.within_limit,
                section_ids=list(prompt.section_ids),
                slot_token_counts=dict(prompt.slot_token_counts),
            )

        outcome_kind = TraceOutcome.DEGRADED if degradations else TraceOutcome.SUCCESS
        trace = recorder.finalize(outcome_kind)
        logger.info(
            f"Constructed prompt {trace.trace_id}: {prompt.token_count} tokens, "
            f"template '{selection.template.key}', confidence={trace.overall_confidence:.2f}"
        )
        return ConstructionResult(
            trace=trace,
            prompt_text=prompt.text,
            token_count=prompt.token_count,
            profile=profile,
            schema=schema,
            assembly=assembly,
            selection=selection,
            degradations=tuple(degradations),
        )

    def _empty(
        self,
        recorder: TraceRecorder,
        progress: _Progress,
        degradations: List[Degradation],
        empty: Degradation,
    ) -> ConstructionResult:
        """No admissible tables: stop after retrieval without a prompt."""
        for name in STAGES[STAGES.index(RETRIEVAL) + 1:]:
            recorder.skip(name)
        trace = recorder.finalize(TraceOutcome.EMPTY, error=empty.message)
        logger.warning(f"Construction {trace.trace_id} stopped: {empty}")
        return ConstructionResult(
            trace=trace,
            profile=progress.profile,
            schema=progress.schema,
            degradations=tuple(degradations),
            failure=ConstructionFailure(empty.kind, empty.stage, empty.message),
        )

    def _failed(
        self,
        recorder: TraceRecorder,
        progress: _Progress,
        degradations: List[Degradation],
        stage: str,
        kind: ErrorKind,
        message: str,
        error: BaseException,
    ) -> ConstructionResult:
        recorded = {s.name for s in recorder.steps}
        pending = [name for name in STAGES if name not in recorded]
        trace = recorder.fail(stage, error, pending_stages=pending, kind=kind.value)
        return ConstructionResult(
            trace=trace,
            profile=progress.profile,
            schema=progress.schema,
            assembly=progress.assembly,
            selection=progress.selection,
            degradations=tuple(degradations),
            failure=ConstructionFailure(kind, stage, message),
        )

    def _publish(self, result: ConstructionResult) -> None:
        """Hand the trace to the tracer and merge request metrics. Never raises."""
        trace = result.trace
        metrics = RequestMetrics(
            request_id=trace.trace_id,
            total_ms=trace.total_duration_ms,
            prompt_tokens=result.token_count if result.prompt_text is not None else None,
            outcome=trace.outcome.value,
        )
        for step in trace.steps:
            if step.executed:
                metrics.record_stage(step.name, step.duration_ms)
        for degradation in result.degradations:
            metrics.record_degradation(degradation.kind.value)

        try:
            self.tracer.publish(trace)
        except Exception:
            logger.exception(f"Failed to publish trace {trace.trace_id}")
        try:
            self.metrics_sink.merge(metrics)
        except Exception:
            logger.exception(f"Failed to record metrics for {trace.trace_id}")

    # --- explanation ----------------------------------------------------------

    def explain_construction(self, trace_id: str) -> ConstructionExplanation:
        """
        Rationale breakdown for a recorded construction.

        Raises:
            KeyError: No trace with this id is known
        """
        trace = self.tracer.get(trace_id)
        if trace is None:
            raise KeyError(trace_id)

        analysis = trace.step(ANALYSIS)
        assembly = trace.step(ASSEMBLY)
        template = trace.step(TEMPLATE)

        template_rationale = None
        if template is not None and template.executed:
            template_rationale = TemplateRationale(
                template_key=template.details.get("template_key"),
                dynamic=template.details.get("dynamic", False),
                score=template.details.get("score", 0.0),
                factors=[TemplateFactor(**f) for f in template.details.get("factors", [])],
                alternatives=list(template.details.get("alternatives", [])),
            )

        assembly_details = assembly.details if assembly is not None else {}
        return ConstructionExplanation(
            trace_id=trace.trace_id,
            question=trace.question,
            summary=(
                f"Prompt constructed in {trace.total_duration_ms:.0f} ms "
                f"with {trace.overall_confidence * 100:.0f}% confidence"
            ),
            outcome=trace.outcome.value,
            intent=analysis.details.get("intent") if analysis else None,
            domain=analysis.details.get("domain_name") if analysis else None,
            steps=[step_summary(s) for s in trace.steps],
            selected_sections=[SectionRationale(**s) for s in assembly_details.get("selected", [])],
            rejected_sections=[SectionRationale(**s) for s in assembly_details.get("rejected", [])],
            budget=assembly_details.get("budget"),
            utilization=assembly_details.get("utilization"),
            template=template_rationale,
            suggestions=self.suggestions(trace),
        )

    def suggestions(self, trace: ConstructionTrace) -> List[str]:
        """Optimization hints derived from a trace."""
        hints: List[str] = []
        analysis = trace.step(ANALYSIS)
        retrieval = trace.step(RETRIEVAL)
        assembly = trace.step(ASSEMBLY)
        template = trace.step(TEMPLATE)

        if analysis is not None and analysis.executed and analysis.confidence < 0.5:
            hints.append("Low analysis confidence: name the metric, grouping and time period explicitly in the question")
        if analysis is not None and analysis.details.get("degraded"):
            hints.append("Analysis used fallbacks: check the intent classifier and metadata store availability")
        if retrieval is not None and retrieval.details.get("timed_out_strategies"):
            hints.append(
                f"Metadata retrieval timed out ({', '.join(retrieval.details['timed_out_strategies'])}): "
                "raise the request timeout or check store latency"
            )
        if retrieval is not None and retrieval.details.get("failed_strategies"):
            hints.append(
                f"Metadata lookups failed ({', '.join(retrieval.details['failed_strategies'])}): "
                "check metadata store availability"
            )
        if retrieval is not None and retrieval.details.get("table_count") == 0:
            hints.append("No relevant tables found: add keywords or glossary terms for this subject to the metadata")
        if assembly is not None and assembly.executed:
            rejected = assembly.details.get("rejected", [])
            compressed = [s for s in assembly.details.get("selected", []) if s.get("compressed")]
            if rejected:
                hints.append(f"{len(rejected)} context sections did not fit: raise max_tokens or lower verbosity")
            if compressed:
                hints.append(f"{len(compressed)} sections were compressed to fit the token budget")
        if template is not None and template.details.get("dynamic"):
            hints.append(
                f"No static template cleared the quality threshold for intent "
                f"'{analysis.details.get('intent') if analysis else 'unknown'}': consider adding one"
            )
        if trace.total_duration_ms > self.settings.tracing.speed_baseline_ms:
            hints.append(f"Construction exceeded the {self.settings.tracing.speed_baseline_ms:.0f} ms speed baseline")
        if trace.error:
            hints.append(f"Construction did not finish: {trace.error}")
        not_started = [s.name for s in trace.steps if s.status == StepStatus.NOT_STARTED]
        if not_started:
            hints.append(f"Stages not run: {', '.join(not_started)}")
        return hints
