"""
Metadata retrieval engine.

Given a business context profile, produce a ranked, domain-filtered
ContextualSchema: tables, their best columns, glossary terms, rules and
the joins among the selected tables.

Pipeline:
1. Hard domain exclusion and governance filtering
2. Four discovery strategies run concurrently (semantic, domain, entity, glossary)
3. Weighted score fusion, top-K tables
4. Column selection under a per-table token sub-budget
5. Relationship discovery among the selected tables
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

from app.cache import Cache, InMemoryCache, make_cache_key, normalize_question
from app.config import RetrievalConfig, settings
from context.context_budgeting import count_tokens
from shared.deadline import Deadline
from shared.errors import Degradation, ErrorKind
from shared.models import (
    UNCATEGORIZED,
    BusinessContextProfile,
    ColumnInfo,
    ContextualSchema,
    GlossaryTerm,
    RankedTable,
    TableInfo,
)

from .metadata_store import MetadataStore, RelationshipService, table_terms
from .score_fusion import merge_strategy_scores
from .scoring import ScoringStrategy, get_scoring_strategy, overlap_score, tokenize

logger = logging.getLogger(__name__)

STAGE = "metadata_retrieval"


@dataclass(frozen=True)
class RetrievalOutcome:
    """Schema plus the recoverable conditions met while building it."""

    schema: ContextualSchema
    degradations: Tuple[Degradation, ...] = ()
    cached: bool = False
    candidate_count: int = 0

    @property
    def empty(self) -> bool:
        return self.schema.is_empty

    @property
    def timed_out(self) -> bool:
        return any(d.kind == ErrorKind.RETRIEVAL_TIMEOUT for d in self.degradations)


@dataclass(frozen=True)
class SchemaChangeNotification:
    """External signal that metadata changed. Empty `table_ids` means everything."""

    table_ids: Tuple[str, ...] = ()
    reason: str = ""


@dataclass
class _Fetched:
    """Results of a concurrent fan-out, keyed by task name."""

    results: Dict[str, object] = field(default_factory=dict)
    timed_out: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


def profile_terms(profile: BusinessContextProfile) -> List[str]:
    """Entity names, metrics, dimensions and business terms, de-duplicated in order."""
    terms = [e.name for e in profile.entities] + [e.source_text for e in profile.entities]
    terms.extend(profile.business_terms)
    return list(dict.fromkeys(t for t in terms if t))


class MetadataRetrievalEngine:
    """
    Multi-strategy metadata retrieval with caching.

    Usage:
        engine = MetadataRetrievalEngine(store)
        outcome = await engine.retrieve(profile, max_tables=5, deadline=Deadline.after(5))
    """

    def __init__(
        self,
        store: MetadataStore,
        relationships: Optional[RelationshipService] = None,
        scorer: Optional[ScoringStrategy] = None,
        cache: Optional[Cache] = None,
        config: Optional[RetrievalConfig] = None,
        encoding_name: Optional[str] = None,
    ):
        """
        Args:
            store: Metadata store collaborator
            relationships: Relationship service; defaults to the store when it provides one
            scorer: Similarity strategy; defaults to the configured backend
            cache: Retrieval cache; defaults to a private in-memory cache
            config: Retrieval configuration
        """
        self.store = store
        self.relationships = relationships or (store if hasattr(store, "find_relationships") else None)
        self.scorer = scorer or get_scoring_strategy()
        self.config = config or settings.retrieval
        self.cache = cache if cache is not None else InMemoryCache(default_ttl=self.config.cache_ttl)
        self.encoding_name = encoding_name or settings.assembly.encoding_name
        # table id -> cache keys whose schema includes it, for invalidation
        self._cache_index: Dict[str, Set[str]] = {}

    # --- public API --------------------------------------------------------

    async def retrieve(
        self,
        profile: BusinessContextProfile,
        max_tables: Optional[int] = None,
        deadline: Optional[Deadline] = None,
    ) -> RetrievalOutcome:
        """
        Retrieve the contextual schema for a profile.

        Args:
            profile: Analyzed question
            max_tables: Maximum number of tables (K)
            deadline: Request deadline; store calls are cancelled on expiry

        Returns:
            RetrievalOutcome. A timeout or a failing store lookup yields a
            partial schema that is not cached; zero admissible
            candidates yields an empty schema with a RetrievalEmpty degradation.
        """
        max_tables = max_tables or self.config.default_max_tables
        deadline = deadline or Deadline.unbounded()

        cache_key = make_cache_key(normalize_question(profile.question), profile.user_id or "", max_tables)
        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.info(f"Retrieval cache hit for question: {profile.question[:50]}")
            return RetrievalOutcome(schema=cached, cached=True, candidate_count=len(cached.tables))

        logger.info(f"Retrieving metadata: domain={profile.domain.descriptor.key}, max_tables={max_tables}")

        try:
            tables = await deadline.run(self.store.list_tables())
        except asyncio.TimeoutError:
            logger.warning("Metadata store timed out listing tables")
            return self._timeout_outcome(ContextualSchema(partial=True, timed_out_strategies=("list_tables",)))
        except Exception as e:
            logger.warning(f"Metadata store failed listing tables: {type(e).__name__}: {e}")
            return self._timeout_outcome(ContextualSchema(partial=True, failed_strategies=("list_tables",)))

        candidates = self.filter_candidates(profile, tables)
        logger.info(f"{len(candidates)}/{len(tables)} tables admissible after domain and governance filters")
        if not candidates:
            return self._empty_outcome(profile)

        # 1. Discovery strategies, concurrently
        by_id = {t.id: t for t in candidates}
        strategies = {
            "semantic": lambda: self._semantic_strategy(profile, candidates),
            "domain": lambda: self._domain_strategy(profile, by_id),
            "entity": lambda: self._entity_strategy(profile, by_id),
            "glossary": lambda: self._glossary_strategy(profile, by_id),
        }
        fetched = await self._fan_out(strategies, deadline)
        strategy_results = {
            name: fetched.results.get(name) or {} for name in strategies
        }

        # 2. Fusion
        fused = merge_strategy_scores(
            strategy_results,
            self.config.strategy_weights,
            min_score=self.config.min_table_score,
            top_k=max_tables,
        )
        ranked = tuple(
            RankedTable(table=by_id[f.id], relevance=round(f.fused_score, 4), strategy_scores=f.strategy_scores)
            for f in fused
        )

        if not ranked:
            if fetched.timed_out or fetched.failed:
                return self._timeout_outcome(
                    ContextualSchema(
                        partial=True,
                        timed_out_strategies=tuple(fetched.timed_out),
                        failed_strategies=tuple(fetched.failed),
                    )
                )
            return self._empty_outcome(profile)

        # 3. Follow-up lookups for the selected tables
        table_ids = [r.table.id for r in ranked]
        follow_ups = {
            "columns": lambda: self.store.get_columns(table_ids),
            "rules": lambda: self.store.get_business_rules(table_ids),
            "glossary_terms": lambda: self.store.find_glossary_terms(profile_terms(profile)),
        }
        if self.relationships is not None:
            follow_ups["relationships"] = lambda: self.relationships.find_relationships(table_ids)
        details = await self._fan_out(follow_ups, deadline)

        columns, column_scores = self.select_columns(profile, ranked, details.results.get("columns") or {})
        glossary = self._relevant_glossary(profile, table_ids, details.results.get("glossary_terms") or ())
        rules = tuple(sorted(details.results.get("rules") or (), key=lambda r: (r.priority, r.id)))
        relationships = tuple(details.results.get("relationships") or ())

        timed_out = tuple(fetched.timed_out + details.timed_out)
        failed = tuple(fetched.failed + details.failed)
        schema = ContextualSchema(
            tables=ranked,
            columns=columns,
            glossary_terms=glossary,
            business_rules=rules,
            relationships=relationships,
            partial=bool(timed_out or failed),
            timed_out_strategies=timed_out,
            failed_strategies=failed,
        )
        schema = replace(schema, relevance_score=self.overall_relevance(profile, schema, column_scores))

        logger.info(
            f"Retrieved {len(ranked)} tables, {sum(len(c) for c in columns.values())} columns, "
            f"{len(relationships)} relationships (relevance={schema.relevance_score:.2f})"
        )

        if schema.partial:
            return self._timeout_outcome(schema, candidate_count=len(candidates))

        schema = self.cache.set_if_absent(cache_key, schema, ttl=self.config.cache_ttl)
        self._prune_cache_index()
        for table_id in schema.table_ids:
            self._cache_index.setdefault(table_id, set()).add(cache_key)

        return RetrievalOutcome(schema=schema, candidate_count=len(candidates))

    def _prune_cache_index(self) -> None:
        """Forget cache keys that have expired out of the cache."""
        live: Dict[str, bool] = {}
        for table_id in list(self._cache_index):
            keys = self._cache_index[table_id]
            for key in list(keys):
                if key not in live:
                    live[key] = self.cache.get(key) is not None
                if not live[key]:
                    keys.discard(key)
            if not keys:
                del self._cache_index[table_id]

    def handle_schema_change(self, notification: SchemaChangeNotification) -> int:
        """
        Invalidate cached schemas touched by a schema change.

        Returns:
            Number of cache entries invalidated
        """
        if notification.table_ids:
            keys: Set[str] = set()
            for table_id in notification.table_ids:
                keys.update(self._cache_index.pop(table_id, set()))
        else:
            keys = set().union(*self._cache_index.values()) if self._cache_index else set()
            self._cache_index.clear()

        for key in keys:
            self.cache.delete(key)
        for indexed in self._cache_index.values():
            indexed.difference_update(keys)

        logger.info(f"Schema change ({notification.reason or 'unspecified'}): invalidated {len(keys)} cached schemas")
        return len(keys)

    # --- filtering ---------------------------------------------------------

    @staticmethod
    def filter_candidates(profile: BusinessContextProfile, tables: Sequence[TableInfo]) -> List[TableInfo]:
        """Drop governed-out tables and tables tagged only for unrelated domains."""
        descriptor = profile.domain.descriptor
        return [t for t in tables if t.is_selectable and descriptor.admits(t.domains)]

    # --- strategies --------------------------------------------------------

    async def _semantic_strategy(self, profile: BusinessContextProfile, tables: Sequence[TableInfo]) -> Dict[str, float]:
        scores = {}
        for table in tables:
            text = " ".join([table.table_name, table.business_purpose, table.description, " ".join(table.keywords)])
            score = self.scorer.similarity(profile.question, text)
            if score > 0:
                scores[table.id] = score
        return scores

    async def _domain_strategy(self, profile: BusinessContextProfile, by_id: Dict[str, TableInfo]) -> Dict[str, float]:
        descriptor = profile.domain.descriptor
        if descriptor.key == UNCATEGORIZED.key:
            return {}
        keys = [descriptor.key, *descriptor.related_domains]
        tables = await self.store.find_tables_by_domain(keys)
        scores = {}
        for table in tables:
            if table.id not in by_id:
                continue
            scores[table.id] = 1.0 if descriptor.key in table.domains else 0.5
        return scores

    async def _entity_strategy(self, profile: BusinessContextProfile, by_id: Dict[str, TableInfo]) -> Dict[str, float]:
        terms = profile_terms(profile)
        if not terms:
            return {}
        wanted = set()
        for term in terms:
            wanted.update(tokenize(term))

        tables = await self.store.find_tables_by_keyword(terms)
        mapped = {e.mapped_table for e in profile.entities if e.mapped_table}
        scores = {}
        for table in tables:
            if table.id not in by_id:
                continue
            score = overlap_score(wanted, table_terms(table))
            if table.id in mapped:
                score = 1.0
            scores[table.id] = score
        for table_id in mapped:
            if table_id in by_id:
                scores[table_id] = 1.0
        return scores

    async def _glossary_strategy(self, profile: BusinessContextProfile, by_id: Dict[str, TableInfo]) -> Dict[str, float]:
        if not profile.business_terms:
            return {}
        entries = await self.store.find_glossary_terms(profile.business_terms)
        if not entries:
            return {}
        hits: Dict[str, int] = {}
        for entry in entries:
            for table_id in entry.mapped_tables:
                if table_id in by_id:
                    hits[table_id] = hits.get(table_id, 0) + 1
        return {table_id: count / len(entries) for table_id, count in hits.items()}

    # --- columns, glossary, relevance ---------------------------------------

    def score_column(self, profile: BusinessContextProfile, column: ColumnInfo) -> float:
        """0.3 entity + 0.25 semantic + 0.2 importance + 0.15 usage + 0.1 term match."""
        column_tokens = tokenize(" ".join((column.name, column.business_meaning) + column.related_terms))

        entity_tokens = set()
        for entity in profile.entities:
            entity_tokens.update(tokenize(entity.name))
            entity_tokens.update(tokenize(entity.source_text))
        entity_match = 1.0 if entity_tokens & column_tokens else 0.0
        if any(e.mapped_column == column.name and e.mapped_table == column.table_id for e in profile.entities):
            entity_match = 1.0

        semantic = self.scorer.similarity(profile.question, f"{column.name} {column.business_meaning}")

        term_tokens = set()
        for term in profile.business_terms:
            term_tokens.update(tokenize(term))
        term_match = overlap_score(term_tokens, column_tokens) if term_tokens else 0.0

        score = (
            0.3 * entity_match
            + 0.25 * semantic
            + 0.2 * column.importance
            + 0.15 * min(1.0, column.usage_frequency)
            + 0.1 * term_match
        )
        return min(1.0, max(0.0, score))

    def select_columns(
        self,
        profile: BusinessContextProfile,
        ranked: Sequence[RankedTable],
        columns: Dict[str, Sequence[ColumnInfo]],
    ) -> Tuple[Dict[str, Tuple[ColumnInfo, ...]], Dict[Tuple[str, str], float]]:
        """
        Top-N columns per table that fit the per-table token sub-budget.

        Returns:
            (table_id -> kept columns, (table_id, column) -> score of kept columns)
        """
        column_scores: Dict[Tuple[str, str], float] = {}
        selected: Dict[str, Tuple[ColumnInfo, ...]] = {}

        for entry in ranked:
            table_columns = columns.get(entry.table.id, ())
            scored = [(self.score_column(profile, c), c) for c in table_columns]
            scored.sort(key=lambda sc: (-sc[0], not sc[1].is_key, sc[1].name))

            kept: List[ColumnInfo] = []
            used = 0
            for score, column in scored:
                if len(kept) >= self.config.max_columns_per_table:
                    break
                cost = count_tokens(column.describe(), self.encoding_name)
                if used + cost > self.config.column_token_budget:
                    continue
                kept.append(column)
                used += cost
                column_scores[(entry.table.id, column.name)] = score
            selected[entry.table.id] = tuple(kept)

        return selected, column_scores

    @staticmethod
    def _relevant_glossary(
        profile: BusinessContextProfile,
        table_ids: Sequence[str],
        entries: Sequence[GlossaryTerm],
    ) -> Tuple[GlossaryTerm, ...]:
        ids = set(table_ids)
        domain_key = profile.domain.descriptor.key
        relevant = [
            e for e in entries
            if ids.intersection(e.mapped_tables) or e.domain in (None, domain_key)
        ]
        return tuple(sorted({e.term: e for e in relevant}.values(), key=lambda e: e.term))

    @staticmethod
    def overall_relevance(
        profile: BusinessContextProfile,
        schema: ContextualSchema,
        column_scores: Dict[Tuple[str, str], float],
    ) -> float:
        """
        Weighted average of table, column, glossary and relationship components.

        Weights: tables 0.4, columns 0.3, glossary coverage 0.15,
        relationship coverage 0.15.
        """
        if schema.is_empty:
            return 0.0

        table_score = sum(t.relevance for t in schema.tables) / len(schema.tables)
        col_values = list(column_scores.values())
        column_score = sum(col_values) / len(col_values) if col_values else 0.0

        if profile.business_terms:
            covered = set()
            for entry in schema.glossary_terms:
                covered.update(tokenize(" ".join((entry.term,) + entry.synonyms)))
            term_tokens = set()
            for term in profile.business_terms:
                term_tokens.update(tokenize(term))
            glossary_coverage = overlap_score(term_tokens, covered)
        else:
            glossary_coverage = 0.5

        if len(schema.tables) <= 1:
            relationship_coverage = 1.0
        else:
            joined = set()
            for rel in schema.relationships:
                joined.update((rel.from_table, rel.to_table))
            relationship_coverage = len(joined & set(schema.table_ids)) / len(schema.tables)

        score = 0.4 * table_score + 0.3 * column_score + 0.15 * glossary_coverage + 0.15 * relationship_coverage
        return round(min(1.0, max(0.0, score)), 4)

    # --- concurrency helpers -----------------------------------------------

    async def _fan_out(self, calls: Dict[str, Callable[[], Awaitable]], deadline: Deadline) -> _Fetched:
        """
        Run independent lookups concurrently and join them.

        Tasks still pending at the deadline are cancelled and reported as
        timed out; a task that raised is reported as failed.
        """
        tasks = {name: asyncio.ensure_future(call()) for name, call in calls.items()}
        fetched = _Fetched()
        if not tasks:
            return fetched

        done, pending = await asyncio.wait(tasks.values(), timeout=deadline.timeout())

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        for name, task in tasks.items():
            if task in pending:
                fetched.timed_out.append(name)
                logger.warning(f"Retrieval lookup '{name}' cancelled at deadline")
            elif task.exception() is not None:
                fetched.failed.append(name)
                logger.warning(f"Retrieval lookup '{name}' failed: {task.exception()}")
            else:
                fetched.results[name] = task.result()
        return fetched

    # --- outcomes ----------------------------------------------------------

    def _timeout_outcome(self, schema: ContextualSchema, candidate_count: int = 0) -> RetrievalOutcome:
        reasons = []
        if schema.timed_out_strategies:
            reasons.append(f"timed out waiting for: {', '.join(schema.timed_out_strategies)}")
        if schema.failed_strategies:
            reasons.append(f"unavailable: {', '.join(schema.failed_strategies)}")
        degradation = Degradation(
            kind=ErrorKind.RETRIEVAL_TIMEOUT,
            stage=STAGE,
            message=f"Metadata store {'; '.join(reasons) or 'timed out'}; returning partial schema",
        )
        return RetrievalOutcome(schema=schema, degradations=(degradation,), candidate_count=candidate_count)

    def _empty_outcome(self, profile: BusinessContextProfile) -> RetrievalOutcome:
        logger.warning(f"No relevant tables for domain '{profile.domain.name}'")
        degradation = Degradation(
            kind=ErrorKind.RETRIEVAL_EMPTY,
            stage=STAGE,
            message=f"Zero relevant tables after filtering for domain '{profile.domain.name}'",
        )
        return RetrievalOutcome(schema=ContextualSchema(), degradations=(degradation,))
