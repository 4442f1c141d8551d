import asyncio

import pytest

from app.cache import InMemoryCache
from retrieval.engine import MetadataRetrievalEngine, SchemaChangeNotification
from retrieval.metadata_store import InMemoryMetadataStore
from retrieval.score_fusion import merge_strategy_scores, normalize_scores
from shared.deadline import Deadline
from shared.errors import ErrorKind

GAMING_ONLY = {"sessions", "games"}


class SlowStore:
    """Delegates to a store, sleeping in the named methods."""

    def __init__(self, store, slow_methods, delay=10.0):
        self._store = store
        self._slow = set(slow_methods)
        self._delay = delay

    def __getattr__(self, name):
        method = getattr(self._store, name)
        if name not in self._slow:
            return method

        async def slow(*args, **kwargs):
            await asyncio.sleep(self._delay)
            return await method(*args, **kwargs)

        return slow


class BrokenStore:
    """Delegates to a store, raising in the named methods."""

    def __init__(self, store, broken_methods):
        self._store = store
        self._broken = set(broken_methods)

    def __getattr__(self, name):
        method = getattr(self._store, name)
        if name not in self._broken:
            return method

        async def broken(*args, **kwargs):
            raise ConnectionError(f"{name} unavailable")

        return broken


class ManualClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class BrokenRelationships:
    async def find_relationships(self, table_ids):
        raise ConnectionError("relationship service down")


@pytest.fixture
def engine(store, scorer):
    return MetadataRetrievalEngine(store, scorer=scorer)


@pytest.mark.asyncio
async def test_depositors_question_selects_banking_tables(analyzer, engine):
    """Transactions, players and countries are selected; gaming-only tables never are."""
    profile = await analyzer.analyze("Top 10 depositors yesterday from UK")

    outcome = await engine.retrieve(profile, max_tables=5)
    schema = outcome.schema

    assert set(schema.table_ids) == {"transactions", "players", "countries"}
    assert schema.tables[0].table.id == "transactions"
    assert not outcome.degradations
    assert not schema.partial
    assert 0.0 < schema.relevance_score <= 1.0
    assert all(0.0 <= t.relevance <= 1.0 for t in schema.tables)

    joins = {(r.from_table, r.from_column, r.to_table, r.kind) for r in schema.relationships}
    assert ("transactions", "player_id", "players", "foreign_key") in joins
    assert ("players", "country_id", "countries", "inferred") in joins

    assert "amount" in [c.name for c in schema.columns["transactions"]]
    assert [g.term for g in schema.glossary_terms] == ["Deposit", "Depositor"]
    assert [r.id for r in schema.business_rules] == ["R1", "R2"]


@pytest.mark.asyncio
async def test_banking_profile_excludes_gaming_only_tables(analyzer, engine):
    profile = await analyzer.analyze("Total deposits by country last week")

    outcome = await engine.retrieve(profile)

    assert outcome.schema.table_ids
    assert not GAMING_ONLY & set(outcome.schema.table_ids)
    assert "legacy_deposits" not in outcome.schema.table_ids


@pytest.mark.asyncio
async def test_gaming_profile_excludes_banking_only_tables(analyzer, engine):
    profile = await analyzer.analyze("Total bets per game session last month")

    outcome = await engine.retrieve(profile)

    assert profile.domain.descriptor.key == "gaming"
    assert "sessions" in outcome.schema.table_ids
    assert "transactions" not in outcome.schema.table_ids


@pytest.mark.asyncio
async def test_zero_admissible_tables_is_empty_not_timeout(analyzer, snapshot, scorer):
    """A banking question against a gaming-only catalogue comes back empty."""
    snapshot["tables"] = [t for t in snapshot["tables"] if t["id"] in GAMING_ONLY]
    engine = MetadataRetrievalEngine(InMemoryMetadataStore.from_dict(snapshot), scorer=scorer)
    profile = await analyzer.analyze("Top 10 depositors yesterday from UK")

    outcome = await engine.retrieve(profile)

    assert outcome.empty
    assert not outcome.timed_out
    assert [d.kind for d in outcome.degradations] == [ErrorKind.RETRIEVAL_EMPTY]

    again = await engine.retrieve(profile)
    assert not again.cached


@pytest.mark.asyncio
async def test_slow_listing_times_out_with_partial_schema(analyzer, store, scorer):
    profile = await analyzer.analyze("Top 10 depositors yesterday from UK")
    engine = MetadataRetrievalEngine(SlowStore(store, {"list_tables"}), scorer=scorer)

    outcome = await engine.retrieve(profile, deadline=Deadline.after(0.1))

    assert outcome.timed_out
    assert outcome.schema.partial
    assert outcome.schema.is_empty
    assert [d.kind for d in outcome.degradations] == [ErrorKind.RETRIEVAL_TIMEOUT]


@pytest.mark.asyncio
async def test_slow_strategy_is_cancelled_and_others_kept(analyzer, store, scorer):
    """A strategy still running at the deadline is dropped; the rest still rank tables."""
    profile = await analyzer.analyze("Top 10 depositors yesterday from UK")
    engine = MetadataRetrievalEngine(SlowStore(store, {"find_tables_by_domain"}), scorer=scorer)

    outcome = await engine.retrieve(profile, deadline=Deadline.after(0.2))

    assert outcome.timed_out
    assert "domain" in outcome.schema.timed_out_strategies
    assert "transactions" in outcome.schema.table_ids

    # Partial schemas are never cached
    fresh = MetadataRetrievalEngine(store, scorer=scorer, cache=engine.cache)
    assert not (await fresh.retrieve(profile)).cached


@pytest.mark.asyncio
async def test_failing_relationship_service_degrades_to_no_joins(analyzer, store, scorer):
    profile = await analyzer.analyze("Top 10 depositors yesterday from UK")
    engine = MetadataRetrievalEngine(store, relationships=BrokenRelationships(), scorer=scorer)

    outcome = await engine.retrieve(profile)

    assert outcome.schema.table_ids
    assert outcome.schema.relationships == ()
    assert outcome.schema.partial
    assert outcome.schema.failed_strategies == ("relationships",)
    assert [d.kind for d in outcome.degradations] == [ErrorKind.RETRIEVAL_TIMEOUT]


@pytest.mark.asyncio
async def test_failing_column_lookup_is_partial_and_not_cached(analyzer, store, scorer):
    profile = await analyzer.analyze("Top 10 depositors yesterday from UK")
    engine = MetadataRetrievalEngine(BrokenStore(store, ["get_columns"]), scorer=scorer)

    first = await engine.retrieve(profile)
    second = await engine.retrieve(profile)

    assert first.schema.partial
    assert "columns" in first.schema.failed_strategies
    assert "unavailable: columns" in first.degradations[0].message
    assert not second.cached
    assert second.degradations


@pytest.mark.asyncio
async def test_failing_table_listing_degrades_to_partial_schema(analyzer, store, scorer):
    profile = await analyzer.analyze("Top 10 depositors yesterday from UK")
    engine = MetadataRetrievalEngine(BrokenStore(store, ["list_tables"]), scorer=scorer)

    outcome = await engine.retrieve(profile)

    assert outcome.schema.is_empty
    assert outcome.schema.partial
    assert outcome.schema.failed_strategies == ("list_tables",)
    assert outcome.timed_out


@pytest.mark.asyncio
async def test_expired_cache_keys_leave_the_invalidation_index(analyzer, store, scorer):
    clock = ManualClock()
    cache = InMemoryCache(default_ttl=60, clock=clock)
    engine = MetadataRetrievalEngine(store, scorer=scorer, cache=cache)
    first = await analyzer.analyze("Top 10 depositors yesterday from UK")
    second = await analyzer.analyze("Total deposits by country last week")

    await engine.retrieve(first)
    clock.now = engine.config.cache_ttl + 1
    await engine.retrieve(second)

    indexed = set().union(*engine._cache_index.values())
    assert len(indexed) == 1
    assert cache.get(next(iter(indexed))) is not None


@pytest.mark.asyncio
async def test_cache_hit_and_schema_change_invalidation(analyzer, engine):
    profile = await analyzer.analyze("Top 10 depositors yesterday from UK")

    first = await engine.retrieve(profile)
    second = await engine.retrieve(profile)
    assert not first.cached
    assert second.cached
    assert second.schema == first.schema

    unrelated = engine.handle_schema_change(SchemaChangeNotification(table_ids=("games",)))
    assert unrelated == 0
    assert (await engine.retrieve(profile)).cached

    invalidated = engine.handle_schema_change(SchemaChangeNotification(table_ids=("transactions",), reason="ddl"))
    assert invalidated == 1
    assert not (await engine.retrieve(profile)).cached


@pytest.mark.asyncio
async def test_max_tables_limits_result(analyzer, engine):
    profile = await analyzer.analyze("Top 10 depositors yesterday from UK")

    outcome = await engine.retrieve(profile, max_tables=1)

    assert outcome.schema.table_ids == ("transactions",)
    assert outcome.schema.relationships == ()


def test_normalize_scores_anchors_at_zero():
    assert normalize_scores([2.0, 1.0]) == [1.0, 0.5]
    assert normalize_scores([0.4, 0.4]) == [0.4, 0.4]
    assert normalize_scores([]) == []


def test_merge_strategy_scores_weights_and_ties():
    fused = merge_strategy_scores(
        {"semantic": {"b": 1.0, "a": 1.0}, "domain": {"a": 1.0}},
        {"semantic": 0.5, "domain": 0.5},
        top_k=2,
    )

    assert [f.id for f in fused] == ["a", "b"]
    assert fused[0].fused_score == pytest.approx(1.0)
    assert fused[1].fused_score == pytest.approx(0.5)
    assert [f.rank for f in fused] == [1, 2]
