import asyncio
from datetime import datetime

import pytest

from analysis.analyzer import ContextAnalyzer
from analysis.domains import DomainDetector
from analysis.entities import EntityExtractor, content_words
from analysis.intent import ClassificationHypothesis, IntentClassifier, KeywordIntentClassifier
from app.config import AnalysisConfig
from deployment.circuit_breaker import CircuitBreaker
from shared.errors import CollaboratorExhausted
from shared.models import EntityCategory, IntentType, TimeGranularity


class FailingClassifier:
    def __init__(self):
        self.calls = 0

    async def classify(self, text, labels, timeout=None):
        self.calls += 1
        raise CollaboratorExhausted("classifier retries exhausted")


class BrokenClassifier:
    async def classify(self, text, labels, timeout=None):
        raise ConnectionError("classifier unreachable")


class UnreachableStore:
    """Store whose lookups fail after the question has been parsed."""

    def __init__(self, store):
        self._store = store

    def __getattr__(self, name):
        return getattr(self._store, name)

    async def list_tables(self):
        raise ConnectionError("metadata store unreachable")

    async def find_glossary_terms(self, words):
        raise ConnectionError("metadata store unreachable")


class SlowClassifier:
    async def classify(self, text, labels, timeout=None):
        await asyncio.sleep(5)
        return ClassificationHypothesis(label="trend", confidence=0.9)


class FixedClassifier:
    def __init__(self, label, confidence):
        self.label = label
        self.confidence = confidence

    async def classify(self, text, labels, timeout=None):
        return ClassificationHypothesis(label=self.label, confidence=self.confidence, sub_labels=("external",))


@pytest.mark.asyncio
async def test_depositors_question_profile(analyzer):
    """Top depositors question resolves to a banking aggregation with linked entities."""
    profile = await analyzer.analyze("Top 10 depositors yesterday from UK", user_id="u1")

    assert profile.user_id == "u1"
    assert profile.intent.type == IntentType.AGGREGATION
    assert "financial" in profile.intent.sub_intents
    assert "ranking" in profile.intent.sub_intents
    assert profile.domain.descriptor.key == "banking"
    assert not profile.degraded

    by_category = {}
    for entity in profile.entities:
        by_category.setdefault(entity.category, []).append(entity)
    assert [e.name for e in by_category[EntityCategory.METRIC]] == ["deposit"]
    assert [e.name for e in by_category[EntityCategory.TIME]] == ["yesterday"]
    assert [e.name for e in by_category[EntityCategory.DIMENSION]] == ["country"]

    deposit = by_category[EntityCategory.METRIC][0]
    assert deposit.mapped_table == "transactions"
    assert by_category[EntityCategory.DIMENSION][0].mapped_table == "countries"

    assert profile.time_range.start == datetime(2024, 3, 14)
    assert profile.time_range.end == datetime(2024, 3, 15)
    assert profile.time_range.granularity == TimeGranularity.DAY
    assert "Depositor" in profile.business_terms
    assert 0.0 < profile.confidence <= 1.0


@pytest.mark.asyncio
async def test_total_deposits_by_country_is_banking(analyzer):
    """Deposits outweigh the geographic keyword."""
    profile = await analyzer.analyze("Total deposits by country last week")

    assert profile.domain.descriptor.key == "banking"
    assert profile.intent.type == IntentType.AGGREGATION
    assert profile.time_range.granularity == TimeGranularity.WEEK


@pytest.mark.asyncio
async def test_failing_classifier_degrades_instead_of_raising(store, scorer, clock):
    """An exhausted collaborator yields the keyword intent, capped and marked degraded."""
    classifier = FailingClassifier()
    intent_classifier = IntentClassifier(collaborator=classifier, breaker=CircuitBreaker(failure_threshold=10))
    degraded = ContextAnalyzer(store=store, scorer=scorer, clock=clock, intent_classifier=intent_classifier)
    normal = ContextAnalyzer(store=store, scorer=scorer, clock=clock)

    question = "Top 10 depositors yesterday from UK"
    degraded_profile = await degraded.analyze(question)
    normal_profile = await normal.analyze(question)

    assert classifier.calls == 1
    assert degraded_profile.intent.type == IntentType.AGGREGATION
    assert degraded_profile.intent.degraded
    assert degraded_profile.intent.confidence <= 0.5
    assert degraded_profile.degradations
    assert degraded_profile.confidence < normal_profile.confidence


@pytest.mark.asyncio
async def test_slow_classifier_times_out_to_fallback(store, scorer, clock):
    """The classifier call is capped by its own timeout."""
    config = AnalysisConfig(classifier_timeout=0.05)
    intent_classifier = IntentClassifier(
        collaborator=SlowClassifier(), breaker=CircuitBreaker(failure_threshold=10), config=config
    )
    analyzer = ContextAnalyzer(
        store=store, scorer=scorer, clock=clock, config=config, intent_classifier=intent_classifier
    )

    profile = await analyzer.analyze("Total deposits by country last week")

    assert profile.intent.degraded
    assert profile.intent.type == IntentType.AGGREGATION


@pytest.mark.asyncio
async def test_open_circuit_skips_collaborator(store, scorer, clock):
    """After the threshold the breaker fails fast and the collaborator is not called."""
    classifier = FailingClassifier()
    intent_classifier = IntentClassifier(
        collaborator=classifier, breaker=CircuitBreaker(failure_threshold=2, reset_timeout=60)
    )

    for _ in range(4):
        intent = await intent_classifier.classify("Total deposits")
        assert intent.degraded

    assert classifier.calls == 2


@pytest.mark.asyncio
async def test_collaborator_label_is_used_when_available():
    """A healthy collaborator decides the intent type and confidence."""
    intent_classifier = IntentClassifier(
        collaborator=FixedClassifier("Trend", 0.9), breaker=CircuitBreaker()
    )

    intent = await intent_classifier.classify("Deposits last month")

    assert intent.type == IntentType.TREND
    assert intent.confidence == 0.9
    assert not intent.degraded
    assert intent.sub_intents[0] == "external"


def test_keyword_classifier_unknown_without_matches():
    intent = KeywordIntentClassifier().classify("hello there")

    assert intent.type == IntentType.UNKNOWN
    assert intent.confidence == 0.0


def test_keyword_classifier_comparison_wins_ties():
    intent = KeywordIntentClassifier().classify("Compare total deposits")

    assert intent.type == IntentType.COMPARISON
    assert intent.confidence == pytest.approx(0.65)


def test_domain_detector_gaming(scorer):
    match = DomainDetector(scorer=scorer).detect("Total bets per game session last month")

    assert match.descriptor.key == "gaming"
    assert "game" in match.matched_keywords


def test_domain_detector_uncategorized_below_floor(scorer):
    match = DomainDetector(scorer=scorer).detect("hello there")

    assert match.descriptor.key == "uncategorized"
    assert match.score == 0.0


def test_entity_spans_are_not_double_claimed():
    """'depositors' is a metric, not also a player dimension."""
    entities = EntityExtractor().extract("Top depositors versus new players")

    categories = [(e.source_text, e.category) for e in entities]
    assert ("depositors", EntityCategory.METRIC) in categories
    assert ("depositors", EntityCategory.DIMENSION) not in categories
    assert ("players", EntityCategory.DIMENSION) in categories
    assert ("versus", EntityCategory.COMPARISON) in categories


@pytest.mark.asyncio
async def test_analysis_without_store_uses_content_words(scorer, clock):
    analyzer = ContextAnalyzer(scorer=scorer, clock=clock)

    profile = await analyzer.analyze("Total deposits by country last week")

    assert "deposits" in profile.business_terms
    assert all(e.mapped_table is None for e in profile.entities)
    assert profile.time_range.end == datetime(2024, 3, 11)


@pytest.mark.asyncio
async def test_classifier_error_falls_back_to_keywords(store, scorer, clock):
    """Any collaborator error, not only exhaustion, leads to the keyword intent."""
    intent_classifier = IntentClassifier(collaborator=BrokenClassifier(), breaker=CircuitBreaker(failure_threshold=10))
    analyzer = ContextAnalyzer(store=store, scorer=scorer, clock=clock, intent_classifier=intent_classifier)

    profile = await analyzer.analyze("Top 10 depositors yesterday from UK")

    assert profile.intent.type == IntentType.AGGREGATION
    assert profile.intent.degraded
    assert profile.intent.confidence > 0.0


@pytest.mark.asyncio
async def test_store_error_keeps_unlinked_entities(store, scorer, clock):
    analyzer = ContextAnalyzer(store=UnreachableStore(store), scorer=scorer, clock=clock)

    profile = await analyzer.analyze("Top 10 depositors yesterday from UK")

    names = {e.name for e in profile.entities}
    assert {"deposit", "yesterday", "country"} <= names
    assert all(e.mapped_table is None for e in profile.entities)
    assert profile.business_terms == content_words("Top 10 depositors yesterday from UK")
    assert "entity linking failed" in profile.degradations
    assert "glossary lookup failed" in profile.degradations
