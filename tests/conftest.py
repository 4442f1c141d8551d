import copy
from datetime import datetime

import pytest

from analysis.analyzer import ContextAnalyzer
from app.config import Settings
from app.pipeline import PromptConstructionPipeline
from monitoring.metrics import InMemoryMetricsSink
from monitoring.trace_store import InMemoryTraceStore
from retrieval.metadata_store import InMemoryMetadataStore
from retrieval.scoring import LexicalSimilarity

FIXED_NOW = datetime(2024, 3, 15, 14, 30)

SNAPSHOT = {
    "tables": [
        {
            "id": "transactions",
            "schema": "dbo",
            "name": "transactions",
            "business_purpose": "Deposits, withdrawals and payments made by players",
            "description": "One row per money movement. Amounts are in the transaction currency.",
            "domains": ["banking"],
            "keywords": ["deposit", "depositor", "withdrawal", "payment", "amount"],
            "importance": 0.95,
            "columns": [
                {"name": "transaction_id", "data_type": "bigint", "is_key": True, "importance": 0.6},
                {"name": "player_id", "data_type": "bigint", "business_meaning": "Player who moved the money",
                 "importance": 0.8, "usage_frequency": 0.9, "related_terms": ["player", "depositor"]},
                {"name": "amount", "data_type": "decimal(18,2)", "business_meaning": "Transaction amount",
                 "importance": 0.95, "usage_frequency": 0.95, "related_terms": ["deposit", "amount"]},
                {"name": "transaction_type", "data_type": "varchar(20)",
                 "business_meaning": "deposit, withdrawal or payment", "importance": 0.9,
                 "usage_frequency": 0.8, "related_terms": ["deposit", "withdrawal"]},
                {"name": "created_at", "data_type": "datetime", "business_meaning": "When the transaction happened",
                 "importance": 0.85, "usage_frequency": 0.9, "related_terms": ["date", "time"]},
            ],
        },
        {
            "id": "players",
            "schema": "dbo",
            "name": "players",
            "business_purpose": "Registered players and their profile attributes",
            "description": "One row per player account.",
            "domains": ["customer", "banking", "gaming"],
            "keywords": ["player", "customer", "depositor", "registration"],
            "importance": 0.9,
            "columns": [
                {"name": "player_id", "data_type": "bigint", "is_key": True, "importance": 0.9,
                 "usage_frequency": 0.9, "related_terms": ["player", "depositor"]},
                {"name": "country_id", "data_type": "int", "business_meaning": "Country of residence",
                 "importance": 0.8, "usage_frequency": 0.7, "related_terms": ["country"]},
                {"name": "username", "data_type": "varchar(100)", "business_meaning": "Display name",
                 "importance": 0.6, "usage_frequency": 0.6},
                {"name": "registered_at", "data_type": "datetime", "business_meaning": "Registration time",
                 "importance": 0.6, "usage_frequency": 0.4, "related_terms": ["registration"]},
            ],
        },
        {
            "id": "countries",
            "schema": "dbo",
            "name": "countries",
            "business_purpose": "Reference list of countries and markets",
            "description": "ISO country codes and names.",
            "domains": ["geographic"],
            "keywords": ["country", "market", "region"],
            "importance": 0.7,
            "columns": [
                {"name": "country_id", "data_type": "int", "is_key": True, "importance": 0.8},
                {"name": "country_name", "data_type": "varchar(100)", "business_meaning": "Country name",
                 "importance": 0.8, "usage_frequency": 0.7, "related_terms": ["country"]},
                {"name": "country_code", "data_type": "char(2)", "business_meaning": "ISO 3166 alpha-2 code",
                 "importance": 0.7, "usage_frequency": 0.6, "related_terms": ["uk", "country"]},
            ],
        },
        {
            "id": "games",
            "schema": "dbo",
            "name": "games",
            "business_purpose": "Catalogue of casino games and their providers",
            "description": "One row per game.",
            "domains": ["gaming"],
            "keywords": ["game", "slot", "provider"],
            "importance": 0.8,
            "columns": [
                {"name": "game_id", "data_type": "int", "is_key": True, "importance": 0.8},
                {"name": "game_name", "data_type": "varchar(100)", "importance": 0.7},
                {"name": "provider", "data_type": "varchar(100)", "importance": 0.6},
            ],
        },
        {
            "id": "sessions",
            "schema": "dbo",
            "name": "sessions",
            "business_purpose": "Game sessions with bets and wins per player",
            "description": "One row per game session.",
            "domains": ["gaming"],
            "keywords": ["session", "bet", "win", "round"],
            "importance": 0.8,
            "columns": [
                {"name": "session_id", "data_type": "bigint", "is_key": True, "importance": 0.8},
                {"name": "player_id", "data_type": "bigint", "importance": 0.7},
                {"name": "game_id", "data_type": "int", "importance": 0.7},
                {"name": "bet_amount", "data_type": "decimal(18,2)", "importance": 0.9},
                {"name": "win_amount", "data_type": "decimal(18,2)", "importance": 0.9},
            ],
        },
        {
            "id": "legacy_deposits",
            "schema": "archive",
            "name": "legacy_deposits",
            "business_purpose": "Deposits from the retired payments platform",
            "domains": ["banking"],
            "keywords": ["deposit"],
            "importance": 0.3,
            "governance": {"deprecated": True},
            "columns": [{"name": "deposit_id", "data_type": "bigint", "is_key": True}],
        },
    ],
    "glossary": [
        {"term": "Depositor", "definition": "A player with at least one successful deposit in the period",
         "domain": "Banking", "mapped_tables": ["transactions", "players"], "synonyms": ["depositors"]},
        {"term": "Deposit", "definition": "Money paid into a player account",
         "domain": "Banking", "mapped_tables": ["transactions"]},
        {"term": "GGR", "definition": "Gross gaming revenue: bets minus wins",
         "domain": "Gaming", "mapped_tables": ["sessions"], "synonyms": ["gross gaming revenue"]},
    ],
    "rules": [
        {"id": "R1", "table_id": "transactions", "rule_type": "filter",
         "description": "Only count transactions with status 'completed'", "priority": 1},
        {"id": "R2", "table_id": None, "rule_type": "privacy",
         "description": "Never select personal contact details", "priority": 1},
        {"id": "R3", "table_id": "sessions", "rule_type": "calculation",
         "description": "GGR is bet_amount minus win_amount", "priority": 2},
    ],
    "relationships": [
        {"from_table": "transactions", "from_column": "player_id", "to_table": "players", "to_column": "player_id"},
    ],
}


class FixedClock:
    """Wall clock frozen at FIXED_NOW."""

    def __call__(self) -> datetime:
        return FIXED_NOW


@pytest.fixture
def snapshot():
    return copy.deepcopy(SNAPSHOT)


@pytest.fixture
def store():
    return InMemoryMetadataStore.from_dict(SNAPSHOT)


@pytest.fixture
def scorer():
    return LexicalSimilarity()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def settings():
    return Settings(
        REQUEST_TIMEOUT=10.0,
        SIMILARITY_BACKEND="lexical",
        METRICS_BACKEND="memory",
        TRACE_STORE_PATH=None,
    )


@pytest.fixture
def analyzer(store, scorer, clock, settings):
    return ContextAnalyzer(store=store, scorer=scorer, clock=clock, config=settings.analysis)


@pytest.fixture
def trace_store():
    return InMemoryTraceStore()


@pytest.fixture
def metrics_sink():
    return InMemoryMetricsSink()


@pytest.fixture
def pipeline(store, scorer, clock, settings, trace_store, metrics_sink):
    return PromptConstructionPipeline(
        store,
        scorer=scorer,
        clock=clock,
        settings=settings,
        trace_store=trace_store,
        metrics_sink=metrics_sink,
    )
