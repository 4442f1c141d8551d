"""
Core data model for prompt construction.

Every record here is immutable once built: profiles are produced by the
analyzer, schemas by the retrieval engine, and downstream stages only read
them.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple


class IntentType(Enum):
    """Closed set of question intents."""

    ANALYTICAL = "analytical"
    OPERATIONAL = "operational"
    EXPLORATORY = "exploratory"
    COMPARISON = "comparison"
    AGGREGATION = "aggregation"
    TREND = "trend"
    DETAIL = "detail"
    UNKNOWN = "unknown"


class EntityCategory(Enum):
    TABLE = "table"
    COLUMN = "column"
    METRIC = "metric"
    DIMENSION = "dimension"
    TIME = "time"
    COMPARISON = "comparison"


class TimeGranularity(Enum):
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class QueryIntent:
    """Classified intent of a question."""

    type: IntentType
    confidence: float
    description: str = ""
    sub_intents: Tuple[str, ...] = ()
    degraded: bool = False


@dataclass(frozen=True)
class DomainDescriptor:
    """
    A business domain known to the analyzer.

    Domains are resolved by `key`; `related_domains` lists the keys whose
    tables remain admissible for a question classified into this domain.
    """

    key: str
    name: str
    description: str
    key_concepts: Tuple[str, ...] = ()
    keywords: Tuple[str, ...] = ()
    priority_keywords: Tuple[str, ...] = ()
    related_domains: Tuple[str, ...] = ()

    def admits(self, domain_tags) -> bool:
        """True if a table tagged with `domain_tags` may serve this domain."""
        if self.key == UNCATEGORIZED.key or not domain_tags:
            return True
        allowed = {self.key, *self.related_domains}
        return any(tag in allowed for tag in domain_tags)


UNCATEGORIZED = DomainDescriptor(
    key="uncategorized",
    name="Uncategorized",
    description="No business domain could be determined",
)


@dataclass(frozen=True)
class DomainMatch:
    """Best domain for a question, with its relevance score."""

    descriptor: DomainDescriptor
    score: float
    matched_keywords: Tuple[str, ...] = ()
    method: str = "keyword_matching"
    degraded: bool = False

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def key_concepts(self) -> Tuple[str, ...]:
        return self.descriptor.key_concepts


@dataclass(frozen=True)
class BusinessEntity:
    """An entity mentioned in the question."""

    name: str
    category: EntityCategory
    source_text: str
    start: int
    end: int
    confidence: float = 1.0
    mapped_table: Optional[str] = None
    mapped_column: Optional[str] = None


@dataclass(frozen=True)
class TimeRange:
    """Normalized time window referenced by a question."""

    start: Optional[datetime] = None
    end: Optional[datetime] = None
    relative_expression: str = ""
    granularity: TimeGranularity = TimeGranularity.UNKNOWN

    def describe(self) -> str:
        parts = []
        if self.relative_expression:
            parts.append(self.relative_expression)
        if self.start and self.end:
            parts.append(f"{self.start:%Y-%m-%d %H:%M} to {self.end:%Y-%m-%d %H:%M}")
        parts.append(f"granularity: {self.granularity.value}")
        return ", ".join(parts)


@dataclass(frozen=True)
class BusinessContextProfile:
    """Structured interpretation of a natural-language business question."""

    question: str
    user_id: Optional[str]
    intent: QueryIntent
    domain: DomainMatch
    entities: Tuple[BusinessEntity, ...] = ()
    business_terms: Tuple[str, ...] = ()
    time_range: Optional[TimeRange] = None
    confidence: float = 0.0
    degradations: Tuple[str, ...] = ()

    @property
    def metrics(self) -> Tuple[str, ...]:
        return tuple(e.name for e in self.entities if e.category == EntityCategory.METRIC)

    @property
    def dimensions(self) -> Tuple[str, ...]:
        return tuple(e.name for e in self.entities if e.category == EntityCategory.DIMENSION)

    @property
    def comparison_terms(self) -> Tuple[str, ...]:
        return tuple(e.source_text.lower() for e in self.entities if e.category == EntityCategory.COMPARISON)

    @property
    def degraded(self) -> bool:
        return bool(self.degradations)


# --- Metadata records -------------------------------------------------------


@dataclass(frozen=True)
class TableInfo:
    """Business metadata for a table."""

    id: str
    schema_name: str
    table_name: str
    business_purpose: str = ""
    description: str = ""
    domains: Tuple[str, ...] = ()
    keywords: Tuple[str, ...] = ()
    importance: float = 0.5
    governance: Mapping[str, bool] = field(default_factory=dict)

    @property
    def qualified_name(self) -> str:
        return f"{self.schema_name}.{self.table_name}"

    @property
    def is_selectable(self) -> bool:
        return not (self.governance.get("deprecated") or self.governance.get("hidden"))


@dataclass(frozen=True)
class ColumnInfo:
    table_id: str
    name: str
    data_type: str
    business_meaning: str = ""
    is_key: bool = False
    importance: float = 0.5
    usage_frequency: float = 0.0
    related_terms: Tuple[str, ...] = ()

    def describe(self) -> str:
        line = f"{self.name} ({self.data_type})"
        if self.is_key:
            line += " [key]"
        if self.business_meaning:
            line += f": {self.business_meaning}"
        return line


@dataclass(frozen=True)
class GlossaryTerm:
    term: str
    definition: str
    domain: Optional[str] = None
    mapped_tables: Tuple[str, ...] = ()
    synonyms: Tuple[str, ...] = ()


@dataclass(frozen=True)
class BusinessRule:
    id: str
    table_id: Optional[str]
    rule_type: str
    description: str
    priority: int = 2


@dataclass(frozen=True)
class TableRelationship:
    from_table: str
    from_column: str
    to_table: str
    to_column: str
    kind: str = "foreign_key"  # foreign_key | inferred
    confidence: float = 1.0

    def describe(self) -> str:
        return f"{self.from_table}.{self.from_column} -> {self.to_table}.{self.to_column} ({self.kind})"


@dataclass(frozen=True)
class RankedTable:
    """A candidate table with its merged relevance and per-strategy scores."""

    table: TableInfo
    relevance: float
    strategy_scores: Mapping[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class ContextualSchema:
    """Ranked, domain-filtered schema material for one profile."""

    tables: Tuple[RankedTable, ...] = ()
    columns: Mapping[str, Tuple[ColumnInfo, ...]] = field(default_factory=dict)
    glossary_terms: Tuple[GlossaryTerm, ...] = ()
    business_rules: Tuple[BusinessRule, ...] = ()
    relationships: Tuple[TableRelationship, ...] = ()
    relevance_score: float = 0.0
    partial: bool = False
    timed_out_strategies: Tuple[str, ...] = ()
    failed_strategies: Tuple[str, ...] = ()

    @property
    def table_ids(self) -> Tuple[str, ...]:
        return tuple(t.table.id for t in self.tables)

    @property
    def is_empty(self) -> bool:
        return not self.tables


# --- Context sections ------------------------------------------------------


class SectionKind(Enum):
    BUSINESS_CONTEXT = "business_context"
    TABLE_SUMMARY = "table_summary"
    COLUMN_GROUP = "column_group"
    RELATIONSHIPS = "relationships"
    BUSINESS_RULES = "business_rules"
    GLOSSARY = "glossary"
    EXAMPLE = "example"


@dataclass(frozen=True)
class ContextSection:
    """Atomic unit of prompt material competing for the token budget."""

    id: str
    kind: SectionKind
    title: str
    text: str
    relevance: float
    importance: float
    token_cost: int
    essential: bool = False
    compressed_variant: Optional["ContextSection"] = None
    source_table: Optional[str] = None
    order_index: int = 0
    compressed: bool = False

    @property
    def value(self) -> float:
        return self.relevance * self.importance

    @property
    def efficiency(self) -> float:
        return self.value / max(self.token_cost, 1)

    def with_text(self, text: str, token_cost: int, compressed: bool = True) -> "ContextSection":
        return replace(self, text=text, token_cost=token_cost, compressed=compressed, compressed_variant=None)


@dataclass(frozen=True)
class QueryExample:
    """A worked question/SQL pair."""

    question: str
    sql: str
    intent: IntentType = IntentType.UNKNOWN
    domain: Optional[str] = None
    success_rate: float = 0.8
    description: str = ""


# --- Templates --------------------------------------------------------------


class TemplateSlot(Enum):
    """Composable prompt slots, in rendering order."""

    BUSINESS_CONTEXT = "business_context"
    SCHEMA_CONTEXT = "schema_context"
    RELATIONSHIPS = "relationships"
    BUSINESS_RULES = "business_rules"
    GLOSSARY = "glossary"
    EXAMPLES = "examples"


SLOT_ORDER: Tuple[TemplateSlot, ...] = tuple(TemplateSlot)

SECTION_SLOTS: Dict[SectionKind, TemplateSlot] = {
    SectionKind.BUSINESS_CONTEXT: TemplateSlot.BUSINESS_CONTEXT,
    SectionKind.TABLE_SUMMARY: TemplateSlot.SCHEMA_CONTEXT,
    SectionKind.COLUMN_GROUP: TemplateSlot.SCHEMA_CONTEXT,
    SectionKind.RELATIONSHIPS: TemplateSlot.RELATIONSHIPS,
    SectionKind.BUSINESS_RULES: TemplateSlot.BUSINESS_RULES,
    SectionKind.GLOSSARY: TemplateSlot.GLOSSARY,
    SectionKind.EXAMPLE: TemplateSlot.EXAMPLES,
}


@dataclass(frozen=True)
class PromptTemplate:
    """
    A prompt skeleton with named placeholders.

    `content` uses `{question}`, `{instructions}` and one `{<slot>}`
    placeholder per entry in `slots`.
    """

    key: str
    name: str
    content: str
    slots: Tuple[TemplateSlot, ...]
    intent_tags: Tuple[IntentType, ...] = ()
    domain_tags: Tuple[str, ...] = ()
    success_rate: float = 0.8
    dynamic: bool = False
