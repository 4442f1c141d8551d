"""
Entity extraction and linking for business questions.

Extraction is vocabulary and regex driven; linking maps entities onto
tables and columns of the metadata store when one is available.
"""

import logging
import re
from typing import Dict, List, Optional, Sequence, Tuple

from retrieval.metadata_store import MetadataStore
from retrieval.scoring import STOPWORDS, normalize_token, tokenize
from shared.models import BusinessEntity, EntityCategory

from .time_context import TIME_PATTERNS

logger = logging.getLogger(__name__)

# surface pattern -> canonical entity name
METRIC_PATTERNS: Dict[str, str] = {
    r"deposit(?:s|ors?)?": "deposit",
    r"withdrawals?": "withdrawal",
    r"revenue": "revenue",
    r"ggr|gross gaming revenue": "ggr",
    r"ngr|net gaming revenue": "ngr",
    r"bets?|wagers?|stakes?": "bet",
    r"wins?|winnings": "win",
    r"bonus(?:es)?": "bonus",
    r"balances?": "balance",
    r"amounts?": "amount",
    r"payments?": "payment",
    r"transactions?": "transaction",
    r"registrations?|sign[- ]?ups?": "registration",
    r"sessions?": "session",
    r"spins?|rounds?": "round",
}

DIMENSION_PATTERNS: Dict[str, str] = {
    r"countr(?:y|ies)|nations?": "country",
    r"regions?|markets?": "region",
    r"cit(?:y|ies)": "city",
    r"players?|customers?|users?|depositors?": "player",
    r"games?": "game",
    r"providers?": "provider",
    r"currenc(?:y|ies)": "currency",
    r"devices?|platforms?": "platform",
    r"brands?|sites?": "brand",
}

COUNTRY_NAMES = (
    "uk", "united kingdom", "britain", "us", "usa", "united states", "germany", "france", "spain",
    "italy", "canada", "sweden", "norway", "finland", "denmark", "ireland", "malta", "brazil",
    "mexico", "india", "japan", "australia", "netherlands",
)

COMPARISON_PATTERNS = (
    r"versus", r"vs\.?", r"compared (?:to|with)", r"against", r"more than", r"less than",
    r"greater than", r"higher than", r"lower than", r"between",
)

ENTITY_CONFIDENCE: Dict[EntityCategory, float] = {
    EntityCategory.METRIC: 0.9,
    EntityCategory.DIMENSION: 0.85,
    EntityCategory.COMPARISON: 0.8,
    EntityCategory.TIME: 0.95,
    EntityCategory.TABLE: 0.9,
    EntityCategory.COLUMN: 0.85,
}
COUNTRY_CONFIDENCE = 0.8


def _compile(patterns) -> List[Tuple[re.Pattern, str]]:
    return [(re.compile(rf"\b(?:{p})\b", re.IGNORECASE), name) for p, name in patterns]


class EntityExtractor:
    """
    Extract business entities with their source spans.

    Usage:
        extractor = EntityExtractor()
        entities = extractor.extract("Total deposits by country last week")
    """

    def __init__(
        self,
        metric_patterns: Optional[Dict[str, str]] = None,
        dimension_patterns: Optional[Dict[str, str]] = None,
        country_names: Sequence[str] = COUNTRY_NAMES,
    ):
        self._metrics = _compile((metric_patterns or METRIC_PATTERNS).items())
        self._dimensions = _compile((dimension_patterns or DIMENSION_PATTERNS).items())
        self._countries = _compile((re.escape(c), "country") for c in country_names)
        self._comparisons = _compile((p, "comparison") for p in COMPARISON_PATTERNS)
        self._times = _compile((p, "time") for p, _ in TIME_PATTERNS)

    def extract(self, question: str) -> Tuple[BusinessEntity, ...]:
        """
        Extract entities from a question.

        A span already claimed by an earlier category is not re-used, so
        "depositors" is a metric and not also a player dimension.

        Returns:
            Entities ordered by position in the question
        """
        entities: List[BusinessEntity] = []
        claimed: List[Tuple[int, int]] = []

        def overlaps(start: int, end: int) -> bool:
            return any(start < c_end and c_start < end for c_start, c_end in claimed)

        passes = (
            (self._times, EntityCategory.TIME, None),
            (self._metrics, EntityCategory.METRIC, None),
            (self._countries, EntityCategory.DIMENSION, COUNTRY_CONFIDENCE),
            (self._dimensions, EntityCategory.DIMENSION, None),
            (self._comparisons, EntityCategory.COMPARISON, None),
        )
        for patterns, category, confidence in passes:
            for regex, name in patterns:
                for match in regex.finditer(question):
                    if overlaps(match.start(), match.end()):
                        continue
                    text = match.group()
                    entities.append(
                        BusinessEntity(
                            name=text.lower() if category == EntityCategory.TIME else name,
                            category=category,
                            source_text=text,
                            start=match.start(),
                            end=match.end(),
                            confidence=confidence or ENTITY_CONFIDENCE[category],
                        )
                    )
                    claimed.append((match.start(), match.end()))

        entities.sort(key=lambda e: (e.start, e.end))
        return tuple(entities)


class EntityLinker:
    """
    Link extracted entities to tables and columns of the metadata store.

    Also adds TABLE entities for question words naming a table directly.
    """

    def __init__(self, store: MetadataStore):
        self.store = store

    async def link(self, question: str, entities: Sequence[BusinessEntity]) -> Tuple[BusinessEntity, ...]:
        tables = [t for t in await self.store.list_tables() if t.is_selectable]
        columns = await self.store.get_columns([t.id for t in tables])

        by_name = {normalize_token(t.table_name.lower()): t for t in tables}
        linked: List[BusinessEntity] = []

        for entity in entities:
            if entity.category not in (EntityCategory.METRIC, EntityCategory.DIMENSION):
                linked.append(entity)
                continue
            # Canonical name first, so "depositors" links where "deposit" does
            mapped_table, mapped_column = self._find_column(tokenize(entity.name), tables, columns)
            if mapped_table is None:
                mapped_table, mapped_column = self._find_column(tokenize(entity.source_text), tables, columns)
            linked.append(
                BusinessEntity(
                    name=entity.name,
                    category=entity.category,
                    source_text=entity.source_text,
                    start=entity.start,
                    end=entity.end,
                    confidence=entity.confidence,
                    mapped_table=mapped_table,
                    mapped_column=mapped_column,
                )
            )

        claimed = [(e.start, e.end) for e in linked]
        for match in re.finditer(r"[A-Za-z_]+", question):
            table = by_name.get(normalize_token(match.group().lower()))
            if table is None or any(match.start() < c_end and c_start < match.end() for c_start, c_end in claimed):
                continue
            linked.append(
                BusinessEntity(
                    name=table.table_name,
                    category=EntityCategory.TABLE,
                    source_text=match.group(),
                    start=match.start(),
                    end=match.end(),
                    confidence=ENTITY_CONFIDENCE[EntityCategory.TABLE],
                    mapped_table=table.id,
                )
            )

        linked.sort(key=lambda e: (e.start, e.end))
        return tuple(linked)

    @staticmethod
    def _find_column(wanted, tables, columns) -> Tuple[Optional[str], Optional[str]]:
        """First (table id, column name) whose name or related terms share a token with `wanted`."""
        if not wanted:
            return None, None
        for table in tables:
            for column in columns.get(table.id, ()):
                if wanted & tokenize(" ".join((column.name,) + column.related_terms)):
                    return table.id, column.name
        return None, None


def content_words(question: str) -> Tuple[str, ...]:
    """Lowercased non-stopword words of a question, in order, without numbers."""
    words = re.findall(r"[a-z][a-z_]+", question.lower())
    return tuple(dict.fromkeys(w for w in words if w not in STOPWORDS))


async def match_business_terms(question: str, store: Optional[MetadataStore] = None) -> Tuple[str, ...]:
    """
    Business terms of a question.

    With a store, content words are matched against its glossary and the
    canonical glossary terms are returned; otherwise the content words are.
    """
    words = content_words(question)
    if store is None:
        return words
    entries = await store.find_glossary_terms(words)
    return tuple(sorted({e.term for e in entries}))
