"""
Candidate section building.

Turns a profile, a contextual schema and ranked examples into the
ContextSection candidates the assembly engine chooses from. Every section
carries its exact token cost and, where one is cheaper, a compressed
variant.
"""

import logging
from typing import List, Optional, Sequence

from shared.models import (
    BusinessContextProfile,
    ContextSection,
    ContextualSchema,
    RankedTable,
    SectionKind,
)
from shared.schemas import PromptOptions, Verbosity

from .context_budgeting import count_tokens, truncate_to_budget
from .examples import RankedExample

logger = logging.getLogger(__name__)

RULE_PRIORITY_IMPORTANCE = {1: 0.9, 2: 0.7, 3: 0.5}
COMPRESSED_DESCRIPTION_TOKENS = 24
COMPRESSED_COLUMN_COUNT = 3


def first_sentence(text: str) -> str:
    text = " ".join(text.split())
    idx = text.find(". ")
    return text if idx < 0 else text[: idx + 1]


class SectionBuilder:
    """
    Build candidate context sections.

    Usage:
        builder = SectionBuilder()
        sections = builder.build(profile, schema, examples, options)
    """

    def __init__(self, encoding_name: str = "cl100k_base"):
        self.encoding_name = encoding_name

    def build(
        self,
        profile: BusinessContextProfile,
        schema: ContextualSchema,
        examples: Sequence[RankedExample] = (),
        options: Optional[PromptOptions] = None,
    ) -> List[ContextSection]:
        options = options or PromptOptions()
        sections: List[ContextSection] = []

        def add(section: Optional[ContextSection]) -> None:
            if section is not None:
                sections.append(section)

        add(self.business_context_section(profile, order_index=len(sections)))
        for rank, ranked in enumerate(schema.tables):
            add(self.table_section(ranked, essential=rank == 0, order_index=len(sections)))
            add(self.column_section(ranked, schema, options.verbosity, order_index=len(sections)))
        add(self.relationship_section(schema, order_index=len(sections)))
        if options.include_rules:
            add(self.rules_section(schema, order_index=len(sections)))
        add(self.glossary_section(schema, order_index=len(sections)))
        if options.include_examples:
            for i, ranked_example in enumerate(examples):
                add(self.example_section(ranked_example, i, order_index=len(sections)))

        logger.info(
            f"Built {len(sections)} candidate sections "
            f"({sum(s.token_cost for s in sections)} tokens uncompressed)"
        )
        return sections

    # --- helpers ---------------------------------------------------------------

    def _section(
        self,
        id: str,
        kind: SectionKind,
        title: str,
        text: str,
        relevance: float,
        importance: float,
        order_index: int,
        essential: bool = False,
        compressed_text: Optional[str] = None,
        source_table: Optional[str] = None,
    ) -> ContextSection:
        relevance = min(1.0, max(0.0, relevance))
        importance = min(1.0, max(0.0, importance))
        cost = count_tokens(text, self.encoding_name)
        variant = None
        if compressed_text:
            compressed_cost = count_tokens(compressed_text, self.encoding_name)
            if compressed_cost < cost:
                variant = ContextSection(
                    id=id,
                    kind=kind,
                    title=title,
                    text=compressed_text,
                    relevance=relevance,
                    importance=importance,
                    token_cost=compressed_cost,
                    essential=essential,
                    source_table=source_table,
                    order_index=order_index,
                    compressed=True,
                )
        return ContextSection(
            id=id,
            kind=kind,
            title=title,
            text=text,
            relevance=relevance,
            importance=importance,
            token_cost=cost,
            essential=essential,
            compressed_variant=variant,
            source_table=source_table,
            order_index=order_index,
        )

    # --- section kinds -----------------------------------------------------------

    def business_context_section(self, profile: BusinessContextProfile, order_index: int) -> ContextSection:
        intent = profile.intent
        domain = profile.domain
        intent_line = f"Question intent: {intent.type.value} (confidence {intent.confidence:.2f})"
        if intent.sub_intents:
            intent_line += f"; sub-intents: {', '.join(intent.sub_intents)}"
        domain_line = f"Business domain: {domain.name}"
        time_line = f"Time range: {profile.time_range.describe()}" if profile.time_range else None

        lines = [intent_line, f"{domain_line} - {domain.descriptor.description}"]
        if domain.key_concepts:
            lines.append(f"Key concepts: {', '.join(domain.key_concepts)}")
        if profile.metrics:
            lines.append(f"Metrics: {', '.join(dict.fromkeys(profile.metrics))}")
        if profile.dimensions:
            lines.append(f"Dimensions: {', '.join(dict.fromkeys(profile.dimensions))}")
        if profile.comparison_terms:
            lines.append(f"Comparisons: {', '.join(dict.fromkeys(profile.comparison_terms))}")
        if time_line:
            lines.append(time_line)
        if profile.business_terms:
            lines.append(f"Business terms: {', '.join(profile.business_terms)}")

        compressed = [intent_line, domain_line]
        if time_line:
            compressed.append(time_line)

        return self._section(
            id="business_context",
            kind=SectionKind.BUSINESS_CONTEXT,
            title="Business context",
            text="\n".join(lines),
            relevance=1.0,
            importance=1.0,
            order_index=order_index,
            essential=True,
            compressed_text="\n".join(compressed),
        )

    def table_section(self, ranked: RankedTable, essential: bool, order_index: int) -> ContextSection:
        table = ranked.table
        header = f"Table {table.qualified_name}"
        purpose = table.business_purpose or table.description
        text = f"{header}: {purpose}"
        if table.description and table.description != purpose:
            text += f"\n{table.description}"
        if table.keywords:
            text += f"\nKeywords: {', '.join(table.keywords)}"

        short = truncate_to_budget(first_sentence(purpose), COMPRESSED_DESCRIPTION_TOKENS, "smart", self.encoding_name)
        return self._section(
            id=f"table:{table.id}",
            kind=SectionKind.TABLE_SUMMARY,
            title=header,
            text=text,
            relevance=ranked.relevance,
            importance=table.importance,
            order_index=order_index,
            essential=essential,
            compressed_text=f"{header}: {short}" if short else header,
            source_table=table.id,
        )

    def column_section(
        self,
        ranked: RankedTable,
        schema: ContextualSchema,
        verbosity: Verbosity,
        order_index: int,
    ) -> Optional[ContextSection]:
        columns = schema.columns.get(ranked.table.id, ())
        if not columns:
            return None

        if verbosity == Verbosity.CONCISE:
            lines = [f"- {c.name} ({c.data_type})" for c in columns]
        elif verbosity == Verbosity.DETAILED:
            lines = [
                f"- {c.describe()}" + (f" [terms: {', '.join(c.related_terms)}]" if c.related_terms else "")
                for c in columns
            ]
        else:
            lines = [f"- {c.describe()}" for c in columns]

        header = f"Columns of {ranked.table.qualified_name}:"
        compressed = f"{header} {', '.join(c.name for c in columns[:COMPRESSED_COLUMN_COUNT])}"
        importance = sum(c.importance for c in columns) / len(columns)
        return self._section(
            id=f"columns:{ranked.table.id}",
            kind=SectionKind.COLUMN_GROUP,
            title=header.rstrip(":"),
            text="\n".join([header] + lines),
            relevance=ranked.relevance,
            importance=importance,
            order_index=order_index,
            compressed_text=compressed,
            source_table=ranked.table.id,
        )

    def relationship_section(self, schema: ContextualSchema, order_index: int) -> Optional[ContextSection]:
        if not schema.relationships:
            return None
        lines = [f"- {r.describe()}" for r in schema.relationships]
        compressed = [
            f"- {r.from_table}.{r.from_column} = {r.to_table}.{r.to_column}" for r in schema.relationships
        ]
        return self._section(
            id="relationships",
            kind=SectionKind.RELATIONSHIPS,
            title="Table relationships",
            text="\n".join(["Joins:"] + lines),
            relevance=max(schema.relevance_score, 0.5),
            importance=0.8,
            order_index=order_index,
            compressed_text="\n".join(["Joins:"] + compressed),
        )

    def rules_section(self, schema: ContextualSchema, order_index: int) -> Optional[ContextSection]:
        if not schema.business_rules:
            return None
        rules = schema.business_rules
        lines = [f"- [{r.rule_type}] {r.description}" for r in rules]
        top_priority = min(r.priority for r in rules)
        compressed = [f"- {r.description}" for r in rules if r.priority == top_priority]
        return self._section(
            id="rules",
            kind=SectionKind.BUSINESS_RULES,
            title="Business rules",
            text="\n".join(["Business rules:"] + lines),
            relevance=max(schema.relevance_score, 0.4),
            importance=RULE_PRIORITY_IMPORTANCE.get(top_priority, 0.5),
            order_index=order_index,
            compressed_text="\n".join(["Business rules:"] + compressed),
        )

    def glossary_section(self, schema: ContextualSchema, order_index: int) -> Optional[ContextSection]:
        if not schema.glossary_terms:
            return None
        lines = [f"- {g.term}: {g.definition}" for g in schema.glossary_terms]
        return self._section(
            id="glossary",
            kind=SectionKind.GLOSSARY,
            title="Glossary",
            text="\n".join(["Glossary:"] + lines),
            relevance=max(schema.relevance_score, 0.4),
            importance=0.6,
            order_index=order_index,
            compressed_text="Glossary terms: " + ", ".join(g.term for g in schema.glossary_terms),
        )

    def example_section(self, ranked: RankedExample, position: int, order_index: int) -> ContextSection:
        example = ranked.example
        text = f"Example question: {example.question}\nSQL:\n{example.sql}"
        first_line = example.sql.splitlines()[0] if example.sql else ""
        return self._section(
            id=f"example:{position}",
            kind=SectionKind.EXAMPLE,
            title=f"Example {position + 1}",
            text=text,
            relevance=ranked.score,
            importance=example.success_rate,
            order_index=order_index,
            compressed_text=f"Example question: {example.question}\nSQL: {first_line} ...",
        )
