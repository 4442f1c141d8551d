"""
Prompt template repository.

Template CRUD lives outside this core; the selector only needs read access
through `TemplateRepository`. `InMemoryTemplateRepository` serves the
built-in templates.
"""

import logging
from typing import Iterable, Optional, Protocol, Tuple

from shared.models import IntentType, PromptTemplate, TemplateSlot

logger = logging.getLogger(__name__)

ALL_SLOTS: Tuple[TemplateSlot, ...] = tuple(TemplateSlot)

_BODY = """{business_context}

{schema_context}

{relationships}

{business_rules}

{glossary}

{examples}

## Question
{question}

## Instructions
{instructions}
"""


def _content(preamble: str) -> str:
    return f"{preamble}\n\n{_BODY}"


BUILTIN_TEMPLATES: Tuple[PromptTemplate, ...] = (
    PromptTemplate(
        key="financial_aggregation",
        name="Financial aggregation",
        content=_content(
            "You are an expert SQL analyst for a gaming and payments platform. "
            "Amounts are stored in the transaction currency unless a converted column is listed."
        ),
        slots=ALL_SLOTS,
        intent_tags=(IntentType.AGGREGATION,),
        domain_tags=("banking",),
        success_rate=0.92,
    ),
    PromptTemplate(
        key="aggregation",
        name="Aggregation and ranking",
        content=_content("You are an expert SQL analyst. Produce aggregated, ranked results."),
        slots=ALL_SLOTS,
        intent_tags=(IntentType.AGGREGATION,),
        success_rate=0.86,
    ),
    PromptTemplate(
        key="comparison",
        name="Comparison analysis",
        content=_content("You are an expert SQL analyst. Compare the requested groups or periods side by side."),
        slots=ALL_SLOTS,
        intent_tags=(IntentType.COMPARISON,),
        success_rate=0.85,
    ),
    PromptTemplate(
        key="trend",
        name="Trend analysis",
        content=_content("You are an expert SQL analyst. Produce time series ordered by period."),
        slots=ALL_SLOTS,
        intent_tags=(IntentType.TREND,),
        success_rate=0.87,
    ),
    PromptTemplate(
        key="gaming_activity",
        name="Gaming activity",
        content=_content(
            "You are an expert SQL analyst for game and session data. "
            "Sessions are the unit of play; bets and wins belong to rounds within sessions."
        ),
        slots=ALL_SLOTS,
        intent_tags=(IntentType.AGGREGATION, IntentType.TREND, IntentType.EXPLORATORY),
        domain_tags=("gaming",),
        success_rate=0.84,
    ),
    PromptTemplate(
        key="record_lookup",
        name="Record lookup",
        content=_content("You are an expert SQL analyst. Return precise records with their key attributes."),
        slots=ALL_SLOTS,
        intent_tags=(IntentType.DETAIL, IntentType.OPERATIONAL),
        success_rate=0.9,
    ),
    PromptTemplate(
        key="general",
        name="General purpose",
        content=_content("You are an expert SQL analyst for a business intelligence platform."),
        slots=ALL_SLOTS,
        success_rate=0.75,
    ),
)


class TemplateRepository(Protocol):
    """Read access to static prompt templates."""

    async def list_templates(self, intent: Optional[IntentType] = None) -> Tuple[PromptTemplate, ...]: ...


class InMemoryTemplateRepository:
    """
    Static templates held in memory.

    `list_templates(intent)` returns templates tagged for the intent plus
    untagged (generic) ones, in registration order.
    """

    def __init__(self, templates: Iterable[PromptTemplate] = BUILTIN_TEMPLATES):
        self._templates: Tuple[PromptTemplate, ...] = tuple(templates)

    async def list_templates(self, intent: Optional[IntentType] = None) -> Tuple[PromptTemplate, ...]:
        if intent is None:
            return self._templates
        return tuple(t for t in self._templates if not t.intent_tags or intent in t.intent_tags)
