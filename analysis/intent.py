"""
Intent classification.

An external text classifier is tried first when one is configured. Keyword
rules are the fallback, and the primary classifier when no collaborator
exists.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from app.config import AnalysisConfig, settings
from deployment.circuit_breaker import CircuitBreaker, CircuitOpenError, get_classifier_breaker
from shared.deadline import Deadline
from shared.errors import CollaboratorExhausted
from shared.models import IntentType, QueryIntent

logger = logging.getLogger(__name__)

INTENT_LABELS: Tuple[str, ...] = tuple(t.value for t in IntentType if t != IntentType.UNKNOWN)

# Ordered: earlier intents win ties
INTENT_KEYWORDS: Dict[IntentType, Tuple[str, ...]] = {
    IntentType.COMPARISON: (
        "compare", "comparison", "versus", "vs", "difference", "against", "compared to", "relative to",
    ),
    IntentType.TREND: (
        "trend", "trends", "over time", "growth", "grow", "increase", "decrease", "decline",
        "change", "evolution", "daily", "weekly", "monthly", "month over month", "year over year",
    ),
    IntentType.AGGREGATION: (
        "total", "sum", "count", "how many", "average", "avg", "mean", "top", "bottom", "highest",
        "lowest", "most", "least", "max", "maximum", "min", "minimum", "rank", "number of",
    ),
    IntentType.ANALYTICAL: (
        "why", "analyze", "analyse", "analysis", "correlation", "impact", "insight", "driver",
        "cause", "segment", "cohort", "retention", "churn",
    ),
    IntentType.DETAIL: (
        "details", "detail", "specific", "who is", "information about", "profile of", "record for",
    ),
    IntentType.OPERATIONAL: (
        "status", "active", "current", "pending", "currently", "open", "failed", "live", "right now",
    ),
    IntentType.EXPLORATORY: (
        "explore", "what are", "overview", "breakdown", "distribution", "list", "show me", "which",
    ),
}

SUB_INTENT_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "ranking": ("top", "bottom", "highest", "lowest", "rank", "best", "worst", "most", "least", "largest"),
    "financial": (
        "deposit", "deposits", "depositor", "depositors", "withdrawal", "withdrawals", "revenue",
        "payment", "payments", "amount", "ggr", "ngr", "bet", "bets", "win", "wins", "bonus",
        "balance", "money", "transaction", "transactions", "profit", "spend",
    ),
    "geographic": ("country", "countries", "region", "regions", "uk", "us", "usa", "city", "location", "market"),
    "temporal": (
        "today", "yesterday", "week", "month", "quarter", "year", "daily", "weekly", "monthly",
        "ytd", "mtd", "last", "since",
    ),
    "detail": ("details", "detail", "specific", "individual"),
}

INTENT_DESCRIPTIONS: Dict[IntentType, str] = {
    IntentType.ANALYTICAL: "Explain causes, correlations or segments behind the data",
    IntentType.OPERATIONAL: "Report the current operational state",
    IntentType.EXPLORATORY: "Explore or list what the data contains",
    IntentType.COMPARISON: "Compare values across groups or periods",
    IntentType.AGGREGATION: "Compute totals, counts, averages or rankings",
    IntentType.TREND: "Show how values change over time",
    IntentType.DETAIL: "Retrieve detailed records",
    IntentType.UNKNOWN: "Intent could not be determined",
}


def _contains(text: str, phrase: str) -> bool:
    return re.search(rf"\b{re.escape(phrase)}\b", text) is not None


def detect_sub_intents(question: str) -> Tuple[str, ...]:
    """Sub-intents whose vocabulary appears in the question, in fixed order."""
    text = question.lower()
    return tuple(
        name for name, words in SUB_INTENT_KEYWORDS.items()
        if any(_contains(text, w) for w in words)
    )


@dataclass(frozen=True)
class ClassificationHypothesis:
    """Structured output of an external text classifier."""

    label: str
    confidence: float
    sub_labels: Tuple[str, ...] = ()


class TextClassifier(Protocol):
    """External text-classification or LLM collaborator."""

    async def classify(
        self, text: str, labels: Sequence[str], timeout: Optional[float] = None
    ) -> ClassificationHypothesis: ...


class KeywordIntentClassifier:
    """
    Rule-based intent classification.

    Usage:
        intent = KeywordIntentClassifier().classify("Top 10 depositors yesterday")
    """

    def __init__(self, keywords: Optional[Dict[IntentType, Sequence[str]]] = None):
        self.keywords = keywords or INTENT_KEYWORDS

    def classify(self, question: str) -> QueryIntent:
        text = question.lower()
        best_type = IntentType.UNKNOWN
        best_matches: List[str] = []

        for intent_type, words in self.keywords.items():
            matches = [w for w in words if _contains(text, w)]
            if len(matches) > len(best_matches):
                best_type, best_matches = intent_type, matches

        sub_intents = detect_sub_intents(question)
        if best_type == IntentType.UNKNOWN:
            return QueryIntent(
                type=IntentType.UNKNOWN,
                confidence=0.0,
                description=INTENT_DESCRIPTIONS[IntentType.UNKNOWN],
                sub_intents=sub_intents,
            )

        confidence = min(0.95, 0.5 + 0.15 * len(best_matches))
        logger.debug(f"Keyword intent {best_type.value} from {best_matches}")
        return QueryIntent(
            type=best_type,
            confidence=confidence,
            description=INTENT_DESCRIPTIONS[best_type],
            sub_intents=sub_intents,
        )


def intent_type_from_label(label: str) -> IntentType:
    """Resolve a classifier label to the closed intent set."""
    normalized = label.strip().lower()
    for intent_type in IntentType:
        if intent_type.value == normalized or intent_type.name.lower() == normalized:
            return intent_type
    return IntentType.UNKNOWN


class IntentClassifier:
    """
    Collaborator-first intent classification with keyword fallback.

    Failures of the collaborator (timeout, open circuit, exhausted retries or
    any other error it raises) never propagate: the keyword result is used with confidence capped and
    the intent marked degraded.
    """

    def __init__(
        self,
        collaborator: Optional[TextClassifier] = None,
        fallback: Optional[KeywordIntentClassifier] = None,
        breaker: Optional[CircuitBreaker] = None,
        config: Optional[AnalysisConfig] = None,
    ):
        self.collaborator = collaborator
        self.fallback = fallback or KeywordIntentClassifier()
        self.breaker = breaker or get_classifier_breaker()
        self.config = config or settings.analysis

    async def classify(self, question: str, deadline: Optional[Deadline] = None) -> QueryIntent:
        if self.collaborator is None:
            return self.fallback.classify(question)

        deadline = deadline or Deadline.unbounded()

        async def _call() -> ClassificationHypothesis:
            timeout = deadline.timeout(self.config.classifier_timeout)
            return await deadline.run(
                self.collaborator.classify(question, INTENT_LABELS, timeout=timeout),
                cap=self.config.classifier_timeout,
            )

        try:
            hypothesis = await self.breaker.call_async(_call)
        except (asyncio.TimeoutError, CircuitOpenError, CollaboratorExhausted) as e:
            logger.warning(f"Text classifier unavailable, using keyword fallback: {type(e).__name__}: {e}")
            return self.degraded(question)
        except Exception as e:
            logger.warning(f"Text classifier failed, using keyword fallback: {type(e).__name__}: {e}")
            return self.degraded(question)

        intent_type = intent_type_from_label(hypothesis.label)
        sub_intents = tuple(dict.fromkeys(hypothesis.sub_labels + detect_sub_intents(question)))
        return QueryIntent(
            type=intent_type,
            confidence=min(1.0, max(0.0, hypothesis.confidence)) if intent_type != IntentType.UNKNOWN else 0.0,
            description=INTENT_DESCRIPTIONS[intent_type],
            sub_intents=sub_intents,
        )

    def degraded(self, question: str) -> QueryIntent:
        """Keyword result with confidence capped, marked degraded."""
        result = self.fallback.classify(question)
        return QueryIntent(
            type=result.type,
            confidence=min(result.confidence, self.config.fallback_confidence_cap),
            description=result.description,
            sub_intents=result.sub_intents,
            degraded=True,
        )
