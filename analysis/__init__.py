"""
Context Analysis Module.

Turns a natural-language business question into a structured profile:
intent, domain, entities, business terms and time range.

Usage:
    from analysis import ContextAnalyzer

    analyzer = ContextAnalyzer(store=store)
    profile = await analyzer.analyze("Total deposits by country last week")
"""

from .analyzer import ContextAnalyzer
from .domains import DEFAULT_DOMAINS, DomainDetector, DomainRegistry
from .entities import EntityExtractor, EntityLinker
from .intent import (
    ClassificationHypothesis,
    IntentClassifier,
    KeywordIntentClassifier,
    TextClassifier,
)
from .time_context import TimeRangeExtractor

__all__ = [
    "ContextAnalyzer",
    "DEFAULT_DOMAINS",
    "DomainDetector",
    "DomainRegistry",
    "EntityExtractor",
    "EntityLinker",
    "ClassificationHypothesis",
    "IntentClassifier",
    "KeywordIntentClassifier",
    "TextClassifier",
    "TimeRangeExtractor",
]
