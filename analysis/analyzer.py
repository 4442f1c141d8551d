"""
Context analyzer: question -> BusinessContextProfile.

Intent, domain, entities and time range are analyzed concurrently and
joined at a barrier; only the complete profile is ever returned. A failing
sub-analysis degrades to a neutral default instead of aborting the join.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from app.config import AnalysisConfig, settings
from retrieval.metadata_store import MetadataStore
from retrieval.scoring import ScoringStrategy
from shared.deadline import Deadline
from shared.models import (
    UNCATEGORIZED,
    BusinessContextProfile,
    BusinessEntity,
    DomainMatch,
    IntentType,
    QueryIntent,
    TimeRange,
)

from .domains import DomainDetector, DomainRegistry
from .entities import EntityExtractor, EntityLinker, content_words, match_business_terms
from .intent import INTENT_DESCRIPTIONS, IntentClassifier, TextClassifier
from .time_context import TimeRangeExtractor

logger = logging.getLogger(__name__)

NEUTRAL_ENTITY_CONFIDENCE = 0.5


class ContextAnalyzer:
    """
    Build a business context profile for a question.

    Usage:
        analyzer = ContextAnalyzer(store=store)
        profile = await analyzer.analyze("Top 10 depositors yesterday from UK")
    """

    def __init__(
        self,
        store: Optional[MetadataStore] = None,
        classifier: Optional[TextClassifier] = None,
        scorer: Optional[ScoringStrategy] = None,
        registry: Optional[DomainRegistry] = None,
        clock: Callable[[], datetime] = datetime.now,
        config: Optional[AnalysisConfig] = None,
        intent_classifier: Optional[IntentClassifier] = None,
    ):
        """
        Args:
            store: Metadata store used for entity linking and glossary terms
            classifier: External text classifier tried before keyword rules
            scorer: Similarity strategy for domain detection
            registry: Domain descriptors
            clock: Reference time for relative time expressions
            config: Analysis configuration
        """
        self.store = store
        self.config = config or settings.analysis
        self.intent_classifier = intent_classifier or IntentClassifier(collaborator=classifier, config=self.config)
        self.domain_detector = DomainDetector(registry=registry, scorer=scorer, config=self.config)
        self.entity_extractor = EntityExtractor()
        self.entity_linker = EntityLinker(store) if store is not None else None
        self.time_extractor = TimeRangeExtractor(clock=clock)

    async def analyze(
        self,
        question: str,
        user_id: Optional[str] = None,
        deadline: Optional[Deadline] = None,
    ) -> BusinessContextProfile:
        deadline = deadline or Deadline.unbounded()
        logger.info(f"Analyzing question: {question[:80]}")

        intent_result, domain_result, entity_result, time_result = await asyncio.gather(
            self.intent_classifier.classify(question, deadline),
            self._detect_domain(question),
            self._extract_entities(question, deadline),
            self._extract_time(question),
            return_exceptions=True,
        )

        degradations: List[str] = []

        if isinstance(intent_result, BaseException):
            logger.warning(f"Intent classification failed: {intent_result}")
            intent = QueryIntent(
                type=IntentType.UNKNOWN, confidence=0.0,
                description=INTENT_DESCRIPTIONS[IntentType.UNKNOWN], degraded=True,
            )
        else:
            intent = intent_result
        if intent.degraded:
            degradations.append(f"intent classified by keyword fallback ({intent.type.value})")

        if isinstance(domain_result, BaseException):
            logger.warning(f"Domain detection failed: {domain_result}")
            domain = DomainMatch(descriptor=UNCATEGORIZED, score=0.0, method="fallback", degraded=True)
            degradations.append("domain detection failed; uncategorized")
        else:
            domain = domain_result

        if isinstance(entity_result, BaseException):
            logger.warning(f"Entity extraction failed: {entity_result}")
            entities, terms = (), content_words(question)
            degradations.append("entity extraction failed")
        else:
            entities, terms, entity_degradations = entity_result
            degradations.extend(entity_degradations)

        if isinstance(time_result, BaseException):
            logger.warning(f"Time-range extraction failed: {time_result}")
            time_range = None
            degradations.append("time-range extraction failed")
        else:
            time_range = time_result

        confidence = self.overall_confidence(intent, domain, entities, degraded=bool(degradations))
        profile = BusinessContextProfile(
            question=question,
            user_id=user_id,
            intent=intent,
            domain=domain,
            entities=entities,
            business_terms=terms,
            time_range=time_range,
            confidence=confidence,
            degradations=tuple(degradations),
        )

        logger.info(
            f"Profile: intent={intent.type.value} ({intent.confidence:.2f}), "
            f"domain={domain.name} ({domain.score:.2f}), entities={len(entities)}, "
            f"confidence={confidence:.2f}"
        )
        if degradations:
            logger.warning(f"Analysis degraded: {'; '.join(degradations)}")
        return profile

    def overall_confidence(
        self,
        intent: QueryIntent,
        domain: DomainMatch,
        entities: Tuple[BusinessEntity, ...],
        degraded: bool = False,
    ) -> float:
        """0.3 intent + 0.3 domain + 0.4 mean entity confidence, reduced when degraded."""
        if entities:
            entity_confidence = sum(e.confidence for e in entities) / len(entities)
        else:
            entity_confidence = NEUTRAL_ENTITY_CONFIDENCE
        score = 0.3 * intent.confidence + 0.3 * domain.score + 0.4 * entity_confidence
        if degraded:
            score *= self.config.degraded_confidence_factor
        return round(min(1.0, max(0.0, score)), 4)

    # --- sub-analyses --------------------------------------------------------

    async def _detect_domain(self, question: str) -> DomainMatch:
        return self.domain_detector.detect(question)

    async def _extract_time(self, question: str) -> Optional[TimeRange]:
        return self.time_extractor.extract(question)

    async def _extract_entities(
        self, question: str, deadline: Deadline
    ) -> Tuple[Tuple[BusinessEntity, ...], Tuple[str, ...], List[str]]:
        """Entities, business terms and any degradations met while linking."""
        entities = self.entity_extractor.extract(question)
        degradations: List[str] = []

        if self.store is None:
            return entities, await match_business_terms(question), degradations

        try:
            entities = await deadline.run(self.entity_linker.link(question, entities))
        except asyncio.TimeoutError:
            logger.warning("Entity linking timed out; keeping unlinked entities")
            degradations.append("entity linking timed out")
        except Exception as e:
            logger.warning(f"Entity linking failed, keeping unlinked entities: {type(e).__name__}: {e}")
            degradations.append("entity linking failed")

        try:
            terms = await deadline.run(match_business_terms(question, self.store))
        except asyncio.TimeoutError:
            logger.warning("Glossary lookup timed out; using content words")
            terms = content_words(question)
            degradations.append("glossary lookup timed out")
        except Exception as e:
            logger.warning(f"Glossary lookup failed, using content words: {type(e).__name__}: {e}")
            terms = content_words(question)
            degradations.append("glossary lookup failed")

        return entities, terms, degradations
