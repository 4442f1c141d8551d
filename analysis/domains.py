"""
Business domain detection.

Domains come from a registry of descriptors. A question is scored against
each descriptor by weighted keyword matching blended with semantic
similarity, and the best match wins when it clears the configured floor.
"""

import logging
import re
from typing import Dict, Iterable, List, Optional, Tuple

from app.config import AnalysisConfig, settings
from retrieval.scoring import ScoringStrategy, get_scoring_strategy, tokenize
from shared.models import UNCATEGORIZED, DomainDescriptor, DomainMatch

logger = logging.getLogger(__name__)

PRIORITY_KEYWORD_WEIGHT = 3.0
LONG_KEYWORD_WEIGHT = 2.0
KEYWORD_WEIGHT = 1.0
KEYWORD_SATURATION = 4.0  # Raw keyword weight that maps to a full score
CONCEPT_BONUS = 0.05
MAX_CONCEPT_BONUS = 0.15
DISAMBIGUATION_MARGIN = 0.1

DEFAULT_DOMAINS: Tuple[DomainDescriptor, ...] = (
    DomainDescriptor(
        key="banking",
        name="Banking",
        description="Financial transactions: deposits, withdrawals, payments, balances and revenue",
        key_concepts=("deposits", "withdrawals", "payments", "transactions", "balance", "revenue"),
        keywords=(
            "deposit", "deposits", "depositor", "depositors", "withdrawal", "withdrawals", "payment",
            "payments", "transaction", "transactions", "balance", "revenue", "money", "amount",
            "currency", "bank", "ggr", "ngr", "cashout", "chargeback",
        ),
        priority_keywords=(
            "deposit", "deposits", "depositor", "depositors", "withdrawal", "withdrawals",
            "transaction", "transactions", "payment", "payments",
        ),
        related_domains=("customer", "geographic"),
    ),
    DomainDescriptor(
        key="gaming",
        name="Gaming",
        description="Games, game sessions, bets, wins, rounds and gameplay activity",
        key_concepts=("games", "sessions", "bets", "wins", "rounds", "providers"),
        keywords=(
            "game", "games", "session", "sessions", "bet", "bets", "wager", "wagers", "win", "wins",
            "round", "rounds", "slot", "slots", "casino", "provider", "providers", "gameplay", "spin",
            "spins", "rtp", "jackpot",
        ),
        priority_keywords=("game", "games", "session", "sessions", "gameplay", "slot", "slots", "spin", "spins"),
        related_domains=("customer", "geographic"),
    ),
    DomainDescriptor(
        key="customer",
        name="Customer",
        description="Players and customers: registrations, profiles, segments, activity and retention",
        key_concepts=("players", "customers", "registrations", "segments", "retention"),
        keywords=(
            "player", "players", "customer", "customers", "user", "users", "registration",
            "registrations", "signup", "signups", "vip", "segment", "segments", "churn", "retention",
            "cohort", "lifetime",
        ),
        priority_keywords=("player", "players", "customer", "customers", "registration", "registrations", "churn"),
        related_domains=("banking", "gaming", "geographic"),
    ),
    DomainDescriptor(
        key="geographic",
        name="Geographic",
        description="Countries, regions, markets and player locations",
        key_concepts=("countries", "regions", "markets"),
        keywords=(
            "country", "countries", "region", "regions", "market", "markets", "city", "cities",
            "location", "locations", "geographic", "geography", "jurisdiction",
        ),
        priority_keywords=("geographic", "geography", "jurisdiction"),
        related_domains=("customer", "banking", "gaming"),
    ),
)


class DomainRegistry:
    """Lookup of domain descriptors by key."""

    def __init__(self, domains: Iterable[DomainDescriptor] = DEFAULT_DOMAINS):
        self._domains: Dict[str, DomainDescriptor] = {d.key: d for d in domains}

    def __iter__(self):
        return iter(self._domains.values())

    def __len__(self) -> int:
        return len(self._domains)

    def get(self, key: str) -> DomainDescriptor:
        return self._domains.get(key, UNCATEGORIZED)


class DomainDetector:
    """
    Detect the business domain of a question.

    Score per domain:
        keyword_weight * keyword_score + semantic_weight * similarity + concept bonus

    Usage:
        match = DomainDetector().detect("Top 10 depositors yesterday from UK")
    """

    def __init__(
        self,
        registry: Optional[DomainRegistry] = None,
        scorer: Optional[ScoringStrategy] = None,
        config: Optional[AnalysisConfig] = None,
    ):
        self.registry = registry or DomainRegistry()
        self.scorer = scorer or get_scoring_strategy()
        self.config = config or settings.analysis

    def keyword_score(self, question: str, descriptor: DomainDescriptor) -> Tuple[float, List[str], int]:
        """
        Weighted keyword score in [0, 1].

        Returns:
            (score, matched keywords, number of priority keywords matched)
        """
        text = question.lower()
        raw = 0.0
        matched: List[str] = []
        priority_hits = 0
        for keyword in descriptor.keywords:
            if not re.search(rf"\b{re.escape(keyword.lower())}\b", text):
                continue
            matched.append(keyword)
            if keyword in descriptor.priority_keywords:
                raw += PRIORITY_KEYWORD_WEIGHT
                priority_hits += 1
            elif " " in keyword or len(keyword) >= 8:
                raw += LONG_KEYWORD_WEIGHT
            else:
                raw += KEYWORD_WEIGHT
        return min(1.0, raw / KEYWORD_SATURATION), matched, priority_hits

    def concept_bonus(self, question: str, descriptor: DomainDescriptor) -> float:
        question_tokens = tokenize(question)
        hits = sum(1 for concept in descriptor.key_concepts if tokenize(concept) & question_tokens)
        return min(MAX_CONCEPT_BONUS, CONCEPT_BONUS * hits)

    def detect(self, question: str) -> DomainMatch:
        scored = []
        for descriptor in self.registry:
            keyword, matched, priority_hits = self.keyword_score(question, descriptor)
            semantic = self.scorer.similarity(
                question, f"{descriptor.description} {' '.join(descriptor.key_concepts)}"
            )
            score = (
                self.config.domain_keyword_weight * keyword
                + self.config.domain_semantic_weight * semantic
                + self.concept_bonus(question, descriptor)
            )
            scored.append((min(1.0, score), priority_hits, descriptor, matched))

        if not scored:
            return DomainMatch(descriptor=UNCATEGORIZED, score=0.0)

        # Highest score first; registry order breaks exact ties
        scored.sort(key=lambda s: -s[0])
        best = scored[0]

        if len(scored) > 1:
            runner_up = scored[1]
            if best[0] - runner_up[0] <= DISAMBIGUATION_MARGIN and runner_up[1] > best[1]:
                logger.debug(
                    f"Disambiguated {best[2].key} -> {runner_up[2].key} on strong indicators"
                )
                best = runner_up

        score, _, descriptor, matched = best
        if score < self.config.min_domain_score:
            logger.info(f"No domain above floor (best {descriptor.key}={score:.2f}); uncategorized")
            return DomainMatch(descriptor=UNCATEGORIZED, score=0.0)

        return DomainMatch(
            descriptor=descriptor,
            score=round(score, 4),
            matched_keywords=tuple(matched),
            method="keyword_semantic",
        )
