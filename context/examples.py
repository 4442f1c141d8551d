"""
Worked-example ranking.

Examples are scored with the same similarity strategy as schema material
and become EXAMPLE sections that compete for the token budget.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from retrieval.scoring import ScoringStrategy
from shared.models import BusinessContextProfile, IntentType, QueryExample

logger = logging.getLogger(__name__)

BUILTIN_EXAMPLES = (
    QueryExample(
        question="Top 5 depositors last month",
        sql=(
            "SELECT TOP 5 p.player_id, SUM(t.amount) AS total_deposits\n"
            "FROM transactions t JOIN players p ON t.player_id = p.player_id\n"
            "WHERE t.transaction_type = 'Deposit' AND t.created_at >= @month_start AND t.created_at < @month_end\n"
            "GROUP BY p.player_id ORDER BY total_deposits DESC"
        ),
        intent=IntentType.AGGREGATION,
        domain="banking",
        success_rate=0.92,
        description="Ranking players by deposit volume",
    ),
    QueryExample(
        question="Total deposits by country this week",
        sql=(
            "SELECT c.country_name, SUM(t.amount) AS total_deposits\n"
            "FROM transactions t JOIN players p ON t.player_id = p.player_id\n"
            "JOIN countries c ON p.country_id = c.country_id\n"
            "WHERE t.transaction_type = 'Deposit' AND t.created_at >= @week_start\n"
            "GROUP BY c.country_name ORDER BY total_deposits DESC"
        ),
        intent=IntentType.AGGREGATION,
        domain="banking",
        success_rate=0.9,
        description="Deposit totals per country",
    ),
    QueryExample(
        question="Compare deposits and withdrawals this month versus last month",
        sql=(
            "SELECT t.transaction_type,\n"
            "  SUM(CASE WHEN t.created_at >= @month_start THEN t.amount ELSE 0 END) AS this_month,\n"
            "  SUM(CASE WHEN t.created_at < @month_start THEN t.amount ELSE 0 END) AS last_month\n"
            "FROM transactions t WHERE t.created_at >= @last_month_start\n"
            "GROUP BY t.transaction_type"
        ),
        intent=IntentType.COMPARISON,
        domain="banking",
        success_rate=0.85,
        description="Period-over-period comparison",
    ),
    QueryExample(
        question="Daily deposit trend over the last 30 days",
        sql=(
            "SELECT CAST(t.created_at AS DATE) AS day, SUM(t.amount) AS deposits\n"
            "FROM transactions t\n"
            "WHERE t.transaction_type = 'Deposit' AND t.created_at >= DATEADD(day, -30, @today)\n"
            "GROUP BY CAST(t.created_at AS DATE) ORDER BY day"
        ),
        intent=IntentType.TREND,
        domain="banking",
        success_rate=0.88,
        description="Time series at day granularity",
    ),
    QueryExample(
        question="Most played games last week",
        sql=(
            "SELECT TOP 10 g.game_name, COUNT(*) AS sessions\n"
            "FROM sessions s JOIN games g ON s.game_id = g.game_id\n"
            "WHERE s.started_at >= @week_start AND s.started_at < @week_end\n"
            "GROUP BY g.game_name ORDER BY sessions DESC"
        ),
        intent=IntentType.AGGREGATION,
        domain="gaming",
        success_rate=0.9,
        description="Ranking games by session count",
    ),
    QueryExample(
        question="Show details of player 1042",
        sql="SELECT p.* FROM players p WHERE p.player_id = 1042",
        intent=IntentType.DETAIL,
        domain="customer",
        success_rate=0.95,
        description="Single-record lookup",
    ),
    QueryExample(
        question="How many players are currently active",
        sql="SELECT COUNT(*) AS active_players FROM players p WHERE p.status = 'Active'",
        intent=IntentType.OPERATIONAL,
        domain="customer",
        success_rate=0.9,
        description="Current-state count",
    ),
)


@dataclass(frozen=True)
class RankedExample:
    example: QueryExample
    score: float


def score_example(profile: BusinessContextProfile, example: QueryExample, scorer: ScoringStrategy) -> float:
    """0.5 question similarity + 0.2 intent match + 0.2 domain match + 0.1 success rate."""
    similarity = scorer.similarity(profile.question, f"{example.question} {example.description}")
    intent_match = 1.0 if example.intent == profile.intent.type else 0.0
    domain_match = 1.0 if example.domain == profile.domain.descriptor.key else 0.0
    score = 0.5 * similarity + 0.2 * intent_match + 0.2 * domain_match + 0.1 * example.success_rate
    return round(min(1.0, max(0.0, score)), 4)


def rank_examples(
    profile: BusinessContextProfile,
    scorer: ScoringStrategy,
    examples: Optional[Sequence[QueryExample]] = None,
    limit: int = 3,
) -> List[RankedExample]:
    """
    Rank worked examples for a profile.

    Examples tagged for a domain the profile's domain does not admit are
    skipped, like the tables they would reference.

    Args:
        profile: Analyzed question
        scorer: Similarity strategy
        examples: Candidate examples; the built-in set when None
        limit: Maximum number of examples returned

    Returns:
        At most `limit` examples, best first (ties by question text)
    """
    if limit <= 0:
        return []
    candidates = BUILTIN_EXAMPLES if examples is None else examples
    descriptor = profile.domain.descriptor

    ranked = [
        RankedExample(example=ex, score=score_example(profile, ex, scorer))
        for ex in candidates
        if descriptor.admits((ex.domain,) if ex.domain else ())
    ]
    ranked.sort(key=lambda r: (-r.score, r.example.question))
    logger.debug(f"Ranked {len(ranked)} examples, keeping {min(limit, len(ranked))}")
    return ranked[:limit]
