"""
Score fusion for multi-strategy table discovery.

Combines scores from the discovery strategies:
- Semantic similarity to table descriptions
- Domain-tag match
- Entity-name match
- Glossary-term match

Formula: score = sum(w_strategy * normalized_score_strategy)
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping

import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class FusedScore:
    """Table score after fusion."""

    id: str
    fused_score: float
    strategy_scores: Dict[str, float] = field(default_factory=dict)
    rank: int = 0


def normalize_scores(
    scores: List[float],
    method: str = "minmax",
) -> List[float]:
    """
    Normalize scores to [0, 1] range.

    A strategy that scored every candidate identically carries no ranking
    signal of its own, so a constant list keeps its values clipped to
    [0, 1] instead of being inflated to 1.0.

    Args:
        scores: Raw scores
        method: Normalization method (minmax, zscore)

    Returns:
        Normalized scores
    """
    if not scores:
        return []

    scores = np.array(scores, dtype=float)

    if method == "minmax":
        min_s = scores.min()
        max_s = scores.max()
        if max_s - min_s == 0:
            return list(np.clip(scores, 0.0, 1.0).tolist())
        # Anchor at zero so a lone weak match is not promoted to 1.0
        min_s = min(min_s, 0.0)
        return list(((scores - min_s) / (max_s - min_s)).tolist())

    elif method == "zscore":
        mean_s = scores.mean()
        std_s = scores.std()
        if std_s == 0:
            return [0.5] * len(scores)
        # Z-score then sigmoid to [0, 1]
        z = (scores - mean_s) / std_s
        return list((1 / (1 + np.exp(-z))).tolist())

    else:
        raise ValueError(f"Unknown normalization method: {method}")


def merge_strategy_scores(
    strategy_results: Mapping[str, Mapping[str, float]],
    weights: Mapping[str, float],
    min_score: float = 0.0,
    top_k: int = 5,
) -> List[FusedScore]:
    """
    Merge per-strategy `{table_id: score}` maps by weighted sum.

    Pure function: de-duplicates by table id, drops candidates under
    `min_score` and truncates to `top_k`. Ties are broken by table id so
    the ranking is reproducible.

    Args:
        strategy_results: {strategy_name: {table_id: raw_score}}
        weights: {strategy_name: weight}; missing strategies weigh 0
        min_score: Minimum fused score to keep
        top_k: Maximum number of results

    Returns:
        Sorted list of FusedScore
    """
    normalized: Dict[str, Dict[str, float]] = {}
    for name, results in strategy_results.items():
        if not results:
            continue
        ids = sorted(results)
        normalized[name] = dict(zip(ids, normalize_scores([results[i] for i in ids])))

    all_ids = set()
    for results in normalized.values():
        all_ids.update(results)

    if not all_ids:
        return []

    total_weight = sum(weights.get(name, 0.0) for name in strategy_results) or 1.0

    fused: List[FusedScore] = []
    for table_id in all_ids:
        per_strategy = {name: normalized.get(name, {}).get(table_id, 0.0) for name in strategy_results}
        score = sum(weights.get(name, 0.0) * s for name, s in per_strategy.items()) / total_weight
        if score < min_score:
            continue
        fused.append(FusedScore(id=table_id, fused_score=min(1.0, score), strategy_scores=per_strategy))

    fused.sort(key=lambda r: (-r.fused_score, r.id))
    fused = fused[:top_k]

    for i, result in enumerate(fused):
        result.rank = i + 1

    logger.debug(f"Fused {len(all_ids)} candidates into top {len(fused)}")
    return fused
