"""
Token-budget optimizer for context sections.

Selection is a 0/1 knapsack: maximize total value (relevance * importance)
subject to total token cost <= budget.

- Budgets up to `exact_max_budget`: exact dynamic programming over a
  (candidates x budget) table, O(n * budget) time and memory.
- Larger budgets: greedy by descending efficiency (value / tokens). The
  greedy pass is monotonic in efficiency order but not globally optimal.

After selection, essential sections are guaranteed a place (compressed or by
shrinking lower-priority sections), then rejected sections get a second
chance in their compressed form.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np

from app.config import AssemblyConfig, settings
from shared.errors import AssemblyFailure, BudgetInfeasible
from shared.models import ContextSection

from .context_budgeting import count_tokens, truncate_to_budget

logger = logging.getLogger(__name__)

STAGE = "context_assembly"


@dataclass(frozen=True)
class AssemblyResult:
    """Sections chosen for the prompt and the rationale numbers behind them."""

    selected: Tuple[ContextSection, ...]
    rejected: Tuple[ContextSection, ...]
    total_tokens: int
    budget: int
    method: str
    adjustments: Tuple[str, ...] = field(default=())

    @property
    def utilization(self) -> float:
        return self.total_tokens / self.budget if self.budget > 0 else 0.0

    @property
    def total_value(self) -> float:
        return sum(s.value for s in self.selected)

    @property
    def section_ids(self) -> Tuple[str, ...]:
        return tuple(s.id for s in self.selected)


def solve_knapsack_exact(costs: Sequence[int], values: Sequence[float], capacity: int) -> List[int]:
    """
    Exact 0/1 knapsack by dynamic programming.

    Rows are processed with numpy: `dp[c]` is the best value achievable with
    capacity `c` using the items seen so far, and `keep[i, c]` records
    whether item `i` is part of that optimum.

    Args:
        costs: Non-negative integer cost per item
        values: Non-negative value per item
        capacity: Budget

    Returns:
        Indices of the chosen items, ascending
    """
    n = len(costs)
    if n == 0 or capacity < 0:
        return []

    dp = np.zeros(capacity + 1, dtype=np.float64)
    keep = np.zeros((n, capacity + 1), dtype=bool)

    for i, (cost, value) in enumerate(zip(costs, values)):
        if cost > capacity or value <= 0:
            continue
        if cost == 0:
            dp += value
            keep[i, :] = True
            continue
        candidate = dp[:-cost] + value
        take = candidate > dp[cost:]
        keep[i, cost:] = take
        dp[cost:] = np.where(take, candidate, dp[cost:])

    chosen = []
    c = capacity
    for i in range(n - 1, -1, -1):
        if keep[i, c]:
            chosen.append(i)
            c -= costs[i]
    return sorted(chosen)


def solve_knapsack_greedy(costs: Sequence[int], values: Sequence[float], capacity: int) -> List[int]:
    """
    Greedy selection by descending value density.

    Items are visited in efficiency order (ties by index) and taken while
    they fit.
    """
    order = sorted(range(len(costs)), key=lambda i: (-(values[i] / max(costs[i], 1)), i))
    chosen = []
    used = 0
    for i in order:
        if values[i] <= 0:
            continue
        if used + costs[i] <= capacity:
            chosen.append(i)
            used += costs[i]
    return sorted(chosen)


class ContextAssemblyEngine:
    """
    Choose context sections under a token budget.

    Usage:
        engine = ContextAssemblyEngine()
        result = engine.assemble(sections, budget=2800)
    """

    def __init__(self, config: Optional[AssemblyConfig] = None):
        self.config = config or settings.assembly

    def assemble(self, sections: Sequence[ContextSection], budget: int) -> AssemblyResult:
        """
        Select sections for the prompt.

        Args:
            sections: Candidate sections
            budget: Token budget for context

        Returns:
            AssemblyResult with the selected sections in candidate order

        Raises:
            BudgetInfeasible: Essential sections cannot fit even compressed
            AssemblyFailure: Negative budget or an invariant violation
        """
        if budget < 0:
            raise AssemblyFailure(f"Negative token budget: {budget}", stage=STAGE)

        candidates = sorted(sections, key=lambda s: (s.order_index, s.id))
        essentials = [s for s in candidates if s.essential]

        required = sum(self._min_cost(s) for s in essentials)
        if required > budget:
            raise BudgetInfeasible(
                f"Essential sections need {required} tokens even compressed; budget is {budget}",
                required_tokens=required,
                budget=budget,
                stage=STAGE,
            )

        method = "exact_dp" if budget <= self.config.exact_max_budget else "greedy"
        solver = solve_knapsack_exact if method == "exact_dp" else solve_knapsack_greedy
        chosen = solver([s.token_cost for s in candidates], [s.value for s in candidates], budget)

        selected = {candidates[i].id: candidates[i] for i in chosen}
        adjustments: List[str] = []
        logger.info(
            f"Knapsack ({method}) chose {len(selected)}/{len(candidates)} sections, "
            f"{sum(s.token_cost for s in selected.values())}/{budget} tokens"
        )

        # 1. Essential post-pass
        for essential in essentials:
            if essential.id not in selected:
                self._ensure_essential(essential, selected, budget, adjustments)

        # 2. Compressed backfill for rejected sections
        rejected = [s for s in candidates if s.id not in selected and not s.essential]
        for section in sorted(rejected, key=lambda s: (-self._backfill_efficiency(s), s.order_index)):
            variant = section.compressed_variant
            if variant is None or variant.value <= 0:
                continue
            if self._used(selected) + variant.token_cost <= budget:
                selected[section.id] = variant
                adjustments.append(f"{section.id}: included compressed ({variant.token_cost} tokens)")

        final = tuple(sorted(selected.values(), key=lambda s: (s.order_index, s.id)))
        total = sum(s.token_cost for s in final)
        if total > budget:
            raise AssemblyFailure(f"Selected sections use {total} tokens over budget {budget}", stage=STAGE)

        result = AssemblyResult(
            selected=final,
            rejected=tuple(s for s in candidates if s.id not in selected),
            total_tokens=total,
            budget=budget,
            method=method,
            adjustments=tuple(adjustments),
        )
        logger.info(
            f"Assembled {len(final)} sections: {total}/{budget} tokens "
            f"({result.utilization:.0%} utilization)"
        )
        return result

    # --- essential post-pass -------------------------------------------------

    @staticmethod
    def _min_cost(section: ContextSection) -> int:
        variant = section.compressed_variant
        return min(section.token_cost, variant.token_cost) if variant else section.token_cost

    @staticmethod
    def _used(selected) -> int:
        return sum(s.token_cost for s in selected.values())

    @staticmethod
    def _backfill_efficiency(section: ContextSection) -> float:
        variant = section.compressed_variant
        return variant.efficiency if variant else 0.0

    def _ensure_essential(self, essential: ContextSection, selected: dict, budget: int, adjustments: List[str]):
        remaining = budget - self._used(selected)

        if essential.token_cost <= remaining:
            selected[essential.id] = essential
            adjustments.append(f"{essential.id}: essential added")
            return

        variant = essential.compressed_variant
        if variant is not None and variant.token_cost <= remaining:
            selected[essential.id] = variant
            adjustments.append(f"{essential.id}: essential added compressed ({variant.token_cost} tokens)")
            return

        target = variant if variant is not None and variant.token_cost < essential.token_cost else essential
        need = target.token_cost - remaining
        self._shrink_for(need, selected, adjustments)
        shortfall = target.token_cost - (budget - self._used(selected))
        if shortfall > 0:
            self._compress_essentials(shortfall, selected, adjustments)

        if target.token_cost > budget - self._used(selected):
            raise BudgetInfeasible(
                f"Cannot make room for essential section '{essential.id}' ({target.token_cost} tokens)",
                required_tokens=target.token_cost,
                budget=budget,
                stage=STAGE,
            )
        selected[essential.id] = target
        adjustments.append(f"{essential.id}: essential added after shrinking lower-priority sections")

    @staticmethod
    def _compress_essentials(need: int, selected: dict, adjustments: List[str]) -> None:
        """Swap already-selected essentials for their compressed form, largest saving first."""
        swappable = sorted(
            (
                s for s in selected.values()
                if s.essential and s.compressed_variant is not None
                and s.compressed_variant.token_cost < s.token_cost
            ),
            key=lambda s: (s.compressed_variant.token_cost - s.token_cost, s.order_index),
        )
        for section in swappable:
            if need <= 0:
                return
            variant = section.compressed_variant
            selected[section.id] = variant
            need -= section.token_cost - variant.token_cost
            adjustments.append(f"{section.id}: essential compressed ({variant.token_cost} tokens)")

    def _shrink_for(self, need: int, selected: dict, adjustments: List[str]) -> None:
        """
        Free `need` tokens by proportionally shrinking non-essential sections.

        Each shrinkable section gives up the same share of its tokens; a
        section left under `min_section_tokens` is dropped instead.
        """
        shrinkable = sorted(
            (s for s in selected.values() if not s.essential),
            key=lambda s: (s.efficiency, -s.order_index),
        )
        total = sum(s.token_cost for s in shrinkable)
        if need <= 0 or total == 0:
            return

        ratio = min(1.0, need / total)
        for section in shrinkable:
            allowance = section.token_cost - math.ceil(section.token_cost * ratio)
            if allowance < self.config.min_section_tokens:
                del selected[section.id]
                adjustments.append(f"{section.id}: dropped to make room for essentials")
                continue
            text = truncate_to_budget(section.text, allowance, "smart", self.config.encoding_name)
            cost = count_tokens(text, self.config.encoding_name)
            if not text or cost < self.config.min_section_tokens:
                del selected[section.id]
                adjustments.append(f"{section.id}: dropped to make room for essentials")
                continue
            selected[section.id] = section.with_text(text, cost)
            adjustments.append(f"{section.id}: shrunk {section.token_cost} -> {cost} tokens")
