import pytest

from app.config import AssemblyConfig
from context.context_budgeting import allocate_token_budget, count_tokens, truncate_to_budget
from context.optimizer import ContextAssemblyEngine, solve_knapsack_exact, solve_knapsack_greedy
from shared.errors import AssemblyFailure, BudgetInfeasible
from shared.models import ContextSection, SectionKind

FILLER = "Players deposit money into their accounts every day. " * 5


def make(id, tokens, relevance=1.0, importance=1.0, essential=False, compressed=None, order=0, text=None):
    variant = None
    if compressed is not None:
        variant = ContextSection(
            id=id, kind=SectionKind.TABLE_SUMMARY, title=id, text=f"{id} (short)",
            relevance=relevance, importance=importance, token_cost=compressed,
            essential=essential, order_index=order, compressed=True,
        )
    return ContextSection(
        id=id, kind=SectionKind.TABLE_SUMMARY, title=id, text=text or f"{id} text",
        relevance=relevance, importance=importance, token_cost=tokens,
        essential=essential, compressed_variant=variant, order_index=order,
    )


def from_text(id, text, relevance, importance, essential=False, order=0):
    return make(id, count_tokens(text), relevance, importance, essential=essential, order=order, text=text)


def test_exact_beats_greedy_on_density_trap():
    costs, values = [6, 5, 5], [0.9, 0.7, 0.7]

    assert solve_knapsack_exact(costs, values, 10) == [1, 2]
    assert solve_knapsack_greedy(costs, values, 10) == [0]


def test_engine_uses_exact_under_threshold_and_greedy_above():
    sections = [make("a", 6, 0.9, order=0), make("b", 5, 0.7, order=1), make("c", 5, 0.7, order=2)]

    exact = ContextAssemblyEngine(AssemblyConfig(exact_max_budget=100)).assemble(sections, 10)
    greedy = ContextAssemblyEngine(AssemblyConfig(exact_max_budget=5)).assemble(sections, 10)

    assert exact.method == "exact_dp"
    assert exact.section_ids == ("b", "c")
    assert greedy.method == "greedy"
    assert greedy.section_ids == ("a",)


def test_budget_is_never_exceeded():
    engine = ContextAssemblyEngine(AssemblyConfig())
    sections = [make(f"s{i}", 3 + 4 * i, relevance=1.0 - i * 0.1, order=i) for i in range(8)]

    for budget in range(0, 120, 7):
        result = engine.assemble(sections, budget)
        assert result.total_tokens <= budget
        assert result.total_tokens == sum(s.token_cost for s in result.selected)


def test_exact_value_is_monotone_in_budget():
    engine = ContextAssemblyEngine(AssemblyConfig())
    sections = [
        make("a", 12, 0.9, 0.8, order=0),
        make("b", 7, 0.6, 0.9, order=1),
        make("c", 20, 1.0, 1.0, order=2),
        make("d", 3, 0.2, 0.5, order=3),
    ]

    values = [engine.assemble(sections, budget).total_value for budget in range(0, 50, 3)]

    assert values == sorted(values)


def test_selected_sections_keep_candidate_order():
    engine = ContextAssemblyEngine(AssemblyConfig())
    sections = [make("z", 5, order=0), make("a", 5, order=1)]

    assert engine.assemble(sections, 20).section_ids == ("z", "a")


def test_rejected_section_is_backfilled_compressed():
    engine = ContextAssemblyEngine(AssemblyConfig())
    sections = [make("x", 30, 0.9, order=0), make("y", 30, 0.5, compressed=10, order=1)]

    result = engine.assemble(sections, 40)

    assert result.section_ids == ("x", "y")
    assert result.selected[1].compressed
    assert result.total_tokens == 40
    assert "y: included compressed (10 tokens)" in result.adjustments
    assert result.rejected == ()


def test_essential_section_is_added_compressed():
    engine = ContextAssemblyEngine(AssemblyConfig())
    sections = [
        make("essential", 50, 0.1, 0.1, essential=True, compressed=10, order=0),
        make("x", 15, 1.0, 0.5, order=1),
        make("y", 10, 0.8, 0.5, order=2),
    ]

    result = engine.assemble(sections, 40)

    chosen = {s.id: s for s in result.selected}
    assert chosen["essential"].compressed
    assert {"x", "y"} <= set(chosen)
    assert any("essential added compressed" in a for a in result.adjustments)
    assert result.total_tokens <= 40


def test_essential_section_shrinks_lower_priority_sections():
    """An essential section with no compressed form makes room by shrinking the others."""
    engine = ContextAssemblyEngine(AssemblyConfig())
    essential = from_text("essential", FILLER, 0.1, 0.1, essential=True, order=0)
    first = from_text("first", FILLER, 0.9, 1.0, order=1)
    second = from_text("second", FILLER, 0.9, 1.0, order=2)
    budget = essential.token_cost + first.token_cost + second.token_cost - 10

    result = engine.assemble([essential, first, second], budget)

    assert "essential" in result.section_ids
    assert result.total_tokens <= budget
    assert any("shrunk" in a or "dropped" in a for a in result.adjustments)
    assert any("after shrinking" in a for a in result.adjustments)


def test_selected_essential_is_compressed_to_admit_another():
    """Two essentials that only fit together compressed are both kept compressed."""
    engine = ContextAssemblyEngine(AssemblyConfig())
    sections = [
        make("a", 100, essential=True, compressed=20, order=0),
        make("b", 90, essential=True, compressed=50, order=1),
    ]

    result = engine.assemble(sections, 100)

    assert result.section_ids == ("a", "b")
    assert all(s.compressed for s in result.selected)
    assert result.total_tokens == 70
    assert any("essential compressed" in a for a in result.adjustments)


def test_essentials_that_cannot_fit_raise_budget_infeasible():
    engine = ContextAssemblyEngine(AssemblyConfig())
    sections = [make("essential", 100, essential=True, compressed=60), make("x", 5, order=1)]

    with pytest.raises(BudgetInfeasible) as excinfo:
        engine.assemble(sections, 50)

    assert excinfo.value.required_tokens == 60
    assert excinfo.value.budget == 50


def test_negative_budget_is_an_assembly_failure():
    with pytest.raises(AssemblyFailure):
        ContextAssemblyEngine(AssemblyConfig()).assemble([make("x", 5)], -1)


def test_zero_budget_selects_nothing():
    result = ContextAssemblyEngine(AssemblyConfig()).assemble([make("x", 5)], 0)

    assert result.selected == ()
    assert result.utilization == 0.0


def test_allocate_token_budget():
    budget = allocate_token_budget(4000, 300, 500)

    assert budget.available_for_context == 3200
    with pytest.raises(AssemblyFailure):
        allocate_token_budget(500, 300, 500)


@pytest.mark.parametrize("strategy", ["end", "smart"])
def test_truncate_to_budget_respects_limit(strategy):
    truncated = truncate_to_budget(FILLER, 12, strategy)

    assert truncated
    assert count_tokens(truncated) <= 12
    assert truncate_to_budget("short", 12, strategy) == "short"
    assert truncate_to_budget(FILLER, 0, strategy) == ""


def test_unknown_truncation_strategy_is_rejected():
    with pytest.raises(ValueError):
        truncate_to_budget(FILLER, 12, "middle")
