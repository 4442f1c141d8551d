"""
Context Assembly Module.

Treat prompt context as a resource with a budget.

This module handles:
- Token counting and budget allocation
- Candidate section building (with compressed variants)
- Budget-constrained section selection (exact DP or greedy)
- Worked-example ranking
- Final prompt assembly with an exact token recount

Usage:
    from context import ContextAssemblyEngine, PromptAssembler, SectionBuilder

    sections = SectionBuilder().build(profile, schema, examples, options)
    result = ContextAssemblyEngine().assemble(sections, budget=2800)
    prompt = PromptAssembler().assemble(profile, template, result.selected)
"""

from .context_budgeting import ContextBudget, allocate_token_budget, count_tokens, truncate_to_budget
from .examples import BUILTIN_EXAMPLES, RankedExample, rank_examples
from .optimizer import AssemblyResult, ContextAssemblyEngine, solve_knapsack_exact, solve_knapsack_greedy
from .prompt_builder import AssembledPrompt, PromptAssembler, render_instructions
from .sections import SectionBuilder

__all__ = [
    "ContextBudget",
    "allocate_token_budget",
    "count_tokens",
    "truncate_to_budget",
    "BUILTIN_EXAMPLES",
    "RankedExample",
    "rank_examples",
    "AssemblyResult",
    "ContextAssemblyEngine",
    "solve_knapsack_exact",
    "solve_knapsack_greedy",
    "AssembledPrompt",
    "PromptAssembler",
    "render_instructions",
    "SectionBuilder",
]
