import random

import pytest

from context.context_budgeting import count_tokens
from context.examples import rank_examples
from context.optimizer import ContextAssemblyEngine
from context.prompt_builder import PromptAssembler
from context.sections import SectionBuilder
from retrieval.engine import MetadataRetrievalEngine
from shared.errors import AssemblyFailure
from shared.models import PromptTemplate, SectionKind, TemplateSlot
from shared.schemas import PromptOptions, Verbosity
from templates import BUILTIN_TEMPLATES

QUESTION = "Top 10 depositors yesterday from UK"
FINANCIAL = next(t for t in BUILTIN_TEMPLATES if t.key == "financial_aggregation")


async def build_material(analyzer, store, scorer):
    profile = await analyzer.analyze(QUESTION)
    outcome = await MetadataRetrievalEngine(store, scorer=scorer).retrieve(profile)
    examples = rank_examples(profile, scorer, limit=2)
    return profile, outcome.schema, examples


@pytest.mark.asyncio
async def test_section_builder_marks_essentials(analyzer, store, scorer):
    profile, schema, examples = await build_material(analyzer, store, scorer)

    sections = SectionBuilder().build(profile, schema, examples)

    by_id = {s.id: s for s in sections}
    assert sections[0].id == "business_context"
    assert by_id["business_context"].essential
    assert by_id[f"table:{schema.tables[0].table.id}"].essential
    assert [s.id for s in sections if s.essential] == ["business_context", f"table:{schema.tables[0].table.id}"]
    assert {"relationships", "rules", "glossary", "example:0", "example:1"} <= set(by_id)
    assert [s.order_index for s in sections] == list(range(len(sections)))
    assert all(s.token_cost == count_tokens(s.text) for s in sections)
    for section in sections:
        if section.compressed_variant is not None:
            assert section.compressed_variant.token_cost < section.token_cost
            assert section.compressed_variant.compressed


@pytest.mark.asyncio
async def test_section_builder_respects_options(analyzer, store, scorer):
    profile, schema, examples = await build_material(analyzer, store, scorer)
    builder = SectionBuilder()

    concise = builder.build(profile, schema, examples, PromptOptions(verbosity=Verbosity.CONCISE))
    detailed = builder.build(profile, schema, examples, PromptOptions(verbosity=Verbosity.DETAILED))
    bare = builder.build(profile, schema, examples, PromptOptions(include_rules=False, include_examples=False))

    column_cost = lambda sections: sum(s.token_cost for s in sections if s.kind == SectionKind.COLUMN_GROUP)
    assert column_cost(concise) < column_cost(detailed)
    assert not any(s.kind in (SectionKind.BUSINESS_RULES, SectionKind.EXAMPLE) for s in bare)


@pytest.mark.asyncio
async def test_prompt_is_byte_identical_for_identical_inputs(analyzer, store, scorer):
    """Section input order does not change the rendered prompt."""
    profile, schema, examples = await build_material(analyzer, store, scorer)
    sections = SectionBuilder().build(profile, schema, examples)
    selected = ContextAssemblyEngine().assemble(sections, 3000).selected
    shuffled = list(selected)
    random.Random(7).shuffle(shuffled)
    assembler = PromptAssembler()

    first = assembler.assemble(profile, FINANCIAL, selected)
    second = assembler.assemble(profile, FINANCIAL, shuffled)

    assert first.text == second.text
    assert first.section_ids == second.section_ids
    assert first.token_count == count_tokens(first.text)


@pytest.mark.asyncio
async def test_prompt_renders_slots_in_order(analyzer, store, scorer):
    profile, schema, examples = await build_material(analyzer, store, scorer)
    sections = SectionBuilder().build(profile, schema, examples)

    prompt = PromptAssembler().assemble(profile, FINANCIAL, sections, max_prompt_tokens=3500)
    text = prompt.text

    headings = ["## Business context", "## Relevant schema", "## Relationships", "## Business rules",
                "## Glossary", "## Examples", "## Question", "## Instructions"]
    positions = [text.index(h) for h in headings]
    assert positions == sorted(positions)
    assert QUESTION in text
    assert "Restrict the data to 2024-03-14 00:00 (inclusive) to 2024-03-15 00:00 (exclusive)." in text
    assert "GROUP BY" in text
    assert "\n\n\n" not in text
    assert text.endswith("\n")
    assert prompt.within_limit
    assert prompt.template_key == "financial_aggregation"
    assert set(prompt.slot_token_counts) == {slot.value for slot in TemplateSlot}


@pytest.mark.asyncio
async def test_empty_slots_leave_no_gaps(analyzer, store, scorer):
    profile, schema, _ = await build_material(analyzer, store, scorer)
    sections = [s for s in SectionBuilder().build(profile, schema) if s.kind == SectionKind.BUSINESS_CONTEXT]

    prompt = PromptAssembler().assemble(profile, FINANCIAL, sections)

    assert "## Relevant schema" not in prompt.text
    assert "\n\n\n" not in prompt.text
    assert prompt.section_ids == ("business_context",)


@pytest.mark.asyncio
async def test_over_limit_prompt_is_flagged(analyzer, store, scorer):
    profile, schema, examples = await build_material(analyzer, store, scorer)
    sections = SectionBuilder().build(profile, schema, examples)

    prompt = PromptAssembler().assemble(profile, FINANCIAL, sections, max_prompt_tokens=10)

    assert not prompt.within_limit


@pytest.mark.asyncio
async def test_section_without_slot_is_an_assembly_failure(analyzer, store, scorer):
    profile, schema, _ = await build_material(analyzer, store, scorer)
    narrow = PromptTemplate(
        key="narrow",
        name="Narrow",
        content="{business_context}\n\n## Question\n{question}\n\n{instructions}",
        slots=(TemplateSlot.BUSINESS_CONTEXT,),
    )
    sections = SectionBuilder().build(profile, schema)

    with pytest.raises(AssemblyFailure) as excinfo:
        PromptAssembler().assemble(profile, narrow, sections)

    assert "glossary" in excinfo.value.message
    assert excinfo.value.stage == "prompt_assembly"


@pytest.mark.asyncio
async def test_examples_are_ranked_within_admitted_domains(analyzer, store, scorer):
    profile, _, _ = await build_material(analyzer, store, scorer)

    ranked = rank_examples(profile, scorer, limit=10)

    assert all(r.example.domain != "gaming" or profile.domain.descriptor.admits(("gaming",)) for r in ranked)
    assert [r.score for r in ranked] == sorted((r.score for r in ranked), reverse=True)
    assert ranked[0].example.question == "Top 5 depositors last month"
    assert rank_examples(profile, scorer, limit=0) == []


def test_section_scores_are_clipped_for_both_variants():
    section = SectionBuilder()._section(
        "table:x", SectionKind.TABLE_SUMMARY, "x",
        text="Table x holds every deposit made by every player. " * 4,
        relevance=1.4, importance=-0.3, order_index=0,
        compressed_text="Table x: deposits.",
    )

    variant = section.compressed_variant
    assert variant is not None
    assert (section.relevance, section.importance) == (1.0, 0.0)
    assert (variant.relevance, variant.importance) == (1.0, 0.0)
