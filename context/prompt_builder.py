"""
Prompt assembly.

Fills a template's slots with the sections chosen by the assembly engine,
in a fixed order, and recounts the final token total exactly. Identical
inputs produce byte-identical prompts.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from shared.errors import AssemblyFailure
from shared.models import (
    SECTION_SLOTS,
    SLOT_ORDER,
    BusinessContextProfile,
    ContextSection,
    IntentType,
    PromptTemplate,
    TemplateSlot,
)

from .context_budgeting import count_tokens

logger = logging.getLogger(__name__)

STAGE = "prompt_assembly"

SLOT_HEADINGS: Dict[TemplateSlot, str] = {
    TemplateSlot.BUSINESS_CONTEXT: "## Business context",
    TemplateSlot.SCHEMA_CONTEXT: "## Relevant schema",
    TemplateSlot.RELATIONSHIPS: "## Relationships",
    TemplateSlot.BUSINESS_RULES: "## Business rules",
    TemplateSlot.GLOSSARY: "## Glossary",
    TemplateSlot.EXAMPLES: "## Examples",
}

INTENT_INSTRUCTIONS: Dict[IntentType, str] = {
    IntentType.AGGREGATION: (
        "Use GROUP BY with the appropriate aggregate functions (SUM, COUNT, AVG). "
        "For rankings, ORDER BY the aggregate and limit the rows returned."
    ),
    IntentType.COMPARISON: (
        "Compute each side of the comparison in the same query, aligned on the same "
        "dimensions, and return the difference where it is meaningful."
    ),
    IntentType.TREND: (
        "Group by the requested time granularity, order chronologically and include "
        "every period in the requested range."
    ),
    IntentType.DETAIL: "Return the individual records requested with their descriptive columns.",
    IntentType.OPERATIONAL: "Filter to the current operational state and return up-to-date values.",
    IntentType.EXPLORATORY: "Return a concise overview of the relevant records or categories.",
    IntentType.ANALYTICAL: (
        "Break the measure down by the dimensions that explain it and include the "
        "supporting aggregates."
    ),
    IntentType.UNKNOWN: "Answer the question as directly as possible using only the schema shown.",
}

BASE_INSTRUCTIONS = (
    "Write a single SQL query that answers the question. "
    "Use only the tables, columns and joins listed above."
)


def render_instructions(profile: BusinessContextProfile) -> str:
    """Base instructions plus intent-specific guidance."""
    lines = [BASE_INSTRUCTIONS, INTENT_INSTRUCTIONS[profile.intent.type]]
    if profile.time_range and profile.time_range.start and profile.time_range.end:
        lines.append(
            f"Restrict the data to {profile.time_range.start:%Y-%m-%d %H:%M} "
            f"(inclusive) to {profile.time_range.end:%Y-%m-%d %H:%M} (exclusive)."
        )
    return " ".join(lines)


def render_template(template: PromptTemplate, question: str, instructions: str, blocks: Mapping[TemplateSlot, str]) -> str:
    """Substitute placeholders and normalize blank lines."""
    values = {slot.value: blocks.get(slot, "") for slot in TemplateSlot}
    text = template.content.format(question=question, instructions=instructions, **values)
    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip() + "\n"


@dataclass(frozen=True)
class AssembledPrompt:
    """Final prompt text and its exact token accounting."""

    text: str
    token_count: int
    template_key: str
    section_ids: Tuple[str, ...]
    slot_token_counts: Mapping[str, int] = field(default_factory=dict)
    within_limit: bool = True


class PromptAssembler:
    """
    Merge template and selected sections into the final prompt.

    Usage:
        assembler = PromptAssembler()
        prompt = assembler.assemble(profile, template, assembly.selected, max_prompt_tokens=3500)
    """

    def __init__(self, encoding_name: str = "cl100k_base"):
        self.encoding_name = encoding_name

    def skeleton_tokens(self, template: PromptTemplate, profile: BusinessContextProfile) -> int:
        """Tokens of the template with every slot heading present but no sections."""
        blocks = {slot: SLOT_HEADINGS[slot] for slot in template.slots}
        text = render_template(template, profile.question, render_instructions(profile), blocks)
        return count_tokens(text, self.encoding_name)

    def assemble(
        self,
        profile: BusinessContextProfile,
        template: PromptTemplate,
        sections: Sequence[ContextSection],
        max_prompt_tokens: Optional[int] = None,
    ) -> AssembledPrompt:
        """
        Render the prompt.

        Args:
            profile: Analyzed question
            template: Selected template
            sections: Sections chosen by the assembly engine
            max_prompt_tokens: Limit checked against the recounted total

        Raises:
            AssemblyFailure: A selected section has no slot in the template
        """
        by_slot: Dict[TemplateSlot, List[ContextSection]] = {}
        for section in sections:
            by_slot.setdefault(SECTION_SLOTS[section.kind], []).append(section)

        unplaced = [s.id for slot, group in by_slot.items() if slot not in template.slots for s in group]
        if unplaced:
            raise AssemblyFailure(
                f"Template '{template.key}' has no slot for sections: {', '.join(unplaced)}",
                stage=STAGE,
            )

        blocks: Dict[TemplateSlot, str] = {}
        slot_tokens: Dict[str, int] = {}
        ordered_ids: List[str] = []
        for slot in SLOT_ORDER:
            group = sorted(by_slot.get(slot, ()), key=lambda s: (s.order_index, s.id))
            if not group:
                continue
            body = "\n\n".join(s.text.strip() for s in group)
            blocks[slot] = f"{SLOT_HEADINGS[slot]}\n{body}"
            slot_tokens[slot.value] = count_tokens(body, self.encoding_name)
            ordered_ids.extend(s.id for s in group)

        text = render_template(template, profile.question, render_instructions(profile), blocks)
        token_count = count_tokens(text, self.encoding_name)
        within_limit = max_prompt_tokens is None or token_count <= max_prompt_tokens

        if not within_limit:
            logger.warning(f"Prompt uses {token_count} tokens, over the {max_prompt_tokens} limit")
        logger.info(f"Assembled prompt with template '{template.key}': {token_count} tokens, {len(ordered_ids)} sections")

        return AssembledPrompt(
            text=text,
            token_count=token_count,
            template_key=template.key,
            section_ids=tuple(ordered_ids),
            slot_token_counts=slot_tokens,
            within_limit=within_limit,
        )
