"""
Template selection.

Static templates are scored against the profile:

    score = 0.4 * intent compatibility + 0.3 * domain suitability
          + 0.2 * complexity handling + 0.1 * historical success rate

When no static template clears the quality threshold, a dynamic template
is synthesized from the ordered slots and the caller's preferences.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from app.cache import InMemoryCache
from app.config import TemplateConfig, settings
from context.prompt_builder import PromptAssembler
from shared.errors import TemplateNotFound
from shared.models import (
    SLOT_ORDER,
    BusinessContextProfile,
    PromptTemplate,
    TemplateSlot,
)
from shared.schemas import PromptOptions, Verbosity

from .repository import InMemoryTemplateRepository, TemplateRepository

logger = logging.getLogger(__name__)

STAGE = "template_selection"

FACTOR_WEIGHTS = {
    "intent_compatibility": 0.4,
    "domain_suitability": 0.3,
    "complexity_handling": 0.2,
    "success_rate": 0.1,
}

DYNAMIC_SUCCESS_RATE = 0.7

DYNAMIC_PREAMBLES = {
    Verbosity.CONCISE: "Generate SQL for the question below.",
    Verbosity.STANDARD: "You are an expert SQL analyst. Use the business context and schema below.",
    Verbosity.DETAILED: (
        "You are an expert SQL analyst. Read the business context, schema, joins and rules "
        "below carefully; every table and column you use must appear in them."
    ),
}


@dataclass(frozen=True)
class TemplateSelection:
    """Chosen template, the slots to fill and the scoring rationale."""

    template: PromptTemplate
    slots: Tuple[TemplateSlot, ...]
    score: float
    factors: Tuple[Tuple[str, float, float], ...] = ()  # (name, score, weight)
    alternatives: Tuple[Tuple[str, float], ...] = ()

    @property
    def dynamic(self) -> bool:
        return self.template.dynamic


def question_complexity(profile: BusinessContextProfile) -> float:
    """Rough structural complexity of a question in [0, 1]."""
    parts = len(profile.entities) + len(profile.intent.sub_intents) + len(profile.comparison_terms)
    return min(1.0, parts / 8)


class TemplateSelector:
    """
    Select or synthesize the prompt template for a profile.

    Usage:
        selector = TemplateSelector()
        selection = await selector.select(profile, options)
    """

    def __init__(
        self,
        repository: Optional[TemplateRepository] = None,
        config: Optional[TemplateConfig] = None,
        cache: Optional[InMemoryCache] = None,
        assembler: Optional[PromptAssembler] = None,
    ):
        self.repository = repository or InMemoryTemplateRepository()
        self.config = config or settings.templates
        self.cache = cache if cache is not None else InMemoryCache(default_ttl=self.config.cache_ttl)
        self.assembler = assembler or PromptAssembler(settings.assembly.encoding_name)

    async def candidates(self, profile: BusinessContextProfile) -> Tuple[PromptTemplate, ...]:
        """Static templates for the profile's intent, cached per intent."""
        key = f"templates:{profile.intent.type.value}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        templates = tuple(await self.repository.list_templates(profile.intent.type))
        return self.cache.set_if_absent(key, templates, ttl=self.config.cache_ttl)

    def score(self, profile: BusinessContextProfile, template: PromptTemplate) -> Tuple[float, Tuple[Tuple[str, float, float], ...]]:
        """Weighted template score and its factor breakdown."""
        if profile.intent.type in template.intent_tags:
            intent = 1.0
        elif not template.intent_tags:
            intent = 0.5
        else:
            intent = 0.0

        descriptor = profile.domain.descriptor
        if descriptor.key in template.domain_tags:
            domain = 1.0
        elif not template.domain_tags:
            domain = 0.7
        elif set(template.domain_tags) & set(descriptor.related_domains):
            domain = 0.5
        else:
            domain = 0.0

        capacity = len(template.slots) / len(TemplateSlot)
        complexity = max(0.0, 1.0 - max(0.0, question_complexity(profile) - capacity))

        values = {
            "intent_compatibility": intent,
            "domain_suitability": domain,
            "complexity_handling": complexity,
            "success_rate": template.success_rate,
        }
        total = sum(FACTOR_WEIGHTS[name] * value for name, value in values.items())
        factors = tuple((name, round(values[name], 4), FACTOR_WEIGHTS[name]) for name in FACTOR_WEIGHTS)
        return round(total, 4), factors

    def synthesize(self, profile: BusinessContextProfile, options: PromptOptions) -> PromptTemplate:
        """Dynamic template from the ordered slots, tailored to preferences."""
        slots = [
            slot for slot in SLOT_ORDER
            if not (slot == TemplateSlot.BUSINESS_RULES and not options.include_rules)
            and not (slot == TemplateSlot.EXAMPLES and not options.include_examples)
        ]
        body = "\n\n".join("{" + slot.value + "}" for slot in slots)
        content = (
            f"{DYNAMIC_PREAMBLES[options.verbosity]}\n\n{body}\n\n"
            "## Question\n{question}\n\n## Instructions\n{instructions}\n"
        )
        flags = f"{'r' if options.include_rules else '-'}{'e' if options.include_examples else '-'}"
        return PromptTemplate(
            key=f"dynamic:{profile.intent.type.value}:{options.verbosity.value}:{flags}",
            name=f"Dynamic {profile.intent.type.value} template",
            content=content,
            slots=tuple(slots),
            intent_tags=(profile.intent.type,),
            domain_tags=(profile.domain.descriptor.key,),
            success_rate=DYNAMIC_SUCCESS_RATE,
            dynamic=True,
        )

    async def select(self, profile: BusinessContextProfile, options: Optional[PromptOptions] = None) -> TemplateSelection:
        """
        Choose the best static template or synthesize one.

        Raises:
            TemplateNotFound: Nothing clears the threshold and dynamic synthesis is disabled
        """
        options = options or PromptOptions()
        scored: List[Tuple[float, PromptTemplate, tuple]] = []
        for template in await self.candidates(profile):
            total, factors = self.score(profile, template)
            scored.append((total, template, factors))
        scored.sort(key=lambda s: (-s[0], s[1].key))

        alternatives = tuple((t.key, s) for s, t, _ in scored)

        if scored and scored[0][0] >= self.config.quality_threshold:
            total, template, factors = scored[0]
            logger.info(f"Selected template '{template.key}' (score={total:.2f})")
            return TemplateSelection(
                template=template,
                slots=template.slots,
                score=total,
                factors=factors,
                alternatives=alternatives[1:4],
            )

        if not self.config.allow_dynamic:
            best = f"best '{scored[0][1].key}' scored {scored[0][0]:.2f}" if scored else "no candidates"
            raise TemplateNotFound(
                f"No template clears threshold {self.config.quality_threshold} ({best}) "
                "and dynamic templates are disabled",
                stage=STAGE,
            )

        template = self.synthesize(profile, options)
        total, factors = self.score(profile, template)
        logger.info(f"Synthesized dynamic template '{template.key}' (score={total:.2f})")
        return TemplateSelection(
            template=template,
            slots=template.slots,
            score=total,
            factors=factors,
            alternatives=alternatives[:3],
        )

    async def estimate_overhead(self, profile: BusinessContextProfile, options: Optional[PromptOptions] = None) -> int:
        """
        Largest skeleton token count over every template `select` could return.

        Used to size the context budget before the template is chosen.
        """
        options = options or PromptOptions()
        templates = list(await self.candidates(profile))
        if self.config.allow_dynamic:
            templates.append(self.synthesize(profile, options))
        if not templates:
            return 0
        return max(self.assembler.skeleton_tokens(t, profile) for t in templates)
