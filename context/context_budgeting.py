"""
Context token budget management.

Treat prompt context as a resource with a budget:

    budget = max_prompt_tokens - template_overhead - reserved_response_tokens

Token counts always come from the same tiktoken encoding the generation
model is assumed to use.
"""

import logging
from dataclasses import dataclass
from functools import lru_cache

import tiktoken

from shared.errors import AssemblyFailure

logger = logging.getLogger(__name__)


@lru_cache(maxsize=4)
def get_encoding(name: str = "cl100k_base") -> tiktoken.Encoding:
    """Load (once) and return a tiktoken encoding."""
    logger.info(f"Loading token encoding: {name}")
    return tiktoken.get_encoding(name)


def count_tokens(text: str, encoding_name: str = "cl100k_base") -> int:
    """Exact token count of `text`."""
    if not text:
        return 0
    return len(get_encoding(encoding_name).encode(text))


@dataclass(frozen=True)
class ContextBudget:
    """Token budget allocation."""

    total_tokens: int
    template_overhead_tokens: int
    response_tokens: int

    @property
    def available_for_context(self) -> int:
        """Tokens available for context sections."""
        return self.total_tokens - self.template_overhead_tokens - self.response_tokens


def allocate_token_budget(
    max_prompt_tokens: int,
    template_overhead: int,
    reserved_response_tokens: int,
) -> ContextBudget:
    """
    Allocate the token budget for one prompt.

    Args:
        max_prompt_tokens: Model's input window for this request
        template_overhead: Tokens consumed by the template skeleton
        reserved_response_tokens: Tokens reserved for the response

    Returns:
        ContextBudget allocation

    Raises:
        AssemblyFailure: If the allocation leaves a negative budget
    """
    budget = ContextBudget(
        total_tokens=max_prompt_tokens,
        template_overhead_tokens=template_overhead,
        response_tokens=reserved_response_tokens,
    )
    if budget.available_for_context < 0:
        raise AssemblyFailure(
            f"Negative context budget: {max_prompt_tokens} - {template_overhead} "
            f"- {reserved_response_tokens} = {budget.available_for_context}",
            stage="context_assembly",
        )
    logger.debug(f"Allocated context budget: {budget.available_for_context} tokens")
    return budget


TRUNCATION_STRATEGIES = ("end", "smart")


def truncate_to_budget(
    text: str,
    max_tokens: int,
    strategy: str = "end",
    encoding_name: str = "cl100k_base",
) -> str:
    """
    Truncate text to fit token budget.

    Strategies:
    - end: Truncate from end
    - smart: Try to truncate at line or sentence boundaries

    Args:
        text: Text to truncate
        max_tokens: Maximum tokens
        strategy: Truncation strategy

    Returns:
        Truncated text whose token count is at most `max_tokens`

    Raises:
        ValueError: Unknown strategy
    """
    if strategy not in TRUNCATION_STRATEGIES:
        raise ValueError(f"Unknown truncation strategy: {strategy}")
    if max_tokens <= 0:
        return ""

    enc = get_encoding(encoding_name)
    tokens = enc.encode(text)

    if len(tokens) <= max_tokens:
        return text

    if strategy == "smart":
        text_truncated = enc.decode(tokens[:max_tokens])

        # Find last line or sentence boundary
        for boundary in ["\n", ". ", "; "]:
            idx = text_truncated.rfind(boundary)
            if idx > len(text_truncated) * 0.5:  # Don't truncate too much
                candidate = text_truncated[:idx].rstrip()
                if len(enc.encode(candidate)) <= max_tokens:
                    return candidate

    # Decoding a token prefix can re-tokenize longer at the boundary; back off.
    cut = max_tokens
    while cut > 0:
        candidate = enc.decode(tokens[:cut])
        if len(enc.encode(candidate)) <= max_tokens:
            return candidate
        cut -= 1
    return ""
