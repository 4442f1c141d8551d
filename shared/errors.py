"""
Error taxonomy for prompt construction.

Recoverable conditions (analysis degraded, retrieval timeout, retrieval
empty) are recorded on the result and trace. Terminal conditions (budget
infeasible, template not found) end the request with a structured failure.
AssemblyFailure means an internal invariant was violated.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    ANALYSIS_DEGRADED = "analysis_degraded"
    RETRIEVAL_TIMEOUT = "retrieval_timeout"
    RETRIEVAL_EMPTY = "retrieval_empty"
    BUDGET_INFEASIBLE = "budget_infeasible"
    TEMPLATE_NOT_FOUND = "template_not_found"
    ASSEMBLY_FAILURE = "assembly_failure"

    @property
    def recoverable(self) -> bool:
        return self in RECOVERABLE_KINDS


RECOVERABLE_KINDS = frozenset({
    ErrorKind.ANALYSIS_DEGRADED,
    ErrorKind.RETRIEVAL_TIMEOUT,
    ErrorKind.RETRIEVAL_EMPTY,
})


class PromptConstructionError(Exception):
    """Base class for construction errors."""

    kind: ErrorKind = ErrorKind.ASSEMBLY_FAILURE

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage


class AnalysisDegraded(PromptConstructionError):
    kind = ErrorKind.ANALYSIS_DEGRADED


class RetrievalTimeout(PromptConstructionError):
    kind = ErrorKind.RETRIEVAL_TIMEOUT


class RetrievalEmpty(PromptConstructionError):
    kind = ErrorKind.RETRIEVAL_EMPTY


class BudgetInfeasible(PromptConstructionError):
    """Even the essential sections, compressed, exceed the token budget."""

    kind = ErrorKind.BUDGET_INFEASIBLE

    def __init__(self, message: str, required_tokens: int = 0, budget: int = 0, stage: Optional[str] = None):
        super().__init__(message, stage=stage)
        self.required_tokens = required_tokens
        self.budget = budget


class TemplateNotFound(PromptConstructionError):
    kind = ErrorKind.TEMPLATE_NOT_FOUND


class AssemblyFailure(PromptConstructionError):
    """Internal invariant violated; never expected under valid configuration."""

    kind = ErrorKind.ASSEMBLY_FAILURE


class CollaboratorExhausted(Exception):
    """Raised by an external collaborator once its own retries are exhausted."""

    pass


@dataclass(frozen=True)
class Degradation:
    """A recovered condition recorded on the result and the trace."""

    kind: ErrorKind
    stage: str
    message: str

    def __str__(self) -> str:
        return f"{self.kind.value} ({self.stage}): {self.message}"
