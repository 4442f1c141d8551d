"""
Shared data model, API schemas, errors and request deadline.

Usage:
    from shared import BusinessContextProfile, PromptOptions, Deadline
"""

from .deadline import Deadline
from .errors import (
    AnalysisDegraded,
    AssemblyFailure,
    BudgetInfeasible,
    CollaboratorExhausted,
    Degradation,
    ErrorKind,
    PromptConstructionError,
    RetrievalEmpty,
    RetrievalTimeout,
    TemplateNotFound,
)
from .models import (
    UNCATEGORIZED,
    BusinessContextProfile,
    BusinessEntity,
    BusinessRule,
    ColumnInfo,
    ContextSection,
    ContextualSchema,
    DomainDescriptor,
    DomainMatch,
    EntityCategory,
    GlossaryTerm,
    IntentType,
    PromptTemplate,
    QueryExample,
    QueryIntent,
    RankedTable,
    SectionKind,
    TableInfo,
    TableRelationship,
    TemplateSlot,
    TimeGranularity,
    TimeRange,
)
from .schemas import ConstructPromptRequest, ConstructPromptResponse, PromptOptions, Verbosity

__all__ = [
    "Deadline",
    "ErrorKind",
    "PromptConstructionError",
    "AnalysisDegraded",
    "RetrievalTimeout",
    "RetrievalEmpty",
    "BudgetInfeasible",
    "TemplateNotFound",
    "AssemblyFailure",
    "CollaboratorExhausted",
    "Degradation",
    "UNCATEGORIZED",
    "BusinessContextProfile",
    "BusinessEntity",
    "BusinessRule",
    "ColumnInfo",
    "ContextSection",
    "ContextualSchema",
    "DomainDescriptor",
    "DomainMatch",
    "EntityCategory",
    "GlossaryTerm",
    "IntentType",
    "PromptTemplate",
    "QueryExample",
    "QueryIntent",
    "RankedTable",
    "SectionKind",
    "TableInfo",
    "TableRelationship",
    "TemplateSlot",
    "TimeGranularity",
    "TimeRange",
    "PromptOptions",
    "ConstructPromptRequest",
    "ConstructPromptResponse",
    "Verbosity",
]
