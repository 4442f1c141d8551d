"""
Configuration module for the prompt construction service.
Manages all environment variables and settings with validation.
"""

import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, Optional


@dataclass
class AnalysisConfig:
    """Context analyzer configuration."""
    classifier_timeout: float = 2.0
    fallback_confidence_cap: float = 0.5
    degraded_confidence_factor: float = 0.8
    min_domain_score: float = 0.1
    domain_keyword_weight: float = 0.6
    domain_semantic_weight: float = 0.4


@dataclass
class RetrievalConfig:
    """Metadata retrieval configuration."""
    default_max_tables: int = 5
    max_columns_per_table: int = 8
    column_token_budget: int = 220  # Per-table sub-budget for column lines
    min_table_score: float = 0.05
    cache_ttl: int = 3600
    strategy_weights: Dict[str, float] = field(default_factory=lambda: {
        "semantic": 0.35,
        "domain": 0.25,
        "entity": 0.30,
        "glossary": 0.10,
    })


@dataclass
class AssemblyConfig:
    """Token budget and assembly configuration."""
    encoding_name: str = "cl100k_base"
    max_prompt_tokens: int = 4000
    reserved_response_tokens: int = 500
    exact_max_budget: int = 8000  # Above this, greedy selection is used
    min_section_tokens: int = 12
    max_examples: int = 3


@dataclass
class TemplateConfig:
    """Template selection configuration."""
    quality_threshold: float = 0.8
    allow_dynamic: bool = True
    cache_ttl: int = 3600


@dataclass
class TracingConfig:
    """Construction trace configuration."""
    trace_cache_ttl: int = 86400
    speed_baseline_ms: float = 5000.0
    audit_log_file: Optional[str] = None


@dataclass
class Settings:
    """Main application settings loaded from environment."""

    # Request settings
    REQUEST_TIMEOUT: float = field(default_factory=lambda: float(os.getenv("REQUEST_TIMEOUT", "10")))

    # Similarity backend: "lexical" or "embedding"
    SIMILARITY_BACKEND: str = field(default_factory=lambda: os.getenv("SIMILARITY_BACKEND", "lexical"))
    EMBEDDING_MODEL: str = field(default_factory=lambda: os.getenv("EMBEDDING_MODEL", "all-MiniLM-L6-v2"))

    # Metrics sink: "memory" or "prometheus"
    METRICS_BACKEND: str = field(default_factory=lambda: os.getenv("METRICS_BACKEND", "memory"))

    # Trace store
    TRACE_STORE_PATH: Optional[str] = field(default_factory=lambda: os.getenv("TRACE_STORE_PATH"))

    # Application settings
    DEBUG: bool = field(default_factory=lambda: os.getenv("DEBUG", "false").lower() == "true")
    LOG_LEVEL: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))

    # Nested configs
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    assembly: AssemblyConfig = field(default_factory=lambda: AssemblyConfig(
        max_prompt_tokens=int(os.getenv("MAX_PROMPT_TOKENS", "4000")),
        reserved_response_tokens=int(os.getenv("RESERVED_RESPONSE_TOKENS", "500")),
    ))
    templates: TemplateConfig = field(default_factory=lambda: TemplateConfig(
        allow_dynamic=os.getenv("ALLOW_DYNAMIC_TEMPLATES", "true").lower() == "true",
    ))
    tracing: TracingConfig = field(default_factory=lambda: TracingConfig(
        audit_log_file=os.getenv("TRACE_AUDIT_LOG"),
    ))


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging once for embedding applications and scripts."""
    logging.basicConfig(
        level=(level or get_settings().LOG_LEVEL).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


settings = get_settings()
