"""
Audit logging for prompt constructions.

Writes one JSON line per published trace for compliance review.
"""

import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .tracing import ConstructionTrace


class TraceAuditLogger:
    """
    Audit logger for prompt constructions.

    Logs:
    - Completed constructions (outcome, confidence, template, tables)
    - Failed constructions (failing stage and error)
    """

    def __init__(self, log_file: Optional[str] = None):
        """
        Args:
            log_file: Optional file path for audit logs
        """
        self.logger = logging.getLogger("prompt_trace_audit")
        self.log_file = log_file

        if log_file:
            handler = logging.FileHandler(log_file)
            handler.setFormatter(logging.Formatter("%(asctime)s - %(message)s"))
            self.logger.addHandler(handler)
            self.logger.setLevel(logging.INFO)

    def log_trace(self, trace: "ConstructionTrace") -> None:
        """Log a finished construction trace."""
        retrieval = trace.step("metadata_retrieval")
        template = trace.step("template_selection")
        log_entry = {
            "event": "prompt_construction",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "trace_id": trace.trace_id,
            "user_id": trace.user_id,
            "question": trace.question,
            "outcome": trace.outcome.value,
            "overall_confidence": trace.overall_confidence,
            "total_duration_ms": trace.total_duration_ms,
            "tables": list(retrieval.details.get("tables", [])) if retrieval else [],
            "template": template.details.get("template_key") if template else None,
            "error": trace.error,
        }
        if trace.successful:
            self.logger.info(json.dumps(log_entry, default=str))
        else:
            self.logger.warning(json.dumps(log_entry, default=str))


# Global audit logger
_audit_logger: Optional[TraceAuditLogger] = None


def get_audit_logger(log_file: Optional[str] = None) -> TraceAuditLogger:
    """Get global audit logger."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = TraceAuditLogger(log_file=log_file)
    return _audit_logger
