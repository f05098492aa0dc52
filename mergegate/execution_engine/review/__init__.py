"""
Review bot findings

Adapters that normalize CodeRabbit, Qodo and Codacy output into tagged
ReviewFinding records used by the merge verification gate.
"""

from .review_types import (
    SEVERITY_RANK,
    ReviewFinding,
    ReviewSeverity,
    ReviewSource,
    blocking_findings,
)
from .finding_adapters import (
    DEFAULT_ADAPTERS,
    CodacyAdapter,
    CodeRabbitAdapter,
    QodoAdapter,
    ReviewFindingAdapter,
    parse_review_findings,
)

__all__ = [
    "SEVERITY_RANK",
    "ReviewFinding",
    "ReviewSeverity",
    "ReviewSource",
    "blocking_findings",
    "DEFAULT_ADAPTERS",
    "CodacyAdapter",
    "CodeRabbitAdapter",
    "QodoAdapter",
    "ReviewFindingAdapter",
    "parse_review_findings",
]
