"""
Review Types

Type definitions for findings posted by automated review bots on a pull
request. Each finding is tagged with the bot it came from so downstream
consumers never have to sniff comment shapes themselves.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ReviewSource(str, Enum):
    """Review bots with a dedicated adapter"""

    CODERABBIT = "coderabbit"
    QODO = "qodo"
    CODACY = "codacy"


class ReviewSeverity(str, Enum):
    INFO = "info"
    MINOR = "minor"
    MAJOR = "major"
    CRITICAL = "critical"


SEVERITY_RANK: Dict[ReviewSeverity, int] = {
    ReviewSeverity.INFO: 0,
    ReviewSeverity.MINOR: 1,
    ReviewSeverity.MAJOR: 2,
    ReviewSeverity.CRITICAL: 3,
}


class ReviewFinding(BaseModel):
    """A single finding reported by a review bot"""

    model_config = ConfigDict(frozen=True)

    source: ReviewSource = Field(description="Bot that reported the finding")
    severity: ReviewSeverity = Field(description="Normalized severity")
    title: str = Field(description="Short summary of the finding")
    body: str = Field(default="", description="Full finding text")
    file_path: Optional[str] = Field(default=None, description="File the finding is on")
    line: Optional[int] = Field(default=None, description="Line number for inline findings")
    payload: Dict[str, Any] = Field(
        default_factory=dict, description="Source-specific raw fields"
    )

    def at_least(self, threshold: ReviewSeverity) -> bool:
        return SEVERITY_RANK[self.severity] >= SEVERITY_RANK[threshold]


def blocking_findings(
    findings: List[ReviewFinding], threshold: Optional[ReviewSeverity]
) -> List[ReviewFinding]:
    """Findings at or above the blocking threshold (none when the gate is off)."""
    if threshold is None:
        return []
    return [finding for finding in findings if finding.at_least(threshold)]
