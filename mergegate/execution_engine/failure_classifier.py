"""
Failure Classification

Ordered signature matching over a failing job's log excerpt. Rules are
evaluated in priority order and the first match wins, so a log that mentions
both a CVE and a lint error is always treated as a security failure.
"""

import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, List, Mapping, Optional, Pattern, Tuple

import structlog

from mergegate.core.config import INFRASTRUCTURE_TIMEOUT_ESCALATION

from .merge_types import FailureCategory, FailureKind, FixConfidence, Severity

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ClassificationRule:
    """Signature patterns for one failure kind"""

    kind: FailureKind
    patterns: Tuple[Pattern[str], ...]

    def search(self, text: str) -> Optional[re.Match]:
        for pattern in self.patterns:
            match = pattern.search(text)
            if match:
                return match
        return None


def _rule(kind: FailureKind, *patterns: str) -> ClassificationRule:
    return ClassificationRule(
        kind=kind,
        patterns=tuple(re.compile(p, re.IGNORECASE | re.MULTILINE) for p in patterns),
    )


# kind -> (auto_fixable, confidence, severity)
CLASSIFICATION_POLICY: Mapping[FailureKind, Tuple[bool, FixConfidence, Severity]] = MappingProxyType(
    {
        FailureKind.SECURITY: (False, FixConfidence.HIGH, Severity.CRITICAL),
        FailureKind.LINT: (True, FixConfidence.HIGH, Severity.LOW),
        FailureKind.TYPE: (True, FixConfidence.MEDIUM, Severity.MEDIUM),
        FailureKind.TEST: (True, FixConfidence.LOW, Severity.HIGH),
        FailureKind.BUILD: (True, FixConfidence.MEDIUM, Severity.HIGH),
        FailureKind.DEPENDENCY: (True, FixConfidence.MEDIUM, Severity.HIGH),
        FailureKind.INFRASTRUCTURE: (True, FixConfidence.LOW, Severity.MEDIUM),
        FailureKind.UNKNOWN: (False, FixConfidence.NOT_APPLICABLE, Severity.MEDIUM),
    }
)

CLASSIFICATION_RULES: Tuple[ClassificationRule, ...] = (
    _rule(
        FailureKind.SECURITY,
        r"\bCVE-\d{4}-\d{4,}\b",
        r"\bGHSA(?:-[23456789cfghjmpqrvwx]{4}){3}\b",
        r"\bvulnerabilit(?:y|ies)\b",
        r"\b(?:secret|credential|api[ _-]?key|private key|token)s? (?:detected|leaked|exposed|found)\b",
        r"\b(?:gitleaks|trufflehog|detect-secrets|snyk|pip-audit|npm audit|safety check)\b",
        r"\bbandit\b.*\bIssue:",
    ),
    _rule(
        FailureKind.LINT,
        r"\b(?:ruff|flake8|pylint|eslint|stylelint|golangci-lint|rubocop|shellcheck)\b",
        r"would reformat\b",
        r"\bprettier\b.*\b(?:check|formatting|code style)",
        r"\bisort\b.*\b(?:incorrectly sorted|imports are incorrectly)",
        r"^\S+\.py:\d+:\d+: [EFW]\d{3}\b",
        r"\blint(?:ing)? (?:error|failed)",
    ),
    _rule(
        FailureKind.TYPE,
        r"\bmypy\b",
        r"^\S+\.pyi?:\d+: error: .*\[[a-z-]+\]$",
        r"\bFound \d+ errors? in \d+ files? \(checked",
        r"\berror TS\d{4}\b",
        r"\bpyright\b",
        r"\bis not assignable to (?:type|parameter)\b",
        r"\bIncompatible (?:types|return value type)\b",
    ),
    _rule(
        FailureKind.TEST,
        r"^FAILED \S+::",
        r"=+ .*\b\d+ failed\b",
        r"\bAssertionError\b",
        r"^Tests:\s+.*\d+ failed",
        r"^--- FAIL:",
        r"\btest(?:s| suite)? failed\b",
        r"^FAIL\s+\S+\.(?:test|spec)\.[jt]sx?",
    ),
    _rule(
        FailureKind.BUILD,
        r"\bModuleNotFoundError\b",
        r"\bImportError\b",
        r"\bSyntaxError\b",
        r"\bcannot find module\b",
        r"\bmodule not found\b",
        r"\bcompilation (?:failed|error)",
        r"\berror\[E\d{4}\]",
        r"\bBUILD FAILED\b",
        r"\bundefined reference to\b",
    ),
    _rule(
        FailureKind.DEPENDENCY,
        r"\bResolutionImpossible\b",
        r"Could not find a version that satisfies the requirement",
        r"No matching distribution found",
        r"\bERESOLVE\b",
        r"\bversion solving failed\b",
        r"\bconflicting dependencies\b",
        r"lock ?file .*(?:out of date|out-of-date|not up to date)",
        r"\bpoetry\.lock\b.*\bnot consistent\b",
    ),
    _rule(
        FailureKind.INFRASTRUCTURE,
        r"\brate limit(?:ed)?\b",
        r"\bAPI rate limit exceeded\b",
        r"\b(?:ECONNRESET|ETIMEDOUT|ECONNREFUSED)\b",
        r"\bconnection (?:reset|refused|timed out)\b",
        r"\b(?:502 Bad Gateway|503 Service Unavailable|504 Gateway Time-?out)\b",
        r"\bTemporary failure in name resolution\b",
        r"\bnetwork is unreachable\b",
        r"\bNo space left on device\b",
        r"\blost communication with the server\b",
        r"\bhas exceeded the maximum execution time\b",
        r"\bThe operation was canceled\b",
        r"\b(?:timed out|timeout)\b",
    ),
)

_TIMEOUT_SIGNATURES = re.compile(
    r"\b(?:timed out|timeout|ETIMEDOUT|Gateway Time-?out|exceeded the maximum execution time)\b",
    re.IGNORECASE,
)

_FILE_PATTERNS = (
    re.compile(r'File "([^"]+)"'),
    re.compile(
        r"(?<![\w/.:-])((?:\.{1,2}/)?[\w.-]+(?:/[\w.-]+)*\."
        r"(?:py|pyi|js|jsx|ts|tsx|go|rs|java|rb|c|h|cpp|toml|cfg|json|ya?ml|lock))"
        r"(?=[:\s(\"',]|$)"
    ),
)
_MAX_FILES = 50


def extract_files(log_excerpt: str) -> List[str]:
    """Source files named in a log, in order of first appearance."""
    seen: List[str] = []
    for pattern in _FILE_PATTERNS:
        for match in pattern.finditer(log_excerpt):
            path = match.group(1)
            if "://" in path or path.startswith("/"):
                # Absolute paths point into the runner (site-packages, toolcache)
                continue
            if path.startswith("./"):
                path = path[2:]
            if len(path) > 3 and path not in seen:
                seen.append(path)
            if len(seen) >= _MAX_FILES:
                return seen
    return seen


def category_for(
    kind: FailureKind,
    signature: Optional[str] = None,
    files: Iterable[str] = (),
    is_timeout: bool = False,
) -> FailureCategory:
    auto_fixable, confidence, severity = CLASSIFICATION_POLICY[kind]
    return FailureCategory(
        kind=kind,
        auto_fixable=auto_fixable,
        confidence=confidence,
        severity=severity,
        signature=signature,
        is_timeout=is_timeout,
        files=list(files),
    )


def classify(log_excerpt: Optional[str]) -> FailureCategory:
    """Classify a failing job's log excerpt; the first matching rule wins."""
    text = log_excerpt or ""
    files = extract_files(text)

    for rule in CLASSIFICATION_RULES:
        match = rule.search(text)
        if match is None:
            continue
        is_timeout = rule.kind == FailureKind.INFRASTRUCTURE and bool(
            _TIMEOUT_SIGNATURES.search(text)
        )
        category = category_for(rule.kind, match.group(0).strip()[:200], files, is_timeout)
        logger.info(
            "merge.failure_classified",
            kind=category.kind.value,
            signature=category.signature,
            files=len(files),
            is_timeout=is_timeout,
        )
        return category

    logger.info("merge.failure_classified", kind=FailureKind.UNKNOWN.value, files=len(files))
    return category_for(FailureKind.UNKNOWN, None, files)


def requires_human(category: FailureCategory, require_human_for: Iterable[str]) -> bool:
    """Whether a failure must be escalated instead of auto-fixed."""
    escalate = set(require_human_for)
    if category.kind == FailureKind.SECURITY:
        return True
    if not category.auto_fixable:
        return True
    if category.kind.value in escalate:
        return True
    if (
        category.kind == FailureKind.INFRASTRUCTURE
        and category.is_timeout
        and INFRASTRUCTURE_TIMEOUT_ESCALATION in escalate
    ):
        return True
    return False
