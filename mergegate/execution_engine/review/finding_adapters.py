"""
Review Finding Adapters

One adapter per review bot. Each adapter recognizes the raw payloads its
bot produces (GitHub PR comments, or Codacy API issue records) and turns
them into ReviewFinding objects. parse_review_findings() dispatches a batch
of raw comments to the first adapter that claims each one.
"""

import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Sequence

import structlog

from .review_types import ReviewFinding, ReviewSeverity, ReviewSource

logger = structlog.get_logger(__name__)

_BOLD_TITLE = re.compile(r"\*\*(.+?)\*\*")
_HTML_TAG = re.compile(r"<[^>]+>")


def _login(comment: Dict[str, Any]) -> str:
    user = comment.get("user") or comment.get("author") or {}
    if isinstance(user, dict):
        return str(user.get("login") or "").lower()
    return str(user).lower()


def _line(comment: Dict[str, Any]) -> Optional[int]:
    for key in ("line", "original_line", "lineNumber", "position"):
        value = comment.get(key)
        if isinstance(value, int):
            return value
    return None


def _first_text_line(text: str) -> str:
    for raw in text.splitlines():
        line = _HTML_TAG.sub("", raw).strip(" #*_>`-\t")
        if line:
            return line[:200]
    return ""


class ReviewFindingAdapter(ABC):
    """Base adapter: subclasses declare their bot logins and parse one comment."""

    source: ReviewSource
    bot_logins: Sequence[str] = ()

    def matches(self, raw: Any) -> bool:
        if not isinstance(raw, dict):
            return False
        return _login(raw) in self.bot_logins

    @abstractmethod
    def parse(self, raw: Dict[str, Any]) -> List[ReviewFinding]: ...

    def _finding(
        self,
        raw: Dict[str, Any],
        severity: ReviewSeverity,
        title: str,
        body: Optional[str] = None,
        **payload: Any,
    ) -> ReviewFinding:
        return ReviewFinding(
            source=self.source,
            severity=severity,
            title=title or "(untitled finding)",
            body=body if body is not None else str(raw.get("body") or ""),
            file_path=raw.get("path") or raw.get("filePath"),
            line=_line(raw),
            payload={"comment_id": raw.get("id"), "url": raw.get("html_url"), **payload},
        )


class CodeRabbitAdapter(ReviewFindingAdapter):
    """
    CodeRabbit inline review comments.

    Comments open with an italic tag line such as ``_⚠️ Potential issue_`` and
    newer versions append an explicit level (``_🔴 Critical_``, ``_🟠 Major_``).
    """

    source = ReviewSource.CODERABBIT
    bot_logins = ("coderabbitai[bot]", "coderabbitai")

    # Explicit levels win over the comment kind
    _LEVEL_MARKERS = [
        (re.compile(r"🔴\s*Critical|🔒\s*Security", re.IGNORECASE), ReviewSeverity.CRITICAL),
        (re.compile(r"🟠\s*Major", re.IGNORECASE), ReviewSeverity.MAJOR),
        (re.compile(r"🟡\s*Minor", re.IGNORECASE), ReviewSeverity.MINOR),
        (re.compile(r"🔵\s*Trivial", re.IGNORECASE), ReviewSeverity.INFO),
    ]
    _KIND_MARKERS = [
        (re.compile(r"⚠️\s*Potential issue", re.IGNORECASE), ReviewSeverity.MAJOR),
        (re.compile(r"🛠️\s*Refactor suggestion", re.IGNORECASE), ReviewSeverity.MINOR),
        (re.compile(r"🧹\s*Nitpick", re.IGNORECASE), ReviewSeverity.INFO),
        (re.compile(r"💡\s*Verification agent", re.IGNORECASE), ReviewSeverity.INFO),
    ]

    def parse(self, raw: Dict[str, Any]) -> List[ReviewFinding]:
        body = str(raw.get("body") or "")
        severity = self._severity(body)
        if severity is None:
            # Walkthrough / summary comments carry no finding
            return []
        title_match = _BOLD_TITLE.search(body)
        title = title_match.group(1).strip() if title_match else _first_text_line(body)
        return [self._finding(raw, severity, title)]

    def _severity(self, body: str) -> Optional[ReviewSeverity]:
        for pattern, severity in self._LEVEL_MARKERS:
            if pattern.search(body):
                return severity
        for pattern, severity in self._KIND_MARKERS:
            if pattern.search(body):
                return severity
        return None


class QodoAdapter(ReviewFindingAdapter):
    """
    Qodo Merge reviewer guide and code suggestion comments.

    Suggestions carry ``Suggestion importance[1-10]: N``; the reviewer guide
    carries a ``🔒 Security concerns`` row that reads "No" when clean.
    """

    source = ReviewSource.QODO
    bot_logins = ("qodo-merge-pro[bot]", "qodo-merge[bot]", "qodo-code-review[bot]")

    _IMPORTANCE = re.compile(r"importance(?:\[1-10\])?\s*:\s*(\d+)", re.IGNORECASE)
    _SECURITY = re.compile(
        r"🔒\s*(?:<strong>)?\s*Security concerns\s*(?:</strong>)?\s*[:\n]*\s*(.+)",
        re.IGNORECASE,
    )
    _SUMMARY = re.compile(r"<summary>(.*?)</summary>(.*?)(?=<summary>|\Z)", re.DOTALL)

    def parse(self, raw: Dict[str, Any]) -> List[ReviewFinding]:
        body = str(raw.get("body") or "")
        findings: List[ReviewFinding] = []

        security = self._SECURITY.search(body)
        if security:
            concern = _HTML_TAG.sub("", security.group(1)).strip(" *:\t")
            if concern and not concern.lower().startswith("no"):
                findings.append(
                    self._finding(
                        raw,
                        ReviewSeverity.CRITICAL,
                        f"Security concern: {concern[:160]}",
                        kind="security_concern",
                    )
                )

        sections = self._SUMMARY.findall(body)
        if sections:
            for summary, section in sections:
                match = self._IMPORTANCE.search(section)
                if not match:
                    continue
                importance = int(match.group(1))
                findings.append(
                    self._finding(
                        raw,
                        self.severity_for_importance(importance),
                        _first_text_line(summary),
                        body=section.strip(),
                        importance=importance,
                    )
                )
        else:
            match = self._IMPORTANCE.search(body)
            if match:
                importance = int(match.group(1))
                findings.append(
                    self._finding(
                        raw,
                        self.severity_for_importance(importance),
                        _first_text_line(body),
                        importance=importance,
                    )
                )
        return findings

    @staticmethod
    def severity_for_importance(importance: int) -> ReviewSeverity:
        if importance >= 9:
            return ReviewSeverity.CRITICAL
        if importance >= 7:
            return ReviewSeverity.MAJOR
        if importance >= 4:
            return ReviewSeverity.MINOR
        return ReviewSeverity.INFO


class CodacyAdapter(ReviewFindingAdapter):
    """
    Codacy findings, either as API issue records (``patternInfo``) or as
    comments from the Codacy bot.
    """

    source = ReviewSource.CODACY
    bot_logins = ("codacy-production[bot]", "codacy-bot")

    _LEVELS = {
        "error": ReviewSeverity.MAJOR,
        "high": ReviewSeverity.MAJOR,
        "critical": ReviewSeverity.CRITICAL,
        "warning": ReviewSeverity.MINOR,
        "medium": ReviewSeverity.MINOR,
        "info": ReviewSeverity.INFO,
        "low": ReviewSeverity.INFO,
    }
    _COMMENT_LEVEL = re.compile(r"\b(Critical|Error|High|Warning|Medium|Info|Low)\b")

    def matches(self, raw: Any) -> bool:
        if isinstance(raw, dict) and isinstance(raw.get("patternInfo"), dict):
            return True
        return super().matches(raw)

    def parse(self, raw: Dict[str, Any]) -> List[ReviewFinding]:
        pattern = raw.get("patternInfo")
        if isinstance(pattern, dict):
            level = str(pattern.get("level") or pattern.get("severityLevel") or "info")
            category = str(pattern.get("category") or "")
            severity = self._severity(level, category)
            return [
                self._finding(
                    raw,
                    severity,
                    str(raw.get("message") or pattern.get("id") or ""),
                    body=str(raw.get("message") or ""),
                    pattern_id=pattern.get("id"),
                    category=category,
                    level=level,
                )
            ]

        body = str(raw.get("body") or "")
        match = self._COMMENT_LEVEL.search(body)
        if not match:
            return []
        category = "security" if re.search(r"\bsecurity\b", body, re.IGNORECASE) else ""
        return [
            self._finding(
                raw,
                self._severity(match.group(1), category),
                _first_text_line(body),
                category=category,
                level=match.group(1),
            )
        ]

    def _severity(self, level: str, category: str) -> ReviewSeverity:
        severity = self._LEVELS.get(level.strip().lower(), ReviewSeverity.INFO)
        if category.lower() == "security" and severity == ReviewSeverity.MAJOR:
            return ReviewSeverity.CRITICAL
        return severity


DEFAULT_ADAPTERS: List[ReviewFindingAdapter] = [
    CodeRabbitAdapter(),
    QodoAdapter(),
    CodacyAdapter(),
]


def parse_review_findings(
    comments: Iterable[Any],
    adapters: Optional[Sequence[ReviewFindingAdapter]] = None,
) -> List[ReviewFinding]:
    """Parse raw bot comments into findings; unrecognized comments are skipped."""
    active = list(adapters) if adapters is not None else DEFAULT_ADAPTERS
    findings: List[ReviewFinding] = []
    for raw in comments:
        adapter = next((a for a in active if a.matches(raw)), None)
        if adapter is None:
            continue
        parsed = adapter.parse(raw)
        findings.extend(parsed)

    if findings:
        logger.debug(
            "review.findings_parsed",
            count=len(findings),
            sources=sorted({f.source.value for f in findings}),
        )
    return findings
