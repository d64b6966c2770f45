# models.py
"""
Data models used by the scanner.

- Keep simple, serializable dataclasses for findings and reports.
- Finding and SourceUnit are immutable; ScanReport only grows (append-only).
- ScanReport.exit_code() is the single build-breaking policy used by every
  exporter and by the CLI.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from config import TOOL_NAME, TOOL_VERSION
from scanner.ast_nodes import Node, ParseError

INTERNAL_RULE_ID = "ENGINE-RULE-001"

EXIT_CLEAN = 0
EXIT_CRITICAL = 1
EXIT_HIGH = 2
EXIT_INTERNAL_ERROR = 3


class Severity(Enum):
    """
    Finding severity, ordered CRITICAL > HIGH > MEDIUM.
    """
    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @property
    def sarif_level(self) -> str:
        return _SARIF_LEVEL[self]

    @classmethod
    def parse(cls, name: str) -> "Severity":
        """
        Accept severity names (critical/high/medium), SARIF levels
        (error/warning/note) and 'warn'.
        """
        key = (name or "").strip().lower()
        try:
            return _SEVERITY_ALIASES[key]
        except KeyError:
            raise ValueError(f"Unknown severity: {name!r}") from None

    def __ge__(self, other: "Severity") -> bool:
        return self.rank >= other.rank

    def __gt__(self, other: "Severity") -> bool:
        return self.rank > other.rank

    def __le__(self, other: "Severity") -> bool:
        return self.rank <= other.rank

    def __lt__(self, other: "Severity") -> bool:
        return self.rank < other.rank


_SEVERITY_RANK = {Severity.CRITICAL: 3, Severity.HIGH: 2, Severity.MEDIUM: 1}
_SARIF_LEVEL = {Severity.CRITICAL: "error", Severity.HIGH: "warning", Severity.MEDIUM: "note"}
_SEVERITY_ALIASES = {
    "critical": Severity.CRITICAL,
    "error": Severity.CRITICAL,
    "high": Severity.HIGH,
    "warning": Severity.HIGH,
    "medium": Severity.MEDIUM,
    "warn": Severity.MEDIUM,
    "note": Severity.MEDIUM,
}


@dataclass(frozen=True)
class Finding:
    """
    Represents a single diagnostic produced by a rule.

    Fields:
    - rule_id: stable identifier of the rule (e.g. "PS-SECRET-001")
    - severity: Severity
    - file_path: path of the scanned script
    - line / column: 1-based location of the offending node
    - message: short human-readable description
    - suggested_fix: optional remediation hint
    """
    rule_id: str
    severity: Severity
    file_path: str
    line: int
    column: int
    message: str
    suggested_fix: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ruleId": self.rule_id,
            "severity": self.severity.value,
            "filePath": self.file_path,
            "line": self.line,
            "column": self.column,
            "message": self.message,
            "suggestedFix": self.suggested_fix,
        }


@dataclass(frozen=True)
class SourceUnit:
    """
    A script file: path, raw text and a lazily-built, cached AST.
    """
    path: str
    text: str
    _parsed: List[Tuple[Node, List[ParseError]]] = field(
        default_factory=list, init=False, repr=False, compare=False
    )

    @classmethod
    def from_file(cls, path: str) -> "SourceUnit":
        with open(path, "r", encoding="utf-8-sig", errors="replace") as fh:
            return cls(path=path, text=fh.read())

    def _parse(self) -> Tuple[Node, List[ParseError]]:
        if not self._parsed:
            from scanner.powershell import parse

            tree, errors = parse(self.text)
            errors = [e.with_path(self.path) for e in errors]
            self._parsed.append((tree, errors))
        return self._parsed[0]

    @property
    def ast(self) -> Node:
        return self._parse()[0]

    @property
    def parse_errors(self) -> List[ParseError]:
        return list(self._parse()[1])


@dataclass
class ScanReport:
    """
    Aggregated result of one scan invocation.

    Findings can only be appended; the `findings` view is a tuple.
    """
    target: str
    tool_name: str = TOOL_NAME
    tool_version: str = TOOL_VERSION
    started_at: str = ""
    duration_seconds: float = 0.0
    files_scanned: List[str] = field(default_factory=list)
    files_skipped: List[str] = field(default_factory=list)
    parse_errors: List[ParseError] = field(default_factory=list)
    timed_out: bool = False
    _findings: List[Finding] = field(default_factory=list, repr=False)

    @property
    def findings(self) -> Tuple[Finding, ...]:
        return tuple(self._findings)

    def add(self, finding: Finding) -> None:
        self._findings.append(finding)

    def extend(self, findings: Iterable[Finding]) -> None:
        self._findings.extend(findings)

    def summary(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in Severity}
        for f in self._findings:
            counts[f.severity.value] += 1
        return counts

    @property
    def internal_errors(self) -> List[Finding]:
        return [f for f in self._findings if f.rule_id == INTERNAL_RULE_ID]

    def exit_code(self) -> int:
        """
        0: no Critical/High findings, 1: any Critical, 2: High only,
        3: a rule faulted and the scan is incomplete.
        """
        real = [f for f in self._findings if f.rule_id != INTERNAL_RULE_ID]
        if any(f.severity is Severity.CRITICAL for f in real):
            return EXIT_CRITICAL
        if self.internal_errors:
            return EXIT_INTERNAL_ERROR
        if any(f.severity is Severity.HIGH for f in real):
            return EXIT_HIGH
        return EXIT_CLEAN

    def metadata(self, include_timing: bool = True) -> Dict[str, Any]:
        meta: Dict[str, Any] = {
            "target": self.target,
            "toolName": self.tool_name,
            "toolVersion": self.tool_version,
            "filesScanned": len(self.files_scanned),
            "filesSkipped": list(self.files_skipped),
            "timedOut": self.timed_out,
            "parseErrors": [e.to_dict() for e in self.parse_errors],
            "ruleExecutionErrors": len(self.internal_errors),
        }
        if include_timing:
            meta["startedAt"] = self.started_at
            meta["durationSeconds"] = round(self.duration_seconds, 3)
        return meta

    def to_dict(self, include_timing: bool = True) -> Dict[str, Any]:
        summary = self.summary()
        summary["Total"] = len(self._findings)
        summary["ExitCode"] = self.exit_code()
        return {
            "scanMetadata": self.metadata(include_timing=include_timing),
            "summary": summary,
            "allFindings": [f.to_dict() for f in self._findings],
        }
