# scanner/engine.py
"""
Rule engine: discovers scripts, runs every enabled rule on each one and
aggregates the results into a ScanReport.

- Files are scanned concurrently with a bounded thread pool; results are
  assembled in sorted path order, so output is deterministic.
- A rule that raises never aborts the scan: the fault becomes an
  ENGINE-RULE-001 finding, is logged and is written to the audit log.
- A global timeout returns the partial report with timed_out set and the
  unscanned files listed as skipped.
"""

import fnmatch
import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence, Tuple

from audit import AuditLog, get_audit_log
from config import DEFAULT_MAX_WORKERS, DEFAULT_SCAN_TIMEOUT, SCRIPT_EXTENSIONS, RuleConfig
from errors import ConfigurationError, RuleExecutionError
from models import INTERNAL_RULE_ID, Finding, ScanReport, Severity, SourceUnit
from scanner.ast_nodes import ParseError
from scanner.rules import DEFAULT_REGISTRY, Rule, RuleContext, RuleRegistry
from scanner.whitelist import IdentityWhitelist

logger = logging.getLogger(__name__)


def discover_scripts(paths: Iterable[str], exclude_patterns: Sequence[str] = ()) -> List[str]:
    """
    Expand files and directories into a sorted list of script paths.
    Raises ConfigurationError for a path that does not exist.
    """
    found = set()
    for path in paths:
        if os.path.isfile(path):
            found.add(os.path.normpath(path))
            continue
        if not os.path.isdir(path):
            raise ConfigurationError(f"Scan target not found: {path}", details={"path": path})
        for root, dirs, files in os.walk(path):
            dirs.sort()
            for name in files:
                if name.lower().endswith(SCRIPT_EXTENSIONS):
                    found.add(os.path.normpath(os.path.join(root, name)))
    return sorted(p for p in found if not _excluded(p, exclude_patterns))


def _excluded(path: str, patterns: Sequence[str]) -> bool:
    posix = path.replace(os.sep, "/")
    return any(fnmatch.fnmatch(posix, p) or fnmatch.fnmatch(os.path.basename(path), p) for p in patterns)


class RuleEngine:
    def __init__(self, registry: Optional[RuleRegistry] = None,
                 rule_config: Optional[RuleConfig] = None,
                 whitelist: Optional[IdentityWhitelist] = None,
                 audit_log: Optional[AuditLog] = None):
        self.registry = registry if registry is not None else DEFAULT_REGISTRY
        self.rule_config = rule_config or RuleConfig()
        if whitelist is None:
            whitelist = IdentityWhitelist(extra_patterns=self.rule_config.whitelist_patterns)
            whitelist.known_templates |= {t.lower() for t in self.rule_config.known_templates}
        self.whitelist = whitelist
        self._audit_log = audit_log

    @property
    def audit_log(self) -> AuditLog:
        return self._audit_log or get_audit_log()

    def active_rules(self) -> List[Tuple[Rule, Severity]]:
        """
        Enabled rules in registration order, each with its effective severity.
        """
        active = []
        for r in self.registry.rules:
            if not self.rule_config.is_enabled(r.rule_id):
                continue
            override = self.rule_config.severity_override(r.rule_id)
            try:
                severity = Severity.parse(override) if override else r.severity
            except ValueError as e:
                raise ConfigurationError(f"Invalid severity for {r.rule_id}: {override!r}") from e
            active.append((r, severity))
        return active

    def run_all(self, unit: SourceUnit, min_severity: Severity = Severity.MEDIUM) -> List[Finding]:
        """
        Run every active rule over unit. Findings are grouped per rule in
        registration order and sorted by position within each rule.
        """
        findings: List[Finding] = []
        for r, severity in self.active_rules():
            ctx = RuleContext(rule=r, severity=severity, whitelist=self.whitelist)
            try:
                produced = r.check(ctx, unit)
            except Exception as e:
                findings.append(self._internal_error(r, unit, e))
                continue
            produced = sorted(produced, key=lambda f: (f.line, f.column))
            findings.extend(f for f in produced if f.severity >= min_severity)
        return findings

    def _internal_error(self, r: Rule, unit: SourceUnit, cause: Exception) -> Finding:
        error = RuleExecutionError(r.rule_id, unit.path, cause)
        logger.error("%s", error.message)
        self.audit_log.record_error(error)
        return Finding(
            rule_id=INTERNAL_RULE_ID,
            severity=Severity.HIGH,
            file_path=unit.path,
            line=1,
            column=1,
            message=error.message,
            suggested_fix="The scan of this file is incomplete; report the failure to the rule maintainers.",
        )

    def scan_unit(self, unit: SourceUnit, min_severity: Severity = Severity.MEDIUM
                  ) -> Tuple[List[Finding], List[ParseError]]:
        errors = unit.parse_errors
        for e in errors:
            logger.warning("%s", e)
        return self.run_all(unit, min_severity), errors

    def _scan_file(self, path: str, min_severity: Severity) -> Tuple[List[Finding], List[ParseError]]:
        return self.scan_unit(SourceUnit.from_file(path), min_severity)

    def scan_source(self, text: str, path: str = "<memory>",
                    min_severity: Severity = Severity.MEDIUM) -> ScanReport:
        """
        Scan a script held in memory.
        """
        report = ScanReport(target=path, started_at=_now())
        start = time.monotonic()
        findings, errors = self.scan_unit(SourceUnit(path=path, text=text), min_severity)
        report.extend(findings)
        report.parse_errors.extend(errors)
        report.files_scanned.append(path)
        report.duration_seconds = time.monotonic() - start
        return report

    def scan(self, paths: Sequence[str], min_severity: Severity = Severity.MEDIUM,
             max_workers: int = DEFAULT_MAX_WORKERS,
             timeout: Optional[float] = DEFAULT_SCAN_TIMEOUT) -> ScanReport:
        """
        Scan files and directories.

        Raises ConfigurationError when a target is missing or the rule
        configuration is invalid. Parse errors are reported, not raised.
        """
        if isinstance(paths, str):
            paths = [paths]
        files = discover_scripts(paths, self.rule_config.exclude_paths)
        self.active_rules()
        report = ScanReport(target=", ".join(paths), started_at=_now())
        start = time.monotonic()
        logger.info("Scanning %d file(s) with %d worker(s)", len(files), max_workers)

        executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="scan")
        futures = {executor.submit(self._scan_file, path, min_severity): path for path in files}
        try:
            done, pending = wait(futures, timeout=timeout)
        finally:
            # running rules cannot be interrupted; their results are discarded
            executor.shutdown(wait=False, cancel_futures=True)

        for future, path in futures.items():
            if future not in done:
                report.files_skipped.append(path)
                continue
            try:
                findings, errors = future.result()
            except OSError as e:
                logger.error("Could not read %s: %s", path, e)
                report.files_skipped.append(path)
                continue
            report.files_scanned.append(path)
            report.extend(findings)
            report.parse_errors.extend(errors)

        if pending:
            report.timed_out = True
            logger.warning("Scan timed out after %.1fs; %d file(s) not scanned", timeout or 0.0, len(pending))
            self.audit_log.record("scan_timeout", timeout=timeout, skipped=report.files_skipped)

        report.duration_seconds = time.monotonic() - start
        return report


def _now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()
