# main.py
"""
CLI entrypoint.

- Supports two commands:
  * scan: static analysis of PowerShell deployment scripts
  * test: run the verification suites against the in-memory backend
- scan writes JSON, SARIF, HTML, and CSV reports and prints a colorful
  summary; its exit code is the build-breaking policy (0/1/2/3).
"""

import argparse
import logging
import sys
from typing import List, Optional

from audit import configure_audit_log, get_audit_log
from config import DEFAULT_AUDIT_LOG, DEFAULT_MAX_WORKERS, DEFAULT_REPORT_DIR, DEFAULT_SCAN_TIMEOUT, \
    RuleConfig, env_setting, load_rule_config, resolve_float, resolve_int
from errors import ConfigurationError
from models import EXIT_INTERNAL_ERROR, Severity
from orchestrator import CATEGORIES, EXIT_EXECUTION_ERROR, Orchestrator, print_summary, write_junit_xml
from scanner.engine import RuleEngine
from utils import REPORT_FORMATS, print_report, save_report

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("scriptguard")

SCAN_FORMATS = ("console",) + REPORT_FORMATS + ("all",)


def parse_min_severity(value: Optional[str]) -> Severity:
    """
    --severity takes a comma-separated list (critical,high or error,warning);
    the lowest listed severity is the reporting threshold, so critical,medium
    also reports high findings.
    """
    if not value:
        return Severity.MEDIUM
    try:
        levels = [Severity.parse(v) for v in value.split(",") if v.strip()]
    except ValueError as e:
        raise ConfigurationError(str(e)) from e
    if not levels:
        raise ConfigurationError(f"No severities given in {value!r}")
    return min(levels)


def run_scan(path: str, formats: List[str], severity: Optional[str] = None, out_dir: str = DEFAULT_REPORT_DIR,
             config_path: Optional[str] = None, workers: Optional[int] = None,
             timeout: Optional[float] = None) -> int:
    """
    Scan path and write the requested reports. Returns the exit code.
    """
    config_path = config_path or env_setting("RULE_CONFIG")
    rule_config = load_rule_config(config_path) if config_path else RuleConfig()
    workers = resolve_int(workers, "WORKERS", DEFAULT_MAX_WORKERS)
    timeout = resolve_float(timeout, "TIMEOUT", DEFAULT_SCAN_TIMEOUT)
    min_severity = parse_min_severity(severity)

    logger.info("Scanning %s (min severity %s)", path, min_severity.value)
    engine = RuleEngine(rule_config=rule_config)
    report = engine.scan([path], min_severity=min_severity, max_workers=workers, timeout=timeout)

    wanted = set(REPORT_FORMATS) if "all" in formats else {f for f in formats if f in REPORT_FORMATS}
    report_paths = {}
    if wanted:
        report_paths = save_report(report, [f for f in REPORT_FORMATS if f in wanted], out_dir=out_dir,
                                   rules=[r for r, _ in engine.active_rules()])
    if "console" in formats or "all" in formats:
        return print_report(report, report_paths=report_paths)
    for fmt, report_path in report_paths.items():
        logger.info("Saved %s report: %s", fmt.upper(), report_path)
    return report.exit_code()


def run_test(category: str = "all", fmt: str = "console", out: Optional[str] = None, coverage: bool = False,
             tests_dir: str = "tests", scripts: Optional[List[str]] = None) -> int:
    orchestrator = Orchestrator(tests_dir=tests_dir, scripts=scripts)
    summary = orchestrator.run(category=category, coverage=coverage)
    if fmt == "xml":
        path = write_junit_xml(summary, out or "reports/test-results.xml")
        logger.info("Saved JUnit XML: %s", path)
    else:
        print_summary(summary)
    return summary.exit_code


def parse_args(argv: Optional[List[str]] = None):
    p = argparse.ArgumentParser(
        description="Security scanner and test harness for PowerShell deployment scripts."
    )
    p.add_argument(
        "--audit-log",
        default=env_setting("AUDIT_LOG", DEFAULT_AUDIT_LOG),
        help=f"Append-only audit log of internal errors (default: {DEFAULT_AUDIT_LOG})",
    )
    sub = p.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Statically analyse scripts")
    scan.add_argument("path", nargs="?", default=".", help="File or directory to scan (default: .)")
    scan.add_argument(
        "--format",
        action="append",
        choices=SCAN_FORMATS,
        help="Output format; repeat for several (default: console)",
    )
    scan.add_argument(
        "--severity",
        help="Comma-separated severities, e.g. critical,high or error,warning. The lowest one listed is a "
             "minimum: every finding at or above it is reported",
    )
    scan.add_argument(
        "--out",
        default=DEFAULT_REPORT_DIR,
        help=f"Directory to save reports (default: {DEFAULT_REPORT_DIR})",
    )
    scan.add_argument("--config", help="YAML rule configuration file")
    scan.add_argument("--workers", type=int, help=f"Parallel workers (default: {DEFAULT_MAX_WORKERS})")
    scan.add_argument("--timeout", type=float, help=f"Overall scan timeout in seconds (default: {DEFAULT_SCAN_TIMEOUT})")

    test = sub.add_parser("test", help="Run the verification suites")
    test.add_argument("--type", choices=CATEGORIES, default="all", help="Test category (default: all)")
    test.add_argument("--format", choices=["console", "xml"], default="console", help="Output format")
    test.add_argument("--out", help="JUnit XML path (xml format)")
    test.add_argument("--coverage", action="store_true", help="Collect coverage with pytest-cov")
    test.add_argument("--tests-dir", default="tests", help="Directory containing the test suites")
    test.add_argument("--scripts", action="append", help="Scripts or directories for the syntax suite")
    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    configure_audit_log(args.audit_log)
    try:
        if args.command == "scan":
            return run_scan(
                args.path,
                args.format or ["console"],
                severity=args.severity,
                out_dir=args.out,
                config_path=args.config,
                workers=args.workers,
                timeout=args.timeout,
            )
        return run_test(
            category=args.type,
            fmt=args.format,
            out=args.out,
            coverage=args.coverage,
            tests_dir=args.tests_dir,
            scripts=args.scripts,
        )
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e.message)
        get_audit_log().record_error(e, command=args.command)
        return EXIT_INTERNAL_ERROR
    except Exception as e:
        logger.exception("Unexpected error")
        get_audit_log().record_error(e, command=args.command)
        return EXIT_INTERNAL_ERROR if args.command == "scan" else EXIT_EXECUTION_ERROR


if __name__ == "__main__":
    sys.exit(main())
