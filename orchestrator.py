# orchestrator.py
"""
Test orchestrator.

- Runs pytest in-process on a tests directory, selecting a category
  (syntax, unit, integration, all) by marker.
- A plugin resets the mock state store before every test case and collects
  pass/fail/skip results.
- A built-in syntax suite parses deployment scripts; every parse error is a
  failed case.
- Results go to a rich console table or a JUnit XML file; coverage comes
  from pytest-cov's Cobertura XML.

Exit codes: 0 all passed (or nothing collected), 1 any failure,
3 the run itself broke (usage error, internal error, interrupted).
"""

import logging
import os
import tempfile
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Sequence

import pytest
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.text import Text

from models import SourceUnit
from mock_backend.store import reset_store
from scanner.engine import discover_scripts

logger = logging.getLogger(__name__)

CATEGORIES = ("all", "unit", "integration", "syntax")
MARKERS = {
    "syntax": "script syntax checks",
    "unit": "isolated tests against the mock backend",
    "integration": "end-to-end scenarios across scanner and mock backend",
}

EXIT_PASSED = 0
EXIT_FAILED = 1
EXIT_EXECUTION_ERROR = 3

PASSED = "passed"
FAILED = "failed"
SKIPPED = "skipped"
ERROR = "error"


@dataclass
class CaseResult:
    name: str
    category: str
    outcome: str
    duration: float = 0.0
    message: str = ""
    classname: str = ""


@dataclass
class RunSummary:
    category: str
    results: List[CaseResult] = field(default_factory=list)
    exit_code: int = EXIT_PASSED
    coverage_percent: Optional[float] = None
    duration_seconds: float = 0.0
    pytest_exit_code: Optional[int] = None

    def count(self, outcome: str) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    @property
    def passed(self) -> int:
        return self.count(PASSED)

    @property
    def failed(self) -> int:
        return self.count(FAILED) + self.count(ERROR)

    @property
    def skipped(self) -> int:
        return self.count(SKIPPED)


def _category_of(keywords: Iterable[str]) -> str:
    names = set(keywords)
    for category in ("syntax", "integration", "unit"):
        if category in names:
            return category
    return "unmarked"


class StoreResetPlugin:
    """
    pytest plugin: registers the category markers, resets mock state before
    each test and records one CaseResult per test.
    """

    def __init__(self, reset: Callable[[], object] = reset_store):
        self.reset = reset
        self.resets = 0
        self.results: List[CaseResult] = []
        self.collection_errors: List[str] = []

    def pytest_configure(self, config):
        for name, description in MARKERS.items():
            config.addinivalue_line("markers", f"{name}: {description}")

    @pytest.hookimpl(tryfirst=True)
    def pytest_runtest_setup(self, item):
        self.reset()
        self.resets += 1

    def pytest_collectreport(self, report):
        if report.failed:
            self.collection_errors.append(f"{report.nodeid}: {report.longreprtext}")

    def pytest_runtest_logreport(self, report):
        message = report.longreprtext if report.failed else ""
        if report.when == "call":
            outcome = report.outcome
        elif report.when == "setup" and report.skipped:
            outcome = SKIPPED
            if isinstance(report.longrepr, tuple):
                message = str(report.longrepr[2])
        elif report.failed:
            # setup or teardown failure
            outcome = ERROR
        else:
            return
        module, _, name = report.nodeid.partition("::")
        self.results.append(CaseResult(
            name=name or report.nodeid,
            category=_category_of(report.keywords),
            outcome=outcome,
            duration=report.duration,
            message=message,
            classname=module,
        ))


def run_syntax_checks(scripts: Sequence[str], reset: Callable[[], object] = reset_store) -> List[CaseResult]:
    """
    Parse every script; one case per file, failed when it has parse errors.
    """
    results = []
    for path in discover_scripts(scripts):
        reset()
        start = time.monotonic()
        try:
            errors = SourceUnit.from_file(path).parse_errors
        except OSError as e:
            results.append(CaseResult(name=path, category="syntax", outcome=ERROR, message=str(e),
                                      classname="syntax"))
            continue
        results.append(CaseResult(
            name=path,
            category="syntax",
            outcome=FAILED if errors else PASSED,
            duration=time.monotonic() - start,
            message="\n".join(str(e) for e in errors),
            classname="syntax",
        ))
    return results


def read_coverage_percent(xml_path: str) -> Optional[float]:
    """
    Line coverage from a Cobertura XML report, as a percentage.
    """
    if not os.path.exists(xml_path):
        return None
    root = ET.parse(xml_path).getroot()
    rate = root.get("line-rate")
    return round(float(rate) * 100, 2) if rate is not None else None


class Orchestrator:
    def __init__(self, tests_dir: str = "tests", scripts: Optional[Sequence[str]] = None,
                 reset: Callable[[], object] = reset_store, coverage_source: str = "."):
        self.tests_dir = tests_dir
        self.scripts = list(scripts or [])
        self.reset = reset
        self.coverage_source = coverage_source

    def pytest_args(self, category: str, coverage_xml: Optional[str] = None) -> List[str]:
        args = [self.tests_dir, "-p", "no:cacheprovider", "-q"]
        if category != "all":
            args += ["-m", category]
        if coverage_xml:
            args += [f"--cov={self.coverage_source}", f"--cov-report=xml:{coverage_xml}"]
        return args

    def run(self, category: str = "all", coverage: bool = False) -> RunSummary:
        if category not in CATEGORIES:
            raise ValueError(f"Unknown test category: {category}")
        summary = RunSummary(category=category)
        start = time.monotonic()

        if category in ("all", "syntax") and self.scripts:
            summary.results.extend(run_syntax_checks(self.scripts, reset=self.reset))

        plugin = StoreResetPlugin(reset=self.reset)
        with tempfile.TemporaryDirectory(prefix="scriptguard-cov-") as tmp:
            coverage_xml = os.path.join(tmp, "coverage.xml") if coverage else None
            if os.path.isdir(self.tests_dir):
                logger.info("Running pytest on %s (category=%s)", self.tests_dir, category)
                code = int(pytest.main(self.pytest_args(category, coverage_xml), plugins=[plugin]))
            else:
                logger.warning("Tests directory not found: %s", self.tests_dir)
                code = int(pytest.ExitCode.NO_TESTS_COLLECTED)
            if coverage_xml:
                summary.coverage_percent = read_coverage_percent(coverage_xml)

        summary.pytest_exit_code = code
        summary.results.extend(plugin.results)
        for error in plugin.collection_errors:
            summary.results.append(CaseResult(name=error.split(":", 1)[0], category="collection",
                                              outcome=ERROR, message=error, classname="collection"))
        summary.duration_seconds = time.monotonic() - start
        summary.exit_code = self._exit_code(code, summary)
        return summary

    @staticmethod
    def _exit_code(pytest_code: int, summary: RunSummary) -> int:
        if pytest_code in (pytest.ExitCode.OK, pytest.ExitCode.NO_TESTS_COLLECTED):
            return EXIT_FAILED if summary.failed else EXIT_PASSED
        if pytest_code == pytest.ExitCode.TESTS_FAILED:
            return EXIT_FAILED
        return EXIT_EXECUTION_ERROR


def write_junit_xml(summary: RunSummary, path: str) -> str:
    """
    Write every case (pytest and syntax) as one JUnit <testsuite>.
    """
    suite = ET.Element("testsuite", {
        "name": f"scriptguard-{summary.category}",
        "tests": str(len(summary.results)),
        "failures": str(summary.count(FAILED)),
        "errors": str(summary.count(ERROR)),
        "skipped": str(summary.skipped),
        "time": f"{summary.duration_seconds:.3f}",
    })
    for r in summary.results:
        case = ET.SubElement(suite, "testcase", {
            "classname": r.classname or r.category,
            "name": r.name,
            "time": f"{r.duration:.3f}",
        })
        if r.outcome == FAILED:
            ET.SubElement(case, "failure", {"message": r.message.splitlines()[0] if r.message else ""}).text = r.message
        elif r.outcome == ERROR:
            ET.SubElement(case, "error", {"message": r.message.splitlines()[0] if r.message else ""}).text = r.message
        elif r.outcome == SKIPPED:
            ET.SubElement(case, "skipped", {"message": r.message})
    if summary.coverage_percent is not None:
        props = ET.SubElement(suite, "properties")
        ET.SubElement(props, "property", {"name": "coverage", "value": f"{summary.coverage_percent:.2f}"})
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    ET.ElementTree(suite).write(path, encoding="utf-8", xml_declaration=True)
    return path


_OUTCOME_STYLE = {PASSED: "green", FAILED: "bold red", ERROR: "bold magenta", SKIPPED: "yellow"}


def print_summary(summary: RunSummary, console: Optional[Console] = None) -> None:
    console = console or Console()
    if summary.results:
        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("Category", style="magenta")
        table.add_column("Test", overflow="fold")
        table.add_column("Outcome")
        table.add_column("Time (s)", justify="right")
        for r in summary.results:
            table.add_row(r.category, Text(r.name), Text(r.outcome, style=_OUTCOME_STYLE[r.outcome]),
                          f"{r.duration:.2f}")
        console.print(table)
        for r in summary.results:
            if r.outcome in (FAILED, ERROR) and r.message:
                console.print(f"[bold red]{escape(r.name)}[/bold red]")
                console.print(Text(r.message))
    console.print(f"\nPassed: {summary.passed}  Failed: {summary.failed}  Skipped: {summary.skipped}")
    if summary.coverage_percent is not None:
        console.print(f"Coverage: {summary.coverage_percent:.2f}%")
    style = "bold green" if summary.exit_code == EXIT_PASSED else "bold red"
    console.print(Text(f"Exit code {summary.exit_code}", style=style))
