# tests/test_orchestrator.py
"""
Orchestrator tests. Each test writes a small inner test module into tmp_path
and runs pytest on it in-process; module names are unique per test so the
inner imports never collide.
"""

import io
import textwrap
import xml.etree.ElementTree as ET

import pytest
from rich.console import Console

from mock_backend.store import reset_store
from orchestrator import (
    EXIT_FAILED,
    EXIT_PASSED,
    Orchestrator,
    print_summary,
    read_coverage_percent,
    run_syntax_checks,
    write_junit_xml,
)

pytestmark = pytest.mark.integration


def write_inner_tests(directory, module_name, body):
    path = directory / f"{module_name}.py"
    path.write_text(textwrap.dedent(body), encoding="utf-8")
    return path


class CountingReset:
    def __init__(self):
        self.calls = 0

    def __call__(self):
        self.calls += 1
        return reset_store()


def test_store_is_reset_between_cases(tmp_path):
    write_inner_tests(tmp_path, "test_inner_isolation_a1", """
        import pytest
        from mock_backend.store import get_store

        @pytest.mark.unit
        def test_first_adds_a_service():
            get_store().services.add_service("CertSvc")
            assert len(get_store().services) == 1

        @pytest.mark.unit
        def test_second_sees_an_empty_store():
            assert get_store().is_empty()
    """)
    reset = CountingReset()
    summary = Orchestrator(tests_dir=str(tmp_path), reset=reset).run("unit")

    assert summary.exit_code == EXIT_PASSED
    assert summary.passed == 2
    assert reset.calls == 2
    assert {r.category for r in summary.results} == {"unit"}
    assert summary.results[0].classname.endswith("test_inner_isolation_a1.py")


def test_failures_and_skips_are_counted(tmp_path):
    write_inner_tests(tmp_path, "test_inner_outcomes_b2", """
        import pytest

        @pytest.mark.unit
        def test_ok():
            assert True

        @pytest.mark.unit
        def test_broken():
            assert 1 == 2, "numbers differ"

        @pytest.mark.unit
        @pytest.mark.skip(reason="not on this host")
        def test_skipped():
            pass
    """)
    summary = Orchestrator(tests_dir=str(tmp_path)).run("all")

    assert summary.exit_code == EXIT_FAILED
    assert (summary.passed, summary.failed, summary.skipped) == (1, 1, 1)
    failed = [r for r in summary.results if r.outcome == "failed"][0]
    assert failed.name == "test_broken"
    assert "numbers differ" in failed.message
    skipped = [r for r in summary.results if r.outcome == "skipped"][0]
    assert "not on this host" in skipped.message


def test_category_selects_by_marker(tmp_path):
    write_inner_tests(tmp_path, "test_inner_markers_c3", """
        import pytest

        @pytest.mark.unit
        def test_unit_case():
            pass

        @pytest.mark.integration
        def test_integration_case():
            pass
    """)
    summary = Orchestrator(tests_dir=str(tmp_path)).run("integration")
    assert [r.name for r in summary.results] == ["test_integration_case"]
    assert summary.results[0].category == "integration"


def test_unknown_category_is_rejected(tmp_path):
    with pytest.raises(ValueError):
        Orchestrator(tests_dir=str(tmp_path)).run("smoke")


def test_syntax_suite_fails_on_parse_errors(tmp_path, fixture_script):
    scripts = [fixture_script("broken_syntax.ps1"), fixture_script("clean_deploy.ps1")]
    summary = Orchestrator(tests_dir=str(tmp_path / "no-tests"), scripts=scripts).run("syntax")

    assert summary.exit_code == EXIT_FAILED
    assert (summary.passed, summary.failed) == (1, 1)
    broken = [r for r in summary.results if r.outcome == "failed"][0]
    assert broken.name.endswith("broken_syntax.ps1")
    assert "terminator" in broken.message


def test_run_syntax_checks_resets_per_script(fixture_script):
    reset = CountingReset()
    results = run_syntax_checks([fixture_script("clean_deploy.ps1"), fixture_script("replay_deploy.ps1")],
                                reset=reset)
    assert [r.outcome for r in results] == ["passed", "passed"]
    assert reset.calls == 2


def test_junit_xml_and_console_summary(tmp_path, fixture_script):
    summary = Orchestrator(tests_dir=str(tmp_path / "no-tests"),
                           scripts=[fixture_script("broken_syntax.ps1")]).run("syntax")
    summary.coverage_percent = 85.43
    path = write_junit_xml(summary, str(tmp_path / "out" / "junit.xml"))

    suite = ET.parse(path).getroot()
    assert suite.tag == "testsuite"
    assert suite.get("name") == "scriptguard-syntax"
    assert suite.get("tests") == "1"
    assert suite.get("failures") == "1"
    case = suite.find("testcase")
    assert case.find("failure") is not None
    assert suite.find("properties/property").get("value") == "85.43"

    buf = io.StringIO()
    print_summary(summary, console=Console(file=buf, width=300, color_system=None))
    out = buf.getvalue()
    assert "Passed: 0  Failed: 1  Skipped: 0" in out
    assert "Coverage: 85.43%" in out
    assert "Exit code 1" in out


def test_read_coverage_percent(tmp_path):
    xml_path = tmp_path / "coverage.xml"
    xml_path.write_text('<?xml version="1.0" ?>\n<coverage line-rate="0.8543" branch-rate="0"></coverage>\n',
                        encoding="utf-8")
    assert read_coverage_percent(str(xml_path)) == 85.43
    assert read_coverage_percent(str(tmp_path / "missing.xml")) is None
