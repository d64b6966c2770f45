# utils.py
"""
Utility helpers: report generation and console output.

- Uses Rich for colorful, wrapped tables grouped by severity.
- Saves JSON, SARIF 2.1.0, CSV, and HTML reports from the same ScanReport.
- Every exporter uses ScanReport.exit_code() as the build-breaking policy.
"""

import csv
import html
import json
import os
from datetime import datetime, timezone
from pathlib import PurePath
from typing import Any, Dict, Iterable, List, Optional, Sequence

import jsonschema
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.text import Text

from config import TOOL_INFORMATION_URI
from models import EXIT_CLEAN, EXIT_CRITICAL, EXIT_HIGH, EXIT_INTERNAL_ERROR, Finding, ScanReport, Severity
from scanner.rules import Rule

REPORT_FORMATS = ("json", "sarif", "html", "csv")

SARIF_SCHEMA_URI = "https://json.schemastore.org/sarif-2.1.0.json"
SARIF_VERSION = "2.1.0"

# Subset of the SARIF 2.1.0 schema: the properties consumers rely on.
SARIF_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["$schema", "version", "runs"],
    "properties": {
        "$schema": {"type": "string"},
        "version": {"const": SARIF_VERSION},
        "runs": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "required": ["tool", "results"],
                "properties": {
                    "tool": {
                        "type": "object",
                        "required": ["driver"],
                        "properties": {
                            "driver": {
                                "type": "object",
                                "required": ["name", "version"],
                                "properties": {
                                    "name": {"type": "string"},
                                    "version": {"type": "string"},
                                    "rules": {
                                        "type": "array",
                                        "items": {
                                            "type": "object",
                                            "required": ["id"],
                                            "properties": {"id": {"type": "string"}},
                                        },
                                    },
                                },
                            },
                        },
                    },
                    "results": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "required": ["ruleId", "level", "message", "locations"],
                            "properties": {
                                "ruleId": {"type": "string"},
                                "level": {"enum": ["none", "note", "warning", "error"]},
                                "message": {
                                    "type": "object",
                                    "required": ["text"],
                                    "properties": {"text": {"type": "string"}},
                                },
                                "locations": {
                                    "type": "array",
                                    "minItems": 1,
                                    "items": {
                                        "type": "object",
                                        "required": ["physicalLocation"],
                                        "properties": {
                                            "physicalLocation": {
                                                "type": "object",
                                                "required": ["artifactLocation"],
                                                "properties": {
                                                    "artifactLocation": {
                                                        "type": "object",
                                                        "required": ["uri"],
                                                        "properties": {"uri": {"type": "string"}},
                                                    },
                                                    "region": {
                                                        "type": "object",
                                                        "properties": {
                                                            "startLine": {"type": "integer", "minimum": 1},
                                                            "startColumn": {"type": "integer", "minimum": 1},
                                                        },
                                                    },
                                                },
                                            },
                                        },
                                    },
                                },
                            },
                        },
                    },
                },
            },
        },
    },
}

_SEVERITY_STYLE = {
    Severity.CRITICAL: "bold red",
    Severity.HIGH: "bold yellow",
    Severity.MEDIUM: "cyan",
}

_EXIT_MESSAGES = {
    EXIT_CLEAN: ("No Critical or High findings.", "bold green"),
    EXIT_CRITICAL: ("Critical findings present: build must fail.", "bold red"),
    EXIT_HIGH: ("High findings present.", "bold yellow"),
    EXIT_INTERNAL_ERROR: ("A rule failed during the scan: results are incomplete.", "bold magenta"),
}


def ensure_reports_dir(path: str = "reports") -> str:
    os.makedirs(path, exist_ok=True)
    return path


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")


def report_to_json(report: ScanReport, include_timing: bool = True) -> str:
    return json.dumps(report.to_dict(include_timing=include_timing), indent=2)


def _artifact_uri(path: str) -> str:
    return PurePath(path).as_posix()


def report_to_sarif(report: ScanReport, rules: Optional[Iterable[Rule]] = None) -> Dict[str, Any]:
    """
    Build a SARIF 2.1.0 log with one run and one result per finding.

    Critical -> error, High -> warning, Medium -> note.
    """
    driver_rules: Dict[str, Dict[str, Any]] = {}
    for r in rules or ():
        driver_rules[r.rule_id] = {
            "id": r.rule_id,
            "name": r.name,
            "shortDescription": {"text": r.description},
            "help": {"text": r.remediation},
            "defaultConfiguration": {"level": r.severity.sarif_level},
        }

    results: List[Dict[str, Any]] = []
    for f in report.findings:
        if f.rule_id not in driver_rules:
            driver_rules[f.rule_id] = {
                "id": f.rule_id,
                "shortDescription": {"text": f.rule_id},
                "defaultConfiguration": {"level": f.severity.sarif_level},
            }
        result: Dict[str, Any] = {
            "ruleId": f.rule_id,
            "level": f.severity.sarif_level,
            "message": {"text": f.message},
            "locations": [{
                "physicalLocation": {
                    "artifactLocation": {"uri": _artifact_uri(f.file_path)},
                    "region": {"startLine": max(f.line, 1), "startColumn": max(f.column, 1)},
                },
            }],
            "properties": {"severity": f.severity.value},
        }
        if f.suggested_fix:
            result["properties"]["suggestedFix"] = f.suggested_fix
        results.append(result)

    return {
        "$schema": SARIF_SCHEMA_URI,
        "version": SARIF_VERSION,
        "runs": [{
            "tool": {
                "driver": {
                    "name": report.tool_name,
                    "version": report.tool_version,
                    "informationUri": TOOL_INFORMATION_URI,
                    "rules": list(driver_rules.values()),
                },
            },
            "invocations": [{
                "executionSuccessful": not report.internal_errors and not report.timed_out,
                "exitCode": report.exit_code(),
            }],
            "results": results,
        }],
    }


def validate_sarif(document: Dict[str, Any]) -> None:
    """
    Raise jsonschema.ValidationError if document misses required SARIF structure.
    """
    jsonschema.validate(document, SARIF_SCHEMA)


def findings_to_table_rows(findings: Sequence[Finding]) -> List[List[str]]:
    rows: List[List[str]] = []
    for f in findings:
        rows.append([f.severity.value, f.rule_id, f"{f.file_path}:{f.line}:{f.column}",
                     f.message, f.suggested_fix or ""])
    return rows


def report_to_html(report: ScanReport) -> str:
    """
    Self-contained HTML page; every value is escaped.
    """
    esc = html.escape
    summary = report.summary()
    meta = report.metadata()
    html_rows: List[str] = []
    html_rows.append("<!doctype html>")
    html_rows.append("<html><head><meta charset='utf-8'><title>Security Report</title>")
    html_rows.append("<style>body{font-family:Arial,Helvetica,sans-serif;margin:20px}table{border-collapse:collapse;width:100%}th,td{border:1px solid #ddd;padding:8px}th{background:#f2f2f2;text-align:left}tr:nth-child(even){background:#fafafa}pre{white-space:pre-wrap;word-wrap:break-word}.Critical{color:#b00020}.High{color:#b26a00}.Medium{color:#00639b}</style>")
    html_rows.append("</head><body>")
    html_rows.append(f"<h2>Security Report - {esc(report.started_at)} - target: {esc(report.target)}</h2>")
    html_rows.append(f"<p>Total findings: {len(report.findings)} | exit code: {report.exit_code()}</p>")
    html_rows.append("<div><strong>Summary:</strong><ul id='summary'>")
    for severity in Severity:
        html_rows.append(f"<li class='{severity.value}'>{severity.value}: {summary[severity.value]}</li>")
    html_rows.append("</ul></div>")
    html_rows.append("<div><strong>Metadata:</strong><ul id='metadata'>")
    for k in ("toolName", "toolVersion", "filesScanned", "durationSeconds", "timedOut"):
        html_rows.append(f"<li>{k}: {esc(str(meta[k]))}</li>")
    html_rows.append("</ul></div>")
    html_rows.append("<table><thead><tr><th>Severity</th><th>Rule</th><th>Location</th><th>Message</th><th>Suggested fix</th></tr></thead><tbody>")
    for row in findings_to_table_rows(report.findings):
        severity, rule_id, location, message, fix = (esc(c) for c in row)
        html_rows.append(f"<tr><td class='{severity}'>{severity}</td><td>{rule_id}</td><td>{location}</td><td>{message}</td><td><pre>{fix}</pre></td></tr>")
    html_rows.append("</tbody></table></body></html>")
    return "\n".join(html_rows)


def write_csv(report: ScanReport, path: str) -> None:
    fieldnames = ["ruleId", "severity", "filePath", "line", "column", "message", "suggestedFix"]
    with open(path, "w", encoding="utf-8", newline="") as fh:
        writer = csv.DictWriter(fh, fieldnames=fieldnames)
        writer.writeheader()
        for f in report.findings:
            row = f.to_dict()
            row["suggestedFix"] = row["suggestedFix"] or ""
            writer.writerow(row)


def save_report(report: ScanReport, formats: Iterable[str] = REPORT_FORMATS, out_dir: str = "reports",
                rules: Optional[Iterable[Rule]] = None) -> Dict[str, str]:
    """
    Save the requested report formats and return their paths keyed by format.

    The SARIF file is validated before it is written.
    """
    out_dir = ensure_reports_dir(out_dir)
    ts = _timestamp()
    paths: Dict[str, str] = {}
    formats = list(formats)

    # JSON
    if "json" in formats:
        json_path = os.path.join(out_dir, f"security-report-{ts}.json")
        with open(json_path, "w", encoding="utf-8") as fh:
            fh.write(report_to_json(report))
        paths["json"] = json_path

    # SARIF
    if "sarif" in formats:
        sarif = report_to_sarif(report, rules)
        validate_sarif(sarif)
        sarif_path = os.path.join(out_dir, "security-report.sarif")
        with open(sarif_path, "w", encoding="utf-8") as fh:
            json.dump(sarif, fh, indent=2)
        paths["sarif"] = sarif_path

    # CSV
    if "csv" in formats:
        csv_path = os.path.join(out_dir, f"security-report-{ts}.csv")
        write_csv(report, csv_path)
        paths["csv"] = csv_path

    # HTML
    if "html" in formats:
        html_path = os.path.join(out_dir, f"security-report-{ts}.html")
        with open(html_path, "w", encoding="utf-8") as fh:
            fh.write(report_to_html(report))
        paths["html"] = html_path

    return paths


# --- Console printing with color/wrapping ---

def _rich_severity_text(severity: Severity) -> Text:
    """
    Return a Rich Text object styled by severity.
    """
    return Text(severity.value, style=_SEVERITY_STYLE[severity])


def print_report(report: ScanReport, console: Optional[Console] = None,
                 report_paths: Optional[Dict[str, str]] = None) -> int:
    """
    Print the findings grouped by severity with remediation hints and
    return the exit code.
    """
    console = console or Console()
    summary = report.summary()
    console.print("\n[bold]Scan summary:[/bold]")
    console.print(f"- Target: {escape(report.target)}")
    console.print(f"- Files scanned: {len(report.files_scanned)}")
    console.print(
        "- Findings: "
        + ", ".join(f"{s.value}: {summary[s.value]}" for s in Severity)
        + f" (total {len(report.findings)})"
    )
    for error in report.parse_errors:
        console.print(f"[yellow]Parse error[/yellow] {escape(str(error))}")
    if report.timed_out:
        console.print(f"[bold magenta]Scan timed out; {len(report.files_skipped)} file(s) not scanned.[/bold magenta]")

    for severity in Severity:
        group = [f for f in report.findings if f.severity is severity]
        if not group:
            continue
        table = Table(title=f"{severity.value} ({len(group)})", show_header=True, header_style="bold cyan")
        table.add_column("Severity", justify="left")
        table.add_column("Rule", style="magenta")
        table.add_column("Location", style="cyan", overflow="fold")
        table.add_column("Message", overflow="fold")
        table.add_column("Remediation", overflow="fold")
        for f in group:
            # Text() so brackets in messages are not read as markup
            table.add_row(_rich_severity_text(severity), f.rule_id, Text(f"{f.file_path}:{f.line}:{f.column}"),
                          Text(f.message), Text(f.suggested_fix or ""))
        console.print(table)

    code = report.exit_code()
    message, style = _EXIT_MESSAGES[code]
    console.print(Text(f"{message} (exit code {code})", style=style))

    if report_paths:
        console.print("\nSaved reports:")
        for fmt, path in report_paths.items():
            console.print(f"- {fmt.upper()}: {escape(path)}")
    return code
