# tests/test_config.py
"""
Configuration and audit log tests.
"""

import json
import textwrap

import pytest

from audit import AuditLog, configure_audit_log, get_audit_log
from config import load_rule_config, resolve_float, resolve_int
from errors import ConfigurationError, MockNotFoundError

pytestmark = pytest.mark.unit


def write_yaml(tmp_path, text):
    path = tmp_path / "rules.yml"
    path.write_text(textwrap.dedent(text), encoding="utf-8")
    return str(path)


def test_load_rule_config(tmp_path):
    path = write_yaml(tmp_path, """
        rules:
          PS-SECRET-001: {enabled: true, severity: high}
          PS-ID-002: false
        exclude_paths: "*/vendor/*"
        known_templates: [CorpWebServer, CorpUser]
        whitelist_patterns:
          - "^Thumbprint-[0-9A-F]+$"
    """)
    config = load_rule_config(path)
    assert config.severity_override("PS-SECRET-001") == "high"
    assert config.is_enabled("PS-SECRET-001")
    assert not config.is_enabled("PS-ID-002")
    assert config.is_enabled("PS-EXEC-001")
    assert config.exclude_paths == ["*/vendor/*"]
    assert config.known_templates == ["CorpWebServer", "CorpUser"]
    assert config.whitelist_patterns == ["^Thumbprint-[0-9A-F]+$"]


def test_empty_file_is_default_config(tmp_path):
    config = load_rule_config(write_yaml(tmp_path, ""))
    assert config.rules == {}
    assert config.exclude_paths == []


@pytest.mark.parametrize("text", [
    "rules: [unclosed",
    "- just\n- a list\n",
    "rules:\n  PS-SECRET-001: high\n",
    "known_templates: {a: 1}\n",
])
def test_malformed_config(tmp_path, text):
    with pytest.raises(ConfigurationError):
        load_rule_config(write_yaml(tmp_path, text))


def test_invalid_whitelist_regex_names_the_key(tmp_path):
    path = write_yaml(tmp_path, "whitelist_patterns:\n  - '^ok$'\n  - '(unbalanced'\n")
    with pytest.raises(ConfigurationError) as exc:
        load_rule_config(path)
    assert "whitelist_patterns" in exc.value.message
    assert exc.value.details["key"] == "whitelist_patterns"
    assert exc.value.details["pattern"] == "(unbalanced"


def test_missing_config_file(tmp_path):
    with pytest.raises(ConfigurationError) as exc:
        load_rule_config(str(tmp_path / "missing.yml"))
    assert exc.value.details["path"].endswith("missing.yml")


def test_resolve_settings_from_environment(monkeypatch):
    monkeypatch.setenv("SCRIPTGUARD_WORKERS", "8")
    monkeypatch.setenv("SCRIPTGUARD_TIMEOUT", "2.5")
    assert resolve_int(None, "workers", 4) == 8
    assert resolve_int(2, "workers", 4) == 2
    assert resolve_float(None, "timeout", 300.0) == 2.5
    monkeypatch.delenv("SCRIPTGUARD_WORKERS")
    assert resolve_int(None, "workers", 4) == 4
    monkeypatch.setenv("SCRIPTGUARD_WORKERS", "many")
    with pytest.raises(ConfigurationError):
        resolve_int(None, "workers", 4)


def test_audit_log_appends_json_lines(tmp_path):
    path = str(tmp_path / "logs" / "audit.log")
    log = AuditLog(path)
    log.record("scan_started", target="deploy")
    log.record_error(MockNotFoundError("Service 'X' not found", entity_id="X"), command="test")
    log.record_error(RuntimeError("boom"))
    log.close()

    log = AuditLog(path)
    log.record("scan_started", target="again")
    log.close()

    with open(path, encoding="utf-8") as fh:
        entries = [json.loads(line) for line in fh]
    assert [e["event"] for e in entries] == ["scan_started", "internal_error", "internal_error", "scan_started"]
    assert entries[1]["details"]["error"] == "mock_not_found"
    assert entries[1]["details"]["details"] == {"entity_id": "X"}
    assert entries[1]["details"]["command"] == "test"
    assert entries[2]["details"]["error"] == "RuntimeError"
    assert all(e["timestamp"].endswith("+00:00") for e in entries)


def test_configure_audit_log_switches_the_default(audit_path):
    get_audit_log().record("hello")
    configure_audit_log(None)
    get_audit_log().record("not written")
    with open(audit_path, encoding="utf-8") as fh:
        assert [json.loads(line)["event"] for line in fh] == ["hello"]
