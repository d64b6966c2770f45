"""
Central configuration and tunable constants.

- Defaults can be overridden by CLI args or SCRIPTGUARD_* environment variables.
- Rule configuration (enabled rules, severity overrides, path exclusions) is an
  optional YAML file loaded with load_rule_config().
"""

import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from errors import ConfigurationError

TOOL_NAME = "scriptguard"
TOOL_VERSION = "1.4.0"
TOOL_INFORMATION_URI = "https://github.com/scriptguard/scriptguard"

DEFAULT_REPORT_DIR = "reports"
DEFAULT_MAX_WORKERS = 4
DEFAULT_SCAN_TIMEOUT = 300.0  # seconds, whole scan
DEFAULT_AUDIT_LOG = os.path.join(DEFAULT_REPORT_DIR, "audit.log")

SCRIPT_EXTENSIONS = (".ps1", ".psm1", ".psd1")

# Event log ring buffer size per directory store
DEFAULT_EVENT_LOG_CAPACITY = 1000

# Certificate template names that appear as plain string literals in
# deployment scripts and must never be reported as secrets.
KNOWN_TEMPLATE_NAMES = (
    "Administrator",
    "CA",
    "CEPEncryption",
    "ClientAuth",
    "CodeSigning",
    "CrossCA",
    "DirectoryEmailReplication",
    "DomainController",
    "DomainControllerAuthentication",
    "EFS",
    "EFSRecovery",
    "EnrollmentAgent",
    "EnrollmentAgentOffline",
    "ExchangeUser",
    "ExchangeUserSignature",
    "IPSECIntermediateOffline",
    "IPSECIntermediateOnline",
    "KerberosAuthentication",
    "KeyRecoveryAgent",
    "Machine",
    "MachineEnrollmentAgent",
    "OCSPResponseSigning",
    "OfflineRouter",
    "RASAndIASServer",
    "SmartcardLogon",
    "SmartcardUser",
    "SubCA",
    "User",
    "UserSignature",
    "WebServer",
    "Workstation",
)

ENV_PREFIX = "SCRIPTGUARD_"


def env_setting(name: str, default: Any = None) -> Optional[str]:
    """
    Return SCRIPTGUARD_<name> from the environment, or default.
    """
    return os.environ.get(ENV_PREFIX + name.upper(), default)


def resolve_int(cli_value: Optional[int], env_name: str, default: int) -> int:
    """
    Resolve an integer setting: CLI -> env -> default.
    """
    if cli_value is not None:
        return cli_value
    raw = env_setting(env_name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{ENV_PREFIX}{env_name.upper()} must be an integer, got {raw!r}") from e


def resolve_float(cli_value: Optional[float], env_name: str, default: float) -> float:
    if cli_value is not None:
        return cli_value
    raw = env_setting(env_name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{ENV_PREFIX}{env_name.upper()} must be a number, got {raw!r}") from e


@dataclass
class RuleSettings:
    enabled: bool = True
    severity: Optional[str] = None


@dataclass
class RuleConfig:
    """
    Parsed rule configuration file.

    Fields:
    - rules: per-rule settings keyed by rule id
    - exclude_paths: glob patterns of files that are never scanned
    - known_templates: extra template names to whitelist
    - whitelist_patterns: extra regexes whose matches are never secrets
    """
    rules: Dict[str, RuleSettings] = field(default_factory=dict)
    exclude_paths: List[str] = field(default_factory=list)
    known_templates: List[str] = field(default_factory=list)
    whitelist_patterns: List[str] = field(default_factory=list)

    def is_enabled(self, rule_id: str) -> bool:
        settings = self.rules.get(rule_id)
        return settings.enabled if settings else True

    def severity_override(self, rule_id: str) -> Optional[str]:
        settings = self.rules.get(rule_id)
        return settings.severity if settings else None


def _as_str_list(value: Any, key: str, path: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return list(value)
    raise ConfigurationError(f"{path}: '{key}' must be a list of strings")


def load_rule_config(path: str) -> RuleConfig:
    """
    Load the YAML rule configuration.

    Expected shape:
    rules:
      PS-SECRET-001: {enabled: true, severity: critical}
    exclude_paths: ["**/vendor/**"]
    known_templates: ["CorpWebServer"]
    whitelist_patterns: ["^Thumbprint-[0-9A-F]+$"]

    Raises ConfigurationError when the file is missing, malformed or
    lists a whitelist pattern that is not a valid regular expression.
    """
    if not os.path.exists(path):
        raise ConfigurationError(f"Rule configuration file not found: {path}", details={"path": path})
    try:
        with open(path, "r", encoding="utf-8-sig") as fh:
            raw = yaml.safe_load(fh) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}", details={"path": path}) from e
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{path}: top level must be a mapping")

    rules: Dict[str, RuleSettings] = {}
    for rule_id, settings in (raw.get("rules") or {}).items():
        if isinstance(settings, bool):
            rules[str(rule_id)] = RuleSettings(enabled=settings)
            continue
        if not isinstance(settings, dict):
            raise ConfigurationError(f"{path}: settings for rule {rule_id} must be a mapping")
        rules[str(rule_id)] = RuleSettings(
            enabled=bool(settings.get("enabled", True)),
            severity=settings.get("severity"),
        )

    whitelist_patterns = _as_str_list(raw.get("whitelist_patterns"), "whitelist_patterns", path)
    for pattern in whitelist_patterns:
        try:
            re.compile(pattern)
        except re.error as e:
            raise ConfigurationError(
                f"{path}: invalid regex in 'whitelist_patterns': {pattern!r} ({e})",
                details={"path": path, "key": "whitelist_patterns", "pattern": pattern},
            ) from e

    return RuleConfig(
        rules=rules,
        exclude_paths=_as_str_list(raw.get("exclude_paths"), "exclude_paths", path),
        known_templates=_as_str_list(raw.get("known_templates"), "known_templates", path),
        whitelist_patterns=whitelist_patterns,
    )
