# scanner/rules.py
"""
Diagnostic rules.

- Each rule is a pure function (RuleContext, SourceUnit) -> List[Finding]
  registered with the @rule decorator; rules share no mutable state.
- Credential rules consult the IdentityWhitelist before reporting.
- Rules:
  * PS-SECRET-001 hardcoded secrets
  * PS-CRED-001 plain-text credential parameters
  * PS-CRED-002 SecureString built from a literal
  * PS-EXEC-001 dynamic code execution
  * PS-ID-001 malformed security identifiers
  * PS-ID-002 domain parameters without a consistency check
"""

import re
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Pattern, Sequence, Set, Tuple

from models import Finding, Severity, SourceUnit
from scanner import ast_nodes as n
from scanner.ast_nodes import Node, variables_in
from scanner.whitelist import IdentityWhitelist, is_placeholder, is_security_identifier, \
    security_identifier_candidates


@dataclass(frozen=True)
class Rule:
    rule_id: str
    name: str
    severity: Severity
    description: str
    remediation: str
    check: Callable[["RuleContext", SourceUnit], List[Finding]] = field(repr=False)
    whitelist: Tuple[Pattern, ...] = ()


@dataclass(frozen=True)
class RuleContext:
    """
    What a rule sees besides the source: itself, the effective severity and
    the identity whitelist.
    """
    rule: Rule
    severity: Severity
    whitelist: IdentityWhitelist

    def finding(self, unit: SourceUnit, node: Node, message: str,
                suggested_fix: Optional[str] = None, severity: Optional[Severity] = None) -> Finding:
        return Finding(
            rule_id=self.rule.rule_id,
            severity=severity or self.severity,
            file_path=unit.path,
            line=node.line,
            column=node.column,
            message=message,
            suggested_fix=suggested_fix if suggested_fix is not None else self.rule.remediation,
        )

    def is_whitelisted(self, value: str) -> bool:
        return self.whitelist.is_whitelisted(value, self.rule.whitelist)


class RuleRegistry:
    """
    Ordered collection of rules. Registration order is reporting order.
    """

    def __init__(self) -> None:
        self._rules: Dict[str, Rule] = {}

    def register(self, rule_obj: Rule) -> Rule:
        if rule_obj.rule_id in self._rules:
            raise ValueError(f"Rule already registered: {rule_obj.rule_id}")
        self._rules[rule_obj.rule_id] = rule_obj
        return rule_obj

    def unregister(self, rule_id: str) -> None:
        self._rules.pop(rule_id, None)

    def get(self, rule_id: str) -> Rule:
        return self._rules[rule_id]

    @property
    def rules(self) -> List[Rule]:
        return list(self._rules.values())

    def __contains__(self, rule_id: str) -> bool:
        return rule_id in self._rules

    def __len__(self) -> int:
        return len(self._rules)


DEFAULT_REGISTRY = RuleRegistry()


def rule(rule_id: str, name: str, severity: Severity, remediation: str,
         whitelist: Sequence[str] = (), registry: Optional[RuleRegistry] = None):
    """
    Decorator turning a check function into a registered Rule.
    The first docstring line becomes the rule description.
    """
    def decorator(fn: Callable[[RuleContext, SourceUnit], List[Finding]]) -> Rule:
        doc = (fn.__doc__ or name).strip().splitlines()[0]
        rule_obj = Rule(
            rule_id=rule_id,
            name=name,
            severity=severity,
            description=doc,
            remediation=remediation,
            check=fn,
            whitelist=tuple(re.compile(p) for p in whitelist),
        )
        (registry if registry is not None else DEFAULT_REGISTRY).register(rule_obj)
        return rule_obj
    return decorator


# --- shared helpers ----------------------------------------------------------

SECRET_NAME_RE = re.compile(
    r"(password|passwd|passphrase|pwd|secret|api[_-]?key|access[_-]?key|private[_-]?key"
    r"|client[_-]?secret|auth[_-]?token|token|connection[_-]?string|conn[_-]?str)",
    re.IGNORECASE,
)
# $PasswordFile, $SecretName, $TokenUri... name where the secret lives, not the secret
_NON_SECRET_SUFFIX_RE = re.compile(
    r"(path|file|filename|name|length|policy|prompt|expiry|expiration|expires|age|count"
    r"|required|hint|id|uri|url|vault|store|type|prefix|header|param|parameter)$",
    re.IGNORECASE,
)
PASSWORD_PARAM_RE = re.compile(r"(password|passwd|passphrase|pwd|secret|pin|credential|cred)$|password",
                               re.IGNORECASE)
PLAIN_TEXT_TYPES = {"string", "system.string", "str"}

_URL_CREDENTIAL_RE = re.compile(r"\b[a-z][a-z0-9+.-]*://(?P<user>[^/\s:@]+):(?P<secret>[^/\s@]+)@", re.IGNORECASE)
_CONNECTION_STRING_RE = re.compile(r"(?:^|;)\s*(?:password|pwd)\s*=\s*(?P<secret>[^;]+)", re.IGNORECASE)
_TOKEN_PATTERNS: Tuple[Tuple[str, Pattern], ...] = (
    ("AWS access key", re.compile(r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b")),
    ("GitHub token", re.compile(r"\bgh[pousr]_[A-Za-z0-9]{36,}\b")),
    ("Slack token", re.compile(r"\bxox[abposr]-[A-Za-z0-9-]{10,}\b")),
    ("Stripe key", re.compile(r"\b[rs]k_live_[0-9A-Za-z]{24,}\b")),
    ("Google API key", re.compile(r"\bAIza[0-9A-Za-z_-]{35}\b")),
    ("JSON web token", re.compile(r"\beyJ[A-Za-z0-9_-]{8,}\.eyJ[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}")),
    ("private key block", re.compile(r"-----BEGIN (?:RSA |EC |DSA |OPENSSH |ENCRYPTED )?PRIVATE KEY-----")),
)


def is_secret_name(name: Optional[str]) -> bool:
    if not name:
        return False
    bare = name.split(":")[-1]
    return bool(SECRET_NAME_RE.search(bare)) and not _NON_SECRET_SUFFIX_RE.search(bare)


def literal_string(node: Optional[Node]) -> Optional[str]:
    """
    Return the value of a non-interpolated string literal, else None.
    """
    if node is None or node.kind != n.STRING or node.attrs.get("expandable"):
        return None
    return str(node.value)


def _bare_variable(name: str) -> str:
    return name.split(":")[-1].lower()


def secret_shape(value: str) -> Optional[str]:
    """
    Describe why a literal looks like a credential regardless of where it is
    assigned, or None.
    """
    m = _URL_CREDENTIAL_RE.search(value)
    if m and not m.group("secret").startswith("$"):
        return "credentials embedded in a URL"
    if ";" in value or re.search(r"(?i)(server|data source|host)\s*=", value):
        m = _CONNECTION_STRING_RE.search(value)
        if m and not is_placeholder(m.group("secret")) and not m.group("secret").strip().startswith(("$", "{")):
            return "connection string containing a password"
    for label, pattern in _TOKEN_PATTERNS:
        if pattern.search(value):
            return label
    return None


def _parents_index(root: Node) -> Dict[int, Tuple[Node, ...]]:
    return {id(node): parents for node, parents in root.walk_with_parents()}


def _piped_input(node: Node, parents: Tuple[Node, ...]) -> List[Node]:
    """
    The pipeline element feeding node, e.g. the literal in "x" | Cmd.
    """
    if not parents or parents[-1].kind != n.PIPELINE:
        return []
    elements = parents[-1].children
    index = next(i for i, c in enumerate(elements) if c is node)
    return [elements[index - 1]] if index > 0 else []


# --- rules -------------------------------------------------------------------

@rule(
    "PS-SECRET-001",
    "HardcodedSecret",
    Severity.CRITICAL,
    remediation="Read the value at runtime (Get-Credential, a secret vault or a protected "
                "configuration store) instead of embedding it in the script.",
)
def hardcoded_secret(ctx: RuleContext, unit: SourceUnit) -> List[Finding]:
    """Secret-shaped string literals: passwords, API keys, credentials in URLs and connection strings."""
    findings: List[Finding] = []
    flagged: Set[int] = set()

    def report(literal: Node, message: str) -> None:
        value = str(literal.value)
        if id(literal) in flagged or is_placeholder(value) or ctx.is_whitelisted(value):
            return
        flagged.add(id(literal))
        findings.append(ctx.finding(unit, literal, message))

    for node in unit.ast.walk():
        if node.kind == n.ASSIGNMENT and is_secret_name(node.name):
            value = node.child("value")
            if literal_string(value) is not None:
                report(value, f"Hardcoded secret assigned to ${node.name}")
        elif node.kind == n.HASH_ENTRY and is_secret_name(node.attrs.get("key")):
            value = node.child("value")
            if literal_string(value) is not None:
                report(value, f"Hardcoded secret in hashtable key '{node.attrs['key']}'")
        elif node.kind == n.COMMAND_PARAMETER and is_secret_name(node.name):
            value = node.child("value")
            if literal_string(value) is not None:
                report(value, f"Hardcoded secret passed to -{node.name}")
        elif node.kind == n.PARAMETER and is_secret_name(node.name):
            value = node.child("default")
            if literal_string(value) is not None:
                report(value, f"Hardcoded default value for parameter ${node.name}")

    for node in unit.ast.walk():
        if node.kind != n.STRING or id(node) in flagged:
            continue
        shape = secret_shape(str(node.value))
        if shape:
            report(node, f"Hardcoded secret: {shape}")
    return findings


@rule(
    "PS-CRED-001",
    "PlainTextCredentialParameter",
    Severity.CRITICAL,
    remediation="Declare the parameter as [SecureString] or [PSCredential].",
)
def plain_text_credential_parameter(ctx: RuleContext, unit: SourceUnit) -> List[Finding]:
    """Password-shaped parameters typed as plain text."""
    findings: List[Finding] = []
    for param in unit.ast.find_all(n.PARAMETER):
        name = param.name or ""
        if not PASSWORD_PARAM_RE.search(name) or _NON_SECRET_SUFFIX_RE.search(name):
            continue
        types = [str(t).lower() for t in param.attrs.get("types", [])]
        if any(t in PLAIN_TEXT_TYPES for t in types):
            findings.append(ctx.finding(
                unit, param, f"Parameter ${name} carries a credential as plain text [{param.attrs['type']}]"
            ))
    return findings


@rule(
    "PS-CRED-002",
    "SecureStringFromLiteral",
    Severity.MEDIUM,
    remediation="Prompt for the value (Read-Host -AsSecureString, Get-Credential) or load it "
                "from a secret store; a SecureString made from a literal protects nothing.",
)
def secure_string_from_literal(ctx: RuleContext, unit: SourceUnit) -> List[Finding]:
    """SecureString / credential objects constructed from plain-text literals."""
    findings: List[Finding] = []
    for node, parents in unit.ast.walk_with_parents():
        if node.kind == n.COMMAND and str(node.name or "").lower() == "convertto-securestring":
            params = {c.name.lower(): c for c in node.children if c.kind == n.COMMAND_PARAMETER}
            if "asplaintext" not in params:
                continue
            candidates = [c for c in node.children if c.attrs.get("role") == "argument"]
            if "string" in params:
                candidates.append(params["string"].child("value"))
            candidates.extend(_piped_input(node, parents))
            for candidate in candidates:
                value = literal_string(candidate)
                if value is not None and not is_placeholder(value):
                    findings.append(ctx.finding(
                        unit, candidate, "ConvertTo-SecureString -AsPlainText is given a literal string"
                    ))
                    break
        elif node.kind == n.INVOCATION and node.name and node.name.lower() == "new":
            target = str(node.attrs.get("qualified", "")).lower()
            if not target.endswith("networkcredential::new"):
                continue
            args = [c for c in node.children if c.attrs.get("role") == "argument"]
            if len(args) >= 2 and literal_string(args[1]) and not is_placeholder(str(args[1].value)):
                findings.append(ctx.finding(unit, args[1], "NetworkCredential created from a literal password"))
    return findings


_EXEC_COMMANDS = {"invoke-expression", "iex"}
_DOWNLOAD_COMMANDS = {
    "invoke-webrequest", "iwr", "invoke-restmethod", "irm", "curl", "wget", "start-bitstransfer",
}
_DOWNLOAD_METHODS = {"downloadstring", "downloaddata", "downloadfile", "getstringasync", "openread"}
_EXECUTION_CONTEXT_METHODS = {"invokescript", "newscriptblock", "expandstring"}
_POWERSHELL_HOSTS = {"powershell", "powershell.exe", "pwsh", "pwsh.exe"}


def _downloads(node: Node) -> bool:
    for sub in node.walk():
        if sub.kind == n.COMMAND and str(sub.name or "").lower() in _DOWNLOAD_COMMANDS:
            return True
        if sub.kind == n.INVOCATION and str(sub.name or "").lower() in _DOWNLOAD_METHODS:
            return True
    return False


def _fed_by_download(node: Node, parents: Tuple[Node, ...]) -> bool:
    """
    True if node's own arguments, or an earlier element of its pipeline,
    fetch remote content.
    """
    if _downloads(node):
        return True
    for i, parent in enumerate(parents):
        if parent.kind != n.PIPELINE:
            continue
        element = parents[i + 1] if i + 1 < len(parents) else node
        for sibling in parent.children:
            if sibling is element:
                break
            if _downloads(sibling):
                return True
    return False


def _is_encoded_command_switch(name: str) -> bool:
    lowered = name.lower()
    return len(lowered) >= 1 and ("encodedcommand".startswith(lowered) or lowered == "ec")


@rule(
    "PS-EXEC-001",
    "DynamicCodeExecution",
    Severity.CRITICAL,
    remediation="Call the commands directly with parameters; never evaluate strings or "
                "downloaded content as code.",
)
def dynamic_code_execution(ctx: RuleContext, unit: SourceUnit) -> List[Finding]:
    """Constructs that evaluate a string as code at runtime."""
    findings: List[Finding] = []
    for node, parents in unit.ast.walk_with_parents():
        message = None
        name = str(node.name or "").lower()
        if node.kind == n.COMMAND:
            if name in _EXEC_COMMANDS:
                message = "Invoke-Expression evaluates a string as code"
                if _fed_by_download(node, parents):
                    message = "Downloaded content is executed with Invoke-Expression"
            elif name in _POWERSHELL_HOSTS and any(
                c.kind == n.COMMAND_PARAMETER and _is_encoded_command_switch(c.name or "")
                for c in node.children
            ):
                message = f"{node.name} is started with an encoded command"
            elif name == "add-type":
                for c in node.children:
                    if c.kind == n.COMMAND_PARAMETER and str(c.name).lower() in ("typedefinition", "memberdefinition"):
                        value = c.child("value")
                        if value is not None and value.kind != n.STRING:
                            message = "Add-Type compiles source text built at runtime"
                            break
        elif node.kind == n.INVOCATION:
            qualified = str(node.attrs.get("qualified", "")).lower()
            if qualified.endswith("scriptblock::create"):
                message = "[ScriptBlock]::Create builds executable code from a string"
                if _fed_by_download(node, parents):
                    message = "Downloaded content is compiled with [ScriptBlock]::Create"
            elif name in _EXECUTION_CONTEXT_METHODS and "$executioncontext" in qualified:
                message = f"$ExecutionContext.InvokeCommand.{node.name} evaluates a string as code"
        if message:
            findings.append(ctx.finding(unit, node, message))
    return findings


@rule(
    "PS-ID-001",
    "MalformedSecurityIdentifier",
    Severity.HIGH,
    remediation="Use the S-1-<authority>-<sub-authority>... form, or resolve the principal at "
                "runtime with Get-ADUser/Get-ADGroup and read its SID.",
)
def malformed_security_identifier(ctx: RuleContext, unit: SourceUnit) -> List[Finding]:
    """Security identifier literals that do not match the S-1-<authority>-<sub>... structure."""
    findings: List[Finding] = []
    for node in unit.ast.find_all(n.STRING):
        for candidate in security_identifier_candidates(str(node.value)):
            if not is_security_identifier(candidate):
                findings.append(ctx.finding(unit, node, f"Malformed security identifier '{candidate}'"))
                break
    return findings


_DOMAIN_PARAM_RE = re.compile(r"domain", re.IGNORECASE)
_CHECK_COMMAND_RE = re.compile(r"^(assert|test|confirm|validate|compare)([-_]|[A-Z])", re.IGNORECASE)


def _is_runtime_check(node: Node) -> bool:
    if node.kind == n.EXPRESSION:
        return bool(node.attrs.get("comparison"))
    if node.kind == n.ATTRIBUTE:
        return str(node.name or "").lower() == "validatescript"
    if node.kind in (n.COMMAND, n.INVOCATION):
        return bool(_CHECK_COMMAND_RE.match(str(node.name or "")))
    return False


def _domain_checks(scope: Node, domain_vars: Set[str], owners: Dict[int, str]) -> Iterator[Set[str]]:
    """
    Yield the sets of domain variables that appear together in a runtime
    check inside scope: a comparison, a ValidateScript attribute, or a
    Test-/Assert-/Confirm-style call.
    """
    for node in filter(_is_runtime_check, scope.walk()):
        referenced = {_bare_variable(v) for v in variables_in(node)} & domain_vars
        if node.kind == n.ATTRIBUTE and owners.get(id(node)):
            # $_ inside ValidateScript is the owning parameter
            referenced.add(owners[id(node)])
        if len(referenced) >= 2:
            yield referenced


@rule(
    "PS-ID-002",
    "UncheckedDomainParameters",
    Severity.HIGH,
    remediation="Compare the domain parameters at runtime (e.g. if ($DomainName -ne $ForestDomain) "
                "{ throw ... }) or derive one from the other.",
)
def unchecked_domain_parameters(ctx: RuleContext, unit: SourceUnit) -> List[Finding]:
    """Two or more domain parameters with no runtime consistency check between them."""
    findings: List[Finding] = []
    parents_of = _parents_index(unit.ast)
    for block in unit.ast.find_all(n.PARAM_BLOCK):
        params = [p for p in block.children
                  if p.kind == n.PARAMETER and _DOMAIN_PARAM_RE.search(p.name or "")
                  and "controller" not in (p.name or "").lower()]
        if len(params) < 2:
            continue
        domain_vars = {_bare_variable(p.name) for p in params}
        owners = {id(attr): _bare_variable(p.name)
                  for p in params for attr in p.children if attr.kind == n.ATTRIBUTE}
        scope = next(
            (parent for parent in reversed(parents_of.get(id(block), ()))
             if parent.kind in (n.FUNCTION, n.SCRIPT_BLOCK, n.SCRIPT)),
            unit.ast,
        )
        covered: Set[str] = set()
        for referenced in _domain_checks(scope, domain_vars, owners):
            covered |= referenced
        unchecked = [p for p in params if _bare_variable(p.name) not in covered]
        if unchecked:
            names = ", ".join("$" + p.name for p in params)
            findings.append(ctx.finding(
                unit, unchecked[0],
                f"Domain parameters {names} are never checked against each other",
            ))
    return findings
