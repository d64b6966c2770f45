# mock_backend/interceptor.py
"""
Command interceptor: routes PowerShell command names to a BackendGateway.

- An explicit table maps each supported command and its parameters onto a
  gateway method; there is no global command patching.
- Every call is recorded, including the ones that raised.
- replay() runs the straight-line commands of a parsed script (literal
  arguments and variables assigned earlier in the script) against the gateway.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from errors import HarnessError, MockNotFoundError, MockValidationError
from mock_backend.gateway import BackendGateway, MockBackendGateway
from models import SourceUnit
from scanner import ast_nodes as n
from scanner.ast_nodes import Node

logger = logging.getLogger(__name__)

DEFAULT_SERVER = "localhost"

# Accepted by every command and ignored.
COMMON_PARAMETERS = {
    "verbose", "debug", "erroraction", "warningaction", "informationaction", "errorvariable",
    "warningvariable", "outvariable", "outbuffer", "pipelinevariable", "whatif", "confirm", "passthru",
}

_SERVER_ALIASES = {"serveraddress": "server_address", "server": "server_address",
                   "computername": "server_address", "caserver": "server_address"}


@dataclass(frozen=True)
class CommandBinding:
    """
    How one command maps onto the gateway.

    - method: gateway method name, or a callable(gateway, **kwargs)
    - parameters: PowerShell parameter name (lower case) -> keyword argument
    - positional: keyword arguments filled by positional arguments, in order
    - switches: parameters that take no value
    - needs_server: fill server_address with the interceptor default
    """
    method: Union[str, Callable[..., Any]]
    parameters: Dict[str, str] = field(default_factory=dict)
    positional: Tuple[str, ...] = ()
    switches: Tuple[str, ...] = ()
    needs_server: bool = False


def _set_service(gateway: BackendGateway, name: str, start_type: Optional[str] = None,
                 status: Optional[str] = None):
    result = None
    if start_type is not None:
        result = gateway.set_service_startup_type(name, start_type)
    if status is not None:
        wanted = status.lower()
        if wanted == "running":
            result = gateway.start_service(name)
        elif wanted == "stopped":
            result = gateway.stop_service(name)
        elif wanted == "paused":
            result = gateway.suspend_service(name)
        else:
            raise MockValidationError(f"Invalid service status '{status}'", entity_id=name)
    if result is None:
        result = gateway.get_service(name)[0]
    return result


def _search_scope(value: Any) -> str:
    return str(value).lower()


COMMAND_TABLE: Dict[str, CommandBinding] = {
    # services
    "get-service": CommandBinding("get_service", {"name": "name"}, ("name",)),
    "new-service": CommandBinding(
        "new_service",
        {"name": "name", "displayname": "display_name", "startuptype": "start_type"},
        ("name",),
    ),
    "start-service": CommandBinding("start_service", {"name": "name"}, ("name",)),
    "stop-service": CommandBinding("stop_service", {"name": "name", "force": "force"}, ("name",), ("force",)),
    "restart-service": CommandBinding("restart_service", {"name": "name", "force": "force"}, ("name",),
                                      ("force",)),
    "suspend-service": CommandBinding("suspend_service", {"name": "name"}, ("name",)),
    "resume-service": CommandBinding("resume_service", {"name": "name"}, ("name",)),
    "set-service": CommandBinding(
        _set_service, {"name": "name", "startuptype": "start_type", "status": "status"}, ("name",),
    ),
    "remove-service": CommandBinding("remove_service", {"name": "name"}, ("name",)),
    # certificate authority
    "add-catemplate": CommandBinding(
        "add_template",
        {"name": "name", "schemaversion": "schema_version", "hashalgorithm": "hash_algorithm",
         "keysize": "key_size", **_SERVER_ALIASES},
        ("name",), needs_server=True,
    ),
    "get-catemplate": CommandBinding("get_templates", {"name": "name", **_SERVER_ALIASES}, ("name",),
                                     needs_server=True),
    "set-authorizationcertificate": CommandBinding(
        "set_authorization_certificate", {"subject": "subject", "issuer": "issuer", **_SERVER_ALIASES},
        ("subject",), needs_server=True,
    ),
    "new-certificatedefinition": CommandBinding(
        "new_certificate_definition",
        {"name": "name", "templatename": "template_name", "template": "template_name",
         "certificateauthority": "certificate_authority", "ca": "certificate_authority", **_SERVER_ALIASES},
        ("name",), needs_server=True,
    ),
    "get-certificatedefinition": CommandBinding("get_certificate_definitions", {"name": "name", **_SERVER_ALIASES},
                                                ("name",), needs_server=True),
    "new-issuancerule": CommandBinding(
        "new_issuance_rule",
        {"name": "name", "certificatedefinitionnames": "certificate_definition_names",
         "certificatedefinitions": "certificate_definition_names", "issuanceacl": "issuance_acl",
         "readacl": "read_acl", "adminacl": "admin_acl", **_SERVER_ALIASES},
        ("name",), needs_server=True,
    ),
    # directory
    "get-adobject": CommandBinding(
        "get_directory_objects",
        {"identity": "identity", "ldapfilter": "ldap_filter", "searchbase": "search_base",
         "searchscope": "scope"},
        ("identity",),
    ),
    "new-adobject": CommandBinding(
        "new_directory_object",
        {"name": "name", "type": "object_class", "path": "path", "otherattributes": "properties"},
        ("name", "object_class"),
    ),
    "set-adobject": CommandBinding("set_directory_object", {"identity": "identity", "replace": "properties"},
                                   ("identity",)),
    "remove-adobject": CommandBinding("remove_directory_object", {"identity": "identity", "recursive": "recursive"},
                                      ("identity",), ("recursive",)),
    # event log
    "write-eventlog": CommandBinding(
        "write_event_log",
        {"logname": "log_name", "eventid": "event_id", "message": "message", "entrytype": "level",
         "source": "source"},
        ("log_name",),
    ),
    "get-eventlog": CommandBinding("get_event_log", {"logname": "log_name", "newest": "newest",
                                                     "entrytype": "level"}, ("log_name",)),
}

_CONVERTERS: Dict[str, Callable[[Any], Any]] = {
    "scope": _search_scope,
    "event_id": int,
    "newest": int,
    "schema_version": int,
    "key_size": int,
}


@dataclass
class InterceptedCall:
    command: str
    arguments: Dict[str, Any]
    result: Any = None
    error: Optional[HarnessError] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class ReplayResult:
    calls: List[InterceptedCall] = field(default_factory=list)
    # (line, command text, reason)
    skipped: List[Tuple[int, str, str]] = field(default_factory=list)
    variables: Dict[str, Any] = field(default_factory=dict)


class _Unresolved(Exception):
    """An argument depends on something replay cannot evaluate."""


class CommandInterceptor:
    def __init__(self, gateway: Optional[BackendGateway] = None, default_server: str = DEFAULT_SERVER):
        self.gateway = gateway if gateway is not None else MockBackendGateway()
        self.default_server = default_server
        self.calls: List[InterceptedCall] = []

    def handles(self, command: str) -> bool:
        return str(command).lower() in COMMAND_TABLE

    def bind(self, command: str, *args: Any, **parameters: Any) -> Dict[str, Any]:
        """
        Turn PowerShell-style arguments into gateway keyword arguments.
        Raises MockNotFoundError for unknown commands and
        MockValidationError for unknown parameters or
        values that cannot be converted to the expected number.
        """
        binding = COMMAND_TABLE.get(str(command).lower())
        if binding is None:
            raise MockNotFoundError(
                f"The term '{command}' is not recognized as the name of a cmdlet", entity_id=command
            )
        kwargs: Dict[str, Any] = {}
        for ps_name, value in parameters.items():
            key = ps_name.lstrip("-").lower()
            if key in COMMON_PARAMETERS:
                continue
            if key not in binding.parameters:
                raise MockValidationError(
                    f"{command}: a parameter cannot be found that matches parameter name '{ps_name}'",
                    entity_id=command, parameter=ps_name,
                )
            kwargs[binding.parameters[key]] = value
        positional = [p for p in binding.positional if p not in kwargs]
        if len(args) > len(positional):
            raise MockValidationError(f"{command}: too many positional arguments", entity_id=command)
        kwargs.update(zip(positional, args))
        for key, convert in _CONVERTERS.items():
            if key in kwargs and kwargs[key] is not None:
                try:
                    kwargs[key] = convert(kwargs[key])
                except (TypeError, ValueError):
                    raise MockValidationError(
                        f"{command}: {key} must be an integer", entity_id=command, parameter=key
                    ) from None
        if binding.needs_server:
            kwargs.setdefault("server_address", self.default_server)
        return kwargs

    def invoke(self, command: str, *args: Any, **parameters: Any) -> Any:
        """
        Run one command against the gateway and record the call. Backend
        errors are recorded and re-raised unchanged.
        """
        binding = COMMAND_TABLE.get(str(command).lower())
        call = InterceptedCall(command=command, arguments={})
        self.calls.append(call)
        try:
            call.arguments = self.bind(command, *args, **parameters)
            if callable(binding.method):
                call.result = binding.method(self.gateway, **call.arguments)
            else:
                call.result = getattr(self.gateway, binding.method)(**call.arguments)
        except HarnessError as e:
            call.error = e
            logger.info("%s failed: %s", command, e.message)
            raise
        return call.result

    def calls_to(self, command: str) -> List[InterceptedCall]:
        return [c for c in self.calls if c.command.lower() == command.lower()]

    def clear(self) -> None:
        del self.calls[:]

    # --- replay -------------------------------------------------------------------

    def replay(self, source: Union[SourceUnit, str], variables: Optional[Dict[str, Any]] = None) -> ReplayResult:
        """
        Execute the top-level command statements of a script in order.

        Commands the table does not know, and commands whose arguments are
        not literals or known variables, are skipped and listed in the
        result. Backend errors propagate.
        """
        unit = source if isinstance(source, SourceUnit) else SourceUnit(path="<replay>", text=source)
        result = ReplayResult(variables={k.lower(): v for k, v in (variables or {}).items()})
        for stmt in unit.ast.children:
            if stmt.kind == n.ASSIGNMENT:
                self._replay_assignment(stmt, result)
            elif stmt.kind == n.COMMAND:
                self._replay_command(stmt, result)
        return result

    def _replay_assignment(self, stmt: Node, result: ReplayResult) -> None:
        name = str(stmt.name or "").split(":")[-1].lower()
        value = stmt.child("value")
        if not name or value is None or stmt.attrs.get("operator") != "=":
            return
        try:
            if value.kind == n.COMMAND:
                outcome = self._replay_command(value, result)
                if outcome is _SKIPPED:
                    raise _Unresolved(f"${name} is assigned from a skipped command")
                result.variables[name] = outcome
            else:
                result.variables[name] = self._evaluate(value, result.variables)
        except _Unresolved as e:
            result.variables.pop(name, None)
            result.skipped.append((stmt.line, f"${name} = ...", str(e)))

    def _replay_command(self, stmt: Node, result: ReplayResult) -> Any:
        command = str(stmt.name or "")
        if not self.handles(command):
            result.skipped.append((stmt.line, command, "not intercepted"))
            return _SKIPPED
        args: List[Any] = []
        params: Dict[str, Any] = {}
        binding = COMMAND_TABLE[command.lower()]
        try:
            for child in stmt.children:
                role = child.attrs.get("role")
                if child.kind == n.COMMAND_PARAMETER:
                    value_node = child.child("value")
                    key = str(child.name).lower()
                    if value_node is None:
                        params[child.name] = True if key in binding.switches or key in COMMON_PARAMETERS else None
                        if params[child.name] is None:
                            raise _Unresolved(f"-{child.name} has no value")
                    else:
                        params[child.name] = self._evaluate(value_node, result.variables)
                elif role == "argument":
                    args.append(self._evaluate(child, result.variables))
                elif role == "redirect":
                    continue
                else:
                    raise _Unresolved(f"unsupported element {child.kind}")
        except _Unresolved as e:
            result.skipped.append((stmt.line, command, str(e)))
            return _SKIPPED
        outcome = self.invoke(command, *args, **params)
        result.calls.append(self.calls[-1])
        return outcome

    def _evaluate(self, node: Node, variables: Dict[str, Any]) -> Any:
        kind = node.kind
        if kind == n.STRING:
            if not node.attrs.get("expandable") or not node.attrs.get("variables"):
                return str(node.value)
            return _expand(str(node.value), variables)
        if kind == n.NUMBER:
            return _number(str(node.value))
        if kind == n.BAREWORD:
            return str(node.value)
        if kind == n.VARIABLE:
            name = str(node.value).split(":")[-1].lower()
            if name in ("true", "false", "null"):
                return {"true": True, "false": False, "null": None}[name]
            if name in variables:
                return variables[name]
            raise _Unresolved(f"${node.value} is not known")
        if kind == n.ARRAY:
            items: List[Any] = []
            for child in node.children:
                value = self._evaluate(child, variables)
                items.extend(value if isinstance(value, list) and child.kind != n.ARRAY else [value])
            return items
        if kind == n.EXPRESSION and set(node.attrs.get("operators", [])) == {","}:
            return [self._evaluate(c, variables) for c in node.children if c.kind != n.OPERATOR]
        if kind in (n.PAREN, n.SUBEXPRESSION) and len(node.children) == 1:
            return self._evaluate(node.children[0], variables)
        if kind == n.HASHTABLE:
            return {str(e.attrs["key"]): self._evaluate(e.child("value"), variables)
                    for e in node.children if e.kind == n.HASH_ENTRY and e.child("value") is not None}
        raise _Unresolved(f"cannot evaluate {kind}")


_SKIPPED = object()

_EXPAND_RE = re.compile(r"\$\{(?P<braced>[^}]+)\}|\$(?P<plain>[A-Za-z_][\w]*(?::[A-Za-z_]\w*)?)")


def _expand(text: str, variables: Dict[str, Any]) -> str:
    def substitute(m: "re.Match") -> str:
        name = (m.group("braced") or m.group("plain")).split(":")[-1].lower()
        if name not in variables:
            raise _Unresolved(f"${name} is not known")
        return str(variables[name])
    return _EXPAND_RE.sub(substitute, text)


def _number(text: str) -> Any:
    for base in (10, 0):
        try:
            return int(text, base)
        except ValueError:
            continue
    try:
        return float(text)
    except ValueError:
        return text
