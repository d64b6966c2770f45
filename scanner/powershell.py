# scanner/powershell.py
"""
PowerShell adapter for the generic syntax tree.

tree-sitter-powershell does the parsing. This module folds its concrete
syntax tree into the Node model the rules read:

- wrapper chains (logical_expression > ... > unary_expression) collapse to
  their single operand;
- command elements are paired into parameters, parameter values and
  positional arguments;
- ERROR and MISSING nodes become ParseError entries located at the
  construct that was left open.

parse(text) never raises; it always returns (tree, errors).
"""

import re
from typing import Any, List, Optional, Tuple

import tree_sitter_powershell as tsps
from tree_sitter import Language, Node as TSNode, Parser

from scanner import ast_nodes as n
from scanner.ast_nodes import Node, ParseError, Span

PS_LANG = Language(tsps.language())

_COMPARISON_BASE = (
    "eq", "ne", "gt", "ge", "lt", "le", "like", "notlike", "match", "notmatch",
    "contains", "notcontains", "in", "notin", "replace",
)
COMPARISON_OPERATORS = frozenset(
    ["-" + op for op in _COMPARISON_BASE]
    + ["-i" + op for op in _COMPARISON_BASE]
    + ["-c" + op for op in _COMPARISON_BASE]
    + ["-is", "-isnot"]
)

# Parameters that never take an argument; anything after them is positional.
SWITCH_PARAMETERS = {
    "force", "asplaintext", "recurse", "passthru", "whatif", "confirm", "verbose",
    "debug", "noprofile", "noninteractive", "nologo", "wait", "raw", "asjob",
    "asstring", "usebasicparsing", "nonewline", "append", "all", "includeall",
    "list", "quiet", "nowait", "sta", "mta", "unique", "descending",
}

_ESCAPES = {"0": "\0", "a": "\a", "b": "\b", "e": "\x1b", "f": "\f",
            "n": "\n", "r": "\r", "t": "\t", "v": "\v"}

_INTERPOLATED_RE = re.compile(r"(?<!`)\$(?:\{([^}]+)\}|((?:[A-Za-z_]\w*:)?\w+))")
_ASSIGN_OPS = {"=", "+=", "-=", "*=", "/=", "%=", "??="}

_STRING_TYPES = {
    "expandable_string_literal", "verbatim_string_characters",
    "expandable_here_string_literal", "verbatim_here_string_characters",
}
_NUMBER_TYPES = {"integer_literal", "decimal_integer_literal", "hexadecimal_integer_literal", "real_literal"}
_WORD_TYPES = {
    "generic_token", "simple_name", "command_name", "path_command_name", "function_name",
    "member_name", "type_identifier", "type_name", "label_expression",
}
# Nodes whose named children are spliced into the parent
_CONTAINERS = {
    "ERROR", "statement_list", "script_block", "script_block_body", "named_block_list",
    "elseif_clauses", "catch_clauses", "switch_body", "switch_clauses", "hash_literal_body",
    "argument_expression_list", "parameter_list", "attribute_list", "string_literal",
    "unary_expression", "left_assignment_expression", "key_expression", "argument_expression",
    "while_condition", "switch_condition", "script_parameter_default", "redirected_file_name",
}
_SKIPPED = {
    "comment", "empty_statement", "command_argument_sep", "label", "redirections",
    "verbatim_command_argument", "stop_parsing", "block_name", "merging_redirection_operator",
    "file_redirection_operator", "command_invokation_operator",
}
_PUNCTUATION = {"(", ")", "{", "}", "[", "]", "@(", "@{", "$(", ";", "=", ".", "::", ":", "\n"}
_KEYWORD_STATEMENTS = {
    "if_statement": "if", "elseif_clause": "elseif", "else_clause": "else",
    "switch_statement": "switch", "switch_clause": "case", "foreach_statement": "foreach",
    "for_statement": "for", "while_statement": "while", "do_statement": "do",
    "try_statement": "try", "catch_clause": "catch", "finally_clause": "finally",
    "trap_statement": "trap", "data_statement": "data", "class_statement": "class",
    "enum_statement": "enum", "class_property_definition": "property",
}
_CONDITION_TYPES = {"pipeline", "while_condition", "switch_condition"}
_CLOSERS = {"}": ("{", "@{", "$("), ")": ("(", "@(", "$("), "]": ("[",)}

TERMINATOR_MESSAGE = "The string is missing the terminator: {}."
_UNCLOSED_MESSAGES = {
    "{": "Missing closing '}' in statement block or type definition.",
    "(": "Missing closing ')' in expression.",
    "[": "Missing closing ']' in type literal or index expression.",
}


def node_text(node: TSNode) -> str:
    """Get the source text of a node."""
    return node.text.decode("utf-8", errors="replace") if node.text else ""


def dotted_name(node: Node) -> str:
    """
    Best-effort textual name of an expression used as a call target,
    e.g. "ScriptBlock::Create" or "$ExecutionContext.InvokeCommand".
    """
    if node.kind == n.VARIABLE:
        return "$" + str(node.value)
    if node.kind in (n.TYPE, n.BAREWORD, n.STRING):
        return str(node.value)
    if node.kind in (n.MEMBER, n.INVOCATION):
        return str(node.attrs.get("qualified", node.attrs.get("name", "")))
    if node.kind == n.COMMAND:
        return str(node.attrs.get("name") or "")
    return node.kind


def _unescape(body: str, quote: str) -> str:
    out: List[str] = []
    i = 0
    while i < len(body):
        ch = body[i]
        if quote == '"' and ch == "`" and i + 1 < len(body):
            out.append(_ESCAPES.get(body[i + 1], body[i + 1]))
            i += 2
        elif ch == quote and body.startswith(quote * 2, i):
            out.append(quote)
            i += 2
        else:
            out.append(ch)
            i += 1
    return "".join(out)


def _here_string_opens(text: str, i: int) -> bool:
    if text[i] != "@" or text[i + 1:i + 2] not in ("'", '"'):
        return False
    rest = text[i + 2:]
    line_end = rest.find("\n")
    return line_end >= 0 and rest[:line_end].strip() == ""


def _unclosed(text: str) -> Optional[Tuple[str, int]]:
    """
    Find the construct left open in a fragment of source: an unterminated
    string (returned as its terminator) or the innermost unmatched bracket.
    Returns (terminator or opening bracket, offset) or None.
    """
    stack: List[Tuple[str, int]] = []
    quote: Optional[str] = None
    quote_at = 0
    i = 0
    while i < len(text):
        ch = text[i]
        if quote in ('"@', "'@"):
            if text.startswith("\n" + quote, i):
                quote = None
                i += 3
                continue
            i += 1
            continue
        if quote:
            if quote == '"' and ch == "`":
                i += 2
                continue
            if ch == quote:
                if text.startswith(quote * 2, i):
                    i += 2
                    continue
                quote = None
            i += 1
            continue
        if text.startswith("<#", i):
            end = text.find("#>", i + 2)
            i = len(text) if end < 0 else end + 2
        elif ch == "#":
            end = text.find("\n", i)
            i = len(text) if end < 0 else end
        elif ch == "`":
            i += 2
        elif _here_string_opens(text, i):
            quote, quote_at = text[i + 1] + "@", i
            i += 2
        elif ch in "\"'":
            quote, quote_at = ch, i
            i += 1
        elif ch in "({[":
            stack.append((ch, i))
            i += 1
        elif ch in ")}]":
            if stack and stack[-1][0] == {")": "(", "}": "{", "]": "["}[ch]:
                stack.pop()
            i += 1
        else:
            i += 1
    if quote:
        return quote, quote_at
    if stack:
        return stack[-1]
    return None


class _TreeBuilder:
    def __init__(self, text: str):
        self.source = text.encode("utf-8")
        self.lines = self.source.split(b"\n")
        self.errors: List[ParseError] = []
        self._handlers = {
            "param_block": self._param_block,
            "function_parameter_declaration": self._param_block,
            "class_method_parameter_list": self._param_block,
            "script_parameter": self._parameter,
            "class_method_parameter": self._parameter,
            "attribute": self._bracket,
            "type_literal": self._bracket,
            "cast_expression": self._cast,
            "function_statement": self._function,
            "class_method_definition": self._function,
            "assignment_expression": self._assignment,
            "pipeline": self._pipeline,
            "command": self._command,
            "redirection": self._redirection,
            "array_literal_expression": self._array_literal,
            "parenthesized_expression": lambda ts: self._group(ts, n.PAREN),
            "sub_expression": lambda ts: self._group(ts, n.SUBEXPRESSION),
            "array_expression": lambda ts: self._group(ts, n.ARRAY),
            "script_block_expression": lambda ts: self._group(ts, n.SCRIPT_BLOCK),
            "statement_block": lambda ts: self._group(ts, n.SCRIPT_BLOCK),
            "hash_literal_expression": lambda ts: self._group(ts, n.HASHTABLE),
            "hash_entry": self._hash_entry,
            "member_access": lambda ts: self._member(ts, invocation=False),
            "invokation_expression": lambda ts: self._member(ts, invocation=True),
            "element_access": self._index,
            "variable": self._variable,
            "braced_variable": self._variable,
            "named_block": self._named_block,
            "flow_control_statement": self._flow_control,
        }

    # --- positions -------------------------------------------------------------

    def point(self, point: Tuple[int, int]) -> Tuple[int, int]:
        """
        1-based (line, column) in characters from a 0-based byte point.
        """
        row, col = point[0], point[1]
        prefix = self.lines[row][:col] if row < len(self.lines) else b""
        return row + 1, len(prefix.decode("utf-8", errors="replace")) + 1

    def span(self, start: TSNode, end: Optional[TSNode] = None) -> Span:
        line, column = self.point(start.start_point)
        end_line, end_column = self.point((end or start).end_point)
        return Span(line, column, end_line, end_column)

    def node(self, kind: str, ts: TSNode, value: Any = None,
             children: Optional[List[Node]] = None, **attrs: Any) -> Node:
        return Node(kind, self.span(ts), value=value, children=children or [], attrs=attrs)

    # --- dispatch ----------------------------------------------------------------

    def build(self, root: TSNode) -> Tuple[Node, List[ParseError]]:
        self._collect_errors(root)
        end_line, end_column = self.point(root.end_point)
        script = Node(n.SCRIPT, Span(1, 1, end_line, end_column), children=self.convert_all(root))
        return script, self._finish_errors()

    def convert(self, ts: TSNode) -> List[Node]:
        if ts.is_missing or ts.type in _SKIPPED:
            return []
        handler = self._handlers.get(ts.type)
        if handler is not None:
            result = handler(ts)
            return result if isinstance(result, list) else [result]
        if ts.type in _STRING_TYPES:
            return [self._string(ts)]
        if ts.type in _NUMBER_TYPES:
            return [self.node(n.NUMBER, ts, value=node_text(ts))]
        if ts.type in _WORD_TYPES:
            return [self.node(n.BAREWORD, ts, value=node_text(ts).strip())]
        if ts.type in _KEYWORD_STATEMENTS:
            return [self._keyword_statement(ts, _KEYWORD_STATEMENTS[ts.type])]
        if ts.type in _CONTAINERS:
            return self.convert_all(ts)
        return self._operators(ts)

    def convert_all(self, ts: TSNode) -> List[Node]:
        out: List[Node] = []
        for child in ts.named_children:
            out.extend(self.convert(child))
        return out

    def one(self, ts: Optional[TSNode]) -> Optional[Node]:
        if ts is None:
            return None
        converted = self.convert(ts)
        return converted[0] if converted else None

    def _missing_value(self, ts: TSNode) -> Node:
        line, column = self.point(ts.end_point)
        return Node(n.BAREWORD, Span(line, column, line, column), value="", attrs={"missing": True})

    # --- expressions -------------------------------------------------------------

    def _operators(self, ts: TSNode) -> List[Node]:
        """
        Any expression level: a single operand collapses to itself, operands
        joined by operators become one EXPRESSION.
        """
        parts: List[Node] = []
        operators: List[str] = []
        operands = 0
        for child in ts.children:
            if child.is_missing or child.type in _SKIPPED:
                continue
            if child.type == "comparison_operator" or (not child.is_named and child.type not in _PUNCTUATION):
                op = node_text(child).strip().lower()
                if not op:
                    continue
                operators.append(op)
                parts.append(self.node(n.OPERATOR, child, value=op))
                continue
            if not child.is_named:
                continue
            converted = self.convert(child)
            if (child.type == ts.type and len(converted) == 1 and converted[0].kind == n.EXPRESSION
                    and not converted[0].attrs.get("unary")):
                inner = converted[0]
                parts.extend(inner.children)
                operators.extend(inner.attrs["operators"])
                operands += sum(1 for c in inner.children if c.kind != n.OPERATOR)
                continue
            parts.extend(converted)
            operands += len(converted)
        if not operators:
            if parts or ts.named_children:
                return parts
            text = node_text(ts).strip()
            return [self.node(n.BAREWORD, ts, value=text)] if text else []
        return [self.node(n.EXPRESSION, ts, children=parts, operators=operators,
                          unary=operands == 1 and len(operators) == 1,
                          comparison=any(op in COMPARISON_OPERATORS for op in operators))]

    def _array_literal(self, ts: TSNode) -> List[Node]:
        if not any(c.type == "," for c in ts.children):
            return self.convert_all(ts)
        items: List[Node] = []
        for child in ts.named_children:
            converted = self.convert(child)
            if child.type == ts.type and len(converted) == 1 and converted[0].kind == n.ARRAY:
                items.extend(converted[0].children)
            else:
                items.extend(converted)
        return [self.node(n.ARRAY, ts, children=items)]

    def _string(self, ts: TSNode) -> Node:
        raw = node_text(ts)
        quote = '"' if ts.type.startswith("expandable") else "'"
        here = "here_string" in ts.type
        if here:
            body = raw[2:]
            first = body.find("\n")
            body = body[first + 1:] if first >= 0 else ""
            last = body.rfind("\n")
            body = body[:last].rstrip("\r") if last >= 0 else ""
            value = body
        else:
            body = raw[1:-1] if len(raw) >= 2 and raw.endswith(quote) else raw[1:]
            value = _unescape(body, quote)
        variables = [a or b for a, b in _INTERPOLATED_RE.findall(body)] if quote == '"' else []
        return self.node(n.STRING, ts, value=value, quote=quote, here=here,
                         expandable=quote == '"' and (bool(variables) or "$(" in body),
                         variables=variables)

    def _variable(self, ts: TSNode) -> Node:
        text = node_text(ts).strip()
        name = text[1:]
        if name.startswith("{") and name.endswith("}"):
            name = name[1:-1]
        return self.node(n.VARIABLE, ts, value=name, name=name, splat=text.startswith("@"))

    def _bracket(self, ts: TSNode) -> Node:
        """
        [Name(args)] is an attribute, anything else a type literal.
        """
        literal = next((c for c in ts.named_children if c.type == "type_literal"), None)
        if literal is not None and ts.type == "attribute":
            return self._bracket(literal)
        text = node_text(ts).strip()
        inner = text[1:-1] if text.startswith("[") and text.endswith("]") else text.strip("[]")
        if ts.type == "type_literal" or "(" not in inner:
            type_name = inner.strip()
            return self.node(n.TYPE, ts, value=type_name, name=type_name)
        name_ts = next((c for c in ts.named_children if c.type == "attribute_name"), None)
        name = node_text(name_ts).strip() if name_ts is not None else inner[:inner.index("(")].strip()
        args: List[Node] = []
        for container in ts.named_children:
            if container.type != "attribute_arguments":
                continue
            for arg in container.named_children:
                if arg.type == "attribute_argument":
                    args.extend(self._attribute_argument(arg))
                else:
                    args.extend(self.convert(arg))
        return self.node(n.ATTRIBUTE, ts, value=name, children=args, name=name)

    def _attribute_argument(self, ts: TSNode) -> List[Node]:
        named = [c for c in ts.named_children if c.type != "comment"]
        if named and named[0].type == "simple_name" and any(c.type == "=" for c in ts.children):
            key = node_text(named[0]).strip()
            value = self.one(named[1]) if len(named) > 1 else None
            children: List[Node] = []
            if value is not None:
                value.attrs["role"] = "value"
                children.append(value)
            return [self.node(n.HASH_ENTRY, ts, value=key, children=children, key=key)]
        return self.convert_all(ts)

    def _cast(self, ts: TSNode) -> Node:
        named = [c for c in ts.named_children if c.type != "comment"]
        type_node = self._bracket(named[0])
        operand = self.one(named[1]) if len(named) > 1 else None
        if operand is None:
            return type_node
        operand.attrs["role"] = "operand"
        return self.node(n.TYPE, ts, value=type_node.value, children=[operand],
                         name=type_node.value, cast=True)

    def _member(self, ts: TSNode, invocation: bool) -> Node:
        named = [c for c in ts.named_children if c.type != "comment"]
        target = self.one(named[0]) if named else None
        if target is None:
            target = self.node(n.BAREWORD, ts, value=node_text(ts))
        member_ts = next((c for c in named[1:] if c.type == "member_name"), None)
        member = node_text(member_ts).strip() if member_ts is not None else ""
        if member[:1] in ("'", '"') and member.endswith(member[0]):
            member = member[1:-1]
        static = any(c.type == "::" for c in ts.children)
        qualified = f"{dotted_name(target)}{'::' if static else '.'}{member}"
        target.attrs["role"] = "target"
        if not invocation:
            return self.node(n.MEMBER, ts, children=[target], name=member, qualified=qualified, static=static)
        args: List[Node] = []
        for arg_list in (c for c in named if c.type == "argument_list"):
            for arg in self.convert_all(arg_list):
                arg.attrs["role"] = "argument"
                args.append(arg)
        return self.node(n.INVOCATION, ts, children=[target] + args, name=member,
                         qualified=qualified, static=static)

    def _index(self, ts: TSNode) -> Node:
        named = [c for c in ts.named_children if c.type != "comment"]
        children = [c for c in (self.one(t) for t in named[:2]) if c is not None]
        if children:
            children[0].attrs["role"] = "target"
        return self.node(n.INDEX, ts, children=children)

    def _group(self, ts: TSNode, kind: str) -> Node:
        return self.node(kind, ts, children=self.convert_all(ts))

    def _hash_entry(self, ts: TSNode) -> List[Node]:
        named = [c for c in ts.named_children if c.type != "comment"]
        if not named:
            return []
        key = self.one(named[0]) or self.node(n.BAREWORD, named[0], value=node_text(named[0]).strip())
        key_text = str(key.value) if key.value is not None else node_text(named[0]).strip()
        key.attrs["role"] = "key"
        children = [key]
        value = self.one(named[1]) if len(named) > 1 else None
        if value is not None:
            value.attrs["role"] = "value"
            children.append(value)
        return [self.node(n.HASH_ENTRY, ts, value=key_text, children=children, key=key_text)]

    # --- statements ----------------------------------------------------------------

    def _assignment(self, ts: TSNode) -> Node:
        named = [c for c in ts.named_children if c.type != "comment"]
        left_ts = next((c for c in named if c.type == "left_assignment_expression"), named[0] if named else None)
        op_ts = next((c for c in ts.children if c.type == "assignement_operator"
                      or node_text(c).strip() in _ASSIGN_OPS), None)
        value_ts = ts.child_by_field_name("value")
        if value_ts is None:
            rest = [c for c in named if c is not left_ts and c.type != "assignement_operator"]
            value_ts = rest[-1] if rest else None
        target = self.one(left_ts) or self.node(n.BAREWORD, ts, value="")
        value = self.one(value_ts) or self._missing_value(ts)
        operator = node_text(op_ts).strip() if op_ts is not None else "="
        target.attrs["role"] = "target"
        value.attrs["role"] = "value"
        name, type_name = _assignment_target(target)
        return self.node(n.ASSIGNMENT, ts, value=operator, children=[target, value],
                         name=name, operator=operator, type=type_name)

    def _pipeline(self, ts: TSNode) -> List[Node]:
        elements = self.convert_all(ts)
        if len(elements) <= 1:
            return elements
        return [self.node(n.PIPELINE, ts, children=elements)]

    def _command(self, ts: TSNode) -> Node:
        attrs: dict = {"name": None}
        children: List[Node] = []
        operator = next((c for c in ts.named_children if c.type == "command_invokation_operator"), None)
        if operator is not None:
            attrs["invocation_operator"] = node_text(operator).strip()
        name_ts = ts.child_by_field_name("command_name") or next(
            (c for c in ts.named_children if c.type in ("command_name", "command_name_expr", "path_command_name")),
            None,
        )
        if name_ts is not None:
            inner = name_ts.named_children[0] if (name_ts.type == "command_name_expr"
                                                  and name_ts.named_children) else name_ts
            if inner.type in ("command_name", "path_command_name", "command_name_expr"):
                attrs["name"] = node_text(inner).strip()
            else:
                callee = self.one(inner)
                if callee is not None and callee.kind == n.STRING:
                    attrs["name"] = str(callee.value)
                elif callee is not None:
                    callee.attrs["role"] = "callee"
                    children.append(callee)
                    attrs["name"] = dotted_name(callee)
        elements = ts.child_by_field_name("command_elements") or next(
            (c for c in ts.named_children if c.type == "command_elements"), None
        )
        if elements is not None:
            children.extend(self._command_elements(elements))
        return self.node(n.COMMAND, ts, children=children, **attrs)

    def _command_elements(self, ts: TSNode) -> List[Node]:
        """
        Pair each parameter with the argument after it unless it is a switch.
        """
        children: List[Node] = []
        pending: Optional[Node] = None
        last_parameter: Optional[Node] = None
        for child in ts.named_children:
            if child.type == "command_argument_sep":
                if node_text(child).strip() == ":" and last_parameter is not None:
                    pending = last_parameter
                continue
            if child.type == "command_parameter":
                raw = node_text(child).strip()
                name = raw.lstrip("-").rstrip(":")
                parameter = self.node(n.COMMAND_PARAMETER, child, value=name, name=name, role="parameter")
                children.append(parameter)
                last_parameter = parameter
                pending = parameter if raw.endswith(":") or name.lower() not in SWITCH_PARAMETERS else None
                continue
            last_parameter = None
            if child.type == "redirection":
                children.extend(self._redirection(child))
                pending = None
                continue
            values = self.convert(child)
            if not values:
                continue
            if pending is not None:
                values[0].attrs["role"] = "value"
                pending.children.append(values[0])
                values = values[1:]
                pending = None
            for value in values:
                value.attrs.setdefault("role", "argument")
                children.append(value)
        return children

    def _redirection(self, ts: TSNode) -> List[Node]:
        targets: List[Node] = []
        for child in ts.named_children:
            if child.type == "redirected_file_name":
                target = self.one(child) or self.node(n.BAREWORD, child, value=node_text(child).strip())
                target.attrs["role"] = "redirect"
                targets.append(target)
        return targets

    def _param_block(self, ts: TSNode) -> Node:
        style = {"param_block": "param", "class_method_parameter_list": "method"}.get(ts.type, "function")
        children: List[Node] = []
        for child in ts.named_children:
            if child.type in ("script_parameter", "class_method_parameter"):
                children.extend(self._parameter(child))
            elif child.type in ("parameter_list", "attribute_list", "attribute"):
                children.extend(self.convert(child))
        return self.node(n.PARAM_BLOCK, ts, children=children, style=style)

    def _parameter(self, ts: TSNode) -> List[Node]:
        attributes: List[Node] = []
        types: List[Node] = []
        default: Optional[Node] = None
        variable: Optional[TSNode] = None
        for child in ts.named_children:
            if child.type == "variable":
                variable = child
            elif child.type == "script_parameter_default":
                default = self.one(child)
            elif child.type in ("attribute_list", "attribute", "type_literal"):
                brackets = [a for a in child.named_children if a.type == "attribute"] \
                    if child.type == "attribute_list" else [child]
                for bracket in brackets:
                    item = self._bracket(bracket)
                    (attributes if item.kind == n.ATTRIBUTE else types).append(item)
        if variable is None:
            return []
        name = self._variable(variable).value
        children: List[Node] = attributes + types
        if default is not None:
            default.attrs["role"] = "default"
            children.append(default)
        type_names = [str(t.value) for t in types]
        return [Node(
            n.PARAMETER,
            self.span(variable),
            value=name,
            children=children,
            attrs={
                "name": name,
                "type": type_names[-1] if type_names else None,
                "types": type_names,
                "attributes": [a.attrs["name"] for a in attributes],
            },
        )]

    def _function(self, ts: TSNode) -> Node:
        keyword = node_text(ts.children[0]).strip().lower() if ts.children and not ts.children[0].is_named \
            else "method"
        name_ts = next((c for c in ts.named_children if c.type in ("function_name", "simple_name")), None)
        name = node_text(name_ts).strip() if name_ts is not None else ""
        children: List[Node] = []
        for child in ts.named_children:
            if child.type in ("function_parameter_declaration", "class_method_parameter_list"):
                children.append(self._param_block(child))
        block = next((c for c in ts.named_children if c.type == "statement_block"), None)
        if block is not None:
            body = self._group(block, n.SCRIPT_BLOCK)
        else:
            lbrace = next((c for c in ts.children if c.type == "{"), None)
            rbrace = next((c for c in reversed(ts.children) if c.type == "}"), None)
            statements: List[Node] = []
            for child in ts.named_children:
                if child.type == "script_block":
                    statements.extend(self.convert(child))
            body = Node(n.SCRIPT_BLOCK, self.span(lbrace or ts, rbrace or ts), children=statements)
        body.attrs["role"] = "body"
        children.append(body)
        return self.node(n.FUNCTION, ts, value=name, children=children, name=name, keyword=keyword)

    def _keyword_statement(self, ts: TSNode, keyword: str) -> Node:
        children: List[Node] = []
        has_condition = False
        for child in ts.named_children:
            if child.type in _SKIPPED:
                continue
            converted = self.convert(child)
            if child.type == "statement_block":
                for body in converted:
                    body.attrs["role"] = "body"
            elif child.type in _CONDITION_TYPES and not has_condition and converted:
                converted[0].attrs["role"] = "condition"
                has_condition = True
            children.extend(converted)
        return self.node(n.KEYWORD_STATEMENT, ts, value=keyword, children=children, name=keyword)

    def _named_block(self, ts: TSNode) -> Node:
        name_ts = next((c for c in ts.named_children if c.type == "block_name"), None)
        keyword = node_text(name_ts).strip().lower() if name_ts is not None else "end"
        return self._keyword_statement(ts, keyword)

    def _flow_control(self, ts: TSNode) -> Node:
        first = ts.children[0] if ts.children else ts
        return self._keyword_statement(ts, node_text(first).strip().lower())

    # --- errors --------------------------------------------------------------------

    def _collect_errors(self, root: TSNode) -> None:
        stack = [root]
        while stack:
            node = stack.pop()
            if node.is_missing:
                self._missing_error(node)
            elif node.type == "ERROR":
                self._unexpected_error(node)
            elif node.has_error:
                stack.extend(node.children)

    def _add_error(self, message: str, line: int, column: int) -> None:
        self.errors.append(ParseError(message, line, column))

    def _offset_location(self, ts: TSNode, text: str, offset: int) -> Tuple[int, int]:
        line, column = self.point(ts.start_point)
        prefix = text[:offset]
        newlines = prefix.count("\n")
        if newlines:
            return line + newlines, len(prefix) - prefix.rfind("\n")
        return line, column + len(prefix)

    def _missing_error(self, ts: TSNode) -> None:
        ancestor = ts.parent
        while ancestor is not None and ancestor.type not in _STRING_TYPES:
            ancestor = ancestor.parent
        if ancestor is not None or '"' in ts.type or "'" in ts.type:
            string_ts = ancestor or ts
            quote = "'" if (ancestor is not None and ancestor.type.startswith("verbatim")) or "'" in ts.type else '"'
            if "here_string" in string_ts.type:
                quote += "@"
            self._add_error(TERMINATOR_MESSAGE.format(quote), *self.point(string_ts.start_point))
            return
        if ts.type in _CLOSERS:
            opener = None
            if ts.parent is not None:
                opener = next((c for c in reversed(ts.parent.children)
                               if c.type in _CLOSERS[ts.type] and c.start_byte <= ts.start_byte), None)
            at = opener or ts.parent or ts
            self._add_error(_UNCLOSED_MESSAGES[_CLOSERS[ts.type][0]], *self.point(at.start_point))
            return
        what = ts.type.replace("_", " ") if ts.is_named else f"'{ts.type}'"
        self._add_error(f"Missing {what}.", *self.point(ts.start_point))

    def _unexpected_error(self, ts: TSNode) -> None:
        text = node_text(ts)
        found = _unclosed(text)
        if found is not None:
            token, offset = found
            message = _UNCLOSED_MESSAGES.get(token) or TERMINATOR_MESSAGE.format(token)
            self._add_error(message, *self._offset_location(ts, text, offset))
            return
        words = text.split()
        token = words[0][:40] if words else text
        self._add_error(f"Unexpected token '{token}' in expression or statement.", *self.point(ts.start_point))

    def _finish_errors(self) -> List[ParseError]:
        """
        Sort and de-duplicate; an unterminated string swallows the rest of
        the file, so nothing after it is reported.
        """
        errors = sorted(set(self.errors), key=lambda e: (e.line, e.column, e.message))
        for i, error in enumerate(errors):
            if error.message.startswith(TERMINATOR_MESSAGE.split("{")[0]):
                return errors[:i + 1]
        return errors


def _assignment_target(target: Node) -> Tuple[Optional[str], Optional[str]]:
    """
    Return (variable name, type constraint) of an assignment target.
    """
    if target.kind in (n.VARIABLE, n.BAREWORD):
        return str(target.value), None
    if target.kind == n.TYPE and target.attrs.get("cast") and target.children:
        name, _ = _assignment_target(target.children[-1])
        return name, str(target.value)
    if target.kind == n.MEMBER:
        return str(target.attrs.get("name")), None
    if target.kind == n.INDEX and target.children:
        return _assignment_target(target.children[0])
    return None, None


def parse(text: str) -> Tuple[Node, List[ParseError]]:
    """
    Parse PowerShell source into the generic tree.

    Never raises: syntax problems come back as ParseError entries sorted by
    position; an internal failure yields an empty script node plus one error.
    """
    builder = _TreeBuilder(text)
    try:
        parser = Parser(PS_LANG)
        return builder.build(parser.parse(builder.source).root_node)
    except Exception as e:
        error = ParseError(f"Internal parser error: {type(e).__name__}: {e}", 1, 1)
        return Node(n.SCRIPT, Span(1, 1, 1, 1)), [error]
