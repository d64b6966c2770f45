# scanner/ast_nodes.py
"""
Generic syntax tree shared by every language adapter and every rule.

A Node has a kind, an optional literal value, ordered children, a source
span and a small attribute bag. Rules only ever look at this model, never at
an adapter's tokens.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

# Node kinds produced by the adapters
SCRIPT = "script"
STATEMENT_BLOCK = "statement_block"
SCRIPT_BLOCK = "script_block"
FUNCTION = "function"
PARAM_BLOCK = "param_block"
PARAMETER = "parameter"
ATTRIBUTE = "attribute"
TYPE = "type"
ASSIGNMENT = "assignment"
PIPELINE = "pipeline"
COMMAND = "command"
COMMAND_PARAMETER = "command_parameter"
INVOCATION = "invocation"
MEMBER = "member"
INDEX = "index"
EXPRESSION = "expression"
OPERATOR = "operator"
STRING = "string"
NUMBER = "number"
VARIABLE = "variable"
BAREWORD = "bareword"
ARRAY = "array"
HASHTABLE = "hashtable"
HASH_ENTRY = "hash_entry"
SUBEXPRESSION = "subexpression"
PAREN = "paren"
KEYWORD_STATEMENT = "keyword_statement"


@dataclass(frozen=True)
class Span:
    line: int
    column: int
    end_line: int
    end_column: int


@dataclass(frozen=True)
class ParseError:
    """
    A syntax error located in the source. Returned by parse(), never raised.
    """
    message: str
    line: int
    column: int
    file_path: str = ""

    def with_path(self, path: str) -> "ParseError":
        return replace(self, file_path=path)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filePath": self.file_path,
            "line": self.line,
            "column": self.column,
            "message": self.message,
        }

    def __str__(self) -> str:
        location = f"{self.file_path}:" if self.file_path else ""
        return f"{location}{self.line}:{self.column}: {self.message}"


@dataclass
class Node:
    kind: str
    span: Span
    value: Any = None
    children: List["Node"] = field(default_factory=list)
    attrs: Dict[str, Any] = field(default_factory=dict)

    @property
    def line(self) -> int:
        return self.span.line

    @property
    def column(self) -> int:
        return self.span.column

    def walk(self) -> Iterator["Node"]:
        """
        Depth-first, pre-order traversal (source order).
        """
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def walk_with_parents(self, parents: Tuple["Node", ...] = ()) -> Iterator[Tuple["Node", Tuple["Node", ...]]]:
        yield self, parents
        for child in self.children:
            yield from child.walk_with_parents(parents + (self,))

    def find_all(self, kind: str) -> List["Node"]:
        return [n for n in self.walk() if n.kind == kind]

    def find_first(self, predicate: Callable[["Node"], bool]) -> Optional["Node"]:
        for n in self.walk():
            if predicate(n):
                return n
        return None

    def child(self, role: str) -> Optional["Node"]:
        """
        Return the first child whose attrs['role'] equals role.
        """
        for c in self.children:
            if c.attrs.get("role") == role:
                return c
        return None

    @property
    def name(self) -> Optional[str]:
        return self.attrs.get("name")

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"kind": self.kind, "line": self.span.line, "column": self.span.column}
        if self.value is not None:
            out["value"] = self.value
        if self.attrs:
            out["attrs"] = dict(self.attrs)
        if self.children:
            out["children"] = [c.to_dict() for c in self.children]
        return out


def variables_in(node: Node) -> List[str]:
    """
    Lower-cased names of every variable referenced under node, including
    ones interpolated into expandable strings.
    """
    names: List[str] = []
    for n in node.walk():
        if n.kind == VARIABLE:
            names.append(str(n.value).lower())
        elif n.kind == STRING and n.attrs.get("expandable"):
            names.extend(v.lower() for v in n.attrs.get("variables", []))
    return names
