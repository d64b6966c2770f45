# mock_backend/directory.py
"""
In-memory directory: objects keyed by distinguished name, LDAP-style search,
and an event log ring buffer.

- DNs compare case-insensitively; a parent must exist before its children,
  except for naming contexts made only of DC= components.
- Filters: (attr=value), wildcards (attr=ab*), presence (attr=*), >=, <=,
  and the & | ! combinators.
- Search scopes: base, onelevel, subtree.
"""

import logging
import re
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from config import DEFAULT_EVENT_LOG_CAPACITY
from errors import MockDuplicateError, MockIntegrityError, MockNotFoundError, MockValidationError

logger = logging.getLogger(__name__)

SCOPE_BASE = "base"
SCOPE_ONELEVEL = "onelevel"
SCOPE_SUBTREE = "subtree"
SCOPES = (SCOPE_BASE, SCOPE_ONELEVEL, SCOPE_SUBTREE)

EVENT_LEVELS = ("Information", "Warning", "Error", "SuccessAudit", "FailureAudit")

_RDN_RE = re.compile(r"^\s*([A-Za-z][\w-]*)\s*=\s*(.+?)\s*$")


def split_dn(dn: str) -> List[Tuple[str, str]]:
    """
    Split a DN into (attribute, value) pairs, honouring backslash escapes.
    Raises MockValidationError for malformed names.
    """
    parts: List[str] = []
    current = []
    escaped = False
    for ch in dn or "":
        if escaped:
            current.append(ch)
            escaped = False
        elif ch == "\\":
            current.append(ch)
            escaped = True
        elif ch == ",":
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)
    parts.append("".join(current))
    rdns = []
    for part in parts:
        m = _RDN_RE.match(part)
        if not m:
            raise MockValidationError(f"Malformed distinguished name '{dn}'", entity_id=dn)
        rdns.append((m.group(1), m.group(2)))
    return rdns


def normalize_dn(dn: str) -> str:
    return ",".join(f"{a.lower()}={v.lower()}" for a, v in split_dn(dn))


def parent_dn(dn: str) -> Optional[str]:
    rdns = split_dn(dn)
    if len(rdns) == 1:
        return None
    return ",".join(f"{a}={v}" for a, v in rdns[1:])


def is_naming_context(dn: str) -> bool:
    return all(a.lower() == "dc" for a, _ in split_dn(dn))


@dataclass
class DirectoryObject:
    distinguished_name: str
    object_class: str
    properties: Dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return split_dn(self.distinguished_name)[0][1]

    def get(self, attribute: str) -> List[Any]:
        """
        All values of attribute (case-insensitive), as a list.
        """
        key = attribute.lower()
        if key in ("distinguishedname", "dn"):
            return [self.distinguished_name]
        if key == "objectclass":
            return [self.object_class]
        if key == "name":
            return [self.name]
        for k, v in self.properties.items():
            if k.lower() == key:
                if v is None:
                    return []
                return list(v) if isinstance(v, (list, tuple, set)) else [v]
        return []

    def to_dict(self) -> dict:
        return {
            "distinguished_name": self.distinguished_name,
            "object_class": self.object_class,
            "properties": dict(self.properties),
        }


# --- LDAP filter -------------------------------------------------------------

Predicate = Callable[[DirectoryObject], bool]


def _compare(actual: Any, expected: str) -> int:
    try:
        a, b = float(actual), float(expected)
    except (TypeError, ValueError):
        a, b = str(actual).lower(), expected.lower()
    return (a > b) - (a < b)


def _item(attribute: str, op: str, value: str) -> Predicate:
    if op == "=" and value == "*":
        return lambda obj: bool(obj.get(attribute))
    if op == "=" and "*" in value:
        pattern = re.compile("^" + ".*".join(re.escape(p) for p in value.split("*")) + "$", re.IGNORECASE)
        return lambda obj: any(pattern.match(str(v)) for v in obj.get(attribute))
    if op == "=":
        return lambda obj: any(str(v).lower() == value.lower() for v in obj.get(attribute))
    if op == ">=":
        return lambda obj: any(_compare(v, value) >= 0 for v in obj.get(attribute))
    return lambda obj: any(_compare(v, value) <= 0 for v in obj.get(attribute))


class _FilterParser:
    def __init__(self, text: str):
        self.text = text.strip()
        self.pos = 0

    def fail(self, message: str) -> MockValidationError:
        return MockValidationError(f"Invalid LDAP filter '{self.text}' at {self.pos}: {message}",
                                   filter=self.text)

    def expect(self, ch: str) -> None:
        if self.pos >= len(self.text) or self.text[self.pos] != ch:
            raise self.fail(f"expected '{ch}'")
        self.pos += 1

    def skip_ws(self) -> None:
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1

    def parse(self) -> Predicate:
        if not self.text.startswith("("):
            # a bare item like objectClass=user
            self.text = f"({self.text})"
        predicate = self.parse_filter()
        self.skip_ws()
        if self.pos != len(self.text):
            raise self.fail("trailing characters")
        return predicate

    def parse_filter(self) -> Predicate:
        self.skip_ws()
        self.expect("(")
        self.skip_ws()
        if self.pos >= len(self.text):
            raise self.fail("unexpected end")
        ch = self.text[self.pos]
        if ch in "&|":
            self.pos += 1
            children = []
            self.skip_ws()
            while self.pos < len(self.text) and self.text[self.pos] == "(":
                children.append(self.parse_filter())
                self.skip_ws()
            if not children:
                raise self.fail(f"'{ch}' needs at least one operand")
            predicate = (lambda obj: all(c(obj) for c in children)) if ch == "&" \
                else (lambda obj: any(c(obj) for c in children))
        elif ch == "!":
            self.pos += 1
            inner = self.parse_filter()
            self.skip_ws()

            def predicate(obj: DirectoryObject) -> bool:
                return not inner(obj)
        else:
            predicate = self.parse_item()
        self.expect(")")
        return predicate

    def parse_item(self) -> Predicate:
        end = self.text.find(")", self.pos)
        if end < 0:
            raise self.fail("missing ')'")
        body = self.text[self.pos:end]
        m = re.match(r"^\s*([A-Za-z][\w-]*)\s*(>=|<=|=)(.*)$", body)
        if not m:
            raise self.fail(f"malformed item '{body}'")
        self.pos = end
        value = m.group(3).strip()
        if not value:
            raise self.fail(f"missing value for '{m.group(1)}'")
        return _item(m.group(1), m.group(2), value)


def parse_ldap_filter(text: str) -> Predicate:
    return _FilterParser(text or "(objectClass=*)").parse()


# --- event log -----------------------------------------------------------------

@dataclass(frozen=True)
class EventLogEntry:
    log_name: str
    event_id: int
    level: str
    message: str
    timestamp: datetime
    source: str = ""

    def to_dict(self) -> dict:
        return {
            "log_name": self.log_name,
            "event_id": self.event_id,
            "level": self.level,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
        }


class EventLog:
    """
    Bounded, append-only ring buffer; the oldest entries fall off first.
    """

    def __init__(self, capacity: int = DEFAULT_EVENT_LOG_CAPACITY,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.clock = clock
        self._entries: Deque[EventLogEntry] = deque(maxlen=capacity)

    def write(self, log_name: str, event_id: int, message: str, level: str = "Information",
              source: str = "") -> EventLogEntry:
        canonical = next((lv for lv in EVENT_LEVELS if lv.lower() == str(level).lower()), None)
        if canonical is None:
            raise MockValidationError(f"Invalid event level '{level}'", entity_id=log_name)
        if not log_name:
            raise MockValidationError("Event log name is required")
        entry = EventLogEntry(log_name=log_name, event_id=int(event_id), level=canonical, message=message,
                              timestamp=self.clock(), source=source)
        self._entries.append(entry)
        return entry

    def query(self, log_name: str, max_events: Optional[int] = None, level: Optional[str] = None,
              event_id: Optional[int] = None) -> List[EventLogEntry]:
        """
        Entries of log_name, newest first, at most max_events.
        """
        matched: List[EventLogEntry] = []
        if max_events is not None and max_events <= 0:
            return matched
        for entry in reversed(self._entries):
            if entry.log_name.lower() != log_name.lower():
                continue
            if level is not None and entry.level.lower() != level.lower():
                continue
            if event_id is not None and entry.event_id != int(event_id):
                continue
            matched.append(entry)
            if max_events is not None and len(matched) >= max_events:
                break
        return matched

    def clear(self, log_name: Optional[str] = None) -> None:
        if log_name is None:
            self._entries.clear()
            return
        kept = [e for e in self._entries if e.log_name.lower() != log_name.lower()]
        self._entries.clear()
        self._entries.extend(kept)

    def __len__(self) -> int:
        return len(self._entries)


# --- directory store -------------------------------------------------------------

class DirectoryStore:
    def __init__(self, event_log_capacity: int = DEFAULT_EVENT_LOG_CAPACITY,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self._objects: Dict[str, DirectoryObject] = {}
        self.event_log = EventLog(event_log_capacity, clock=clock)

    def add_object(self, distinguished_name: str, object_class: str,
                   properties: Optional[Dict[str, Any]] = None) -> DirectoryObject:
        key = normalize_dn(distinguished_name)
        if key in self._objects:
            raise MockDuplicateError(f"Directory object '{distinguished_name}' already exists",
                                     entity_id=distinguished_name)
        parent = parent_dn(distinguished_name)
        if parent is not None and normalize_dn(parent) not in self._objects \
                and not is_naming_context(distinguished_name):
            raise MockIntegrityError(
                f"Cannot create '{distinguished_name}': parent '{parent}' does not exist",
                entity_id=distinguished_name, parent=parent,
            )
        obj = DirectoryObject(distinguished_name=distinguished_name, object_class=object_class,
                              properties=dict(properties or {}))
        self._objects[key] = obj
        return obj

    def get_object(self, distinguished_name: str) -> DirectoryObject:
        try:
            return self._objects[normalize_dn(distinguished_name)]
        except KeyError:
            raise MockNotFoundError(f"Directory object not found: '{distinguished_name}'",
                                    entity_id=distinguished_name) from None

    def exists(self, distinguished_name: str) -> bool:
        return normalize_dn(distinguished_name) in self._objects

    def set_properties(self, distinguished_name: str, **properties: Any) -> DirectoryObject:
        obj = self.get_object(distinguished_name)
        for k, v in properties.items():
            if v is None:
                obj.properties.pop(k, None)
            else:
                obj.properties[k] = v
        return obj

    def children(self, distinguished_name: str) -> List[DirectoryObject]:
        key = normalize_dn(distinguished_name)
        return [o for k, o in sorted(self._objects.items())
                if parent_dn(o.distinguished_name) is not None
                and normalize_dn(parent_dn(o.distinguished_name)) == key]

    def remove_object(self, distinguished_name: str, recursive: bool = False) -> List[DirectoryObject]:
        """
        Remove an object; with recursive=True its subtree goes too.
        Returns the removed objects.
        """
        self.get_object(distinguished_name)
        key = normalize_dn(distinguished_name)
        subtree = [k for k in self._objects if k != key and k.endswith("," + key)]
        if subtree and not recursive:
            raise MockIntegrityError(f"Directory object '{distinguished_name}' has children",
                                     entity_id=distinguished_name, children=len(subtree))
        removed = [self._objects.pop(k) for k in sorted(subtree)]
        removed.append(self._objects.pop(key))
        return removed

    def search(self, ldap_filter: str = "(objectClass=*)", search_base: Optional[str] = None,
               scope: str = SCOPE_SUBTREE) -> List[DirectoryObject]:
        """
        Objects under search_base (whole directory if None) matching the filter,
        sorted by normalized DN.
        """
        if scope not in SCOPES:
            raise MockValidationError(f"Invalid search scope '{scope}'", scope=scope)
        predicate = parse_ldap_filter(ldap_filter)
        if search_base is None:
            candidates = list(self._objects.items())
        else:
            base = normalize_dn(search_base)
            if base not in self._objects and not is_naming_context(search_base):
                raise MockNotFoundError(f"Search base not found: '{search_base}'", entity_id=search_base)
            candidates = []
            for k, o in self._objects.items():
                if scope == SCOPE_BASE:
                    ok = k == base
                elif scope == SCOPE_ONELEVEL:
                    parent = parent_dn(o.distinguished_name)
                    ok = parent is not None and normalize_dn(parent) == base
                else:
                    ok = k == base or k.endswith("," + base)
                if ok:
                    candidates.append((k, o))
        return [o for _, o in sorted(candidates, key=lambda item: item[0]) if predicate(o)]

    def list_objects(self) -> List[DirectoryObject]:
        return [o for _, o in sorted(self._objects.items())]

    def reset(self) -> None:
        self._objects.clear()
        self.event_log.clear()

    def __len__(self) -> int:
        return len(self._objects)
