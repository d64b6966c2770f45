# scanner/whitelist.py
"""
Identity-reference whitelist consulted by the credential rules.

Deployment scripts legitimately carry security identifiers, distinguished
names and certificate template names as string literals. Those values are
never secrets, whatever variable they are assigned to.
"""

import re
from typing import Iterable, List, Optional, Pattern, Sequence

from config import KNOWN_TEMPLATE_NAMES

_MAX_SUB_AUTHORITY = 2 ** 32 - 1
_MAX_IDENTIFIER_AUTHORITY = 2 ** 48 - 1

SID_RE = re.compile(r"^S-1-(?P<authority>\d+|0x[0-9A-Fa-f]{12})(?P<subs>(?:-\d+){0,15})$", re.IGNORECASE)
# Anything shaped like S-<digits>-... is meant to be an identifier.
SID_CANDIDATE_RE = re.compile(r"^S-\d+-\S*$", re.IGNORECASE)
EMBEDDED_SID_RE = re.compile(r"(?<![\w-])S-1-[\w-]*", re.IGNORECASE)

_RDN = r"(?:CN|OU|DC|O|L|ST|C|STREET|UID)=(?:[^,\\]|\\.)+"
DN_RE = re.compile(rf"^(?:LDAPS?://(?:[^/]+/)?)?{_RDN}(?:\s*,\s*{_RDN})*$", re.IGNORECASE)

_PLACEHOLDER_RE = re.compile(r"^(?:<[^<>]+>|\{\{[^{}]+\}\}|\$\{[^{}]+\}|%[A-Za-z_]\w*%|\*+|x+|\.{3})$", re.IGNORECASE)


def is_security_identifier(value: str) -> bool:
    """
    Return True if value is a structurally valid hierarchical security
    identifier: S-1-<authority>[-<sub>...] with up to 15 sub-authorities,
    each fitting in 32 bits.
    """
    m = SID_RE.match(value.strip())
    if not m:
        return False
    authority = m.group("authority")
    authority_value = int(authority, 16) if authority.lower().startswith("0x") else int(authority)
    if authority_value > _MAX_IDENTIFIER_AUTHORITY:
        return False
    return all(int(part) <= _MAX_SUB_AUTHORITY for part in m.group("subs").split("-")[1:])


def security_identifier_candidates(value: str) -> List[str]:
    """
    Substrings of value that are meant to be security identifiers.
    The whole value counts when it is SID-shaped; otherwise identifiers
    embedded in larger strings (SDDL, messages) are extracted.
    """
    stripped = value.strip()
    if SID_CANDIDATE_RE.match(stripped):
        return [stripped]
    return EMBEDDED_SID_RE.findall(value)


def is_distinguished_name(value: str) -> bool:
    return bool(DN_RE.match(value.strip()))


def is_placeholder(value: str) -> bool:
    """
    Empty values and obvious placeholders (<password>, {{token}}, ${VAR},
    %VAR%, ****) are never reported as hardcoded secrets.
    """
    stripped = value.strip()
    return not stripped or bool(_PLACEHOLDER_RE.match(stripped))


class IdentityWhitelist:
    """
    Domain-aware suppression list.

    - security identifiers (S-1-5-21-...)
    - distinguished names (CN=...,OU=...,DC=...)
    - known certificate template names
    - extra regexes from the rule configuration
    """

    def __init__(self, known_templates: Iterable[str] = KNOWN_TEMPLATE_NAMES,
                 extra_patterns: Sequence[str] = ()):
        self.known_templates = {t.lower() for t in known_templates}
        self.extra_patterns: List[Pattern] = [re.compile(p) for p in extra_patterns]

    def reason(self, value: str, rule_patterns: Sequence[Pattern] = ()) -> Optional[str]:
        """
        Return why value is whitelisted, or None.
        """
        stripped = value.strip()
        if is_security_identifier(stripped):
            return "security-identifier"
        if is_distinguished_name(stripped):
            return "distinguished-name"
        if stripped.lower() in self.known_templates:
            return "template-name"
        for pattern in list(rule_patterns) + self.extra_patterns:
            if pattern.search(stripped):
                return "pattern"
        return None

    def is_whitelisted(self, value: str, rule_patterns: Sequence[Pattern] = ()) -> bool:
        return self.reason(value, rule_patterns) is not None
