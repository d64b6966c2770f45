# mock_backend/certificates.py
"""
In-memory certificate authority: templates, authorization certificates,
certificate definitions and issuance rules.

Referential integrity:
- a certificate definition needs the server's authorization certificate
- an issuance rule needs every certificate definition it names
- nothing can be removed while something else still refers to it
Every violation raises MockIntegrityError; an access-control string that does
not match the SDDL grammar raises MockValidationError.
"""

import hashlib
import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from errors import MockDuplicateError, MockIntegrityError, MockNotFoundError, MockValidationError
from scanner.whitelist import is_security_identifier

logger = logging.getLogger(__name__)

HASH_ALGORITHMS = ("SHA1", "SHA256", "SHA384", "SHA512")
DEFAULT_VALIDITY_DAYS = 365

# Well-known SID aliases accepted in SDDL.
SDDL_SID_ALIASES = frozenset({
    "AA", "AC", "AN", "AO", "AP", "AS", "AU", "BA", "BG", "BO", "BU", "CA", "CD", "CG", "CN",
    "CO", "CY", "DA", "DC", "DD", "DG", "DU", "EA", "ED", "EK", "ER", "ES", "HA", "HI", "IS",
    "IU", "KA", "LA", "LG", "LS", "LU", "LW", "ME", "MP", "MU", "NO", "NS", "NU", "OW", "PA",
    "PO", "PS", "PU", "RA", "RC", "RD", "RE", "RM", "RO", "RS", "RU", "SA", "SI", "SO", "SS",
    "SU", "SY", "UD", "WD", "WR",
})
SDDL_ACE_TYPES = frozenset({
    "A", "D", "OA", "OD", "AU", "AL", "OU", "OL", "ML", "SP", "XA", "XD", "XU", "ZA", "RA",
    "CR",
})

_SDDL_PART_RE = re.compile(r"(O|G|D|S):")
_SDDL_FLAGS_RE = re.compile(r"^(?:P|AI|AR|NO_ACCESS_CONTROL)*")
_ACE_RE = re.compile(r"\(([^()]*)\)")


def _is_sddl_sid(value: str) -> bool:
    return value.upper() in SDDL_SID_ALIASES or is_security_identifier(value)


def sddl_errors(acl: str) -> List[str]:
    """
    Return the grammar violations in an SDDL access-control string
    (empty list when it is well formed).

    acl  := [O:sid] [G:sid] [D:flags ace+] [S:flags ace+]   at least one part
    ace  := "(" six or seven ";"-separated fields ")"
    """
    problems: List[str] = []
    text = (acl or "").strip()
    if not text:
        return ["access-control string is empty"]
    if not _SDDL_PART_RE.match(text):
        return [f"must start with O:, G:, D: or S:, got {text[:10]!r}"]

    parts: List[Tuple[str, str]] = []
    # part tags only count outside ACE parentheses
    positions = [m for m in _SDDL_PART_RE.finditer(text)
                 if text.count("(", 0, m.start()) == text.count(")", 0, m.start())]
    for i, m in enumerate(positions):
        end = positions[i + 1].start() if i + 1 < len(positions) else len(text)
        parts.append((m.group(1), text[m.end():end]))

    seen = set()
    for tag, body in parts:
        if tag in seen:
            problems.append(f"part {tag}: appears more than once")
        seen.add(tag)
        if tag in ("O", "G"):
            if not _is_sddl_sid(body):
                problems.append(f"part {tag}: '{body}' is not a valid SID or alias")
            continue
        flags = _SDDL_FLAGS_RE.match(body).group(0)
        aces = body[len(flags):]
        if not aces.startswith("("):
            problems.append(f"part {tag}: expected at least one ACE")
            continue
        consumed = 0
        for m in _ACE_RE.finditer(aces):
            if m.start() != consumed:
                problems.append(f"part {tag}: unexpected text {aces[consumed:m.start()]!r}")
            consumed = m.end()
            fields = m.group(1).split(";")
            if len(fields) not in (6, 7):
                problems.append(f"part {tag}: ACE '({m.group(1)})' has {len(fields)} fields, expected 6 or 7")
                continue
            if fields[0].upper() not in SDDL_ACE_TYPES:
                problems.append(f"part {tag}: unknown ACE type '{fields[0]}'")
            if not _is_sddl_sid(fields[5]):
                problems.append(f"part {tag}: '{fields[5]}' is not a valid SID or alias")
        if consumed != len(aces):
            problems.append(f"part {tag}: unexpected text {aces[consumed:]!r}")
    return problems


def is_valid_sddl(acl: str) -> bool:
    return not sddl_errors(acl)


@dataclass
class MockTemplate:
    name: str
    server_address: str
    schema_version: int = 2
    hash_algorithm: str = "SHA256"
    key_size: int = 2048

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class MockAuthorizationCertificate:
    server_address: str
    subject: str
    issuer: str
    thumbprint: str
    not_before: datetime
    not_after: datetime

    def to_dict(self) -> dict:
        d = asdict(self)
        d["not_before"] = self.not_before.isoformat()
        d["not_after"] = self.not_after.isoformat()
        return d


@dataclass
class MockCertificateDefinition:
    name: str
    server_address: str
    template_name: str
    certificate_authority: str
    authorization_certificate_id: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class MockRule:
    name: str
    server_address: str
    certificate_definition_names: List[str] = field(default_factory=list)
    issuance_acl: str = ""
    read_acl: str = ""
    admin_acl: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


def _key(server_address: str, name: str = "") -> Tuple[str, str]:
    return server_address.lower(), name.lower()


class CertificateStore:
    def __init__(self, warnings: Optional[List[str]] = None,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.templates: Dict[Tuple[str, str], MockTemplate] = {}
        self.authorization_certificates: Dict[str, MockAuthorizationCertificate] = {}
        self.definitions: Dict[Tuple[str, str], MockCertificateDefinition] = {}
        self.rules: Dict[Tuple[str, str], MockRule] = {}
        self.warnings: List[str] = warnings if warnings is not None else []
        self.clock = clock

    def _warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)

    # --- templates -----------------------------------------------------------

    def add_template(self, server_address: str, name: str, schema_version: int = 2,
                     hash_algorithm: str = "SHA256", key_size: int = 2048) -> MockTemplate:
        key = _key(server_address, name)
        if key in self.templates:
            raise MockDuplicateError(f"Template '{name}' already exists on {server_address}", entity_id=name,
                                     server_address=server_address)
        algorithm = str(hash_algorithm).upper().replace("-", "")
        if algorithm not in HASH_ALGORITHMS:
            raise MockValidationError(f"Unsupported hash algorithm '{hash_algorithm}'", entity_id=name)
        if int(key_size) <= 0 or int(key_size) % 8:
            raise MockValidationError(f"Invalid key size {key_size}", entity_id=name)
        template = MockTemplate(name=name, server_address=server_address, schema_version=int(schema_version),
                                hash_algorithm=algorithm, key_size=int(key_size))
        self.templates[key] = template
        return template

    def get_template(self, server_address: str, name: str) -> MockTemplate:
        try:
            return self.templates[_key(server_address, name)]
        except KeyError:
            raise MockNotFoundError(f"Template '{name}' not found on {server_address}", entity_id=name,
                                    server_address=server_address) from None

    def list_templates(self, server_address: Optional[str] = None) -> List[MockTemplate]:
        return [t for k, t in sorted(self.templates.items())
                if server_address is None or k[0] == server_address.lower()]

    def remove_template(self, server_address: str, name: str) -> MockTemplate:
        template = self.get_template(server_address, name)
        users = [d.name for d in self.list_certificate_definitions(server_address)
                 if d.template_name.lower() == name.lower()]
        if users:
            raise MockIntegrityError(f"Template '{name}' is used by certificate definitions: {', '.join(users)}",
                                     entity_id=name, dependents=users)
        del self.templates[_key(server_address, name)]
        return template

    # --- authorization certificates -----------------------------------------

    def set_authorization_certificate(self, server_address: str, subject: str, issuer: Optional[str] = None,
                                      validity_days: int = DEFAULT_VALIDITY_DAYS) -> MockAuthorizationCertificate:
        """
        Create the server's authorization certificate. A second call
        replaces the live certificate and records a warning.
        """
        key = server_address.lower()
        if key in self.authorization_certificates:
            self._warn(f"Authorization certificate for {server_address} already exists and was overwritten")
        not_before = self.clock()
        issuer = issuer or subject
        digest = hashlib.sha1(f"{key}|{subject}|{issuer}|{not_before.isoformat()}".encode("utf-8"))
        cert = MockAuthorizationCertificate(
            server_address=server_address,
            subject=subject,
            issuer=issuer,
            thumbprint=digest.hexdigest().upper(),
            not_before=not_before,
            not_after=not_before + timedelta(days=validity_days),
        )
        self.authorization_certificates[key] = cert
        return cert

    def get_authorization_certificate(self, server_address: str) -> MockAuthorizationCertificate:
        try:
            return self.authorization_certificates[server_address.lower()]
        except KeyError:
            raise MockNotFoundError(f"No authorization certificate for {server_address}",
                                    entity_id=server_address) from None

    def has_authorization_certificate(self, server_address: str) -> bool:
        return server_address.lower() in self.authorization_certificates

    def remove_authorization_certificate(self, server_address: str) -> MockAuthorizationCertificate:
        cert = self.get_authorization_certificate(server_address)
        users = [d.name for d in self.list_certificate_definitions(server_address)]
        if users:
            raise MockIntegrityError(
                f"Authorization certificate for {server_address} is used by certificate definitions: "
                f"{', '.join(users)}", entity_id=server_address, dependents=users,
            )
        del self.authorization_certificates[server_address.lower()]
        return cert

    # --- certificate definitions --------------------------------------------

    def add_certificate_definition(self, server_address: str, name: str, template_name: str,
                                   certificate_authority: str) -> MockCertificateDefinition:
        if not self.has_authorization_certificate(server_address):
            raise MockIntegrityError(
                f"Cannot create certificate definition '{name}': no authorization certificate for {server_address}",
                entity_id=name, server_address=server_address,
            )
        key = _key(server_address, name)
        if key in self.definitions:
            raise MockDuplicateError(f"Certificate definition '{name}' already exists on {server_address}",
                                     entity_id=name, server_address=server_address)
        definition = MockCertificateDefinition(
            name=name,
            server_address=server_address,
            template_name=template_name,
            certificate_authority=certificate_authority,
            authorization_certificate_id=self.get_authorization_certificate(server_address).thumbprint,
        )
        self.definitions[key] = definition
        return definition

    def get_certificate_definition(self, server_address: str, name: str) -> MockCertificateDefinition:
        try:
            return self.definitions[_key(server_address, name)]
        except KeyError:
            raise MockNotFoundError(f"Certificate definition '{name}' not found on {server_address}",
                                    entity_id=name, server_address=server_address) from None

    def list_certificate_definitions(self, server_address: Optional[str] = None) -> List[MockCertificateDefinition]:
        return [d for k, d in sorted(self.definitions.items())
                if server_address is None or k[0] == server_address.lower()]

    def remove_certificate_definition(self, server_address: str, name: str) -> MockCertificateDefinition:
        definition = self.get_certificate_definition(server_address, name)
        users = [r.name for r in self.list_issuance_rules(server_address)
                 if name.lower() in (n.lower() for n in r.certificate_definition_names)]
        if users:
            raise MockIntegrityError(f"Certificate definition '{name}' is used by rules: {', '.join(users)}",
                                     entity_id=name, dependents=users)
        del self.definitions[_key(server_address, name)]
        return definition

    # --- issuance rules -------------------------------------------------------

    def add_issuance_rule(self, server_address: str, name: str, certificate_definition_names: Sequence[str],
                          issuance_acl: str, read_acl: str, admin_acl: str) -> MockRule:
        names = [certificate_definition_names] if isinstance(certificate_definition_names, str) \
            else list(certificate_definition_names)
        if not names:
            raise MockValidationError(f"Rule '{name}' must reference at least one certificate definition",
                                      entity_id=name)
        missing = [d for d in names if _key(server_address, d) not in self.definitions]
        if missing:
            raise MockIntegrityError(
                f"Cannot create rule '{name}': certificate definitions not found on {server_address}: "
                f"{', '.join(missing)}", entity_id=name, missing=missing,
            )
        for label, acl in (("issuance", issuance_acl), ("read", read_acl), ("admin", admin_acl)):
            problems = sddl_errors(acl)
            if problems:
                raise MockValidationError(f"Rule '{name}': invalid {label} ACL: {'; '.join(problems)}",
                                          entity_id=name, acl=acl)
        key = _key(server_address, name)
        if key in self.rules:
            raise MockDuplicateError(f"Rule '{name}' already exists on {server_address}", entity_id=name)
        rule = MockRule(name=name, server_address=server_address, certificate_definition_names=names,
                        issuance_acl=issuance_acl, read_acl=read_acl, admin_acl=admin_acl)
        self.rules[key] = rule
        return rule

    def get_issuance_rule(self, server_address: str, name: str) -> MockRule:
        try:
            return self.rules[_key(server_address, name)]
        except KeyError:
            raise MockNotFoundError(f"Rule '{name}' not found on {server_address}", entity_id=name) from None

    def list_issuance_rules(self, server_address: Optional[str] = None) -> List[MockRule]:
        return [r for k, r in sorted(self.rules.items())
                if server_address is None or k[0] == server_address.lower()]

    def remove_issuance_rule(self, server_address: str, name: str) -> MockRule:
        rule = self.get_issuance_rule(server_address, name)
        del self.rules[_key(server_address, name)]
        return rule

    def reset(self) -> None:
        self.templates.clear()
        self.authorization_certificates.clear()
        self.definitions.clear()
        self.rules.clear()
