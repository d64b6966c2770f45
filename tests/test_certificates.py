# tests/test_certificates.py
"""
Certificate store tests: referential integrity and the SDDL grammar.
"""

from datetime import datetime, timezone

import pytest

from errors import MockDuplicateError, MockIntegrityError, MockNotFoundError, MockValidationError
from mock_backend.certificates import CertificateStore, is_valid_sddl, sddl_errors

pytestmark = pytest.mark.unit

SERVER = "ca01.corp.example.com"
ISSUANCE_ACL = "D:(A;;CR;;;AU)"
READ_ACL = "D:(A;;GR;;;AU)"
ADMIN_ACL = "O:BAG:BAD:(A;;GA;;;BA)"


@pytest.fixture
def certs():
    fixed = datetime(2024, 1, 1, tzinfo=timezone.utc)
    return CertificateStore(clock=lambda: fixed)


def with_definition(certs):
    certs.add_template(SERVER, "WebServer")
    certs.set_authorization_certificate(SERVER, "CN=PKI Admin")
    return certs.add_certificate_definition(SERVER, "WebDef", "WebServer", "Corp-CA")


def test_template_defaults_and_lookup(certs):
    template = certs.add_template(SERVER, "WebServer", hash_algorithm="sha-384", key_size=4096)
    assert template.hash_algorithm == "SHA384"
    assert template.schema_version == 2
    assert certs.get_template(SERVER.upper(), "webserver") is template
    assert certs.list_templates(SERVER) == [template]
    assert certs.list_templates("other") == []


def test_template_validation(certs):
    with pytest.raises(MockValidationError):
        certs.add_template(SERVER, "Weak", hash_algorithm="MD5")
    with pytest.raises(MockValidationError):
        certs.add_template(SERVER, "Odd", key_size=1001)
    certs.add_template(SERVER, "WebServer")
    with pytest.raises(MockDuplicateError):
        certs.add_template(SERVER, "WebServer")


def test_definition_requires_authorization_certificate(certs):
    with pytest.raises(MockIntegrityError) as exc:
        certs.add_certificate_definition(SERVER, "WebDef", "WebServer", "Corp-CA")
    assert exc.value.entity_id == "WebDef"
    assert "authorization certificate" in exc.value.message


def test_definition_records_certificate_thumbprint(certs):
    definition = with_definition(certs)
    cert = certs.get_authorization_certificate(SERVER)
    assert definition.authorization_certificate_id == cert.thumbprint
    assert len(cert.thumbprint) == 40 and cert.thumbprint.isupper()
    assert (cert.not_after - cert.not_before).days == 365


def test_overwriting_authorization_certificate_warns(certs):
    certs.set_authorization_certificate(SERVER, "CN=First")
    certs.set_authorization_certificate(SERVER, "CN=Second")
    assert certs.get_authorization_certificate(SERVER).subject == "CN=Second"
    assert len(certs.warnings) == 1
    assert "overwritten" in certs.warnings[0]


def test_rule_requires_existing_definitions(certs):
    with_definition(certs)
    with pytest.raises(MockIntegrityError) as exc:
        certs.add_issuance_rule(SERVER, "WebRule", ["WebDef", "Missing"], ISSUANCE_ACL, READ_ACL, ADMIN_ACL)
    assert exc.value.details["missing"] == ["Missing"]
    with pytest.raises(MockValidationError):
        certs.add_issuance_rule(SERVER, "EmptyRule", [], ISSUANCE_ACL, READ_ACL, ADMIN_ACL)


def test_rule_rejects_malformed_acl(certs):
    with_definition(certs)
    with pytest.raises(MockValidationError) as exc:
        certs.add_issuance_rule(SERVER, "WebRule", ["WebDef"], "D:(A;;CR;;AU)", READ_ACL, ADMIN_ACL)
    assert "issuance" in exc.value.message
    assert certs.list_issuance_rules() == []


def test_rule_created_and_removal_is_guarded(certs):
    with_definition(certs)
    rule = certs.add_issuance_rule(SERVER, "WebRule", "WebDef", ISSUANCE_ACL, READ_ACL, ADMIN_ACL)
    assert rule.certificate_definition_names == ["WebDef"]
    with pytest.raises(MockDuplicateError):
        certs.add_issuance_rule(SERVER, "WebRule", ["WebDef"], ISSUANCE_ACL, READ_ACL, ADMIN_ACL)

    with pytest.raises(MockIntegrityError):
        certs.remove_certificate_definition(SERVER, "WebDef")
    with pytest.raises(MockIntegrityError):
        certs.remove_template(SERVER, "WebServer")
    with pytest.raises(MockIntegrityError):
        certs.remove_authorization_certificate(SERVER)

    certs.remove_issuance_rule(SERVER, "WebRule")
    certs.remove_certificate_definition(SERVER, "WebDef")
    certs.remove_template(SERVER, "WebServer")
    certs.remove_authorization_certificate(SERVER)
    with pytest.raises(MockNotFoundError):
        certs.get_issuance_rule(SERVER, "WebRule")


@pytest.mark.parametrize("acl", [
    "D:(A;;CR;;;AU)",
    "O:BAG:SYD:P(A;;GA;;;BA)(A;;GR;;;S-1-5-21-1004336348-1177238915-682003330-512)",
    "D:AI(OA;;CR;0e10c968-78fb-11d2-90d4-00c04f79dc55;;DU)",
    "O:S-1-5-32-544",
])
def test_valid_sddl(acl):
    assert sddl_errors(acl) == []


@pytest.mark.parametrize("acl,fragment", [
    ("", "empty"),
    ("A;;CR;;;AU", "must start with"),
    ("D:", "at least one ACE"),
    ("D:(A;;CR;;AU)", "fields"),
    ("D:(Q;;CR;;;AU)", "unknown ACE type"),
    ("D:(A;;CR;;;XX)", "not a valid SID"),
    ("O:BAO:SY", "more than once"),
    ("D:(A;;CR;;;AU)junk", "unexpected text"),
])
def test_invalid_sddl(acl, fragment):
    problems = sddl_errors(acl)
    assert problems
    assert any(fragment in p for p in problems)
    assert not is_valid_sddl(acl)
