# tests/test_directory.py
"""
Directory store, LDAP filter and event log tests.
"""

from datetime import datetime, timedelta, timezone

import pytest

from errors import MockDuplicateError, MockIntegrityError, MockNotFoundError, MockValidationError
from mock_backend.directory import (
    DirectoryStore,
    EventLog,
    is_naming_context,
    normalize_dn,
    parent_dn,
    parse_ldap_filter,
    split_dn,
)

pytestmark = pytest.mark.unit

ROOT = "DC=corp,DC=example,DC=com"
PKI = "OU=PKI," + ROOT


@pytest.fixture
def directory():
    d = DirectoryStore()
    d.add_object(ROOT, "domainDNS")
    d.add_object(PKI, "organizationalUnit")
    d.add_object("CN=CA01," + PKI, "computer", {"dNSHostName": "ca01.corp.example.com", "keySize": 4096})
    d.add_object("CN=CA02," + PKI, "computer", {"dNSHostName": "ca02.corp.example.com", "keySize": 2048})
    d.add_object("CN=PKI Admins," + PKI, "group", {"member": ["CN=alice", "CN=bob"]})
    return d


def names(objects):
    return [o.name for o in objects]


def test_dn_helpers():
    assert split_dn("CN=Smith\\, John,OU=Users,DC=corp") == [("CN", "Smith\\, John"), ("OU", "Users"), ("DC", "corp")]
    assert normalize_dn("CN=CA01, OU=PKI,DC=Corp") == "cn=ca01,ou=pki,dc=corp"
    assert parent_dn("CN=CA01,OU=PKI,DC=corp") == "OU=PKI,DC=corp"
    assert parent_dn("DC=corp") is None
    assert is_naming_context(ROOT)
    assert not is_naming_context(PKI)
    with pytest.raises(MockValidationError):
        split_dn("not a dn")


def test_parent_must_exist():
    d = DirectoryStore()
    with pytest.raises(MockIntegrityError) as exc:
        d.add_object(PKI, "organizationalUnit")
    assert exc.value.details["parent"] == ROOT
    d.add_object(ROOT, "domainDNS")
    d.add_object(PKI, "organizationalUnit")
    assert d.exists(PKI.lower())


def test_duplicate_dn_is_case_insensitive(directory):
    with pytest.raises(MockDuplicateError):
        directory.add_object("cn=ca01,ou=pki,dc=corp,dc=example,dc=com", "computer")
    assert directory.get_object("cn=ca01,ou=pki,dc=corp,dc=example,dc=com").get("dNSHostName") == [
        "ca01.corp.example.com"
    ]


def test_object_attribute_access(directory):
    group = directory.get_object("CN=PKI Admins," + PKI)
    assert group.get("member") == ["CN=alice", "CN=bob"]
    assert group.get("objectClass") == ["group"]
    assert group.get("name") == ["PKI Admins"]
    assert group.get("missing") == []


def test_set_properties(directory):
    dn = "CN=CA01," + PKI
    directory.set_properties(dn, description="Issuing CA", keySize=None)
    obj = directory.get_object(dn)
    assert obj.get("description") == ["Issuing CA"]
    assert obj.get("keySize") == []


@pytest.mark.parametrize("ldap_filter,expected", [
    ("(objectClass=computer)", ["CA01", "CA02"]),
    ("objectClass=computer", ["CA01", "CA02"]),
    ("(&(objectClass=computer)(keySize>=4096))", ["CA01"]),
    ("(|(name=CA02)(objectClass=group))", ["CA02", "PKI Admins"]),
    ("(&(objectClass=*)(!(objectClass=computer))(member=*))", ["PKI Admins"]),
    ("(dNSHostName=ca0*.corp.*)", ["CA01", "CA02"]),
    ("(keySize<=2048)", ["CA02"]),
    ("(member=cn=BOB)", ["PKI Admins"]),
])
def test_search_filters(directory, ldap_filter, expected):
    assert names(directory.search(ldap_filter, search_base=PKI, scope="onelevel")) == expected


@pytest.mark.parametrize("ldap_filter", ["(objectClass=computer", "(&)", "(=x)", "(cn=)", "(a=b))"])
def test_malformed_filters(ldap_filter):
    with pytest.raises(MockValidationError):
        parse_ldap_filter(ldap_filter)


def test_search_scopes(directory):
    assert names(directory.search(search_base=PKI, scope="base")) == ["PKI"]
    assert len(directory.search(search_base=PKI, scope="onelevel")) == 3
    assert len(directory.search(search_base=PKI, scope="subtree")) == 4
    assert len(directory.search()) == 5
    with pytest.raises(MockValidationError):
        directory.search(scope="sideways")
    with pytest.raises(MockNotFoundError):
        directory.search(search_base="OU=Missing," + ROOT)


def test_search_under_unregistered_naming_context_is_empty(directory):
    assert directory.search(search_base="DC=other,DC=com") == []


def test_children_and_recursive_removal(directory):
    assert names(directory.children(PKI)) == ["CA01", "CA02", "PKI Admins"]
    with pytest.raises(MockIntegrityError):
        directory.remove_object(PKI)
    removed = directory.remove_object(PKI, recursive=True)
    assert len(removed) == 4
    assert removed[-1].name == "PKI"
    assert len(directory) == 1
    with pytest.raises(MockNotFoundError):
        directory.get_object("CN=CA01," + PKI)


def make_clock():
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    ticks = iter(range(1000))
    return lambda: start + timedelta(seconds=next(ticks))


def test_event_log_is_a_ring_buffer():
    log = EventLog(capacity=3, clock=make_clock())
    for i in range(5):
        log.write("Application", 1000 + i, f"event {i}")
    assert len(log) == 3
    entries = log.query("application")
    assert [e.event_id for e in entries] == [1004, 1003, 1002]
    assert entries[0].timestamp > entries[1].timestamp


def test_event_log_query_filters():
    log = EventLog(capacity=10, clock=make_clock())
    log.write("Application", 1, "started")
    log.write("Application", 2, "failed", level="error")
    log.write("System", 3, "boot")
    log.write("Application", 1, "started again", source="Deploy")
    assert [e.message for e in log.query("Application", max_events=2)] == ["started again", "failed"]
    assert [e.level for e in log.query("Application", level="Error")] == ["Error"]
    assert len(log.query("Application", event_id=1)) == 2
    log.clear("Application")
    assert len(log) == 1
    assert log.query("System")[0].to_dict()["timestamp"].startswith("2024-01-01T00:00:02")


@pytest.mark.parametrize("max_events", [0, -1])
def test_event_log_query_with_no_room_returns_nothing(max_events):
    log = EventLog(capacity=10, clock=make_clock())
    log.write("Application", 1, "started")
    log.write("Application", 2, "stopped")
    assert log.query("Application", max_events=max_events) == []


def test_event_log_validation():
    log = EventLog(capacity=2)
    with pytest.raises(MockValidationError):
        log.write("Application", 1, "x", level="Verbose")
    with pytest.raises(MockValidationError):
        log.write("", 1, "x")
    with pytest.raises(ValueError):
        EventLog(capacity=0)
