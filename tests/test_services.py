# tests/test_services.py
"""
Service registry state machine tests.
"""

import pytest

from errors import ErrorKind, MockDuplicateError, MockNotFoundError, MockStateError, MockValidationError
from mock_backend.services import AUTOMATIC, DISABLED, PAUSED, RUNNING, STOPPED
from mock_backend.store import get_store, reset_store

pytestmark = pytest.mark.unit


def test_start_and_stop(store):
    services = store.services
    services.add_service("CertSvc", display_name="Certificate Services", start_type=AUTOMATIC)
    assert services.start_service("certsvc").status == RUNNING
    assert services.stop_service("CertSvc").status == STOPPED
    assert store.warnings == []


def test_start_running_service_warns(store):
    store.services.add_service("CertSvc", status=RUNNING)
    service = store.services.start_service("CertSvc")
    assert service.status == RUNNING
    assert store.warnings == ["Service 'CertSvc' is already running"]


def test_stop_stopped_service_warns(store):
    store.services.add_service("CertSvc")
    store.services.stop_service("CertSvc")
    assert len(store.warnings) == 1


def test_non_stoppable_service_requires_force(store):
    store.services.add_service("W32Time", status=RUNNING, can_stop=False)
    with pytest.raises(MockStateError) as exc:
        store.services.stop_service("W32Time")
    assert exc.value.entity_id == "W32Time"
    assert exc.value.kind is ErrorKind.MOCK_STATE
    assert store.services.get_service("W32Time").status == RUNNING
    assert store.services.stop_service("W32Time", force=True).status == STOPPED


def test_pause_resume_and_restart(store):
    services = store.services
    services.add_service("Spooler", status=RUNNING)
    assert services.pause_service("Spooler").status == PAUSED
    with pytest.raises(MockStateError):
        services.start_service("Spooler")
    assert services.resume_service("Spooler").status == RUNNING
    assert services.restart_service("Spooler").status == RUNNING
    services.stop_service("Spooler")
    with pytest.raises(MockStateError):
        services.pause_service("Spooler")


def test_disabled_service_cannot_start(store):
    store.services.add_service("Telnet", start_type=DISABLED)
    with pytest.raises(MockStateError):
        store.services.start_service("Telnet")
    store.services.set_startup_type("Telnet", "manual")
    assert store.services.start_service("Telnet").status == RUNNING


def test_unknown_service_names_the_entity(store):
    with pytest.raises(MockNotFoundError) as exc:
        store.services.get_service("Missing")
    assert "Missing" in exc.value.message
    assert exc.value.to_dict()["error"] == "mock_not_found"


def test_duplicate_and_invalid_values(store):
    store.services.add_service("CertSvc")
    with pytest.raises(MockDuplicateError):
        store.services.add_service("CERTSVC")
    with pytest.raises(MockValidationError):
        store.services.add_service("Other", start_type="Sometimes")


def test_remove_requires_stopped(store):
    store.services.add_service("CertSvc", status=RUNNING)
    with pytest.raises(MockStateError):
        store.services.remove_service("CertSvc")
    store.services.stop_service("CertSvc")
    store.services.remove_service("CertSvc")
    assert len(store.services) == 0


def test_list_services_sorted_and_filtered(store):
    store.services.add_service("b-svc", status=RUNNING)
    store.services.add_service("A-svc")
    assert [s.name for s in store.services.list_services()] == ["A-svc", "b-svc"]
    assert [s.name for s in store.services.list_services(status="running")] == ["b-svc"]


def test_reset_empties_every_sub_store():
    store = get_store()
    store.services.add_service("CertSvc")
    store.certificates.add_template("ca01", "WebServer")
    store.directory.add_object("DC=corp,DC=com", "domainDNS")
    store.event_log.write("Application", 1, "hello")
    store.services.stop_service("CertSvc")
    assert not store.is_empty()
    assert reset_store() is store
    assert store.is_empty()


def test_independent_instances(store):
    store.services.add_service("CertSvc")
    assert len(get_store().services) == 0
