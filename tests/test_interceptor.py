# tests/test_interceptor.py
"""
Gateway and command interceptor tests, including replay of a deployment
script against the mock backend.
"""

import pytest

from errors import MockIntegrityError, MockNotFoundError, MockStateError, MockValidationError
from mock_backend.gateway import BackendGateway, MockBackendGateway
from mock_backend.interceptor import CommandInterceptor
from mock_backend.services import RUNNING
from mock_backend.store import get_store
from models import SourceUnit

SERVER = "ca01.corp.example.com"


@pytest.fixture
def gateway(store):
    return MockBackendGateway(store)


@pytest.fixture
def interceptor(gateway):
    return CommandInterceptor(gateway)


# --- gateway -------------------------------------------------------------------------

@pytest.mark.unit
def test_gateway_is_abstract():
    with pytest.raises(TypeError):
        BackendGateway()


@pytest.mark.unit
def test_default_gateway_uses_process_store():
    MockBackendGateway().new_service("CertSvc")
    assert len(get_store().services) == 1


@pytest.mark.unit
def test_gateway_directory_object_path(gateway, store):
    assert gateway.new_directory_object("Standalone", "container").distinguished_name == "CN=Standalone"
    store.directory.add_object("DC=corp,DC=com", "domainDNS")
    obj = gateway.new_directory_object("PKI Admins", "group", path="DC=corp,DC=com")
    assert obj.distinguished_name == "CN=PKI Admins,DC=corp,DC=com"
    assert gateway.get_directory_objects(ldap_filter="(objectClass=group)") == [obj]
    assert gateway.get_directory_objects(identity="cn=pki admins,dc=corp,dc=com") == [obj]


@pytest.mark.unit
def test_gateway_event_log(gateway):
    gateway.write_event_log("Application", 1, "one")
    gateway.write_event_log("Application", 2, "two", level="Warning")
    assert [e.event_id for e in gateway.get_event_log("Application", newest=1)] == [2]
    assert [e.event_id for e in gateway.get_event_log("Application", level="information")] == [1]


# --- invoke ------------------------------------------------------------------------------

@pytest.mark.unit
def test_invoke_routes_to_gateway(interceptor, store):
    interceptor.invoke("New-Service", Name="CertSvc", StartupType="Automatic")
    service = interceptor.invoke("start-service", "CertSvc")
    assert service.status == RUNNING
    assert store.services.get_service("CertSvc").start_type == "Automatic"
    assert [c.command for c in interceptor.calls] == ["New-Service", "start-service"]
    assert interceptor.calls[1].arguments == {"name": "CertSvc"}
    assert interceptor.calls_to("Start-Service")[0].succeeded


@pytest.mark.unit
def test_server_defaults_and_conversions(interceptor, store):
    interceptor.invoke("Add-CATemplate", "WebServer", KeySize="4096")
    template = store.certificates.get_template("localhost", "WebServer")
    assert template.key_size == 4096

    interceptor.invoke("Add-CATemplate", Name="WebServer", ComputerName=SERVER)
    assert store.certificates.get_template(SERVER, "WebServer").server_address == SERVER


@pytest.mark.unit
@pytest.mark.parametrize("command,parameters,key", [
    ("Add-CATemplate", {"Name": "WebServer", "KeySize": "big"}, "key_size"),
    ("Get-EventLog", {"LogName": "Application", "Newest": "ten"}, "newest"),
    ("Write-EventLog", {"LogName": "Application", "EventId": [1], "Message": "x"}, "event_id"),
])
def test_unconvertible_numbers_are_validation_errors(interceptor, command, parameters, key):
    with pytest.raises(MockValidationError) as exc:
        interceptor.invoke(command, **parameters)
    assert exc.value.message == f"{command}: {key} must be an integer"
    assert exc.value.entity_id == command
    assert isinstance(interceptor.calls[-1].error, MockValidationError)


@pytest.mark.unit
def test_common_parameters_are_ignored(interceptor):
    args = interceptor.bind("Start-Service", Name="CertSvc", Verbose=True, ErrorAction="Stop")
    assert args == {"name": "CertSvc"}


@pytest.mark.unit
def test_set_service_changes_type_and_status(interceptor, store):
    store.services.add_service("CertSvc")
    interceptor.invoke("Set-Service", Name="CertSvc", StartupType="Disabled")
    with pytest.raises(MockStateError):
        interceptor.invoke("Set-Service", Name="CertSvc", Status="Running")
    interceptor.invoke("Set-Service", "CertSvc", StartupType="Manual", Status="Running")
    assert store.services.get_service("CertSvc").status == RUNNING
    with pytest.raises(MockValidationError):
        interceptor.invoke("Set-Service", Name="CertSvc", Status="Sleeping")


@pytest.mark.unit
def test_unknown_command_is_recorded_and_raised(interceptor):
    with pytest.raises(MockNotFoundError):
        interceptor.invoke("Format-Disk", "C:")
    call = interceptor.calls[-1]
    assert call.command == "Format-Disk"
    assert not call.succeeded
    assert not interceptor.handles("Format-Disk")
    assert interceptor.handles("GET-SERVICE")


@pytest.mark.unit
def test_unknown_parameter_and_extra_positionals(interceptor):
    with pytest.raises(MockValidationError) as exc:
        interceptor.invoke("Start-Service", Name="CertSvc", Colour="blue")
    assert exc.value.details["parameter"] == "Colour"
    with pytest.raises(MockValidationError):
        interceptor.bind("Start-Service", "CertSvc", "extra")


@pytest.mark.unit
def test_backend_errors_are_recorded(interceptor):
    with pytest.raises(MockIntegrityError):
        interceptor.invoke("New-CertificateDefinition", Name="WebDef", TemplateName="WebServer",
                           CertificateAuthority="Corp-CA", ServerAddress=SERVER)
    assert isinstance(interceptor.calls[-1].error, MockIntegrityError)
    interceptor.clear()
    assert interceptor.calls == []


# --- replay --------------------------------------------------------------------------------

@pytest.mark.integration
def test_replay_deployment_script(fixture_script, interceptor, store):
    result = interceptor.replay(SourceUnit.from_file(fixture_script("replay_deploy.ps1")))

    assert [c.command for c in result.calls] == [
        "New-Service",
        "Start-Service",
        "Add-CATemplate",
        "Set-AuthorizationCertificate",
        "New-CertificateDefinition",
        "New-IssuanceRule",
        "Write-EventLog",
    ]
    assert all(c.succeeded for c in result.calls)
    assert result.skipped == [(11, "Get-ChildItem", "not intercepted")]
    assert result.variables == {"server": SERVER, "template": "WebServer"}

    assert store.services.get_service("CertSvc").status == RUNNING
    assert store.certificates.get_template(SERVER, "WebServer").key_size == 4096
    definition = store.certificates.get_certificate_definition(SERVER, "WebDef")
    assert definition.authorization_certificate_id == store.certificates.get_authorization_certificate(
        SERVER).thumbprint
    assert store.certificates.get_issuance_rule(SERVER, "WebRule").certificate_definition_names == ["WebDef"]
    entries = store.event_log.query("Application")
    assert len(entries) == 1
    assert entries[0].message == f"Configured WebServer on {SERVER}"
    assert entries[0].event_id == 1001
    assert entries[0].source == "Deploy"


@pytest.mark.unit
def test_replay_skips_unresolved_variables(interceptor, store):
    result = interceptor.replay("Start-Service -Name $serviceName\nNew-Service -Name 'Other'\n")
    assert result.skipped == [(1, "Start-Service", "$serviceName is not known")]
    assert len(result.calls) == 1
    assert len(store.services) == 1


@pytest.mark.unit
def test_replay_uses_supplied_variables(interceptor, store):
    store.services.add_service("CertSvc")
    result = interceptor.replay("Start-Service $Name", variables={"Name": "CertSvc"})
    assert result.skipped == []
    assert store.services.get_service("CertSvc").status == RUNNING


@pytest.mark.unit
def test_replay_propagates_backend_errors(interceptor):
    with pytest.raises(MockNotFoundError):
        interceptor.replay("Start-Service -Name 'Missing'")
    assert not interceptor.calls[-1].succeeded
