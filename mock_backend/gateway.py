# mock_backend/gateway.py
"""
BackendGateway: one method per backend operation a deployment script uses.

Production code binds it to a real client; tests bind MockBackendGateway to
a MockStateStore. Nothing is patched globally.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from mock_backend.certificates import MockAuthorizationCertificate, MockCertificateDefinition, MockRule, \
    MockTemplate
from mock_backend.directory import SCOPE_SUBTREE, DirectoryObject, EventLogEntry
from mock_backend.services import MANUAL, STOPPED, MockService
from mock_backend.store import MockStateStore, get_store


class BackendGateway(ABC):
    # --- services -------------------------------------------------------------

    @abstractmethod
    def new_service(self, name: str, display_name: Optional[str] = None, start_type: str = MANUAL,
                    status: str = STOPPED, can_stop: bool = True) -> MockService: ...

    @abstractmethod
    def get_service(self, name: Optional[str] = None, status: Optional[str] = None) -> List[MockService]: ...

    @abstractmethod
    def start_service(self, name: str) -> MockService: ...

    @abstractmethod
    def stop_service(self, name: str, force: bool = False) -> MockService: ...

    @abstractmethod
    def restart_service(self, name: str, force: bool = False) -> MockService: ...

    @abstractmethod
    def suspend_service(self, name: str) -> MockService: ...

    @abstractmethod
    def resume_service(self, name: str) -> MockService: ...

    @abstractmethod
    def set_service_startup_type(self, name: str, start_type: str) -> MockService: ...

    @abstractmethod
    def remove_service(self, name: str) -> MockService: ...

    # --- certificate authority ----------------------------------------------------

    @abstractmethod
    def add_template(self, server_address: str, name: str, schema_version: int = 2,
                     hash_algorithm: str = "SHA256", key_size: int = 2048) -> MockTemplate: ...

    @abstractmethod
    def get_templates(self, server_address: str, name: Optional[str] = None) -> List[MockTemplate]: ...

    @abstractmethod
    def set_authorization_certificate(self, server_address: str, subject: str,
                                      issuer: Optional[str] = None) -> MockAuthorizationCertificate: ...

    @abstractmethod
    def new_certificate_definition(self, server_address: str, name: str, template_name: str,
                                   certificate_authority: str) -> MockCertificateDefinition: ...

    @abstractmethod
    def get_certificate_definitions(self, server_address: str,
                                    name: Optional[str] = None) -> List[MockCertificateDefinition]: ...

    @abstractmethod
    def new_issuance_rule(self, server_address: str, name: str, certificate_definition_names: Sequence[str],
                          issuance_acl: str, read_acl: str, admin_acl: str) -> MockRule: ...

    # --- directory ----------------------------------------------------------------

    @abstractmethod
    def get_directory_objects(self, identity: Optional[str] = None, ldap_filter: Optional[str] = None,
                              search_base: Optional[str] = None,
                              scope: str = SCOPE_SUBTREE) -> List[DirectoryObject]: ...

    @abstractmethod
    def new_directory_object(self, name: str, object_class: str, path: Optional[str] = None,
                             properties: Optional[Dict[str, Any]] = None) -> DirectoryObject: ...

    @abstractmethod
    def set_directory_object(self, identity: str, properties: Dict[str, Any]) -> DirectoryObject: ...

    @abstractmethod
    def remove_directory_object(self, identity: str, recursive: bool = False) -> List[DirectoryObject]: ...

    @abstractmethod
    def write_event_log(self, log_name: str, event_id: int, message: str, level: str = "Information",
                        source: str = "") -> EventLogEntry: ...

    @abstractmethod
    def get_event_log(self, log_name: str, newest: Optional[int] = None,
                      level: Optional[str] = None) -> List[EventLogEntry]: ...


class MockBackendGateway(BackendGateway):
    """
    BackendGateway over a MockStateStore (the process default if none given).
    """

    def __init__(self, store: Optional[MockStateStore] = None):
        self.store = store if store is not None else get_store()

    def new_service(self, name, display_name=None, start_type=MANUAL, status=STOPPED, can_stop=True):
        return self.store.services.add_service(name, display_name=display_name, status=status,
                                               start_type=start_type, can_stop=can_stop)

    def get_service(self, name=None, status=None):
        if name is not None:
            return [self.store.services.get_service(name)]
        return self.store.services.list_services(status=status)

    def start_service(self, name):
        return self.store.services.start_service(name)

    def stop_service(self, name, force=False):
        return self.store.services.stop_service(name, force=force)

    def restart_service(self, name, force=False):
        return self.store.services.restart_service(name, force=force)

    def suspend_service(self, name):
        return self.store.services.pause_service(name)

    def resume_service(self, name):
        return self.store.services.resume_service(name)

    def set_service_startup_type(self, name, start_type):
        return self.store.services.set_startup_type(name, start_type)

    def remove_service(self, name):
        return self.store.services.remove_service(name)

    def add_template(self, server_address, name, schema_version=2, hash_algorithm="SHA256", key_size=2048):
        return self.store.certificates.add_template(server_address, name, schema_version=schema_version,
                                                    hash_algorithm=hash_algorithm, key_size=key_size)

    def get_templates(self, server_address, name=None):
        if name is not None:
            return [self.store.certificates.get_template(server_address, name)]
        return self.store.certificates.list_templates(server_address)

    def set_authorization_certificate(self, server_address, subject, issuer=None):
        return self.store.certificates.set_authorization_certificate(server_address, subject, issuer=issuer)

    def new_certificate_definition(self, server_address, name, template_name, certificate_authority):
        return self.store.certificates.add_certificate_definition(server_address, name, template_name,
                                                                  certificate_authority)

    def get_certificate_definitions(self, server_address, name=None):
        if name is not None:
            return [self.store.certificates.get_certificate_definition(server_address, name)]
        return self.store.certificates.list_certificate_definitions(server_address)

    def new_issuance_rule(self, server_address, name, certificate_definition_names, issuance_acl, read_acl,
                          admin_acl):
        return self.store.certificates.add_issuance_rule(server_address, name, certificate_definition_names,
                                                         issuance_acl, read_acl, admin_acl)

    def get_directory_objects(self, identity=None, ldap_filter=None, search_base=None, scope=SCOPE_SUBTREE):
        if identity is not None:
            return [self.store.directory.get_object(identity)]
        return self.store.directory.search(ldap_filter or "(objectClass=*)", search_base=search_base, scope=scope)

    def new_directory_object(self, name, object_class, path=None, properties=None):
        dn = f"CN={name},{path}" if path else f"CN={name}"
        return self.store.directory.add_object(dn, object_class, properties)

    def set_directory_object(self, identity, properties):
        return self.store.directory.set_properties(identity, **properties)

    def remove_directory_object(self, identity, recursive=False):
        return self.store.directory.remove_object(identity, recursive=recursive)

    def write_event_log(self, log_name, event_id, message, level="Information", source=""):
        return self.store.event_log.write(log_name, event_id, message, level=level, source=source)

    def get_event_log(self, log_name, newest=None, level=None):
        return self.store.event_log.query(log_name, max_events=newest, level=level)
