# mock_backend/services.py
"""
In-memory service registry.

State machine (status is independent of start type):
- start: Stopped -> Running; Running is a no-op with a warning; Paused must be resumed
- stop: Running/Paused -> Stopped; Stopped is a no-op with a warning;
  a non-stoppable service refuses unless force=True
- pause: Running -> Paused; resume: Paused -> Running
- set_startup_type changes metadata only
"""

import logging
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional

from errors import MockDuplicateError, MockNotFoundError, MockStateError, MockValidationError

logger = logging.getLogger(__name__)

STOPPED = "Stopped"
RUNNING = "Running"
PAUSED = "Paused"
STATUSES = (STOPPED, RUNNING, PAUSED)

AUTOMATIC = "Automatic"
MANUAL = "Manual"
DISABLED = "Disabled"
START_TYPES = (AUTOMATIC, MANUAL, DISABLED)


@dataclass
class MockService:
    name: str
    display_name: str = ""
    status: str = STOPPED
    start_type: str = MANUAL
    can_stop: bool = True

    def to_dict(self) -> dict:
        return asdict(self)


def _canonical(value: str, allowed, what: str) -> str:
    for a in allowed:
        if a.lower() == str(value).lower():
            return a
    raise MockValidationError(f"Invalid {what} '{value}'; expected one of {', '.join(allowed)}", value=value)


class ServiceRegistry:
    """
    Services keyed case-insensitively by name.
    """

    def __init__(self, warnings: Optional[List[str]] = None):
        self._services: Dict[str, MockService] = {}
        # shared with the owning store so every sub-store reports in one place
        self.warnings: List[str] = warnings if warnings is not None else []

    def _warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)

    def add_service(self, name: str, display_name: Optional[str] = None, status: str = STOPPED,
                    start_type: str = MANUAL, can_stop: bool = True) -> MockService:
        key = name.lower()
        if key in self._services:
            raise MockDuplicateError(f"Service '{name}' already exists", entity_id=name)
        service = MockService(
            name=name,
            display_name=display_name or name,
            status=_canonical(status, STATUSES, "service status"),
            start_type=_canonical(start_type, START_TYPES, "startup type"),
            can_stop=can_stop,
        )
        self._services[key] = service
        return service

    def get_service(self, name: str) -> MockService:
        try:
            return self._services[name.lower()]
        except KeyError:
            raise MockNotFoundError(f"Cannot find any service with service name '{name}'", entity_id=name) from None

    def list_services(self, status: Optional[str] = None) -> List[MockService]:
        services = sorted(self._services.values(), key=lambda s: s.name.lower())
        if status is not None:
            wanted = _canonical(status, STATUSES, "service status")
            services = [s for s in services if s.status == wanted]
        return services

    def start_service(self, name: str) -> MockService:
        service = self.get_service(name)
        if service.status == RUNNING:
            self._warn(f"Service '{service.name}' is already running")
            return service
        if service.status == PAUSED:
            raise MockStateError(f"Service '{service.name}' is paused; resume it instead", entity_id=service.name)
        if service.start_type == DISABLED:
            raise MockStateError(f"Service '{service.name}' cannot be started because it is disabled",
                                 entity_id=service.name)
        service.status = RUNNING
        return service

    def stop_service(self, name: str, force: bool = False) -> MockService:
        service = self.get_service(name)
        if service.status == STOPPED:
            self._warn(f"Service '{service.name}' is already stopped")
            return service
        if not service.can_stop and not force:
            raise MockStateError(f"Service '{service.name}' cannot be stopped without -Force",
                                 entity_id=service.name)
        service.status = STOPPED
        return service

    def pause_service(self, name: str) -> MockService:
        service = self.get_service(name)
        if service.status == PAUSED:
            self._warn(f"Service '{service.name}' is already paused")
            return service
        if service.status != RUNNING:
            raise MockStateError(f"Service '{service.name}' cannot be paused while {service.status}",
                                 entity_id=service.name)
        service.status = PAUSED
        return service

    def resume_service(self, name: str) -> MockService:
        service = self.get_service(name)
        if service.status == RUNNING:
            self._warn(f"Service '{service.name}' is already running")
            return service
        if service.status != PAUSED:
            raise MockStateError(f"Service '{service.name}' cannot be resumed while {service.status}",
                                 entity_id=service.name)
        service.status = RUNNING
        return service

    def restart_service(self, name: str, force: bool = False) -> MockService:
        service = self.get_service(name)
        if service.status != STOPPED:
            self.stop_service(name, force=force)
        return self.start_service(name)

    def set_startup_type(self, name: str, start_type: str) -> MockService:
        service = self.get_service(name)
        service.start_type = _canonical(start_type, START_TYPES, "startup type")
        return service

    def remove_service(self, name: str) -> MockService:
        service = self.get_service(name)
        if service.status != STOPPED:
            raise MockStateError(f"Service '{service.name}' must be stopped before removal", entity_id=service.name)
        del self._services[name.lower()]
        return service

    def reset(self) -> None:
        self._services.clear()

    def __len__(self) -> int:
        return len(self._services)
