# mock_backend/store.py
"""
Aggregate mock state: services, certificates and directory in one object.

Instances are independent, so parallel workers can each own one. The
process default returned by get_store() is what the test orchestrator
resets before every test case.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from config import DEFAULT_EVENT_LOG_CAPACITY
from mock_backend.certificates import CertificateStore
from mock_backend.directory import DirectoryStore
from mock_backend.services import ServiceRegistry

logger = logging.getLogger(__name__)


class MockStateStore:
    """
    Not thread-safe; use one instance per worker.
    """

    def __init__(self, event_log_capacity: int = DEFAULT_EVENT_LOG_CAPACITY,
                 clock: Optional[Callable[[], datetime]] = None):
        clock = clock or (lambda: datetime.now(timezone.utc))
        self.warnings: List[str] = []
        self.services = ServiceRegistry(warnings=self.warnings)
        self.certificates = CertificateStore(warnings=self.warnings, clock=clock)
        self.directory = DirectoryStore(event_log_capacity=event_log_capacity, clock=clock)

    @property
    def event_log(self):
        return self.directory.event_log

    def reset(self) -> None:
        """
        Empty every sub-store and clear recorded warnings.
        """
        self.services.reset()
        self.certificates.reset()
        self.directory.reset()
        del self.warnings[:]

    def is_empty(self) -> bool:
        return (
            not len(self.services)
            and not self.certificates.templates
            and not self.certificates.authorization_certificates
            and not self.certificates.definitions
            and not self.certificates.rules
            and not len(self.directory)
            and not len(self.directory.event_log)
            and not self.warnings
        )


_default_store = MockStateStore()


def get_store() -> MockStateStore:
    return _default_store


def reset_store() -> MockStateStore:
    _default_store.reset()
    logger.debug("Mock state store reset")
    return _default_store
