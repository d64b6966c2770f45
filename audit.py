# audit.py
"""
Append-only audit log for internal errors.

- One JSON object per line: timestamp (UTC), acting identity, event, details.
- Backed by a dedicated logger with an append-mode FileHandler; until
  configure_audit_log() is called, entries only reach the logger (no file).
"""

import getpass
import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Optional

from errors import HarnessError

_AUDIT_LOGGER_NAME = "scriptguard.audit"


def acting_identity() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return os.environ.get("USERNAME") or os.environ.get("USER") or "unknown"


class AuditLog:
    def __init__(self, path: Optional[str] = None):
        self.path = path
        # one logger per file so two logs never share handlers
        name = _AUDIT_LOGGER_NAME if not path else f"{_AUDIT_LOGGER_NAME}[{os.path.abspath(path)}]"
        self._logger = logging.getLogger(name)
        self._logger.setLevel(logging.INFO)
        self._logger.propagate = False
        self._handler: Optional[logging.Handler] = None
        if path:
            parent = os.path.dirname(path)
            if parent:
                os.makedirs(parent, exist_ok=True)
            self._handler = logging.FileHandler(path, mode="a", encoding="utf-8", delay=True)
            self._handler.setFormatter(logging.Formatter("%(message)s"))
            self._logger.addHandler(self._handler)

    def record(self, event: str, **details: Any) -> dict:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "identity": acting_identity(),
            "event": event,
            "details": details,
        }
        self._logger.info(json.dumps(entry, sort_keys=True, default=str))
        return entry

    def record_error(self, error: BaseException, **context: Any) -> dict:
        if isinstance(error, HarnessError):
            payload = error.to_dict()
        else:
            payload = {"error": type(error).__name__, "message": str(error), "details": {}}
        payload.update(context)
        return self.record("internal_error", **payload)

    def close(self) -> None:
        if self._handler is not None:
            self._logger.removeHandler(self._handler)
            self._handler.close()
            self._handler = None


_default_audit_log = AuditLog()


def configure_audit_log(path: Optional[str]) -> AuditLog:
    """
    Point the process-wide audit log at path (None disables the file).
    """
    global _default_audit_log
    _default_audit_log.close()
    _default_audit_log = AuditLog(path)
    return _default_audit_log


def get_audit_log() -> AuditLog:
    return _default_audit_log
