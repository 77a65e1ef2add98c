# tickbridge/api/errors.py
from __future__ import annotations
from typing import Any, Dict, Optional


class BridgeError(Exception):
    """Structured failure: a reason code the EA/automation can switch on, plus details."""
    status_code = 400

    def __init__(self, reason: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(reason)
        self.reason = reason
        self.details = details or {}

    def payload(self) -> Dict[str, Any]:
        return {"ok": False, "reason": self.reason, **self.details}


class ValidationFailed(BridgeError):
    status_code = 400


class Unauthorized(BridgeError):
    status_code = 401


class NotFound(BridgeError):
    status_code = 404


class Blocked(BridgeError):
    """Guard block: caller should retry later."""
    status_code = 409


class IllegalTransition(BridgeError):
    status_code = 409


class StorageRequired(BridgeError):
    status_code = 503

    def __init__(self, details: Optional[Dict[str, Any]] = None):
        super().__init__("storage_required", details)
