# errors.py - CTMS sync error taxonomy with CTMS-{AREA}-{NUMBER} codes
# Hard failures abort an Authenticate/SyncData call and are returned verbatim
# to the caller as {"success": false, "error": <message>}.

from typing import Any, Dict, Optional

# ============================================================
# ERROR CODE CATALOGUE
# Areas: AUTH, CFG, SESS, EP, UP, DB
# ============================================================

ERROR_CATALOGUE = {
    "CTMS-AUTH-001": {"message": "Authorization header required", "http_status": 401},
    "CTMS-AUTH-002": {"message": "CTMS authentication failed", "http_status": 400},
    "CTMS-CFG-001": {"message": "Configuration not found", "http_status": 404},
    "CTMS-SESS-001": {"message": "No active session found: Session expired or not found", "http_status": 400},
    "CTMS-EP-001": {"message": "No study object endpoint responded successfully", "http_status": 400},
    "CTMS-UP-001": {"message": "CTMS request failed", "http_status": 400},
    "CTMS-DB-001": {"message": "Storage operation failed", "http_status": 400},
}


class CtmsError(Exception):
    """Base class for failures surfaced to Authenticate/SyncData callers."""

    code = "CTMS-UP-001"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        entry = ERROR_CATALOGUE[self.code]
        self.message = message or entry["message"]
        self.http_status = entry["http_status"]
        self.details = details or {}
        super().__init__(self.message)

    def to_response(self) -> Dict[str, Any]:
        return {"success": False, "error": self.message}


class Unauthorized(CtmsError):
    code = "CTMS-AUTH-001"


class AuthenticationError(CtmsError):
    code = "CTMS-AUTH-002"

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class ConfigurationNotFound(CtmsError):
    code = "CTMS-CFG-001"


class SessionExpired(CtmsError):
    code = "CTMS-SESS-001"


class EndpointNotFound(CtmsError):
    code = "CTMS-EP-001"


class UpstreamError(CtmsError):
    code = "CTMS-UP-001"

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None,
                 body: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.body = body


class StorageFailure(CtmsError):
    code = "CTMS-DB-001"
