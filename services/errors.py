"""Error taxonomy for the realtime layer.

Each class carries a machine-readable ``code``; the dispatcher turns raised
errors into ``{"code", "message"}`` payloads scoped to the requester.
"""
from __future__ import annotations


class RealtimeError(Exception):
    code = "server_error"
    default_message = "Something went wrong"

    def __init__(self, message: str | None = None, *, code: str | None = None):
        super().__init__(message or self.default_message)
        if code is not None:
            self.code = code

    @property
    def message(self) -> str:
        return str(self)

    def to_payload(self) -> dict:
        return {"code": self.code, "message": self.message}


class AuthenticationFailure(RealtimeError):
    code = "unauthorized"
    default_message = "Authentication failed"


class AuthorizationDenied(RealtimeError):
    code = "forbidden"
    default_message = "Access denied"


class NotFound(RealtimeError):
    code = "not_found"
    default_message = "Not found"


class PersistenceFailure(RealtimeError):
    code = "persistence_error"
    default_message = "Storage is unavailable"


class ProtocolMisuse(RealtimeError):
    code = "bad_request"
    default_message = "Malformed request"
