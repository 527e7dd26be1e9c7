from typing import Optional

from fastapi.responses import JSONResponse


def error_body(message: str, error_type: str, param: Optional[str] = None, code: Optional[str] = None) -> dict:
    error = {"message": message or "Request blocked", "type": error_type or "invalid_request_error"}
    if param:
        error["param"] = param
    if code:
        error["code"] = code
    return {"error": error}


def error_response(status_code: int, message: str, error_type: str = "invalid_request_error",
                   param: Optional[str] = None, code: Optional[str] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error_body(message, error_type, param, code))


class ConfigError(Exception):
    """Raised at startup when the route table cannot be loaded."""


class ProxyError(Exception):
    """
    Base for every failure that is reported to the client.

    Subclasses fix the HTTP status and the error ``type`` field of the
    standardized error JSON.
    """

    status_code = 500
    error_type = "invalid_request_error"

    def __init__(self, message: str, param: Optional[str] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.param = param
        self.code = code

    def to_response(self) -> JSONResponse:
        return error_response(self.status_code, self.message, self.error_type, self.param, self.code)


class RouteNotFound(ProxyError):
    status_code = 404


class InvalidRoute(ProxyError):
    status_code = 400


class RateLimited(ProxyError):
    status_code = 429
    error_type = "rate_limit_error"


class Banned(ProxyError):
    status_code = 403
    error_type = "banned"


class AuditBlocked(ProxyError):
    status_code = 403

    def __init__(self, message: str, verdict: str = "malicious",
                 param: Optional[str] = None, code: Optional[str] = None):
        super().__init__(message, param=param, code=code)
        # the classifier's verdict doubles as the error type
        self.error_type = verdict


class InternalError(ProxyError):
    status_code = 500
    error_type = "internal_error"


class UpstreamUnavailable(ProxyError):
    status_code = 502
    error_type = "upstream_error"
