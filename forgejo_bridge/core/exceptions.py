from typing import Any, Dict, Optional

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None
    correlation_id: Optional[str] = None


class BaseAPIException(Exception):
    def __init__(
        self,
        code: str,
        message: str,
        status_code: int,
        details: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(message)

    def to_error_response(self, correlation_id: Optional[str] = None) -> ErrorResponse:
        return ErrorResponse(
            code=self.code,
            message=self.message,
            details=self.details,
            correlation_id=correlation_id
        )


class ValidationError(BaseAPIException):
    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            code="FJB-400",
            message=message,
            status_code=400,
            details=details
        )


class AuthenticationError(BaseAPIException):
    def __init__(self, message: str = "Authentication required", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            code="FJB-401",
            message=message,
            status_code=401,
            details=details
        )


class InternalServerError(BaseAPIException):
    def __init__(self, message: str = "Internal server error", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            code="FJB-500",
            message=message,
            status_code=500,
            details=details
        )


class UpstreamAPIError(BaseAPIException):
    """A Forgejo REST call failed; carries the upstream status when there was one"""

    def __init__(
        self,
        message: str = "Upstream request failed",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            code=f"FJB-{status_code}",
            message=message,
            status_code=status_code,
            details=details
        )


class UpstreamSyncError(BaseAPIException):
    """Cloning or fetching a mirror from Forgejo failed"""

    def __init__(self, message: str = "Failed to synchronize repository", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            code="FJB-502",
            message=message,
            status_code=502,
            details=details
        )


class SubprocessLaunchError(BaseAPIException):
    """git-http-backend could not be started"""

    def __init__(self, message: str = "Git backend unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            code="FJB-500",
            message=message,
            status_code=500,
            details=details
        )


class SubprocessProtocolError(BaseAPIException):
    """git-http-backend never produced a parseable CGI header block"""

    def __init__(self, message: str = "Invalid response from git backend", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            code="FJB-502",
            message=message,
            status_code=502,
            details=details
        )

