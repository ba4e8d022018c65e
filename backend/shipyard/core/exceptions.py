"""
Custom Exceptions for Shipyard
==============================

Every error carries an HTTP status, a machine-readable code and optional
details. Before a stream starts they are rendered as JSON error bodies; once
a stream is open the orchestrator turns them into `event: error` frames.

Usage:
    from shipyard.core.exceptions import ApplicationNotFoundError

    if not application:
        raise ApplicationNotFoundError(application_id)
"""

from typing import Optional, Any, Dict


class ShipyardError(Exception):
    """Base exception for all Shipyard errors"""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        # extra response headers, e.g. the daily limit headers of /message
        self.headers: Dict[str, str] = {}
        super().__init__(self.message)

    @property
    def kind(self) -> str:
        """Error class name, used as the `kind` of stream error frames"""
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details
        }


# ============================================
# Request Errors (400)
# ============================================

class ValidationError(ShipyardError):
    """Malformed request body"""

    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, code="VALIDATION_ERROR")
        if field:
            self.details["field"] = field


# ============================================
# Authentication & Authorization Errors
# ============================================

class AuthError(ShipyardError):
    """Bearer token missing, expired or invalid"""

    status_code = 401

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message, code="AUTH_FAILED")


class TraceAccessDeniedError(ShipyardError):
    """Trace id does not belong to the requested application"""

    status_code = 403

    def __init__(self, application_id: str, trace_id: str):
        super().__init__(
            "Trace does not belong to this application",
            code="TRACE_ACCESS_DENIED",
            details={"application_id": application_id, "trace_id": trace_id}
        )


# ============================================
# Resource Errors (404-type)
# ============================================

class ApplicationNotFoundError(ShipyardError):
    """Application missing, soft-deleted, or owned by someone else"""

    status_code = 404

    def __init__(self, application_id: str):
        super().__init__(
            f"Application with ID '{application_id}' not found",
            code="APPLICATION_NOT_FOUND",
            details={"application_id": application_id}
        )


class PreviousRequestNotFoundError(ShipyardError):
    """Neither the conversation cache nor prompt history has the prior conversation"""

    status_code = 404

    def __init__(self, application_id: str, trace_id: Optional[str] = None):
        super().__init__(
            "No previous request found for this application",
            code="PREVIOUS_REQUEST_NOT_FOUND",
            details={"application_id": application_id, "trace_id": trace_id}
        )


# ============================================
# Limit Errors (429)
# ============================================

class QuotaExceededError(ShipyardError):
    """Daily message limit reached"""

    status_code = 429

    def __init__(self, limit: int, reset_at: str):
        super().__init__(
            f"Daily message limit of {limit} reached. Try again after {reset_at}",
            code="DAILY_LIMIT_EXCEEDED",
            details={"limit": limit, "reset_at": reset_at}
        )


class AppsLimitExceededError(ShipyardError):
    """Per-user or platform-wide app creation limit reached"""

    status_code = 429

    def __init__(self, message: str, limit: int, scope: str):
        super().__init__(
            message,
            code="APPS_LIMIT_EXCEEDED",
            details={"limit": limit, "scope": scope}
        )


class ConcurrencyExceededError(ShipyardError):
    """Active session ceiling reached"""

    status_code = 429

    def __init__(self, max_connections: int):
        super().__init__(
            "Too many active sessions. Please try again in a few minutes",
            code="TOO_MANY_CONNECTIONS",
            details={"max_connections": max_connections}
        )


# ============================================
# Upstream Agent Errors
# ============================================

class UpstreamAgentError(ShipyardError):
    """Non-2xx response from the agent service, forwarded unchanged"""

    def __init__(self, status_code: int, payload: Any):
        super().__init__(
            f"Agent service responded with status {status_code}",
            code="UPSTREAM_AGENT_ERROR",
            details={"upstream_status": status_code}
        )
        self.status_code = status_code
        self.payload = payload

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["upstream"] = self.payload
        return data


# ============================================
# Pipeline Errors (raised mid-stream)
# ============================================

class OverlaySeedError(ShipyardError):
    """Seeding the virtual filesystem from a real directory failed"""

    def __init__(self, path: str, reason: str):
        super().__init__(
            f"Failed to seed overlay from '{path}': {reason}",
            code="OVERLAY_SEED_FAILED",
            details={"path": path}
        )


class OverlayDiscardedError(ShipyardError):
    """Operation attempted on an overlay that was discarded"""

    def __init__(self):
        super().__init__("Overlay has been discarded", code="OVERLAY_DISCARDED")


class DiffApplicationError(ShipyardError):
    """Unified diff could not be applied cleanly"""

    def __init__(self, message: str, path: Optional[str] = None, hunk: Optional[int] = None):
        super().__init__(message, code="DIFF_APPLICATION_FAILED")
        if path:
            self.details["path"] = path
        if hunk is not None:
            self.details["hunk"] = hunk


class RepositoryError(ShipyardError):
    """GitHub repository operation failed"""

    status_code = 502

    def __init__(self, message: str, operation: str):
        super().__init__(message, code="REPOSITORY_ERROR", details={"operation": operation})


class DeploymentConflictError(ShipyardError):
    """Application is already being deployed"""

    status_code = 409

    def __init__(self, application_id: str):
        super().__init__(
            "Application is already being deployed",
            code="DEPLOYMENT_CONFLICT",
            details={"application_id": application_id}
        )


class DeploymentError(ShipyardError):
    """Hosting provider rejected or failed the deployment"""

    status_code = 502

    def __init__(self, message: str, application_id: Optional[str] = None):
        super().__init__(message, code="DEPLOYMENT_FAILED")
        if application_id:
            self.details["application_id"] = application_id


class InternalError(ShipyardError):
    """Anything unhandled"""

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message, code="INTERNAL_ERROR")


# ============================================
# Helper function for API responses
# ============================================

def error_response(error: ShipyardError) -> Dict[str, Any]:
    """Convert exception to API error response format"""
    return {
        "success": False,
        "error": error.to_dict()
    }
