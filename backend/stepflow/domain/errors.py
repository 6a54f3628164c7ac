"""Domain Errors - Centralized Exception Hierarchy"""
from typing import Any, Dict, Optional


class DomainError(Exception):
    """Base domain error - all errors extend this"""
    
    error_code: str = "DOMAIN_ERROR"
    http_status: int = 400
    
    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code
    
    def to_dict(self) -> Dict[str, Any]:
        """Convert error to API response dict"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details
            }
        }


# Authentication & Authorization Errors
class AuthenticationError(DomainError):
    """Actor identity missing"""
    error_code = "AUTHENTICATION_ERROR"
    http_status = 401


class AuthorizationError(DomainError):
    """User lacks permission for action"""
    error_code = "AUTHORIZATION_ERROR"
    http_status = 403


class PermissionDeniedError(AuthorizationError):
    """RBAC resolver refused the actor"""
    error_code = "PERMISSION_DENIED"


# Validation Errors
class ValidationError(DomainError):
    """Input validation failed"""
    error_code = "VALIDATION_ERROR"
    http_status = 400


class InvalidTemplateError(ValidationError):
    """Template graph violates a structural invariant"""
    error_code = "INVALID_TEMPLATE"


class InvalidActionError(ValidationError):
    """Command does not fit the target node type"""
    error_code = "INVALID_ACTION"


# Not Found Errors
class NotFoundError(DomainError):
    """Resource not found"""
    error_code = "NOT_FOUND"
    http_status = 404


class TemplateNotFoundError(NotFoundError):
    """Template not found"""
    error_code = "TEMPLATE_NOT_FOUND"


class InstanceNotFoundError(NotFoundError):
    """Instance not found"""
    error_code = "INSTANCE_NOT_FOUND"


# Conflict Errors
class ConflictError(DomainError):
    """Resource conflict (e.g., concurrent modification)"""
    error_code = "CONFLICT"
    http_status = 409


class ConcurrencyError(ConflictError):
    """Optimistic concurrency conflict or lock timeout"""
    error_code = "CONCURRENCY_CONFLICT"


class AlreadyExistsError(ConflictError):
    """Resource already exists"""
    error_code = "ALREADY_EXISTS"


class TemplateInactiveError(ConflictError):
    """Template is deactivated and cannot start instances"""
    error_code = "TEMPLATE_INACTIVE"


class InstanceAlreadyTerminalError(ConflictError):
    """Instance is completed or cancelled"""
    error_code = "INSTANCE_ALREADY_TERMINAL"


class NodeNotActiveError(ConflictError):
    """Node is not in the instance's active step set"""
    error_code = "NODE_NOT_ACTIVE"


class DuplicateApprovalError(ConflictError):
    """User already voted on this approval node"""
    error_code = "DUPLICATE_APPROVAL"


class NoMatchingEdgeError(ConflictError):
    """No outgoing edge for the resolved port - instance parked"""
    error_code = "NO_MATCHING_EDGE"


# Engine Errors
class EngineError(DomainError):
    """Workflow engine error"""
    error_code = "ENGINE_ERROR"
    http_status = 500
