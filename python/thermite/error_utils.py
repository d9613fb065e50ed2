"""
Error types and actionable error messages for Thermite.

Every failure raised by the census and prune clients is an ActionableError:
a primary message, a category, suggested fixes and extra details. Prune
failures also carry the image references removed before the failure so that
partial progress is never hidden behind an exception.
"""

from enum import Enum
from threading import Event
from typing import Any, Dict, List, Optional, Type


class ErrorCategory(Enum):
    """Categories of errors for better error handling"""
    CONFIGURATION = "configuration"
    PRECONDITION = "precondition"
    CONNECTION = "connection"
    AUTHENTICATION = "authentication"
    PERMISSION = "permission"
    RESOURCE = "resource"
    DATA_INTEGRITY = "data_integrity"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class ActionableError(Exception):
    """Exception with actionable guidance for users"""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.UNKNOWN,
                 suggestions: Optional[List[str]] = None, details: Optional[Dict[str, Any]] = None):
        """Initialize actionable error

        Args:
            message: Primary error message
            category: Error category for classification
            suggestions: List of suggested fixes
            details: Additional context information
        """
        self.message = message
        self.category = category
        self.suggestions = suggestions or []
        self.details = details or {}
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message with suggestions"""
        lines = [self.message]

        if self.suggestions:
            lines.append("Suggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        if self.details:
            lines.append("Additional details:")
            for key, value in self.details.items():
                lines.append(f"   {key}: {value}")

        return "\n".join(lines)


class ConfigValidationError(ActionableError):
    """Raised when configuration validation fails"""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.CONFIGURATION)
        super().__init__(message, **kwargs)


class SurveyError(ActionableError):
    """Raised when the deployed images in a cluster cannot be surveyed"""


class OperationCancelledError(ActionableError):
    """Raised when the caller cancels a survey"""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.CANCELLED)
        super().__init__(message, **kwargs)


class PruneError(ActionableError):
    """Raised when pruning fails.

    Attributes:
        pruned: image references removed (or found eligible, in a dry run)
            before the failure
    """

    def __init__(self, message: str, pruned: Optional[List[str]] = None, **kwargs):
        self.pruned = list(pruned or [])
        super().__init__(message, **kwargs)


class ZeroExclusionsError(PruneError):
    def __init__(self, message: str = "zero images excluded from prune", **kwargs):
        kwargs.setdefault("category", ErrorCategory.PRECONDITION)
        kwargs.setdefault("suggestions", [
            "Pass the deployed image references as exclusions",
            "Use --allow-zero-exclusions if the repository really has no deployed images",
        ])
        super().__init__(message, **kwargs)


class RepositoryNotFoundError(PruneError):
    def __init__(self, repository: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.RESOURCE)
        kwargs.setdefault("details", {"repository": repository})
        super().__init__(f"no repositories found named {repository}", **kwargs)


class RegistryDataError(PruneError):
    """Raised when the registry returns a response missing a mandatory value"""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.DATA_INTEGRITY)
        super().__init__(message, **kwargs)


class PruneCancelledError(PruneError):
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.CANCELLED)
        super().__init__(message, **kwargs)


def raise_if_cancelled(cancel: Optional[Event], operation: str,
                       error_cls: Type[ActionableError] = OperationCancelledError, **kwargs) -> None:
    """Raise error_cls if cancel has been set.

    Args:
        cancel: Event set by the caller to abort the operation (may be None)
        operation: Name of the operation about to start
        error_cls: Exception type to raise
        kwargs: Extra keyword arguments for error_cls (e.g. pruned)
    """
    if cancel is not None and cancel.is_set():
        raise error_cls(f"cancelled before {operation}", **kwargs)


def _aws_error_code(error: Exception) -> str:
    response = getattr(error, "response", None) or {}
    return response.get("Error", {}).get("Code", "")


def create_registry_error(operation: str, repository: Optional[str], error: Exception,
                          pruned: Optional[List[str]] = None) -> PruneError:
    """Create actionable error for Elastic Container Registry API failures"""
    error_str = str(error).lower()
    code = _aws_error_code(error)
    category = ErrorCategory.UNKNOWN

    suggestions = [
        "Verify AWS credentials are configured (aws configure)",
        "Check AWS IAM permissions for ECR access",
        "Verify the AWS region matches the registry",
    ]

    if code in ("AccessDeniedException", "AccessDenied") or "403" in error_str or "not authorized" in error_str:
        category = ErrorCategory.PERMISSION
        suggestions.insert(0, f"Grant ecr:{operation} to the calling IAM principal")
    elif code == "RepositoryNotFoundException":
        category = ErrorCategory.RESOURCE
        suggestions.insert(0, "Verify the repository exists in this account and region")
    elif "credentials" in error_str:
        category = ErrorCategory.AUTHENTICATION
        suggestions.insert(0, "Set AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY or AWS_PROFILE")
    elif "timeout" in error_str or "connect" in error_str:
        category = ErrorCategory.CONNECTION
        suggestions.insert(0, "Check network connectivity to the ECR endpoint")

    details = {
        "operation": operation,
        "error_type": type(error).__name__,
        "error_message": str(error),
    }
    if repository:
        details["repository"] = repository

    target = f" for repository {repository}" if repository else ""
    return PruneError(
        message=f"Elastic Container Registry operation failed: {operation}{target}",
        pruned=pruned,
        category=category,
        suggestions=suggestions,
        details=details,
    )


def create_kubernetes_error(operation: str, error: Exception) -> SurveyError:
    """Create actionable error for Kubernetes API failures"""
    error_str = str(error).lower()
    status = getattr(error, "status", None)
    forbidden = status == 403 or "403" in error_str or "forbidden" in error_str
    unreachable = status is None and any(
        text in error_str for text in ("max retries", "connection", "timed out", "name resolution")
    )
    category = ErrorCategory.RESOURCE

    suggestions = [
        "Verify Kubernetes cluster access (kubectl cluster-info)",
        "Check if running in-cluster or using kubeconfig",
        "Verify RBAC permissions allow list on the workload kind in all namespaces",
    ]

    if status == 404 or "404" in error_str or "not found" in error_str:
        suggestions.insert(0, "Verify the API group version is served by this cluster")

    if forbidden:
        category = ErrorCategory.PERMISSION
        suggestions.insert(0, "Check Kubernetes RBAC permissions")
        suggestions.insert(1, "Verify service account has a ClusterRole with list access")
    elif unreachable:
        category = ErrorCategory.CONNECTION
        suggestions.insert(0, "Check network connectivity to the Kubernetes API server")

    return SurveyError(
        message=f"Kubernetes operation failed: {operation}",
        category=category,
        suggestions=suggestions,
        details={
            "operation": operation,
            "error_type": type(error).__name__,
            "error_message": str(error)
        }
    )


def create_config_error(field: str, value: Any, reason: str) -> ConfigValidationError:
    """Create actionable error for configuration validation failures"""
    suggestions = [
        f"Check the '{field}' value in config.yaml",
        "Verify the value matches the expected format",
        "Check config-example.yaml for correct format",
    ]

    if "page_size" in field:
        suggestions.insert(1, "Page size must be an integer between 0 and 1000 (0 uses the API default)")
    elif "tag_key" in field:
        suggestions.insert(1, "The tag key must be a non-empty AWS resource tag key")

    return ConfigValidationError(
        f"Configuration error: Invalid value for '{field}'",
        suggestions=suggestions,
        details={
            "field": field,
            "value": value,
            "reason": reason
        }
    )
