"""
Error handling module for the Keystone operator.

Reconcilers raise these errors; the base reconciler turns them into kopf
retry or stop signals.
"""

from .operator_errors import (
    ConfigurationError,
    DatabaseAccountError,
    IdentityServiceError,
    KubernetesAPIError,
    OperatorError,
    SecretDataError,
    ValidationError,
)

__all__ = [
    "OperatorError",
    "ValidationError",
    "ConfigurationError",
    "SecretDataError",
    "DatabaseAccountError",
    "IdentityServiceError",
    "KubernetesAPIError",
]
