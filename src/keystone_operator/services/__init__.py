"""
Service layer for the Keystone operator.

This module provides reconciler services that handle the business logic
for managing Keystone resources, separated from the kopf handler layer.
"""

from .base_reconciler import BaseReconciler, ReconcileResult
from .keystone_api_reconciler import KeystoneAPIReconciler
from .keystone_service_reconciler import KeystoneServiceReconciler

__all__ = [
    "BaseReconciler",
    "ReconcileResult",
    "KeystoneAPIReconciler",
    "KeystoneServiceReconciler",
]
