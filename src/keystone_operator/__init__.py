"""
Keystone Operator - A Kubernetes operator for OpenStack Keystone.

This operator manages the identity service lifecycle with:
- KeystoneAPI deployments gated on their database, message bus and cache
- Fernet key ring creation and time-based rotation
- KeystoneService registration of services, users and roles
- Cross-resource finalizers protecting shared dependencies
"""

__version__ = "0.1.0"
