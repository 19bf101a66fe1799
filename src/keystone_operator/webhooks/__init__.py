"""
Admission webhooks for the Keystone operator.

This module provides the defaulting and validating admission webhooks for
KeystoneAPI and KeystoneService custom resources. Invalid configurations are
rejected before Kubernetes stores them.

Webhooks are served by Kopf's built-in HTTPS server.
"""
