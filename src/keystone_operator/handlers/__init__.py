"""
Handlers package - Contains all Kopf event handlers for Keystone resources.

This package organizes handlers by resource type:
- keystone_api.py: KeystoneAPI deployment management
- keystone_service.py: KeystoneService registration management
"""
