"""
Utils package - Utility modules for Keystone operator functionality.

Contains helper modules for:
- Keystone identity API interactions
- Kubernetes resource management and workload manifests
- Fernet key ring handling
- Cross-resource finalizer coordination
"""
