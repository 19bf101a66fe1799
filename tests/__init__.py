"""
Tests package - Unit test suite for the Keystone operator.

Contains:
- unit/: Unit tests for individual components
- unit/services/: Reconciler tests against an in-memory cluster
"""
