"""
Models package - Pydantic models for type-safe resource handling.

Defines data models for:
- KeystoneAPI specifications, overrides and defaulting
- KeystoneService specifications
"""
