"""Shared libraries for the workspace researcher.

This package contains reusable components:
- common: Configuration and logging setup
- caching: Redis client management
"""
