"""Shared editing state for an environment.

This package contains:
- The client registry (environment -> connected clients, broadcast)
- The line-level edit engine applied to stored files
"""
