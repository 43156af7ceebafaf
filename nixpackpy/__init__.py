"""Collaborative editing and sandboxed execution backend."""

__version__ = "0.1.0"
