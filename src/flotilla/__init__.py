"""Flotilla: execution engine for concurrent, sandboxed agent workers."""

__version__ = "0.1.0"
