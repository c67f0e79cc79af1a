"""Forgejo Bridge: Forgejo presented as GitHub, with a caching Git smart-HTTP proxy."""

__version__ = "1.0.0"
