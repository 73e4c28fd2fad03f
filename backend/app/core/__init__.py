"""Core utilities for the lounge backend."""

from .tags import generate_tags

__all__ = ["generate_tags"]
