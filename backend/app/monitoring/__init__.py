"""Metric registry and the room service's metric definitions."""

from . import metrics, registry

__all__ = ["metrics", "registry"]
