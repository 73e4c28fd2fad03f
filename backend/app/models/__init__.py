"""Database models package."""

from .base import Base
from .rooms import LiveRoom

__all__ = ["Base", "LiveRoom"]
