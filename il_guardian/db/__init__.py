"""Persistence for IL Guardian."""

from .repository import Repository

__all__ = ["Repository"]
