"""Durable local state for LocalCan."""

from .store import StateStore

__all__ = ["StateStore"]
