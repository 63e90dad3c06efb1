"""Detected dev-server processes."""

from .observer import ProcessEntry, ProcessObserver

__all__ = ["ProcessEntry", "ProcessObserver"]
