"""Resumable task-iteration loop for external worker commands."""

__version__ = "0.1.0"
