"""Conductor: orchestration core for an interactive AI coding assistant."""

__version__ = "0.1.0"
