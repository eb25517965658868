"""Civic complaint intake and triage service."""

__version__ = "0.4.0"
