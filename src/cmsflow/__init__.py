"""Scheduled CMS publishing and remediation verification."""

__version__ = "0.4.0"
