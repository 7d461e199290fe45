"""Slack bridge for long-lived Coday assistant threads."""

__version__ = "0.3.0"
