"""Switchboard - capability routing and resilient execution core for multi-agent assistants."""

__version__ = "0.1.0"
