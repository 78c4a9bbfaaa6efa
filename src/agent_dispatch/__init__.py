"""Task routing, scheduling, and blocker resolution for multi-agent workflows."""

__version__ = "0.1.0"
