"""docpilot - durable documentation sessions for terminal workflows."""

__version__ = "0.1.0"
