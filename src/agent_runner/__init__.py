"""Agent runner: supervise a coding agent and sync its git work."""

__version__ = "0.1.0"

__all__ = ["__version__"]
