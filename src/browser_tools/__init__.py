"""Session supervision for agent-driven browser automation."""

__version__ = "0.1.0"

__all__ = ["__version__"]
