"""Tool-augmented streaming chat runtime for IDE coding assistants."""

__version__ = "0.1.0"

__all__ = ["__version__"]
