"""Agent run supervision engine."""

__version__ = "0.1.0"
