"""formulary — a formula execution engine."""

__version__ = "0.1.0"
