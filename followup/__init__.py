"""Follow-up appointment coordinator."""

__version__ = "1.0.0"
