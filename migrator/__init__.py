"""Schema migration engine for SQL databases."""

__version__ = "0.1.0"
