"""Domain models, PostgreSQL repositories and audited services for a copy-trading platform."""

__version__ = "0.1.0"