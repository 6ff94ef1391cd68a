"""Newsletter to Kindle conversion service."""

__version__ = "0.1.0"
