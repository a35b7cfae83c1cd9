"""Live client for the Escalada scoring API."""

__version__ = "0.1.0"
