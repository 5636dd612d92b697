"""Metered billing and usage governance for per-generation image synthesis."""

__version__ = "0.1.0"
