"""Guidance engine - versioned script graphs executed step by step."""

__version__ = "0.1.0"
