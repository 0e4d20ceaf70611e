"""Boomerang task orchestration for CLI agents."""

__version__ = "0.1.0"
