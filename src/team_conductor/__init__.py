"""Coordinate CLI coding agents as managed processes and route tasks between them."""

__version__ = "0.1.0"
