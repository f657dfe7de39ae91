"""Bandwidth limits per program, relayed to a tc shaping backend."""
__version__ = "0.1.0"
