"""Parlay - settlement engine for chained prediction-market positions."""

__version__ = "0.1.0"
