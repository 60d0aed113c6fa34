"""Escrowed specialist marketplace core."""

__version__ = "1.0.0"
