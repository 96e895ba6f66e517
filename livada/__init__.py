"""Livada biotope external-data gateway."""

__version__ = "0.1.0"
