"""Sellibra: token quota and AI job processing for Etsy sellers."""

__version__ = "0.1.0"
