"""Travellers Club membership, check-in and payment core."""

__version__ = "0.1.0"
