"""Consultflow: booking, billing, payment and invoicing lifecycle for consultation practices."""

__version__ = "1.0.0"
