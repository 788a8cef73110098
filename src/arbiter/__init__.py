"""Arbiter - settlement worker for peer-to-peer escrowed wagers."""

__version__ = "1.0.0"
