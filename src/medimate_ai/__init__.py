"""MediMate AI: medical assistant chat client core."""

__version__ = "0.1.0"
