"""Retail operations core: sessions, roles and the order delivery lifecycle."""

__version__ = "0.1.0"
