"""Delegated Active Directory password management."""

__version__ = "0.1.0"
